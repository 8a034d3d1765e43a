"""
In-process LRU tier (L1).

The key space is split across shards, each guarded by its own lock, so
unrelated keys do not contend. Each shard is an OrderedDict: a hash map over
a doubly linked recency list, giving O(1) get/put/delete.
"""
import threading
import time
import logging
import zlib
from collections import OrderedDict
from typing import Callable, Dict, List, Optional, Any

from .core import CacheEntry, TierName

logger = logging.getLogger("cache.lru")

EvictionCallback = Callable[[CacheEntry], None]


class _Shard:
    """One independently locked slice of the LRU."""

    def __init__(self, max_entries: Optional[int], max_bytes: Optional[int]):
        self.entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self.lock = threading.Lock()
        self.max_entries = max_entries
        self.max_bytes = max_bytes
        self.bytes_used = 0
        self.evictions = 0

    def fits(self, extra_bytes: int) -> bool:
        if self.max_entries is not None and len(self.entries) + 1 > self.max_entries:
            return False
        if self.max_bytes is not None and self.bytes_used + extra_bytes > self.max_bytes:
            return False
        return True

    def remove(self, key: str) -> Optional[CacheEntry]:
        entry = self.entries.pop(key, None)
        if entry is not None:
            self.bytes_used -= entry.size_bytes
        return entry


def _share(total: Optional[int], shards: int, index: int) -> Optional[int]:
    """Split `total` across shards, the first `total % shards` getting one extra."""
    if total is None:
        return None
    base, extra = divmod(total, shards)
    return base + (1 if index < extra else 0)


class LRUTier:
    """
    Bounded in-memory cache with least-recently-used eviction.

    Capacity can be given as an entry count, a byte budget, or both; it is
    divided across shards. With `shards=1` eviction order is an exact
    global LRU.

    Usage:
        tier = LRUTier(max_entries=1000, on_evict=demote_to_disk)
        tier.put(CacheEntry.create("k", b"v", ttl_seconds=60))
        entry = tier.get("k")
    """

    name = TierName.MEMORY

    def __init__(
        self,
        max_entries: Optional[int] = None,
        max_bytes: Optional[int] = None,
        shards: int = 8,
        on_evict: Optional[EvictionCallback] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the tier.

        Args:
            max_entries: Maximum number of entries across all shards
            max_bytes: Maximum total entry size across all shards
            shards: Number of independently locked shards
            on_evict: Called with each entry evicted for capacity reasons
            clock: Wall-clock source used for expiry checks
        """
        if max_entries is None and max_bytes is None:
            raise ValueError("LRUTier needs max_entries, max_bytes, or both")
        if shards < 1:
            raise ValueError(f"shards must be >= 1, got {shards}")
        if max_entries is not None and max_entries < shards:
            raise ValueError(
                f"max_entries ({max_entries}) must be at least the shard count ({shards})"
            )
        if max_bytes is not None and max_bytes < shards:
            raise ValueError(
                f"max_bytes ({max_bytes}) must be at least the shard count ({shards})"
            )

        self._shards = [
            _Shard(_share(max_entries, shards, i), _share(max_bytes, shards, i))
            for i in range(shards)
        ]
        self.max_entries = max_entries
        self.max_bytes = max_bytes
        self.on_evict = on_evict
        self._clock = clock

    def _shard_for(self, key: str) -> _Shard:
        # Placement must be stable across processes
        return self._shards[zlib.crc32(key.encode("utf-8")) % len(self._shards)]

    def get(self, key: str) -> Optional[CacheEntry]:
        """Return the unexpired entry for `key` and mark it most recently used."""
        shard = self._shard_for(key)
        with shard.lock:
            entry = shard.entries.get(key)
            if entry is None:
                return None
            if entry.is_expired(self._clock()):
                shard.remove(key)
                logger.debug(f"Purged expired entry: {key}")
                return None
            shard.entries.move_to_end(key)
            return entry

    def put(self, entry: CacheEntry) -> bool:
        """
        Insert or replace an entry, evicting LRU entries until it fits.

        Returns:
            False if the entry alone exceeds the shard's byte budget
        """
        shard = self._shard_for(entry.key)
        entry = entry.with_origin(TierName.MEMORY)
        evicted: List[CacheEntry] = []

        with shard.lock:
            if shard.max_bytes is not None and entry.size_bytes > shard.max_bytes:
                logger.debug(
                    f"Entry {entry.key} ({entry.size_bytes}B) exceeds shard budget "
                    f"({shard.max_bytes}B), not admitted"
                )
                return False

            shard.remove(entry.key)
            now = self._clock()
            while shard.entries and not shard.fits(entry.size_bytes):
                _, victim = shard.entries.popitem(last=False)
                shard.bytes_used -= victim.size_bytes
                # Expired victims are dropped, live ones are handed on
                if not victim.is_expired(now):
                    evicted.append(victim)

            shard.entries[entry.key] = entry
            shard.bytes_used += entry.size_bytes
            shard.evictions += len(evicted)

        for victim in evicted:
            logger.debug(f"Evicted {victim.key} from memory tier")
            if self.on_evict is not None:
                self.on_evict(victim)
        return True

    def delete(self, key: str) -> bool:
        """Remove `key`. Returns True if it was present."""
        shard = self._shard_for(key)
        with shard.lock:
            return shard.remove(key) is not None

    def clear(self) -> int:
        """Drop every entry without demotion. Returns the number removed."""
        count = 0
        for shard in self._shards:
            with shard.lock:
                count += len(shard.entries)
                shard.entries.clear()
                shard.bytes_used = 0
        return count

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        return sum(len(shard.entries) for shard in self._shards)

    @property
    def bytes_used(self) -> int:
        return sum(shard.bytes_used for shard in self._shards)

    def get_stats(self) -> Dict[str, Any]:
        """Get tier statistics."""
        return {
            "entries": len(self),
            "bytes": self.bytes_used,
            "shards": len(self._shards),
            "max_entries": self.max_entries,
            "max_bytes": self.max_bytes,
            "evictions": sum(shard.evictions for shard in self._shards),
        }
