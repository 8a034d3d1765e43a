"""
Main cache orchestration across the memory, disk and distributed tiers.
"""
import threading
import time
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Dict, Iterable, Optional, Any, Union

from ..errors import CacheMiss, TierFull, TierUnavailable
from ..metrics import MetricsSink, NullMetricsSink
from .coalescer import RequestCoalescer
from .core import CacheEntry, TierName, TierStats
from .distributed import DistributedTier
from .lru import LRUTier
from .persistent import PersistentTier
from .writer import BackgroundWriter

logger = logging.getLogger("cache.coordinator")

Loader = Callable[[str], bytes]


class CacheCoordinator:
    """
    Main cache orchestration with:
    - Read-through probing of L1 (memory), L2 (disk), L3 (distributed)
    - Promotion of lower-tier hits into the faster tiers
    - Single-flight loads for concurrent misses on the same key
    - Write-through to L1 and best-effort background writes to L2/L3
    - Demotion of LRU-evicted entries into L2

    L2 and L3 are optional. Their failures degrade to a miss (reads) or a
    logged no-op (writes); only L1 and the loader decide a call's outcome.

    Usage:
        coordinator = CacheCoordinator(
            memory=LRUTier(max_entries=10_000),
            disk=PersistentTier("/var/cache/axiom"),
            loader=fetcher.load,
        )
        artifact = coordinator.get("https://example.com/item/1")
    """

    def __init__(
        self,
        memory: LRUTier,
        disk: Optional[PersistentTier] = None,
        distributed: Optional[DistributedTier] = None,
        loader: Optional[Loader] = None,
        default_ttl: float = 3600.0,
        load_timeout: Optional[float] = None,
        max_load_workers: int = 16,
        write_queue_size: int = 1024,
        write_workers: int = 2,
        batch_workers: int = 8,
        metrics: Optional[MetricsSink] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the coordinator.

        Args:
            memory: L1 tier (required)
            disk: L2 tier
            distributed: L3 tier
            loader: Default function called on a full miss
            default_ttl: TTL in seconds when a call gives none
            load_timeout: Default seconds a caller waits on a load
            max_load_workers: Thread pool size for upstream loads
            write_queue_size: Bound of each background write queue
            write_workers: Background writer threads for L2/L3
            batch_workers: Max parallel gets in get_many
            metrics: Sink for hit/miss counters
            clock: Wall-clock source for entry timestamps
        """
        if default_ttl <= 0:
            raise ValueError(f"default_ttl must be positive, got {default_ttl}")
        if batch_workers < 1:
            raise ValueError(f"batch_workers must be >= 1, got {batch_workers}")

        self._memory = memory
        self._disk = disk
        self._distributed = distributed
        self._loader = loader
        self._default_ttl = default_ttl
        self._batch_workers = batch_workers
        self._metrics = metrics or NullMetricsSink()
        self._clock = clock

        self._memory.on_evict = self._demote

        self._load_pool = ThreadPoolExecutor(
            max_workers=max_load_workers,
            thread_name_prefix="cache-load",
        )
        self._coalescer = RequestCoalescer(self._load_pool, timeout=load_timeout)
        self._writer = BackgroundWriter(
            max_queue_size=write_queue_size,
            workers=write_workers,
        )

        self._stats_lock = threading.Lock()
        self._tier_stats = {tier: TierStats() for tier in TierName}
        self._stats = {"loads": 0, "load_errors": 0}
        self._closed = False

        # key -> clock time of its latest invalidation, while deletes are queued
        self._invalidation_lock = threading.Lock()
        self._invalidated_at: Dict[str, float] = {}
        self._pending_deletes: Dict[str, int] = {}

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(
        self,
        key: str,
        loader: Optional[Loader] = None,
        ttl: Optional[float] = None,
        timeout: Optional[float] = None,
    ) -> bytes:
        """
        Get an artifact from the fastest tier holding it, or load it.

        Args:
            key: Artifact key
            loader: Overrides the default loader for this call
            ttl: TTL for a freshly loaded value
            timeout: Max seconds this caller waits on a load

        Returns:
            The artifact bytes

        Raises:
            CacheMiss: Full miss and no loader available
            LoadTimeout: This caller's wait exceeded `timeout`
            RuntimeError: The coordinator has been closed
            CacheError: Whatever the loader raised (circuit open, rate
                limited, retries exhausted, upstream error)
        """
        if self._closed:
            raise RuntimeError("Cache coordinator is closed")

        entry = self._memory.get(key)
        if entry is not None:
            self._record_hit(TierName.MEMORY)
            logger.debug(f"CACHE HIT (memory): {key}")
            return entry.value
        self._record_miss(TierName.MEMORY)

        entry = self._lookup(self._disk, key)
        if entry is not None:
            logger.debug(f"CACHE HIT (disk): {key}")
            self._promote(entry, TierName.MEMORY)
            return entry.value

        entry = self._lookup(self._distributed, key)
        if entry is not None:
            logger.debug(f"CACHE HIT (distributed): {key}")
            self._promote(entry, TierName.MEMORY, TierName.DISK)
            return entry.value

        loader = loader or self._loader
        if loader is None:
            raise CacheMiss(key)

        logger.info(f"CACHE MISS: {key}")
        ttl = self._resolve_ttl(ttl)

        def load() -> bytes:
            try:
                value = loader(key)
                if not isinstance(value, (bytes, bytearray, memoryview)):
                    raise TypeError(
                        f"Loader for {key} returned {type(value).__name__}, expected bytes"
                    )
            except Exception as e:
                with self._stats_lock:
                    self._stats["load_errors"] += 1
                self._metrics.increment("cache.load_error", error=type(e).__name__)
                raise
            return bytes(value)

        def on_loaded(value: bytes) -> None:
            with self._stats_lock:
                self._stats["loads"] += 1
            self._metrics.increment("cache.load")
            self._store(CacheEntry.create(key, value, ttl, now=self._clock()))

        return self._coalescer.get_or_load(key, load, on_success=on_loaded, timeout=timeout)

    def _lookup(self, tier, key: str) -> Optional[CacheEntry]:
        """Read from an optional tier, degrading any tier failure to a miss."""
        if tier is None:
            return None
        try:
            entry = tier.get(key)
        except TierUnavailable as e:
            logger.warning(f"{tier.name.value} tier read failed, treating as miss: {e}")
            self._record_error(tier.name)
            return None
        if entry is not None and self._is_invalidated(entry):
            logger.debug(f"Ignoring {tier.name.value} copy of invalidated key: {key}")
            entry = None
        if entry is None:
            self._record_miss(tier.name)
        else:
            self._record_hit(tier.name)
        return entry

    def get_many(
        self,
        keys: Iterable[str],
        loader: Optional[Loader] = None,
        ttl: Optional[float] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Union[bytes, Exception]]:
        """
        Get several artifacts in parallel.

        Returns:
            Mapping of key to its bytes, or to the exception that key failed with
        """
        keys = list(dict.fromkeys(keys))
        if not keys:
            return {}

        results: Dict[str, Union[bytes, Exception]] = {}
        with ThreadPoolExecutor(
            max_workers=min(len(keys), self._batch_workers),
            thread_name_prefix="cache-batch",
        ) as executor:
            future_to_key = {
                executor.submit(self.get, key, loader, ttl, timeout): key
                for key in keys
            }
            for future in as_completed(future_to_key):
                key = future_to_key[future]
                try:
                    results[key] = future.result()
                except Exception as e:
                    logger.warning(f"Batch get failed for {key}: {e}")
                    results[key] = e
        return results

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def put(self, key: str, value: bytes, ttl: Optional[float] = None) -> None:
        """
        Store an artifact: L1 immediately, L2/L3 in the background.

        Raises:
            ValueError: ttl is not positive
            TypeError: value is not bytes
        """
        entry = CacheEntry.create(key, value, self._resolve_ttl(ttl), now=self._clock())
        self._store(entry)

    def _store(self, entry: CacheEntry) -> None:
        if not self._memory.put(entry):
            logger.debug(f"{entry.key} too large for memory tier, lower tiers only")
        self._write_behind(entry, TierName.DISK, TierName.DISTRIBUTED)

    def invalidate(self, key: str) -> None:
        """
        Remove `key` from L1 now and from L2/L3 in the background.

        Until the queued deletes have run, lower-tier copies created at or
        before the invalidation are treated as misses and never promoted.
        Loads already in flight are not cancelled.
        """
        self._memory.delete(key)
        logger.info(f"Invalidated cache: {key}")
        tiers = [tier for tier in (self._disk, self._distributed) if tier is not None]
        if not tiers:
            return

        with self._invalidation_lock:
            self._invalidated_at[key] = self._clock()
        for tier in tiers:
            with self._invalidation_lock:
                self._pending_deletes[key] = self._pending_deletes.get(key, 0) + 1
            # A dropped delete leaves its count behind, so the marker is kept
            self._writer.submit(
                key,
                f"delete {key} from {tier.name.value}",
                lambda tier=tier: self._apply_delete(tier, key),
            )

    def _is_invalidated(self, entry: CacheEntry) -> bool:
        with self._invalidation_lock:
            marker = self._invalidated_at.get(entry.key)
        return marker is not None and entry.created_at <= marker

    def _apply_delete(self, tier, key: str) -> None:
        try:
            self._safe_delete(tier, key)
        finally:
            with self._invalidation_lock:
                remaining = self._pending_deletes.get(key, 0) - 1
                if remaining > 0:
                    self._pending_deletes[key] = remaining
                else:
                    self._pending_deletes.pop(key, None)
                    self._invalidated_at.pop(key, None)

    def _tier(self, name: TierName):
        return {
            TierName.MEMORY: self._memory,
            TierName.DISK: self._disk,
            TierName.DISTRIBUTED: self._distributed,
        }[name]

    def _write_behind(self, entry: CacheEntry, *names: TierName) -> None:
        for name in names:
            tier = self._tier(name)
            if tier is None:
                continue
            self._writer.submit(
                entry.key,
                f"put {entry.key} to {name.value}",
                lambda tier=tier: self._safe_put(tier, entry),
            )

    def _safe_put(self, tier, entry: CacheEntry) -> None:
        try:
            tier.put(entry)
        except TierFull as e:
            logger.debug(f"Skipped write: {e}")
        except TierUnavailable as e:
            logger.warning(f"Write to {tier.name.value} tier failed: {e}")
            self._record_error(tier.name)

    def _safe_delete(self, tier, key: str) -> None:
        try:
            tier.delete(key)
        except TierUnavailable as e:
            logger.warning(f"Delete from {tier.name.value} tier failed: {e}")
            self._record_error(tier.name)

    def _promote(self, entry: CacheEntry, *names: TierName) -> None:
        """Copy a lower-tier hit into faster tiers, keeping its original expiry."""
        source = entry.origin_tier
        with self._stats_lock:
            self._tier_stats[source].promotions += 1
        self._metrics.increment("cache.promotion", tier=source.value)
        if TierName.MEMORY in names:
            self._memory.put(entry)
        self._write_behind(entry, *(n for n in names if n is not TierName.MEMORY))

    def _demote(self, entry: CacheEntry) -> None:
        """Eviction callback: write an evicted entry back to L2 if it has room."""
        if self._disk is None or self._closed:
            return
        if self._disk.contains(entry.key, created_at=entry.created_at):
            return
        if not self._disk.has_capacity(entry.size_bytes):
            logger.debug(f"Disk tier full, not demoting {entry.key}")
            return
        with self._stats_lock:
            self._tier_stats[TierName.MEMORY].demotions += 1
        self._metrics.increment("cache.demotion", tier=TierName.MEMORY.value)
        self._write_behind(entry, TierName.DISK)

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def _resolve_ttl(self, ttl: Optional[float]) -> float:
        ttl = self._default_ttl if ttl is None else ttl
        if ttl <= 0:
            raise ValueError(f"ttl must be positive, got {ttl}")
        return ttl

    def _record_hit(self, tier: TierName) -> None:
        with self._stats_lock:
            self._tier_stats[tier].hits += 1
        self._metrics.increment("cache.hit", tier=tier.value)

    def _record_miss(self, tier: TierName) -> None:
        with self._stats_lock:
            self._tier_stats[tier].misses += 1
        self._metrics.increment("cache.miss", tier=tier.value)

    def _record_error(self, tier: TierName) -> None:
        with self._stats_lock:
            self._tier_stats[tier].errors += 1
        self._metrics.increment("cache.tier_error", tier=tier.value)

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Wait for pending background writes. Returns False on timeout."""
        return self._writer.flush(timeout)

    def close(self) -> None:
        """Drain background writes and stop worker threads."""
        if self._closed:
            return
        self._closed = True
        self._writer.close()
        self._load_pool.shutdown(wait=True)
        if self._disk is not None:
            self._disk.close()
        logger.info("Cache coordinator closed")

    def __enter__(self) -> "CacheCoordinator":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        with self._stats_lock:
            tiers = {tier.value: stats.to_dict() for tier, stats in self._tier_stats.items()}
            stats = dict(self._stats)

        tiers[TierName.MEMORY.value].update(self._memory.get_stats())
        if self._disk is not None:
            tiers[TierName.DISK.value].update(self._disk.get_stats())
        self._metrics.gauge("cache.entries", len(self._memory), tier=TierName.MEMORY.value)

        return {
            "tiers": tiers,
            "loads": stats["loads"],
            "load_errors": stats["load_errors"],
            "coalescer": self._coalescer.get_stats(),
            "writer": self._writer.get_stats(),
        }
