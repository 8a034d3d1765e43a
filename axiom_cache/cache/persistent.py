"""
Persistent on-disk tier (L2).

Every write is appended to the active segment file; an in-memory index maps
each key to the offset of its latest record. The index is never persisted:
on startup it is rebuilt by scanning the segments in order, later records
overriding earlier ones. Compaction rewrites live records into a fresh
segment and drops expired, superseded and deleted ones.

Expired entries leave the index when read, when the active segment rolls
over, and when a write would otherwise not fit. Once out of the index their
records count as garbage towards the compaction threshold.

Record layout (big-endian):
    flags:u8 key_len:u16 value_len:u32 created_at:f64 expires_at:f64
    key value crc32:u32

The CRC covers everything before it; a record that fails the check ends the
scan of its segment, and the torn tail is truncated away.
"""
import logging
import os
import struct
import threading
import time
import zlib
from pathlib import Path
from typing import Callable, Dict, Iterator, List, NamedTuple, Optional, Tuple, Any

from ..errors import TierFull, TierUnavailable
from .core import CacheEntry, TierName

logger = logging.getLogger("cache.persistent")

HEADER = struct.Struct(">BHIdd")
CRC = struct.Struct(">I")
FLAG_TOMBSTONE = 0x01

SEGMENT_PREFIX = "segment-"
SEGMENT_SUFFIX = ".log"


class _Location(NamedTuple):
    """Where the latest record for a key lives."""
    segment_id: int
    value_offset: int
    value_len: int
    record_len: int
    created_at: float
    expires_at: float
    size_bytes: int


class _Record(NamedTuple):
    offset: int
    flags: int
    key: str
    value: bytes
    created_at: float
    expires_at: float
    record_len: int


def _encode(flags: int, key: bytes, value: bytes, created_at: float, expires_at: float) -> bytes:
    body = HEADER.pack(flags, len(key), len(value), created_at, expires_at) + key + value
    return body + CRC.pack(zlib.crc32(body))


def _scan(path: Path) -> Tuple[List[_Record], int]:
    """
    Read every intact record in a segment.

    Returns:
        (records, offset just past the last intact record)
    """
    records: List[_Record] = []
    offset = 0
    with open(path, "rb") as f:
        while True:
            header = f.read(HEADER.size)
            if len(header) < HEADER.size:
                break
            flags, key_len, value_len, created_at, expires_at = HEADER.unpack(header)
            payload = f.read(key_len + value_len)
            crc = f.read(CRC.size)
            if len(payload) < key_len + value_len or len(crc) < CRC.size:
                break
            if zlib.crc32(header + payload) != CRC.unpack(crc)[0]:
                break
            record_len = HEADER.size + key_len + value_len + CRC.size
            records.append(_Record(
                offset=offset,
                flags=flags,
                key=payload[:key_len].decode("utf-8"),
                value=payload[key_len:],
                created_at=created_at,
                expires_at=expires_at,
                record_len=record_len,
            ))
            offset += record_len
    return records, offset


class PersistentTier:
    """
    Append-only, segment-file backed cache tier.

    Writes (append, delete, compaction) are serialized by a single writer
    lock. Reads take no lock: they resolve a location from the current index
    and read the segment file directly. If compaction removes that segment
    in between, the read is retried once against the new index.

    Usage:
        tier = PersistentTier("/var/cache/axiom", max_bytes=512 * 1024 * 1024)
        tier.put(CacheEntry.create("k", b"v", ttl_seconds=3600))
        entry = tier.get("k")
    """

    name = TierName.DISK

    def __init__(
        self,
        directory,
        max_bytes: Optional[int] = None,
        segment_max_bytes: int = 64 * 1024 * 1024,
        compaction_threshold: float = 0.5,
        compaction_min_bytes: int = 1024 * 1024,
        fsync: bool = False,
        clock: Callable[[], float] = time.time,
    ):
        """
        Open (or create) the tier and rebuild its index.

        Args:
            directory: Folder holding the segment files
            max_bytes: Limit on live key+value bytes, None for unbounded
            segment_max_bytes: Active segment rolls over past this size
            compaction_threshold: Garbage ratio that triggers compaction
            compaction_min_bytes: Don't auto-compact below this on-disk size
            fsync: fsync after every append
            clock: Wall-clock source used for expiry checks
        """
        if max_bytes is not None and max_bytes <= 0:
            raise ValueError(f"max_bytes must be positive, got {max_bytes}")
        if segment_max_bytes <= HEADER.size + CRC.size:
            raise ValueError(f"segment_max_bytes too small: {segment_max_bytes}")
        if not 0 < compaction_threshold <= 1:
            raise ValueError(
                f"compaction_threshold must be in (0, 1], got {compaction_threshold}"
            )

        self._dir = Path(directory)
        self._dir.mkdir(parents=True, exist_ok=True)
        self._max_bytes = max_bytes
        self._segment_max_bytes = segment_max_bytes
        self._compaction_threshold = compaction_threshold
        self._compaction_min_bytes = compaction_min_bytes
        self._fsync = fsync
        self._clock = clock

        self._lock = threading.Lock()
        self._index: Dict[str, _Location] = {}
        self._segment_sizes: Dict[int, int] = {}
        self._live_bytes = 0        # key+value bytes of live entries (capacity)
        self._live_record_bytes = 0 # on-disk bytes of live records
        self._compactions = 0
        self._active_id = 0
        self._active_file = None

        self._load()

    # ------------------------------------------------------------------
    # Segment bookkeeping
    # ------------------------------------------------------------------

    def _segment_path(self, segment_id: int) -> Path:
        return self._dir / f"{SEGMENT_PREFIX}{segment_id:08d}{SEGMENT_SUFFIX}"

    def _segment_ids(self) -> List[int]:
        ids = []
        for path in self._dir.glob(f"{SEGMENT_PREFIX}*{SEGMENT_SUFFIX}"):
            stem = path.name[len(SEGMENT_PREFIX):-len(SEGMENT_SUFFIX)]
            if stem.isdigit():
                ids.append(int(stem))
        return sorted(ids)

    def _load(self) -> None:
        """Rebuild the index by replaying every segment, oldest first."""
        now = self._clock()
        segment_ids = self._segment_ids()

        for segment_id in segment_ids:
            path = self._segment_path(segment_id)
            records, good_offset = _scan(path)
            size = path.stat().st_size
            if good_offset < size:
                logger.warning(
                    f"Truncating torn tail of {path.name}: {size - good_offset} bytes"
                )
                os.truncate(path, good_offset)
            self._segment_sizes[segment_id] = good_offset

            for record in records:
                self._drop_location(record.key)
                if record.flags & FLAG_TOMBSTONE or now > record.expires_at:
                    continue
                key_len = len(record.key.encode("utf-8"))
                self._set_location(record.key, _Location(
                    segment_id=segment_id,
                    value_offset=record.offset + HEADER.size + key_len,
                    value_len=len(record.value),
                    record_len=record.record_len,
                    created_at=record.created_at,
                    expires_at=record.expires_at,
                    size_bytes=key_len + len(record.value),
                ))

        if segment_ids and self._segment_sizes[segment_ids[-1]] < self._segment_max_bytes:
            self._open_active(segment_ids[-1])
        else:
            self._open_active(segment_ids[-1] + 1 if segment_ids else 1)

        logger.info(
            f"Loaded disk tier from {self._dir}: {len(self._index)} live entries "
            f"in {len(segment_ids)} segments"
        )

    def _open_active(self, segment_id: int) -> None:
        if self._active_file is not None:
            self._active_file.close()
        self._active_id = segment_id
        self._active_file = open(self._segment_path(segment_id), "ab")
        self._segment_sizes.setdefault(segment_id, 0)

    def _set_location(self, key: str, location: _Location) -> None:
        self._index[key] = location
        self._live_bytes += location.size_bytes
        self._live_record_bytes += location.record_len

    def _drop_location(self, key: str) -> Optional[_Location]:
        location = self._index.pop(key, None)
        if location is not None:
            self._live_bytes -= location.size_bytes
            self._live_record_bytes -= location.record_len
        return location

    def _append(self, record: bytes) -> int:
        """Append an encoded record to the active segment. Caller holds the lock."""
        if self._segment_sizes[self._active_id] >= self._segment_max_bytes:
            self._open_active(self._active_id + 1)
            self._sweep_expired(self._clock())
        offset = self._segment_sizes[self._active_id]
        self._active_file.write(record)
        self._active_file.flush()
        if self._fsync:
            os.fsync(self._active_file.fileno())
        self._segment_sizes[self._active_id] = offset + len(record)
        return offset

    def _sweep_expired(self, now: float) -> int:
        """
        Drop index entries past their deadline so their records count as
        garbage. Caller holds the lock.
        """
        expired = [key for key, location in self._index.items() if now > location.expires_at]
        for key in expired:
            self._drop_location(key)
        if expired:
            logger.debug(f"Swept {len(expired)} expired disk entries")
        return len(expired)

    @property
    def disk_bytes(self) -> int:
        return sum(self._segment_sizes.values())

    @property
    def garbage_ratio(self) -> float:
        total = self.disk_bytes
        return (total - self._live_record_bytes) / total if total else 0.0

    # ------------------------------------------------------------------
    # Tier contract
    # ------------------------------------------------------------------

    def get(self, key: str) -> Optional[CacheEntry]:
        """Return the unexpired entry for `key`, or None."""
        for attempt in range(2):
            location = self._index.get(key)
            if location is None:
                return None
            if self._clock() > location.expires_at:
                self._purge(key, location)
                logger.debug(f"Purged expired disk entry: {key}")
                return None
            try:
                with open(self._segment_path(location.segment_id), "rb") as f:
                    f.seek(location.value_offset)
                    value = f.read(location.value_len)
            except FileNotFoundError:
                # Segment compacted away between index lookup and open
                if attempt == 0:
                    continue
                return None
            except OSError as e:
                raise TierUnavailable("disk", f"read {key}: {e}") from e

            if len(value) != location.value_len:
                raise TierUnavailable("disk", f"short read for {key}")
            return CacheEntry(
                key=key,
                value=value,
                created_at=location.created_at,
                expires_at=location.expires_at,
                origin_tier=TierName.DISK,
            )
        return None

    def _purge(self, key: str, location: _Location) -> None:
        with self._lock:
            if self._index.get(key) is location:
                self._drop_location(key)

    def put(self, entry: CacheEntry) -> None:
        """
        Append `entry` and point the index at it.

        Raises:
            TierFull: Live data plus this entry would exceed max_bytes
            TierUnavailable: The append failed
        """
        key = entry.key.encode("utf-8")
        record = _encode(0, key, entry.value, entry.created_at, entry.expires_at)

        with self._lock:
            if not self._fits(entry):
                # Expired entries nobody read again still hold their share
                self._sweep_expired(self._clock())
                if not self._fits(entry):
                    raise TierFull("disk", f"no room for {entry.key} ({entry.size_bytes}B)")

            try:
                offset = self._append(record)
            except OSError as e:
                raise TierUnavailable("disk", f"append {entry.key}: {e}") from e

            self._drop_location(entry.key)
            self._set_location(entry.key, _Location(
                segment_id=self._active_id,
                value_offset=offset + HEADER.size + len(key),
                value_len=len(entry.value),
                record_len=len(record),
                created_at=entry.created_at,
                expires_at=entry.expires_at,
                size_bytes=entry.size_bytes,
            ))
            self._maybe_compact()

    def delete(self, key: str) -> bool:
        """Append a tombstone for `key`. Returns True if it was present."""
        with self._lock:
            if key not in self._index:
                return False
            now = self._clock()
            record = _encode(FLAG_TOMBSTONE, key.encode("utf-8"), b"", now, now)
            try:
                self._append(record)
            except OSError as e:
                raise TierUnavailable("disk", f"delete {key}: {e}") from e
            self._drop_location(key)
            self._maybe_compact()
            return True

    def _fits(self, entry: CacheEntry) -> bool:
        """Caller holds the lock."""
        if self._max_bytes is None:
            return True
        projected = self._live_bytes + entry.size_bytes
        current = self._index.get(entry.key)
        if current is not None:
            projected -= current.size_bytes
        return projected <= self._max_bytes

    def has_capacity(self, size_bytes: int) -> bool:
        """True if an entry of `size_bytes` would fit without raising TierFull."""
        if self._max_bytes is None:
            return True
        if self._live_bytes + size_bytes <= self._max_bytes:
            return True
        with self._lock:
            self._sweep_expired(self._clock())
            return self._live_bytes + size_bytes <= self._max_bytes

    # ------------------------------------------------------------------
    # Compaction
    # ------------------------------------------------------------------

    def _maybe_compact(self) -> None:
        if self.disk_bytes < self._compaction_min_bytes:
            return
        if self.garbage_ratio >= self._compaction_threshold:
            self._compact_locked()

    def compact(self) -> int:
        """
        Rewrite live, unexpired records into fresh segments.

        Returns:
            Number of on-disk bytes reclaimed
        """
        with self._lock:
            return self._compact_locked()

    def _iter_live(self, now: float) -> Iterator[Tuple[str, _Location, bytes]]:
        for key, location in list(self._index.items()):
            if now > location.expires_at:
                continue
            with open(self._segment_path(location.segment_id), "rb") as f:
                f.seek(location.value_offset)
                yield key, location, f.read(location.value_len)

    def _compact_locked(self) -> int:
        before = self.disk_bytes
        old_ids = sorted(self._segment_sizes)
        next_id = old_ids[-1] + 1 if old_ids else 1
        now = self._clock()

        new_index: Dict[str, _Location] = {}
        new_sizes: Dict[int, int] = {next_id: 0}
        live_bytes = 0
        live_record_bytes = 0
        out = open(self._segment_path(next_id), "ab")
        try:
            for key, location, value in self._iter_live(now):
                if new_sizes[next_id] >= self._segment_max_bytes:
                    out.close()
                    next_id += 1
                    new_sizes[next_id] = 0
                    out = open(self._segment_path(next_id), "ab")
                key_bytes = key.encode("utf-8")
                record = _encode(0, key_bytes, value, location.created_at, location.expires_at)
                offset = new_sizes[next_id]
                out.write(record)
                new_sizes[next_id] = offset + len(record)
                new_index[key] = location._replace(
                    segment_id=next_id,
                    value_offset=offset + HEADER.size + len(key_bytes),
                    record_len=len(record),
                )
                live_bytes += location.size_bytes
                live_record_bytes += len(record)
            out.flush()
            if self._fsync:
                os.fsync(out.fileno())
        except OSError as e:
            out.close()
            for segment_id in new_sizes:
                self._segment_path(segment_id).unlink(missing_ok=True)
            raise TierUnavailable("disk", f"compaction failed: {e}") from e
        out.close()

        # Swap in the new index before old segments disappear
        self._active_file.close()
        self._active_file = None
        self._index = new_index
        self._segment_sizes = new_sizes
        self._live_bytes = live_bytes
        self._live_record_bytes = live_record_bytes
        self._open_active(next_id)

        for segment_id in old_ids:
            self._segment_path(segment_id).unlink(missing_ok=True)

        self._compactions += 1
        reclaimed = before - self.disk_bytes
        logger.info(
            f"Compacted disk tier: {len(old_ids)} segments -> {len(new_sizes)}, "
            f"reclaimed {reclaimed} bytes"
        )
        return reclaimed

    # ------------------------------------------------------------------

    def close(self) -> None:
        """Close the active segment file."""
        with self._lock:
            if self._active_file is not None:
                self._active_file.close()
                self._active_file = None

    def __len__(self) -> int:
        return len(self._index)

    def contains(self, key: str, created_at: Optional[float] = None) -> bool:
        """
        Index-only presence check, without reading the value.

        Args:
            key: Key to look up
            created_at: If given, only match this exact version of the entry
        """
        location = self._index.get(key)
        if location is None or self._clock() > location.expires_at:
            return False
        return created_at is None or location.created_at == created_at

    def __contains__(self, key: str) -> bool:
        return self.contains(key)

    def get_stats(self) -> Dict[str, Any]:
        """Get tier statistics."""
        return {
            "entries": len(self._index),
            "live_bytes": self._live_bytes,
            "disk_bytes": self.disk_bytes,
            "segments": len(self._segment_sizes),
            "garbage_ratio": round(self.garbage_ratio, 3),
            "compactions": self._compactions,
        }
