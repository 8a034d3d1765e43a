"""
Core cache data structures.
"""
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional


class TierName(Enum):
    """Cache tiers, fastest first."""
    MEMORY = "memory"           # L1, in-process LRU
    DISK = "disk"               # L2, append-only segment files
    DISTRIBUTED = "distributed" # L3, shared remote store


@dataclass
class CacheEntry:
    """
    A cached artifact with the metadata needed for TTL checks.

    The value is opaque; nothing in the cache looks inside it.
    """
    key: str
    value: bytes
    created_at: float
    expires_at: float
    origin_tier: TierName = TierName.MEMORY

    @classmethod
    def create(
        cls,
        key: str,
        value: bytes,
        ttl_seconds: float,
        origin_tier: TierName = TierName.MEMORY,
        now: Optional[float] = None,
    ) -> "CacheEntry":
        """Build an entry that expires `ttl_seconds` from now."""
        if ttl_seconds <= 0:
            raise ValueError(f"ttl_seconds must be positive, got {ttl_seconds}")
        if not isinstance(value, (bytes, bytearray, memoryview)):
            raise TypeError(f"value must be bytes, got {type(value).__name__}")
        now = time.time() if now is None else now
        return cls(
            key=key,
            value=bytes(value),
            created_at=now,
            expires_at=now + ttl_seconds,
            origin_tier=origin_tier,
        )

    @property
    def size_bytes(self) -> int:
        """Bytes charged against tier capacity (key plus value)."""
        return len(self.key.encode("utf-8")) + len(self.value)

    def is_expired(self, now: Optional[float] = None) -> bool:
        """True once `now` is past the expiry deadline."""
        now = time.time() if now is None else now
        return now > self.expires_at

    def remaining_ttl(self, now: Optional[float] = None) -> float:
        """Seconds left before expiry (never negative)."""
        now = time.time() if now is None else now
        return max(0.0, self.expires_at - now)

    def with_origin(self, tier: TierName) -> "CacheEntry":
        return replace(self, origin_tier=tier)


@dataclass
class TierStats:
    """Hit/miss counters for one tier."""
    hits: int = 0
    misses: int = 0
    errors: int = 0
    promotions: int = 0
    demotions: int = 0

    @property
    def hit_rate_percent(self) -> float:
        total = self.hits + self.misses
        return round(self.hits / total * 100, 1) if total else 0.0

    def to_dict(self) -> dict:
        """Convert to dictionary for stats output."""
        return {
            "hits": self.hits,
            "misses": self.misses,
            "errors": self.errors,
            "promotions": self.promotions,
            "demotions": self.demotions,
            "hit_rate_percent": self.hit_rate_percent,
        }
