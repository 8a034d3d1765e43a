"""
Distributed tier (L3): a thin client over storage shared between processes.

The coordinator treats this tier as optional. Every failure surfaces as
TierUnavailable so the caller can fail open.
"""
import logging
import math
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional

import redis

from ..errors import TierUnavailable
from .core import CacheEntry, TierName

logger = logging.getLogger("cache.distributed")


class DistributedTier(ABC):
    """
    Abstract base class for shared remote tiers.

    Implementations own no local state; concurrency control is delegated to
    the external store.
    """

    name = TierName.DISTRIBUTED

    @abstractmethod
    def get(self, key: str) -> Optional[CacheEntry]:
        """
        Fetch an unexpired entry.

        Returns:
            The entry, or None on a miss

        Raises:
            TierUnavailable: The store could not be reached
        """
        pass

    @abstractmethod
    def put(self, entry: CacheEntry) -> None:
        """
        Store an entry until its expires_at.

        Raises:
            TierUnavailable: The store could not be reached
        """
        pass

    @abstractmethod
    def delete(self, key: str) -> bool:
        """
        Remove an entry. Returns True if it existed.

        Raises:
            TierUnavailable: The store could not be reached
        """
        pass


class RedisTier(DistributedTier):
    """
    Redis-backed distributed tier.

    Each entry is stored as a hash {value, created_at, expires_at} under
    `{key_prefix}:{key}`; Redis expires the hash at the entry's deadline.

    Args:
        redis_url: Redis connection URL (e.g. redis://localhost:6379/0)
        key_prefix: Prefix for all keys
        socket_timeout: Seconds before a Redis call is abandoned
        client: Pre-built client (tests inject fakeredis here)
    """

    def __init__(
        self,
        redis_url: Optional[str] = None,
        key_prefix: str = "axiom:artifact",
        socket_timeout: float = 0.5,
        client: Optional[Any] = None,
        clock: Callable[[], float] = time.time,
    ):
        if client is None and redis_url is None:
            raise ValueError("RedisTier needs redis_url or client")
        if client is not None:
            self._client = client
        else:
            self._client = redis.Redis.from_url(
                redis_url,
                socket_timeout=socket_timeout,
                socket_connect_timeout=socket_timeout,
            )
        self._key_prefix = key_prefix.rstrip(":")
        self._clock = clock

    def _key(self, key: str) -> str:
        return f"{self._key_prefix}:{key}"

    def get(self, key: str) -> Optional[CacheEntry]:
        try:
            data = self._client.hgetall(self._key(key))
        except redis.RedisError as e:
            raise TierUnavailable("distributed", f"get {key}: {e}") from e

        if not data:
            return None
        try:
            entry = CacheEntry(
                key=key,
                value=data[b"value"],
                created_at=float(data[b"created_at"].decode()),
                expires_at=float(data[b"expires_at"].decode()),
                origin_tier=TierName.DISTRIBUTED,
            )
        except (KeyError, ValueError) as e:
            logger.warning(f"Malformed distributed entry for {key}: {e}")
            return None

        # Redis expiry runs on the server clock; check against ours too
        if entry.is_expired(self._clock()):
            return None
        return entry

    def put(self, entry: CacheEntry) -> None:
        ttl_ms = int(math.ceil(entry.remaining_ttl(self._clock()) * 1000))
        if ttl_ms <= 0:
            return
        rkey = self._key(entry.key)
        try:
            pipe = self._client.pipeline(transaction=True)
            pipe.delete(rkey)
            pipe.hset(rkey, mapping={
                "value": entry.value,
                "created_at": repr(entry.created_at),
                "expires_at": repr(entry.expires_at),
            })
            pipe.pexpire(rkey, ttl_ms)
            pipe.execute()
        except redis.RedisError as e:
            raise TierUnavailable("distributed", f"put {entry.key}: {e}") from e

    def delete(self, key: str) -> bool:
        try:
            return bool(self._client.delete(self._key(key)))
        except redis.RedisError as e:
            raise TierUnavailable("distributed", f"delete {key}: {e}") from e

    def ping(self) -> bool:
        """True if the store answers."""
        try:
            return bool(self._client.ping())
        except redis.RedisError:
            return False
