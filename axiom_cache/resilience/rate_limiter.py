"""Token-bucket rate limiting for outbound upstream requests."""

import logging
import time
from threading import Condition, Lock
from typing import Callable, Dict, Optional, Tuple

from ..errors import RateLimitExceeded
from ..metrics import MetricsSink, NullMetricsSink

logger = logging.getLogger("resilience.rate_limiter")

# Configuration
DEFAULT_CAPACITY = 10  # Burst size
DEFAULT_REFILL_PER_SECOND = 5.0


class TokenBucket:
    """
    Permits accumulate at `refill_rate` per second up to `capacity`.

    Not thread-safe on its own; RateLimiter guards every bucket.
    """

    def __init__(self, capacity: int, refill_rate: float, now: float):
        self.capacity = capacity
        self.refill_rate = refill_rate
        self.tokens = float(capacity)
        self.last_refill = now

    def refill(self, now: float) -> None:
        elapsed = now - self.last_refill
        if elapsed > 0:
            self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate)
            self.last_refill = now

    def try_take(self, now: float) -> Tuple[bool, float]:
        """
        Take one token if available.

        Returns:
            (taken, seconds until a token will be available)
        """
        self.refill(now)
        if self.tokens >= 1:
            self.tokens -= 1
            return True, 0.0
        return False, (1 - self.tokens) / self.refill_rate


class RateLimiter:
    """
    Token-bucket rate limiter, one bucket per source.

    Bounds the outbound request rate regardless of how many callers are
    waiting. Thread-safe implementation.
    """

    def __init__(
        self,
        capacity: int = DEFAULT_CAPACITY,
        refill_rate: float = DEFAULT_REFILL_PER_SECOND,
        blocking: bool = True,
        timeout: Optional[float] = 5.0,
        metrics: Optional[MetricsSink] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            capacity: Max tokens a bucket holds (burst size)
            refill_rate: Tokens added per second
            blocking: Wait for a token instead of failing immediately
            timeout: Default max seconds to wait when blocking (None waits forever)
            metrics: Sink for rejection counters
            clock: Monotonic time source
        """
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        if refill_rate <= 0:
            raise ValueError(f"refill_rate must be positive, got {refill_rate}")
        self.capacity = capacity
        self.refill_rate = refill_rate
        self.blocking = blocking
        self.timeout = timeout
        self._metrics = metrics or NullMetricsSink()
        self._clock = clock
        self._buckets: Dict[str, TokenBucket] = {}
        self._lock = Lock()
        self._token_available = Condition(self._lock)

    def _bucket(self, source_id: str, now: float) -> TokenBucket:
        bucket = self._buckets.get(source_id)
        if bucket is None:
            bucket = TokenBucket(self.capacity, self.refill_rate, now)
            self._buckets[source_id] = bucket
        return bucket

    def check(self, source_id: str) -> Tuple[bool, Optional[float]]:
        """
        Take a token for the given source without waiting.

        Returns:
            Tuple of (allowed: bool, retry_after_seconds: Optional[float])
            If not allowed, retry_after_seconds indicates when to retry.
        """
        with self._lock:
            taken, wait = self._bucket(source_id, self._clock()).try_take(self._clock())
        return (True, None) if taken else (False, wait)

    def acquire(
        self,
        source_id: str,
        timeout: Optional[float] = None,
        blocking: Optional[bool] = None,
    ) -> None:
        """
        Take one token for the source, waiting for a refill if allowed.

        Args:
            source_id: Upstream source identity
            timeout: Overrides the default wait limit
            blocking: Overrides the default blocking mode

        Raises:
            RateLimitExceeded: No token was available in time
        """
        blocking = self.blocking if blocking is None else blocking
        timeout = self.timeout if timeout is None else timeout

        with self._lock:
            start = self._clock()
            while True:
                now = self._clock()
                taken, wait = self._bucket(source_id, now).try_take(now)
                if taken:
                    return
                remaining = None if timeout is None else timeout - (now - start)
                if not blocking or (remaining is not None and remaining < wait):
                    break
                # reset() may wake us early; the loop re-checks
                self._token_available.wait(wait)

        self._metrics.increment("rate_limiter.rejected", source=source_id)
        logger.warning(f"Rate limit exceeded for {source_id}, retry after {wait:.2f}s")
        raise RateLimitExceeded(source_id, wait)

    def remaining(self, source_id: str) -> int:
        """
        Get the number of whole tokens currently available for a source.
        """
        with self._lock:
            bucket = self._bucket(source_id, self._clock())
            bucket.refill(self._clock())
            return int(bucket.tokens)

    def reset(self, source_id: str) -> None:
        """
        Refill a source's bucket completely.

        Useful for testing or admin override.
        """
        with self._lock:
            if source_id in self._buckets:
                del self._buckets[source_id]
            self._token_available.notify_all()

    def cleanup(self) -> int:
        """
        Remove buckets that have refilled to capacity (indistinguishable
        from a fresh bucket).

        Returns the number of buckets removed.
        """
        now = self._clock()
        with self._lock:
            full = []
            for source_id, bucket in self._buckets.items():
                bucket.refill(now)
                if bucket.tokens >= bucket.capacity:
                    full.append(source_id)
            for source_id in full:
                del self._buckets[source_id]
        return len(full)

    def get_stats(self) -> Dict[str, float]:
        with self._lock:
            return {source_id: round(b.tokens, 2) for source_id, b in self._buckets.items()}
