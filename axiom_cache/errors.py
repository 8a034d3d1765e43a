"""
Error taxonomy for the artifact cache and its resilience layer.

Tier errors (TierUnavailable) never reach callers of the coordinator; they
degrade to a miss or a logged no-op. Resilience errors are the final outcome
of a cache miss and are propagated to every waiter.
"""
from typing import Optional


class CacheError(Exception):
    """Base class for every error raised by axiom_cache."""


class CacheMiss(CacheError):
    """Key is absent from all tiers and no loader was supplied."""

    def __init__(self, key: str):
        super().__init__(f"Cache miss for {key}")
        self.key = key


class TierUnavailable(CacheError):
    """An L2/L3 tier could not serve a read, write or delete."""

    def __init__(self, tier: str, message: str):
        super().__init__(f"{tier} tier unavailable: {message}")
        self.tier = tier


class TierFull(TierUnavailable):
    """The tier has no spare capacity for the entry."""


class LoadTimeout(CacheError, TimeoutError):
    """The caller's wait on a shared load exceeded its own deadline."""

    def __init__(self, key: str, timeout: float):
        super().__init__(f"Load for {key} timed out after {timeout}s")
        self.key = key
        self.timeout = timeout


class CircuitOpenError(CacheError):
    """Upstream is presumed unhealthy; the call was rejected without contacting it."""

    def __init__(self, source: str, retry_after: float):
        super().__init__(
            f"Circuit for {source} is open, retry after {retry_after:.1f}s"
        )
        self.source = source
        self.retry_after = retry_after


class RateLimitExceeded(CacheError):
    """No rate-limit token became available in time."""

    def __init__(self, source: str, retry_after: float):
        super().__init__(
            f"Rate limit exceeded for {source}, retry after {retry_after:.2f}s"
        )
        self.source = source
        self.retry_after = retry_after


class RetriesExhausted(CacheError):
    """Every retry attempt failed with a transient error."""

    def __init__(self, attempts: int, last_error: BaseException):
        super().__init__(
            f"Gave up after {attempts} attempts: {last_error!r}"
        )
        self.attempts = attempts
        self.last_error = last_error


class UpstreamError(CacheError):
    """
    Failure reported by a Source.

    Args:
        message: Human readable description
        retryable: True if the failure is transient and worth retrying
        status_code: Upstream status code, when the transport has one
    """

    def __init__(
        self,
        message: str,
        retryable: bool = False,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.retryable = retryable
        self.status_code = status_code


class TransientUpstreamError(UpstreamError):
    """Timeout, connection reset or 5xx-equivalent failure."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message, retryable=True, status_code=status_code)


class PermanentUpstreamError(UpstreamError):
    """Validation or 4xx-equivalent failure; retrying will not help."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message, retryable=False, status_code=status_code)
