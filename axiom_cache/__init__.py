"""
Tiered artifact cache with an integrated resilience layer.
"""
from .errors import (
    CacheError,
    CacheMiss,
    TierUnavailable,
    TierFull,
    LoadTimeout,
    CircuitOpenError,
    RateLimitExceeded,
    RetriesExhausted,
    UpstreamError,
    TransientUpstreamError,
    PermanentUpstreamError,
)
from .cache import CacheCoordinator, CacheEntry, LRUTier, PersistentTier, RedisTier
from .resilience import CircuitBreaker, RateLimiter, ResilientFetcher, RetryPolicy
from .service import ArtifactService, build_coordinator, build_fetcher

__all__ = [
    # Errors
    "CacheError",
    "CacheMiss",
    "TierUnavailable",
    "TierFull",
    "LoadTimeout",
    "CircuitOpenError",
    "RateLimitExceeded",
    "RetriesExhausted",
    "UpstreamError",
    "TransientUpstreamError",
    "PermanentUpstreamError",
    # Cache
    "CacheCoordinator",
    "CacheEntry",
    "LRUTier",
    "PersistentTier",
    "RedisTier",
    # Resilience
    "CircuitBreaker",
    "RateLimiter",
    "ResilientFetcher",
    "RetryPolicy",
    # Service
    "ArtifactService",
    "build_coordinator",
    "build_fetcher",
]
