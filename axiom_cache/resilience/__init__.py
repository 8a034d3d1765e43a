"""
Resilience layer wrapped around upstream sources.
"""
from .circuit import CircuitBreaker, CircuitBreakerRegistry, CircuitConfig, CircuitState
from .retry import RetryPolicy, is_transient
from .rate_limiter import RateLimiter, TokenBucket
from .fetcher import ResilientFetcher

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "CircuitConfig",
    "CircuitState",
    "RetryPolicy",
    "is_transient",
    "RateLimiter",
    "TokenBucket",
    "ResilientFetcher",
]
