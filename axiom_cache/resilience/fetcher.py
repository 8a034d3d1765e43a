"""
Resilient fetch: rate limit -> circuit breaker -> retries -> Source.
"""
import logging
from concurrent.futures import CancelledError
from typing import Optional

from ..errors import UpstreamError
from ..metrics import MetricsSink, NullMetricsSink
from ..sources.base import Source
from .circuit import CircuitBreaker
from .rate_limiter import RateLimiter
from .retry import RetryPolicy

logger = logging.getLogger("resilience.fetcher")


class ResilientFetcher:
    """
    The single load operation the cache coordinator calls on a miss.

    Order for one logical fetch:
    1. Take a rate-limit token for the source
    2. Ask the circuit breaker for admission
    3. Call Source.fetch under the retry policy
    4. Record the final outcome (after retries) into the breaker

    A cancelled fetch gives back its breaker admission without counting as
    a success or a failure. A permanent UpstreamError counts as a success
    for the breaker: the source is up, it just refused this key.
    """

    def __init__(
        self,
        source: Source,
        breaker: CircuitBreaker,
        retry_policy: RetryPolicy,
        rate_limiter: RateLimiter,
        fetch_timeout: Optional[float] = None,
        metrics: Optional[MetricsSink] = None,
    ):
        self.source = source
        self.breaker = breaker
        self.retry_policy = retry_policy
        self.rate_limiter = rate_limiter
        self._fetch_timeout = fetch_timeout
        self._metrics = metrics or NullMetricsSink()

    @property
    def source_id(self) -> str:
        return getattr(self.source, "name", type(self.source).__name__)

    def load(self, key: str, timeout: Optional[float] = None) -> bytes:
        """
        Fetch `key` from the source with full resilience.

        Args:
            key: Artifact key
            timeout: Per-attempt deadline handed to the source, and the
                overall retry budget

        Raises:
            RateLimitExceeded: No token in time
            CircuitOpenError: Source presumed unhealthy
            RetriesExhausted: Every attempt failed transiently
            UpstreamError: Permanent failure from the source
        """
        source_id = self.source_id
        timeout = self._fetch_timeout if timeout is None else timeout

        self.rate_limiter.acquire(source_id, timeout=timeout)
        ticket = self.breaker.acquire()

        try:
            value = self.retry_policy.call(
                self.source.fetch,
                key,
                timeout=timeout,
                source=source_id,
                deadline=timeout,
            )
        except CancelledError:
            self.breaker.release(ticket)
            raise
        except UpstreamError as e:
            # A permanent rejection (e.g. 404) means the source answered
            if e.retryable:
                self.breaker.record_failure(ticket)
            else:
                self.breaker.record_success(ticket)
            self._metrics.increment("fetch.failure", source=source_id)
            raise
        except Exception:
            self.breaker.record_failure(ticket)
            self._metrics.increment("fetch.failure", source=source_id)
            raise

        self.breaker.record_success(ticket)
        self._metrics.increment("fetch.success", source=source_id)
        logger.debug(f"Fetched {key} from {source_id} ({len(value)} bytes)")
        return value
