"""
Bounded retries with exponential backoff and jitter, built on tenacity.
"""
import logging
import time
from typing import Callable, Optional, TypeVar

import requests
from tenacity import (
    RetryCallState,
    RetryError,
    Retrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    stop_after_delay,
    wait_exponential_jitter,
)

from ..errors import CacheError, RetriesExhausted, UpstreamError
from ..metrics import MetricsSink, NullMetricsSink

logger = logging.getLogger("resilience.retry")

T = TypeVar("T")


def is_transient(exc: BaseException) -> bool:
    """
    Decide whether an error is worth retrying.

    Transient: timeouts, connection failures, 5xx and 429 responses,
    UpstreamError(retryable=True). Everything else, including circuit-open
    and rate-limit rejections, is permanent.
    """
    if isinstance(exc, UpstreamError):
        return exc.retryable
    if isinstance(exc, CacheError):
        return False
    if isinstance(exc, requests.HTTPError):
        status = exc.response.status_code if exc.response is not None else None
        return status is not None and (status >= 500 or status == 429)
    if isinstance(
        exc,
        (requests.Timeout, requests.ConnectionError, requests.exceptions.ChunkedEncodingError),
    ):
        return True
    return isinstance(exc, (TimeoutError, ConnectionError))


class RetryPolicy:
    """
    Wraps a call with bounded re-attempts.

    Transient failures are retried with exponential backoff plus jitter
    until max_attempts is reached, at which point RetriesExhausted is raised
    wrapping the last error. Permanent failures are re-raised unchanged
    after the first attempt.

    Usage:
        policy = RetryPolicy(max_attempts=3)
        data = policy.call(source.fetch, key, timeout=10)
    """

    def __init__(
        self,
        max_attempts: int = 3,
        initial_backoff: float = 0.2,
        max_backoff: float = 5.0,
        jitter: float = 0.1,
        classifier: Callable[[BaseException], bool] = is_transient,
        metrics: Optional[MetricsSink] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Args:
            max_attempts: Total attempts including the first
            initial_backoff: Seconds before the first retry
            max_backoff: Cap on any single backoff
            jitter: Max random seconds added to each backoff
            classifier: Returns True for retryable errors
            metrics: Sink for retry counters
            sleep: Sleep function (tests pass a no-op)
        """
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")
        if initial_backoff < 0 or jitter < 0:
            raise ValueError("initial_backoff and jitter must be >= 0")
        if max_backoff < initial_backoff:
            raise ValueError("max_backoff must be >= initial_backoff")
        self.max_attempts = max_attempts
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff
        self.jitter = jitter
        self._classifier = classifier
        self._metrics = metrics or NullMetricsSink()
        self._sleep = sleep
        self._log_retry = before_sleep_log(logger, logging.WARNING)

    def _retrying(self, source: str, deadline: Optional[float]) -> Retrying:
        stop = stop_after_attempt(self.max_attempts)
        if deadline is not None:
            stop = stop | stop_after_delay(deadline)

        def before_sleep(retry_state: RetryCallState) -> None:
            self._metrics.increment("retry.attempt", source=source)
            self._log_retry(retry_state)

        return Retrying(
            stop=stop,
            wait=wait_exponential_jitter(
                initial=self.initial_backoff,
                max=self.max_backoff,
                jitter=self.jitter,
            ),
            retry=retry_if_exception(self._classifier),
            before_sleep=before_sleep,
            sleep=self._sleep,
        )

    def call(
        self,
        fn: Callable[..., T],
        *args,
        source: str = "default",
        deadline: Optional[float] = None,
        **kwargs,
    ) -> T:
        """
        Call `fn(*args, **kwargs)` with retries.

        Args:
            source: Source identity for metrics
            deadline: Stop retrying once this many seconds have passed

        Raises:
            RetriesExhausted: Every attempt failed with a transient error
            Exception: The first permanent error, unchanged
        """
        try:
            return self._retrying(source, deadline)(fn, *args, **kwargs)
        except RetryError as e:
            last_error = e.last_attempt.exception()
            attempts = e.last_attempt.attempt_number
            self._metrics.increment("retry.exhausted", source=source)
            raise RetriesExhausted(attempts, last_error) from last_error
