"""
Request coalescing to prevent duplicate upstream loads.

When multiple concurrent callers miss on the same key, only one load runs
and all callers share its outcome.
"""
import threading
import time
import logging
from concurrent.futures import Executor, Future, TimeoutError as FuturesTimeoutError
from typing import Dict, Optional, Callable, Any
from dataclasses import dataclass, field

from ..errors import LoadTimeout

logger = logging.getLogger("cache.coalescer")


@dataclass
class InFlightLoad:
    """Tracks an in-progress load shared by every caller waiting on a key."""
    future: Future = field(default_factory=Future)
    started_at: float = field(default_factory=time.time)
    waiter_count: int = 0


class RequestCoalescer:
    """
    Ensures concurrent requests for the same key share one load.

    Pattern:
    - First request for a key submits the load to the executor
    - Every request, including the first, waits on the load's Future
    - A caller's timeout only abandons its own wait; the load keeps running
      and `on_success` still fires, so the cache is populated regardless
    - The in-flight record is removed before waiters are released

    Usage:
        coalescer = RequestCoalescer(executor)
        value = coalescer.get_or_load(
            key="https://example.com/item/1",
            load_fn=lambda: fetcher.load(key),
            on_success=lambda value: store(key, value),
        )
    """

    def __init__(self, executor: Executor, timeout: Optional[float] = None):
        """
        Initialize the coalescer.

        Args:
            executor: Runs the loads, off the callers' threads
            timeout: Default max seconds a caller waits for a load
        """
        self._executor = executor
        self._in_flight: Dict[str, InFlightLoad] = {}
        self._lock = threading.Lock()
        self._timeout = timeout

    def get_or_load(
        self,
        key: str,
        load_fn: Callable[[], Any],
        on_success: Optional[Callable[[Any], None]] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Either join an existing in-flight load or start a new one.

        Args:
            key: Unique key for this load
            load_fn: Function producing the value
            on_success: Called with the value before waiters are released
            timeout: Max seconds this caller waits (None uses the default)

        Returns:
            The loaded value (shared among all concurrent callers)

        Raises:
            LoadTimeout: This caller's wait exceeded its timeout
            RuntimeError: The executor has been shut down
            Exception: Any error from load_fn is propagated to every waiter
        """
        timeout = self._timeout if timeout is None else timeout

        with self._lock:
            in_flight = self._in_flight.get(key)
            if in_flight is not None:
                in_flight.waiter_count += 1
                logger.debug(
                    f"Coalescing request for {key} (waiters: {in_flight.waiter_count})"
                )
            else:
                in_flight = InFlightLoad(waiter_count=1)
                self._in_flight[key] = in_flight
                logger.debug(f"Initiating load for {key}")
                try:
                    self._executor.submit(self._run, key, in_flight, load_fn, on_success)
                except RuntimeError:
                    # Executor shut down; nobody else has seen this record yet
                    del self._in_flight[key]
                    raise

        try:
            return in_flight.future.result(timeout=timeout)
        except FuturesTimeoutError:
            logger.error(f"Timeout waiting for coalesced load: {key}")
            raise LoadTimeout(key, timeout) from None
        finally:
            with self._lock:
                in_flight.waiter_count -= 1

    def _run(
        self,
        key: str,
        in_flight: InFlightLoad,
        load_fn: Callable[[], Any],
        on_success: Optional[Callable[[Any], None]],
    ) -> None:
        try:
            result = load_fn()
        except Exception as e:
            logger.warning(f"Load failed for {key}: {e!r}")
            self._release(key, in_flight)
            in_flight.future.set_exception(e)
            return

        if on_success is not None:
            try:
                on_success(result)
            except Exception as e:
                logger.warning(f"Storing loaded value failed for {key}: {e!r}")

        self._release(key, in_flight)
        in_flight.future.set_result(result)

    def _release(self, key: str, in_flight: InFlightLoad) -> None:
        with self._lock:
            if self._in_flight.get(key) is in_flight:
                del self._in_flight[key]

    def is_loading(self, key: str) -> bool:
        """True while a load for `key` is in flight."""
        with self._lock:
            return key in self._in_flight

    @property
    def active_requests(self) -> int:
        """Number of currently in-flight loads."""
        with self._lock:
            return len(self._in_flight)

    def get_stats(self) -> Dict[str, Any]:
        """Get coalescer statistics."""
        with self._lock:
            return {
                "active_requests": len(self._in_flight),
                "active_keys": list(self._in_flight.keys()),
                "waiters": sum(f.waiter_count for f in self._in_flight.values()),
            }
