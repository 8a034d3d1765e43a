"""
Per-source circuit breaker.

Stops calling an upstream that keeps failing, giving it a cooldown period
to recover before a few trial requests test it again.
"""
import threading
import time
import logging
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Deque, Dict, Optional, Any, TypeVar
from concurrent.futures import CancelledError

from ..errors import CircuitOpenError
from ..metrics import MetricsSink, NullMetricsSink

logger = logging.getLogger("resilience.circuit")

T = TypeVar("T")


class CircuitState(str, Enum):
    """Circuit breaker states."""
    CLOSED = "closed"        # Normal operation
    OPEN = "open"            # Failing, rejecting requests
    HALF_OPEN = "half_open"  # Probing whether the source recovered


@dataclass(frozen=True)
class CircuitConfig:
    """
    Circuit breaker thresholds.

    The failure ratio is measured against the full window size, so with
    window_size=10 and failure_ratio=0.5 the breaker opens on the fifth
    failure even before ten calls have been seen.
    """
    failure_ratio: float = 0.5
    window_size: int = 20
    cooldown_seconds: float = 30.0
    half_open_trials: int = 1
    cooldown_multiplier: float = 2.0  # Applied when a trial call fails
    max_cooldown_seconds: float = 300.0

    def __post_init__(self):
        if not 0 < self.failure_ratio <= 1:
            raise ValueError(f"failure_ratio must be in (0, 1], got {self.failure_ratio}")
        if self.window_size < 1:
            raise ValueError(f"window_size must be >= 1, got {self.window_size}")
        if self.cooldown_seconds <= 0:
            raise ValueError(f"cooldown_seconds must be positive, got {self.cooldown_seconds}")
        if not 1 <= self.half_open_trials <= self.window_size:
            raise ValueError(
                f"half_open_trials must be between 1 and window_size, got {self.half_open_trials}"
            )
        if self.cooldown_multiplier < 1:
            raise ValueError(
                f"cooldown_multiplier must be >= 1, got {self.cooldown_multiplier}"
            )
        if self.max_cooldown_seconds < self.cooldown_seconds:
            raise ValueError("max_cooldown_seconds must be >= cooldown_seconds")


class CircuitBreaker:
    """
    Circuit breaker for one upstream source.

    States:
    - CLOSED: Requests pass; outcomes fill a sliding window. Opens when
      failures in the window reach failure_ratio * window_size.
    - OPEN: Requests rejected with CircuitOpenError until the cooldown ends.
    - HALF_OPEN: Up to half_open_trials requests are admitted. Any failure
      reopens with a longer cooldown; all succeeding closes the circuit.

    Callers either use `call(fn)` or drive it by hand:

        ticket = breaker.acquire()
        try:
            result = fetch()
        except CancelledError:
            breaker.release(ticket)
            raise
        except Exception:
            breaker.record_failure(ticket)
            raise
        breaker.record_success(ticket)
    """

    def __init__(
        self,
        name: str,
        config: Optional[CircuitConfig] = None,
        metrics: Optional[MetricsSink] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.config = config or CircuitConfig()
        self._metrics = metrics or NullMetricsSink()
        self._clock = clock
        self._lock = threading.Lock()

        self._state = CircuitState.CLOSED
        self._window: Deque[bool] = deque(maxlen=self.config.window_size)
        self._open_until = 0.0
        self._cooldown = self.config.cooldown_seconds
        self._trials_in_flight = 0
        self._trial_successes = 0
        self._rejected = 0
        self._generation = 0  # bumped on every transition

    # ------------------------------------------------------------------

    def _transition(self, state: CircuitState) -> None:
        """Change state. Caller holds the lock."""
        previous = self._state
        self._state = state
        self._generation += 1
        if state == CircuitState.OPEN:
            self._open_until = self._clock() + self._cooldown
        if state in (CircuitState.OPEN, CircuitState.CLOSED):
            self._trials_in_flight = 0
            self._trial_successes = 0
        if state == CircuitState.CLOSED:
            self._window.clear()
            self._cooldown = self.config.cooldown_seconds

        log = logger.warning if state == CircuitState.OPEN else logger.info
        log(f"Circuit {self.name}: {previous.value} -> {state.value}")
        self._metrics.increment(
            "circuit.transition", source=self.name, to_state=state.value
        )

    def _refresh(self) -> None:
        """Move OPEN to HALF_OPEN once the cooldown has elapsed. Caller holds the lock."""
        if self._state == CircuitState.OPEN and self._clock() >= self._open_until:
            self._transition(CircuitState.HALF_OPEN)

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._refresh()
            return self._state

    @property
    def failure_count(self) -> int:
        with self._lock:
            return sum(1 for ok in self._window if not ok)

    def acquire(self) -> int:
        """
        Ask for admission of one request.

        Returns:
            Admission ticket to hand back to record_success, record_failure
            or release. Outcomes whose ticket predates the latest state
            change are ignored.

        Raises:
            CircuitOpenError: Circuit open, or all half-open trial slots taken
        """
        with self._lock:
            self._refresh()
            if self._state == CircuitState.CLOSED:
                return self._generation
            if (
                self._state == CircuitState.HALF_OPEN
                and self._trials_in_flight + self._trial_successes < self.config.half_open_trials
            ):
                self._trials_in_flight += 1
                logger.debug(f"Circuit {self.name}: admitting trial call")
                return self._generation

            self._rejected += 1
            retry_after = max(0.0, self._open_until - self._clock())
        self._metrics.increment("circuit.rejected", source=self.name)
        raise CircuitOpenError(self.name, retry_after)

    def _is_stale(self, ticket: Optional[int]) -> bool:
        """Caller holds the lock. A None ticket is taken as current."""
        if ticket is None or ticket == self._generation:
            return False
        logger.debug(f"Circuit {self.name}: ignoring outcome admitted before last transition")
        return True

    def record_success(self, ticket: Optional[int] = None) -> None:
        with self._lock:
            if self._is_stale(ticket):
                return
            if self._state == CircuitState.HALF_OPEN:
                self._trials_in_flight = max(0, self._trials_in_flight - 1)
                self._trial_successes += 1
                if self._trial_successes >= self.config.half_open_trials:
                    self._transition(CircuitState.CLOSED)
                return
            if self._state == CircuitState.CLOSED:
                self._window.append(True)

    def record_failure(self, ticket: Optional[int] = None) -> None:
        with self._lock:
            if self._is_stale(ticket):
                return
            if self._state == CircuitState.HALF_OPEN:
                self._cooldown = min(
                    self._cooldown * self.config.cooldown_multiplier,
                    self.config.max_cooldown_seconds,
                )
                self._transition(CircuitState.OPEN)
                return
            if self._state != CircuitState.CLOSED:
                return
            self._window.append(False)
            failures = sum(1 for ok in self._window if not ok)
            if failures / self.config.window_size >= self.config.failure_ratio:
                self._transition(CircuitState.OPEN)

    def release(self, ticket: Optional[int] = None) -> None:
        """Give back an admission without recording an outcome (cancelled call)."""
        with self._lock:
            if self._is_stale(ticket):
                return
            if self._state == CircuitState.HALF_OPEN and self._trials_in_flight > 0:
                self._trials_in_flight -= 1

    def call(self, fn: Callable[..., T], *args, **kwargs) -> T:
        """Run `fn` under the breaker, recording its outcome."""
        ticket = self.acquire()
        try:
            result = fn(*args, **kwargs)
        except CancelledError:
            self.release(ticket)
            raise
        except Exception:
            self.record_failure(ticket)
            raise
        self.record_success(ticket)
        return result

    def reset(self) -> None:
        """Force the circuit closed."""
        with self._lock:
            self._transition(CircuitState.CLOSED)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            self._refresh()
            return {
                "state": self._state.value,
                "failures_in_window": sum(1 for ok in self._window if not ok),
                "calls_in_window": len(self._window),
                "rejected": self._rejected,
                "retry_after": (
                    round(max(0.0, self._open_until - self._clock()), 2)
                    if self._state == CircuitState.OPEN
                    else 0.0
                ),
            }


class CircuitBreakerRegistry:
    """Hands out one CircuitBreaker per source identity."""

    def __init__(
        self,
        config: Optional[CircuitConfig] = None,
        metrics: Optional[MetricsSink] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._config = config or CircuitConfig()
        self._metrics = metrics
        self._clock = clock
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def get(self, source: str) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(source)
            if breaker is None:
                breaker = CircuitBreaker(
                    source, self._config, metrics=self._metrics, clock=self._clock
                )
                self._breakers[source] = breaker
            return breaker

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            breakers = list(self._breakers.values())
        return {breaker.name: breaker.get_stats() for breaker in breakers}
