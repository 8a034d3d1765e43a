"""
Narrow metrics interface the core reports through.

Exporter wiring lives outside this package; anything with `increment` and
`gauge` methods can be plugged in.
"""
import threading
from collections import defaultdict
from typing import Any, Dict, Protocol, Tuple


class MetricsSink(Protocol):
    """Receives counters and gauges from the cache and resilience layer."""

    def increment(self, name: str, value: int = 1, **tags: str) -> None:
        ...

    def gauge(self, name: str, value: float, **tags: str) -> None:
        ...


class NullMetricsSink:
    """Discards everything."""

    def increment(self, name: str, value: int = 1, **tags: str) -> None:
        pass

    def gauge(self, name: str, value: float, **tags: str) -> None:
        pass


def _series(name: str, tags: Dict[str, str]) -> Tuple[str, Tuple[Tuple[str, str], ...]]:
    return name, tuple(sorted(tags.items()))


class InMemoryMetricsSink:
    """
    Thread-safe sink that keeps counters and last gauge values in memory.

    Useful for tests and for exposing a stats snapshot without an exporter.
    """

    def __init__(self):
        self._counters: Dict[Tuple, int] = defaultdict(int)
        self._gauges: Dict[Tuple, float] = {}
        self._lock = threading.Lock()

    def increment(self, name: str, value: int = 1, **tags: str) -> None:
        with self._lock:
            self._counters[_series(name, tags)] += value

    def gauge(self, name: str, value: float, **tags: str) -> None:
        with self._lock:
            self._gauges[_series(name, tags)] = value

    def counter(self, name: str, **tags: str) -> int:
        """Current value of a counter series (0 if never incremented)."""
        with self._lock:
            return self._counters.get(_series(name, tags), 0)

    def gauge_value(self, name: str, **tags: str) -> Any:
        """Last value reported for a gauge series, or None."""
        with self._lock:
            return self._gauges.get(_series(name, tags))

    def snapshot(self) -> Dict[str, Any]:
        """Flatten all series into `name{k=v,...}` keys."""
        def fmt(key: Tuple) -> str:
            name, tags = key
            if not tags:
                return name
            return name + "{" + ",".join(f"{k}={v}" for k, v in tags) + "}"

        with self._lock:
            return {
                "counters": {fmt(k): v for k, v in self._counters.items()},
                "gauges": {fmt(k): v for k, v in self._gauges.items()},
            }
