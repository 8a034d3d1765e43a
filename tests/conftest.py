"""Shared test fixtures."""
import pytest


class FakeClock:
    """Manually advanced clock, usable as both wall clock and monotonic clock."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()
