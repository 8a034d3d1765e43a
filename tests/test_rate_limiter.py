"""
Unit tests for the token-bucket rate limiter.
"""
import time

import pytest

from axiom_cache.errors import RateLimitExceeded
from axiom_cache.metrics import InMemoryMetricsSink
from axiom_cache.resilience.rate_limiter import RateLimiter


@pytest.fixture
def limiter(clock):
    return RateLimiter(capacity=5, refill_rate=1.0, blocking=False, clock=clock)


def test_burst_up_to_capacity_then_rejects(limiter):
    for _ in range(5):
        limiter.acquire("shop")

    with pytest.raises(RateLimitExceeded) as exc_info:
        limiter.acquire("shop")
    assert exc_info.value.source == "shop"
    assert exc_info.value.retry_after == pytest.approx(1.0)


def test_tokens_refill_over_time(limiter, clock):
    for _ in range(5):
        limiter.acquire("shop")

    clock.advance(1)
    limiter.acquire("shop")
    with pytest.raises(RateLimitExceeded):
        limiter.acquire("shop")


def test_refill_is_capped_at_capacity(limiter, clock):
    limiter.acquire("shop")
    clock.advance(3600)
    assert limiter.remaining("shop") == 5


def test_sources_have_independent_buckets(limiter):
    for _ in range(5):
        limiter.acquire("a")
    limiter.acquire("b")
    assert limiter.remaining("a") == 0
    assert limiter.remaining("b") == 4


def test_check_reports_retry_after(limiter):
    for _ in range(5):
        assert limiter.check("shop") == (True, None)

    allowed, retry_after = limiter.check("shop")
    assert allowed is False
    assert retry_after == pytest.approx(1.0)


def test_blocking_acquire_waits_for_refill():
    limiter = RateLimiter(capacity=1, refill_rate=20.0, blocking=True, timeout=1.0)
    limiter.acquire("shop")

    start = time.monotonic()
    limiter.acquire("shop")
    assert time.monotonic() - start >= 0.03


def test_blocking_acquire_gives_up_when_wait_exceeds_timeout():
    limiter = RateLimiter(capacity=1, refill_rate=1.0, blocking=True, timeout=0.1)
    limiter.acquire("shop")

    start = time.monotonic()
    with pytest.raises(RateLimitExceeded):
        limiter.acquire("shop")
    assert time.monotonic() - start < 0.5


def test_reset_refills_bucket(limiter):
    for _ in range(5):
        limiter.acquire("shop")
    limiter.reset("shop")
    assert limiter.remaining("shop") == 5


def test_cleanup_drops_full_buckets(limiter, clock):
    limiter.acquire("idle")
    limiter.acquire("busy")
    clock.advance(1)
    limiter.acquire("busy")

    assert limiter.cleanup() == 1
    assert set(limiter.get_stats()) == {"busy"}


def test_rejections_are_counted(clock):
    metrics = InMemoryMetricsSink()
    limiter = RateLimiter(capacity=1, refill_rate=1.0, blocking=False, metrics=metrics, clock=clock)
    limiter.acquire("shop")
    with pytest.raises(RateLimitExceeded):
        limiter.acquire("shop")
    assert metrics.counter("rate_limiter.rejected", source="shop") == 1


@pytest.mark.parametrize("kwargs", [{"capacity": 0}, {"refill_rate": 0}])
def test_invalid_configuration_fails_fast(kwargs):
    with pytest.raises(ValueError):
        RateLimiter(**kwargs)
