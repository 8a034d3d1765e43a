"""
Tests for the cache coordinator: tier probing, promotion, single-flight
loads, write-behind, fail-open behaviour and demotion.
"""
import threading
import time

import fakeredis
import pytest

from axiom_cache.cache.coordinator import CacheCoordinator
from axiom_cache.cache.core import CacheEntry
from axiom_cache.cache.distributed import DistributedTier, RedisTier
from axiom_cache.cache.lru import LRUTier
from axiom_cache.cache.persistent import PersistentTier
from axiom_cache.errors import (
    CacheMiss,
    LoadTimeout,
    PermanentUpstreamError,
    TierUnavailable,
)
from axiom_cache.metrics import InMemoryMetricsSink


class BrokenTier(DistributedTier):
    """Distributed tier whose store is always unreachable."""

    def get(self, key):
        raise TierUnavailable("distributed", "unreachable")

    def put(self, entry):
        raise TierUnavailable("distributed", "unreachable")

    def delete(self, key):
        raise TierUnavailable("distributed", "unreachable")


class GatedTier(DistributedTier):
    """In-memory distributed tier whose writes wait until the gate opens."""

    def __init__(self):
        self.entries = {}
        self.gate = threading.Event()

    def get(self, key):
        return self.entries.get(key)

    def put(self, entry):
        self.gate.wait(5)
        self.entries[entry.key] = entry

    def delete(self, key):
        return self.entries.pop(key, None) is not None


class CountingLoader:
    """Loader that counts calls and can block until released."""

    def __init__(self, value=b"loaded", error=None, block=False):
        self.value = value
        self.error = error
        self.calls = 0
        self.started = threading.Event()
        self.release = threading.Event()
        if not block:
            self.release.set()
        self._lock = threading.Lock()

    def __call__(self, key):
        with self._lock:
            self.calls += 1
        self.started.set()
        self.release.wait(5)
        if self.error is not None:
            raise self.error
        return self.value


def wait_until(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return False


@pytest.fixture
def disk(tmp_path):
    tier = PersistentTier(tmp_path / "disk")
    yield tier
    tier.close()


@pytest.fixture
def remote():
    return RedisTier(client=fakeredis.FakeRedis())


@pytest.fixture
def make_coordinator():
    created = []

    def _make(**kwargs):
        kwargs.setdefault("memory", LRUTier(max_entries=100, shards=1))
        coordinator = CacheCoordinator(**kwargs)
        created.append(coordinator)
        return coordinator

    yield _make
    for coordinator in created:
        coordinator.close()


# =============================================================================
# Basic get / put / TTL
# =============================================================================

def test_put_then_get_returns_value(make_coordinator):
    coordinator = make_coordinator()
    coordinator.put("k", b"value", ttl=60)
    assert coordinator.get("k") == b"value"


def test_get_after_ttl_is_a_miss(make_coordinator, clock):
    coordinator = make_coordinator(memory=LRUTier(max_entries=10, clock=clock), clock=clock)
    coordinator.put("k", b"value", ttl=10)
    clock.advance(11)

    with pytest.raises(CacheMiss):
        coordinator.get("k")


def test_full_miss_without_loader_raises_cache_miss(make_coordinator):
    with pytest.raises(CacheMiss):
        make_coordinator().get("nothing")


def test_loaded_value_is_cached_in_memory(make_coordinator):
    loader = CountingLoader(b"artifact")
    coordinator = make_coordinator(loader=loader)

    assert coordinator.get("k") == b"artifact"
    assert coordinator.get("k") == b"artifact"
    assert loader.calls == 1
    assert coordinator.get_stats()["tiers"]["memory"]["hits"] == 1


def test_per_call_loader_overrides_default(make_coordinator):
    coordinator = make_coordinator(loader=CountingLoader(b"default"))
    assert coordinator.get("k", loader=lambda key: b"override") == b"override"


def test_loader_must_return_bytes(make_coordinator):
    coordinator = make_coordinator(loader=lambda key: "not bytes")
    with pytest.raises(TypeError):
        coordinator.get("k")
    assert coordinator.get_stats()["load_errors"] == 1


def test_invalid_ttl_is_rejected(make_coordinator):
    coordinator = make_coordinator()
    with pytest.raises(ValueError):
        coordinator.put("k", b"v", ttl=0)


# =============================================================================
# Single-flight
# =============================================================================

def test_concurrent_misses_invoke_loader_once(make_coordinator):
    """N concurrent callers for one key share a single loader call"""
    loader = CountingLoader(b"shared", block=True)
    coordinator = make_coordinator(loader=loader)
    results = []
    results_lock = threading.Lock()

    def caller():
        value = coordinator.get("https://example.com/hot")
        with results_lock:
            results.append(value)

    threads = [threading.Thread(target=caller) for _ in range(10)]
    for t in threads:
        t.start()

    assert wait_until(lambda: coordinator.get_stats()["coalescer"]["waiters"] == 10)
    loader.release.set()
    for t in threads:
        t.join(5)

    assert loader.calls == 1
    assert results == [b"shared"] * 10


def test_concurrent_failure_is_shared_and_not_cached(make_coordinator):
    error = PermanentUpstreamError("HTTP 404", status_code=404)
    loader = CountingLoader(error=error, block=True)
    coordinator = make_coordinator()
    errors = []

    def caller():
        try:
            coordinator.get("k", loader=loader)
        except PermanentUpstreamError as e:
            errors.append(e)

    threads = [threading.Thread(target=caller) for _ in range(5)]
    for t in threads:
        t.start()
    assert wait_until(lambda: coordinator.get_stats()["coalescer"]["waiters"] == 5)
    loader.release.set()
    for t in threads:
        t.join(5)

    assert loader.calls == 1
    assert len(errors) == 5
    assert all(e is error for e in errors)
    with pytest.raises(CacheMiss):
        coordinator.get("k")
    assert coordinator.get_stats()["load_errors"] == 1


def test_different_keys_load_in_parallel(make_coordinator):
    barrier = threading.Barrier(2, timeout=5)

    def loader(key):
        barrier.wait()  # both loads must be running at once
        return key.encode()

    coordinator = make_coordinator(loader=loader)
    results = coordinator.get_many(["a", "b"])
    assert results == {"a": b"a", "b": b"b"}


def test_caller_timeout_does_not_cancel_the_load(make_coordinator):
    loader = CountingLoader(b"late", block=True)
    coordinator = make_coordinator(loader=loader)

    with pytest.raises(LoadTimeout):
        coordinator.get("k", timeout=0.05)

    loader.release.set()
    assert wait_until(lambda: coordinator.get_stats()["coalescer"]["active_requests"] == 0)
    assert coordinator.get("k", loader=None) == b"late"
    assert loader.calls == 1


# =============================================================================
# Tiers: promotion, write-behind, fail-open
# =============================================================================

def test_disk_hit_is_promoted_to_memory(make_coordinator, disk):
    disk.put(CacheEntry.create("k", b"from-disk", 60))
    memory = LRUTier(max_entries=10)
    coordinator = make_coordinator(memory=memory, disk=disk)

    assert coordinator.get("k") == b"from-disk"
    assert memory.get("k").value == b"from-disk"
    stats = coordinator.get_stats()["tiers"]
    assert stats["disk"]["hits"] == 1
    assert stats["disk"]["promotions"] == 1


def test_distributed_hit_is_promoted_to_memory_and_disk(make_coordinator, disk, remote):
    stored = CacheEntry.create("k", b"from-remote", 60)
    remote.put(stored)
    memory = LRUTier(max_entries=10)
    coordinator = make_coordinator(memory=memory, disk=disk, distributed=remote)

    assert coordinator.get("k") == b"from-remote"
    assert coordinator.flush(5)
    assert memory.get("k") is not None
    assert disk.get("k").value == b"from-remote"
    # Promotion keeps the original deadline
    assert disk.get("k").expires_at == pytest.approx(stored.expires_at)


def test_loaded_value_is_written_through_all_tiers(make_coordinator, disk, remote):
    coordinator = make_coordinator(disk=disk, distributed=remote, loader=CountingLoader(b"fresh"))

    coordinator.get("k")
    assert coordinator.flush(5)

    assert disk.get("k").value == b"fresh"
    assert remote.get("k").value == b"fresh"


def test_unavailable_distributed_tier_fails_open(make_coordinator, disk):
    metrics = InMemoryMetricsSink()
    loader = CountingLoader(b"ok")
    coordinator = make_coordinator(
        disk=disk, distributed=BrokenTier(), loader=loader, metrics=metrics
    )

    assert coordinator.get("k") == b"ok"
    coordinator.put("other", b"v")
    coordinator.invalidate("other")
    assert coordinator.flush(5)

    assert loader.calls == 1
    assert coordinator.get_stats()["tiers"]["distributed"]["errors"] >= 2
    assert metrics.counter("cache.tier_error", tier="distributed") >= 2


def test_invalidate_removes_key_from_every_tier(make_coordinator, disk, remote):
    coordinator = make_coordinator(disk=disk, distributed=remote)
    coordinator.put("k", b"v", ttl=60)
    assert coordinator.flush(5)

    coordinator.invalidate("k")
    assert coordinator.flush(5)

    assert disk.get("k") is None
    assert remote.get("k") is None
    with pytest.raises(CacheMiss):
        coordinator.get("k")


def test_invalidated_value_is_not_promoted_while_deletes_are_queued(make_coordinator, disk):
    remote = GatedTier()
    coordinator = make_coordinator(disk=disk, distributed=remote)
    coordinator.put("k", b"old", ttl=60)
    assert wait_until(lambda: disk.get("k") is not None)

    # The remote write is still blocked, so the deletes queue behind it
    coordinator.invalidate("k")
    with pytest.raises(CacheMiss):
        coordinator.get("k")

    remote.gate.set()
    assert coordinator.flush(5)
    assert disk.get("k") is None
    assert remote.get("k") is None
    with pytest.raises(CacheMiss):
        coordinator.get("k")


def test_put_after_invalidate_is_served(make_coordinator, disk):
    remote = GatedTier()
    remote.gate.set()
    coordinator = make_coordinator(disk=disk, distributed=remote)
    coordinator.put("k", b"old")
    coordinator.invalidate("k")
    coordinator.put("k", b"new")

    assert coordinator.get("k") == b"new"
    assert coordinator.flush(5)
    assert disk.get("k").value == b"new"


def test_evicted_entry_is_demoted_to_disk(make_coordinator, disk):
    coordinator = make_coordinator(memory=LRUTier(max_entries=2, shards=1), disk=disk)
    coordinator.put("a", b"A")
    assert coordinator.flush(5)
    disk.delete("a")  # simulate a write-behind that never landed

    coordinator.put("b", b"B")
    coordinator.put("c", b"C")
    assert coordinator.flush(5)

    assert disk.get("a").value == b"A"
    assert coordinator.get_stats()["tiers"]["memory"]["demotions"] == 1
    # Served from disk after eviction from memory
    assert coordinator.get("a") == b"A"


def test_get_many_reports_failures_per_key(make_coordinator):
    def loader(key):
        if key == "bad":
            raise PermanentUpstreamError("HTTP 404", status_code=404)
        return key.encode()

    results = make_coordinator(loader=loader).get_many(["good", "bad", "good"])

    assert results["good"] == b"good"
    assert isinstance(results["bad"], PermanentUpstreamError)
    assert len(results) == 2


def test_get_after_close_fails_without_leaking_a_load(make_coordinator):
    coordinator = make_coordinator(loader=CountingLoader())
    coordinator.close()

    for _ in range(2):
        with pytest.raises(RuntimeError):
            coordinator.get("k")
    assert coordinator.get_stats()["coalescer"]["active_requests"] == 0


def test_stats_and_metrics(make_coordinator):
    metrics = InMemoryMetricsSink()
    coordinator = make_coordinator(loader=CountingLoader(), metrics=metrics)
    coordinator.get("k")
    coordinator.get("k")

    stats = coordinator.get_stats()
    assert stats["loads"] == 1
    assert stats["tiers"]["memory"]["hit_rate_percent"] == 50.0
    assert metrics.counter("cache.hit", tier="memory") == 1
    assert metrics.counter("cache.miss", tier="memory") == 1
    assert metrics.counter("cache.load") == 1
