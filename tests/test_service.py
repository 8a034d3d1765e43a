"""
End-to-end tests for ArtifactService built from Settings.
"""
import threading

import pytest

from axiom_cache.errors import PermanentUpstreamError
from axiom_cache.service import ArtifactService, build_coordinator
from config.settings import Settings


class FakeSource:
    name = "fake"

    def __init__(self):
        self.calls = []
        self._lock = threading.Lock()

    def fetch(self, key, timeout=None):
        with self._lock:
            self.calls.append(key)
        if "missing" in key:
            raise PermanentUpstreamError(f"HTTP 404 fetching {key}", status_code=404)
        return f"body of {key}".encode()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        disk_directory=tmp_path / "cache",
        retry_initial_backoff=0,
        retry_max_backoff=0,
        retry_jitter=0,
    )


@pytest.fixture
def source():
    return FakeSource()


@pytest.fixture
def service(settings, source):
    with ArtifactService.from_settings(settings, source) as service:
        yield service


def test_second_fetch_is_served_from_cache(service, source):
    url = "https://example.com/product/42"
    assert service.fetch_artifact(url) == b"body of https://example.com/product/42"
    assert service.fetch_artifact(url) == b"body of https://example.com/product/42"
    assert source.calls == [url]


def test_batch_reports_errors_per_url(service):
    results = service.fetch_batch([
        "https://example.com/a",
        "https://example.com/missing",
    ])
    assert results["https://example.com/a"] == b"body of https://example.com/a"
    assert isinstance(results["https://example.com/missing"], PermanentUpstreamError)


def test_invalidate_forces_refetch(service, source):
    url = "https://example.com/a"
    service.fetch_artifact(url)
    service.invalidate(url)
    service.fetch_artifact(url)
    assert source.calls == [url, url]


def test_disk_tier_survives_restart(settings, source):
    url = "https://example.com/a"
    with ArtifactService.from_settings(settings, source) as service:
        service.fetch_artifact(url)
        assert service.coordinator.flush(5)

    with ArtifactService.from_settings(settings, source) as service:
        assert service.fetch_artifact(url) == b"body of https://example.com/a"
    assert source.calls == [url]


def test_statistics_snapshot(service):
    service.fetch_artifact("https://example.com/a")
    stats = service.get_statistics()

    assert set(stats) == {"cache", "circuit", "rate_limiter"}
    assert stats["cache"]["loads"] == 1
    assert stats["circuit"]["state"] == "closed"
    assert "fake" in stats["rate_limiter"]


def test_build_coordinator_without_disk(settings):
    settings.disk_enabled = False
    with build_coordinator(settings) as coordinator:
        coordinator.put("k", b"v")
        assert coordinator.get("k") == b"v"
        # No disk tier configured, so no segment stats are reported
        assert "segments" not in coordinator.get_stats()["tiers"]["disk"]
