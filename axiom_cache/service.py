"""
Artifact service: explicit construction of the cache and resilience stack
from Settings, plus the facade the extraction pipeline talks to.
"""
import logging
from typing import Callable, Dict, Iterable, Optional, Any, Union

from config.settings import Settings

from .cache.coordinator import CacheCoordinator
from .cache.distributed import RedisTier
from .cache.lru import LRUTier
from .cache.persistent import PersistentTier
from .metrics import MetricsSink, NullMetricsSink
from .resilience.circuit import CircuitBreakerRegistry, CircuitConfig
from .resilience.fetcher import ResilientFetcher
from .resilience.rate_limiter import RateLimiter
from .resilience.retry import RetryPolicy
from .sources.base import Source

logger = logging.getLogger("axiom_cache.service")


def build_fetcher(
    settings: Settings,
    source: Source,
    metrics: Optional[MetricsSink] = None,
    breakers: Optional[CircuitBreakerRegistry] = None,
) -> ResilientFetcher:
    """Wire rate limiter, circuit breaker and retry policy around `source`."""
    breakers = breakers or CircuitBreakerRegistry(
        CircuitConfig(
            failure_ratio=settings.breaker_failure_ratio,
            window_size=settings.breaker_window_size,
            cooldown_seconds=settings.breaker_cooldown_seconds,
            half_open_trials=settings.breaker_half_open_trials,
            cooldown_multiplier=settings.breaker_cooldown_multiplier,
            max_cooldown_seconds=settings.breaker_max_cooldown_seconds,
        ),
        metrics=metrics,
    )
    source_id = getattr(source, "name", type(source).__name__)
    return ResilientFetcher(
        source=source,
        breaker=breakers.get(source_id),
        retry_policy=RetryPolicy(
            max_attempts=settings.retry_max_attempts,
            initial_backoff=settings.retry_initial_backoff,
            max_backoff=settings.retry_max_backoff,
            jitter=settings.retry_jitter,
            metrics=metrics,
        ),
        rate_limiter=RateLimiter(
            capacity=settings.rate_limit_capacity,
            refill_rate=settings.rate_limit_refill_per_second,
            blocking=settings.rate_limit_blocking,
            timeout=settings.rate_limit_timeout_seconds,
            metrics=metrics,
        ),
        fetch_timeout=settings.fetch_timeout_seconds,
        metrics=metrics,
    )


def build_coordinator(
    settings: Settings,
    loader: Optional[Callable[[str], bytes]] = None,
    metrics: Optional[MetricsSink] = None,
) -> CacheCoordinator:
    """
    Construct a coordinator owning its own tiers.

    Each call returns an independent instance; nothing is process-global.
    `loader` (normally ResilientFetcher.load) runs on a full miss.
    """
    disk = None
    if settings.disk_enabled:
        disk = PersistentTier(
            settings.disk_directory,
            max_bytes=settings.disk_max_bytes,
            segment_max_bytes=settings.disk_segment_max_bytes,
            compaction_threshold=settings.disk_compaction_threshold,
            fsync=settings.disk_fsync,
        )

    distributed = None
    if settings.redis_url:
        distributed = RedisTier(
            settings.redis_url,
            key_prefix=settings.redis_key_prefix,
            socket_timeout=settings.redis_socket_timeout,
        )

    return CacheCoordinator(
        memory=LRUTier(
            max_entries=settings.memory_max_entries,
            max_bytes=settings.memory_max_bytes,
            shards=settings.memory_shards,
        ),
        disk=disk,
        distributed=distributed,
        loader=loader,
        default_ttl=settings.default_ttl_seconds,
        load_timeout=settings.load_timeout_seconds,
        max_load_workers=settings.max_load_workers,
        write_queue_size=settings.write_queue_size,
        write_workers=settings.write_workers,
        batch_workers=settings.batch_workers,
        metrics=metrics,
    )


class ArtifactService:
    """
    Cache-backed artifact access for the extraction pipeline.

    Usage:
        with ArtifactService.from_settings(Settings(), HttpSource()) as service:
            body = service.fetch_artifact("https://example.com/product/42")
    """

    def __init__(self, coordinator: CacheCoordinator, fetcher: ResilientFetcher):
        self.coordinator = coordinator
        self.fetcher = fetcher

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        source: Source,
        metrics: Optional[MetricsSink] = None,
    ) -> "ArtifactService":
        metrics = metrics or NullMetricsSink()
        fetcher = build_fetcher(settings, source, metrics)
        coordinator = build_coordinator(settings, loader=fetcher.load, metrics=metrics)
        return cls(coordinator, fetcher)

    def fetch_artifact(self, url: str, timeout: Optional[float] = None) -> bytes:
        """Fetch a single artifact, from cache when possible."""
        return self.coordinator.get(url, timeout=timeout)

    def fetch_batch(
        self,
        urls: Iterable[str],
        timeout: Optional[float] = None,
    ) -> Dict[str, Union[bytes, Exception]]:
        """
        Fetch many artifacts in parallel.

        Returns:
            Mapping of URL to bytes, or to the error that URL failed with
        """
        results = self.coordinator.get_many(urls, timeout=timeout)
        failed = sum(1 for r in results.values() if isinstance(r, Exception))
        if failed:
            logger.warning(f"Batch fetch: {failed}/{len(results)} artifacts failed")
        return results

    def invalidate(self, url: str) -> None:
        self.coordinator.invalidate(url)

    def get_statistics(self) -> Dict[str, Any]:
        """Cache, circuit breaker and rate limiter state in one snapshot."""
        return {
            "cache": self.coordinator.get_stats(),
            "circuit": self.fetcher.breaker.get_stats(),
            "rate_limiter": self.fetcher.rate_limiter.get_stats(),
        }

    def close(self) -> None:
        self.coordinator.close()

    def __enter__(self) -> "ArtifactService":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
