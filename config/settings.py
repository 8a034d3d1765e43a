"""Configuration management using pydantic-settings."""
from pathlib import Path
from typing import Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    Cache and resilience settings loaded from AXIOM_* environment variables.

    Values are validated at construction time; an invalid combination
    raises a pydantic ValidationError instead of failing later at runtime.
    """

    # Memory tier (L1)
    memory_max_entries: Optional[int] = Field(default=10_000, gt=0)
    memory_max_bytes: Optional[int] = Field(default=256 * 1024 * 1024, gt=0)
    memory_shards: int = Field(default=8, ge=1)

    # Disk tier (L2)
    disk_enabled: bool = True
    disk_directory: Path = Path("./cache")
    disk_max_bytes: Optional[int] = Field(default=2 * 1024 * 1024 * 1024, gt=0)
    disk_segment_max_bytes: int = Field(default=64 * 1024 * 1024, gt=1024)
    disk_compaction_threshold: float = Field(default=0.5, gt=0, le=1)
    disk_fsync: bool = False

    # Distributed tier (L3), disabled unless a URL is given
    redis_url: Optional[str] = None
    redis_key_prefix: str = "axiom:artifact"
    redis_socket_timeout: float = Field(default=0.5, gt=0)

    # TTL defaults
    default_ttl_seconds: float = Field(default=3600.0, gt=0)

    # Coordinator
    load_timeout_seconds: Optional[float] = Field(default=60.0, gt=0)
    max_load_workers: int = Field(default=16, ge=1)
    write_queue_size: int = Field(default=1024, ge=1)
    write_workers: int = Field(default=2, ge=1)
    batch_workers: int = Field(default=8, ge=1)

    # Circuit breaker
    breaker_failure_ratio: float = Field(default=0.5, gt=0, le=1)
    breaker_window_size: int = Field(default=20, ge=1)
    breaker_cooldown_seconds: float = Field(default=30.0, gt=0)
    breaker_half_open_trials: int = Field(default=1, ge=1)
    breaker_cooldown_multiplier: float = Field(default=2.0, ge=1)
    breaker_max_cooldown_seconds: float = Field(default=300.0, gt=0)

    # Retries
    retry_max_attempts: int = Field(default=3, ge=1)
    retry_initial_backoff: float = Field(default=0.2, ge=0)
    retry_max_backoff: float = Field(default=5.0, ge=0)
    retry_jitter: float = Field(default=0.1, ge=0)

    # Rate limiting
    rate_limit_capacity: int = Field(default=10, ge=1)
    rate_limit_refill_per_second: float = Field(default=5.0, gt=0)
    rate_limit_blocking: bool = True
    rate_limit_timeout_seconds: Optional[float] = Field(default=5.0, ge=0)

    # Upstream
    fetch_timeout_seconds: float = Field(default=30.0, gt=0)

    @model_validator(mode="after")
    def _check_combinations(self) -> "Settings":
        if self.memory_max_entries is None and self.memory_max_bytes is None:
            raise ValueError("memory tier needs memory_max_entries or memory_max_bytes")
        if self.memory_max_entries is not None and self.memory_max_entries < self.memory_shards:
            raise ValueError("memory_max_entries must be >= memory_shards")
        if self.memory_max_bytes is not None and self.memory_max_bytes < self.memory_shards:
            raise ValueError("memory_max_bytes must be >= memory_shards")
        if self.breaker_half_open_trials > self.breaker_window_size:
            raise ValueError("breaker_half_open_trials must be <= breaker_window_size")
        if self.breaker_max_cooldown_seconds < self.breaker_cooldown_seconds:
            raise ValueError("breaker_max_cooldown_seconds must be >= breaker_cooldown_seconds")
        if self.retry_max_backoff < self.retry_initial_backoff:
            raise ValueError("retry_max_backoff must be >= retry_initial_backoff")
        return self

    class Config:
        env_prefix = "AXIOM_"
        env_file = ".env"
        env_file_encoding = "utf-8"
