"""
Shared configuration management for the cacher package.
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="CACHER_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")
    service_name: str = Field(default="cacher")

    # Observability
    metrics_enabled: bool = Field(default=False)
    metrics_port: Optional[int] = Field(default=None, gt=0, lt=65536)


class CacherConfig(BaseConfig):
    """Settings for the fetch coordinators and their stores."""

    # Remote store
    redis_url: str = Field(default="redis://localhost:6379/0")
    redis_socket_timeout: float = Field(default=5.0)
    redis_connect_timeout: float = Field(default=5.0)
    namespace: str = Field(default="")

    # Distributed lock
    lock_ttl_seconds: float = Field(default=30.0, gt=0)
    lock_suffix: str = Field(default=":lock", min_length=1)

    # Waiting for another fetcher
    wait_timeout_seconds: float = Field(default=30.0, gt=0)
    backoff_initial_seconds: float = Field(default=0.01, gt=0)
    backoff_max_seconds: float = Field(default=0.5, gt=0)
    backoff_factor: float = Field(default=2.0, ge=1)

    # Prefix scans
    scan_batch_size: int = Field(default=500, gt=0)

    # Local store
    memory_default_ttl_seconds: Optional[float] = Field(default=None)
    memory_cleanup_interval_seconds: Optional[float] = Field(default=600.0)
    memory_max_entries: int = Field(default=1_000_000, gt=0)


def get_config(**overrides) -> CacherConfig:
    """Get cacher configuration, applying explicit overrides over the environment."""
    return CacherConfig(**overrides)
