"""
Shared configuration management for the YouTube Analyzer cache layer.
"""

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="ANALYZER_",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Key-value tier
    cache_backend: Literal["memory", "redis"] = Field(default="memory")
    redis_url: str = Field(default="redis://localhost:6379/0")
    kv_max_bytes: int = Field(default=5 * 1024 * 1024, ge=0)

    # File tier
    cache_dir: str = Field(default="data/cache")

    # Shared cache behaviour
    cache_prefix: str = Field(default="yt_analyzer_", min_length=1)
    cache_ttl_seconds: int = Field(default=24 * 60 * 60, gt=0)
    cleanup_interval_seconds: int = Field(default=3600, ge=0)


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"

    def __init__(self, service_name: str, port: int, **kwargs):
        super().__init__(service_name=service_name, port=port, **kwargs)


def get_config(service_name: str, port: int, **overrides) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port, **overrides)
