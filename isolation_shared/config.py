"""
Shared configuration management for the Tenancy Isolation Layer.
"""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="ISOLATION_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")
    service_name: str = Field(default="isolation")

    # External services
    redis_url: str = Field(default="redis://localhost:6379/0")


class IsolationSettings(BaseConfig):
    """Isolation engine settings."""

    # Context manager
    max_history_size: int = Field(default=100, ge=0)

    # Access control
    strict_containment: bool = Field(default=False)

    # Cache
    cache_prefix: str = Field(default="")
    cache_max_size: int = Field(default=1000, ge=1)
    cache_default_ttl: int = Field(default=300, ge=1)
    cache_strategy: str = Field(default="LRU")
    cache_backend: str = Field(default="memory", pattern="^(memory|redis)$")
    cache_timeout_seconds: float = Field(default=2.0, gt=0)

    # Audit log
    audit_enabled: bool = Field(default=True)
    audit_timeout_seconds: float = Field(default=2.0, gt=0)
    audit_fallback_size: int = Field(default=1000, ge=0)
    audit_retention_days: int = Field(default=90, ge=1)

    # Security monitor
    monitor_window_seconds: int = Field(default=300, ge=1)
    monitor_max_access_rate: int = Field(default=100, ge=1)
    monitor_max_distinct_tenants: int = Field(default=3, ge=1)
    monitor_max_denied_streak: int = Field(default=5, ge=1)
    monitor_timeout_seconds: float = Field(default=2.0, gt=0)

    # Background maintenance
    sweep_interval_seconds: float = Field(default=60.0, gt=0)


@lru_cache()
def get_settings() -> IsolationSettings:
    """Get process-wide isolation settings."""
    return IsolationSettings()
