"""
Shared configuration management for the Member Entitlements service.
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="MEMBERS_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )

    # Environment
    env: str = Field(default="local", description="Deployment environment")
    log_level: str = Field(default="info", description="Log level")

    # External services
    postgres_dsn: str = Field(default="postgres://localhost:5432/members")
    redis_url: str = Field(default="redis://localhost:6379/0")

    # Storage
    storage_retry_attempts: int = Field(default=3, ge=1)
    storage_retry_base_delay: float = Field(default=0.2, ge=0.0)

    # Balance views
    enable_cache: bool = Field(default=True)
    cache_ttl_seconds: int = Field(default=300, ge=1)

    # Write path: re-check the balance under an advisory lock before inserting
    enforce_claim_limits: bool = Field(default=True)

    # Falls back to the current calendar year when unset
    default_target_year: Optional[int] = Field(default=None)


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
