"""
Shared configuration management for the Gantz tool gateway.

All settings are read from ``GANTZ_*`` environment variables (or a ``.env``
file) once, at service construction. Components receive the resulting
config object; nothing below the service layer reads the environment.
"""

from typing import Literal, Optional

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="GANTZ_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = "local"
    log_level: str = "info"

    # Tool manifest (gantz.yaml)
    tool_manifest_path: Optional[str] = None

    # Result cache
    cache_backend: Literal["memory", "redis"] = "memory"
    redis_url: str = "redis://localhost:6379/0"
    cache_sweep_interval_seconds: float = Field(default=30.0, gt=0)

    # Budgets and execution limits
    default_request_budget_seconds: float = Field(default=30.0, gt=0)
    max_request_budget_seconds: float = Field(default=300.0, gt=0)
    max_concurrent_invocations: int = Field(default=32, ge=1)
    max_output_bytes: int = Field(default=1024 * 1024, ge=1)
    disconnect_poll_interval_seconds: float = Field(default=0.25, gt=0)

    # Tokens
    admin_token: Optional[SecretStr] = None
    admin_token_ttl_seconds: int = Field(default=365 * 24 * 3600, gt=0)
    default_token_ttl_seconds: int = Field(default=24 * 3600, gt=0)
    token_purge_interval_seconds: float = Field(default=300.0, gt=0)

    # Observability
    enable_tracing: bool = False
    otel_exporter: str = "http://localhost:4317"
    enable_console_tracing: bool = False


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"


def get_config(service_name: str, port: int, **overrides) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port, **overrides)
