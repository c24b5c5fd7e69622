"""
Shared configuration management for the entitlement reconciliation engine.
"""

from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="ENTITLEMENT_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local", description="Deployment environment")
    log_level: str = Field(default="info", description="Root log level")

    # Subscription backend
    backend_base_url: str = Field(default="http://localhost:3000/api", description="Subscription backend base URL")
    backend_timeout_seconds: float = Field(default=10.0, gt=0, description="Per-request timeout")
    verify_max_attempts: int = Field(default=3, ge=1, description="Attempts for /subscriptions/verify")
    verify_retry_base_delay: float = Field(default=0.5, ge=0, description="Base backoff delay for verify retries")
    circuit_failure_threshold: int = Field(default=5, ge=1, description="Network failures before the breaker opens")
    circuit_recovery_timeout: float = Field(default=30.0, ge=0, description="Seconds before a half-open trial call")

    # Reconciliation
    cache_ttl_seconds: float = Field(default=60.0, ge=0, description="Status cache TTL")
    poll_interval_seconds: float = Field(default=300.0, gt=0, description="Periodic reconciliation interval")
    trial_duration_days: int = Field(default=3, ge=0, description="Local free trial length")
    listener_restart_delay_seconds: float = Field(default=1.0, ge=0, description="Delay before restarting a failed store stream")

    # Local persisted state
    storage_backend: Literal["memory", "file", "redis"] = Field(default="memory", description="Key-value store implementation")
    storage_path: str = Field(default="data/entitlement_state.json", description="JSON file used by the file store")
    redis_url: str = Field(default="redis://localhost:6379/0", description="Redis URL used by the redis store")

    # Store catalog
    monthly_product_id: str = Field(default="com.gofitai.premium.monthly")
    yearly_product_id: str = Field(default="com.gofitai.premium.yearly")

    # Metrics
    metrics_port: Optional[int] = Field(default=None, description="Standalone Prometheus port, disabled when unset")


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
