"""
Shared configuration management for the Life-Skills Access Layer.
"""

from typing import Any, Dict, List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="ACCESS_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])

    # Response cache namespaces (seconds)
    cache_default_ttl: int = Field(default=300)
    cache_default_check_period: int = Field(default=120)
    cache_user_ttl: int = Field(default=60)
    cache_user_check_period: int = Field(default=30)
    cache_content_ttl: int = Field(default=3600)
    cache_content_check_period: int = Field(default=600)
    cache_api_ttl: int = Field(default=600)
    cache_api_check_period: int = Field(default=120)
    cache_system_ttl: int = Field(default=3600)
    cache_system_check_period: int = Field(default=600)

    # Cache statistics reporting
    cache_stats_report_interval: int = Field(default=3600)
    cache_reset_stats_after_report: bool = Field(default=False)

    # Performance sampler
    perf_sample_interval_seconds: int = Field(default=60)
    perf_slow_query_threshold_ms: float = Field(default=200.0)
    perf_slow_request_threshold_ms: float = Field(default=1000.0)
    perf_memory_warning_threshold_mb: float = Field(default=512.0)
    perf_verbose_logging: bool = Field(default=False)
    performance_prefix: str = Field(default="/api/performance")

    # Security
    # {"<api key>": {"user_id": "...", "roles": ["admin"]}}
    api_keys: Dict[str, Dict[str, Any]] = Field(default_factory=dict)


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
