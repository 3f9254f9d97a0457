"""Configuration for observability components."""

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class MetricsConfig(BaseModel):
    """Configuration for metrics collection."""

    enabled: bool = True
    prometheus_endpoint: str = "/metrics"
    histogram_buckets: list[float] = Field(
        default_factory=lambda: [
            0.005,
            0.01,
            0.025,
            0.05,
            0.1,
            0.25,
            0.5,
            1.0,
            2.5,
            5.0,
            10.0,
            60.0,
            300.0,
        ]
    )


class LoggingConfig(BaseModel):
    """Configuration for structured logging."""

    level: str = "INFO"
    format: str = "json"  # json or console
    enable_correlation: bool = True
    enable_tracing_integration: bool = True
    processors: list[str] = Field(
        default_factory=lambda: [
            "structlog.contextvars.merge_contextvars",
            "structlog.processors.TimeStamper",
            "structlog.processors.add_log_level",
            "structlog.processors.StackInfoRenderer",
        ]
    )


class ObservabilityConfig(BaseSettings):
    """Main observability configuration."""

    model_config = SettingsConfigDict(
        env_prefix="OBSERVABILITY_", env_nested_delimiter="__"
    )

    environment: str = "development"
    service_name: str = "feature-store"
    service_version: str = "1.0.0"

    metrics: MetricsConfig = Field(default_factory=MetricsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


_observability_config: ObservabilityConfig | None = None


def get_observability_config() -> ObservabilityConfig:
    """Get the observability configuration singleton."""
    global _observability_config

    if _observability_config is None:
        _observability_config = ObservabilityConfig()

    return _observability_config

