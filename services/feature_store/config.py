"""Feature store engine settings."""

from functools import lru_cache

from croniter import croniter
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class FeatureStoreSettings(BaseSettings):
    """Runtime knobs for materialization, serving and monitoring."""

    model_config = SettingsConfigDict(
        env_prefix="FEATURE_STORE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Raw source (read-only); falls back to the engine database when unset
    source_database_url: str | None = Field(
        default=None, description="Connection URL of the raw source database"
    )

    # Run locking
    run_timeout_seconds: int = Field(
        default=3600, gt=0, description="Wall-clock budget of a materialization run"
    )
    reaper_interval_seconds: float = Field(default=30.0, gt=0)

    # Batch
    batch_check_interval_seconds: float = Field(
        default=60.0, gt=0, description="How often due batch features are checked"
    )

    # Streaming
    streaming_tick_seconds: float = Field(default=10.0, gt=0)
    streaming_batch_size: int = Field(default=1000, gt=0)
    streaming_feed_timeout_seconds: float = Field(
        default=2.0, ge=0, description="Bounded wait for change feed reads"
    )
    streaming_poll_interval_seconds: float = Field(default=0.2, gt=0)

    # Online serving
    default_online_sync_interval_seconds: int = Field(default=60, gt=0)
    online_sync_check_interval_seconds: float = Field(default=5.0, gt=0)
    online_sync_batch_size: int = Field(default=5000, gt=0)
    online_write_retries: int = Field(default=3, ge=1)
    cache_ttl_seconds: int = Field(default=300, ge=0)
    redis_url: str | None = Field(default=None, description="Redis URL for caching")

    # Retrieval
    retrieval_chunk_size: int = Field(
        default=500, gt=0, description="Entities fetched per offline query"
    )

    # Monitoring
    drift_window_days: int = Field(default=7, gt=0)
    drift_minor_threshold: float = Field(default=1.0, ge=0)
    drift_moderate_threshold: float = Field(default=2.0, ge=0)
    drift_high_threshold: float = Field(default=3.0, ge=0)
    null_rate_limit: float = Field(default=0.2, ge=0, le=1)
    freshness_factor: float = Field(default=2.0, ge=1)
    nightly_cron: str = Field(
        default="0 2 * * *",
        description="Cron schedule (UTC) of statistics, drift, quality and freshness",
    )

    # Training datasets
    strict_coverage: bool = Field(
        default=False, description="Raise instead of annotating missing features"
    )

    @field_validator("nightly_cron")
    @classmethod
    def validate_nightly_cron(cls, v: str) -> str:
        if not croniter.is_valid(v):
            raise ValueError(f"Invalid cron expression '{v}'")
        return v


@lru_cache
def get_feature_store_settings() -> FeatureStoreSettings:
    """Get the process-wide feature store settings."""
    return FeatureStoreSettings()
