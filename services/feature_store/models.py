"""Feature store data models."""

import json
import math
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy import (
    Enum as SQLEnum,
)
from sqlalchemy.orm import Mapped, mapped_column

from libs.persistence import BaseModel as SQLBaseModel

from .exceptions import ValidationError
from .expressions import MaterializationExpression

FEATURE_ID_PATTERN = r"^[a-z][a-z0-9_]*$"


def utcnow() -> datetime:
    """Current time as naive UTC, the convention for domain timestamps."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: datetime) -> datetime:
    """Normalize an aware or naive datetime to naive UTC."""
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class ValueType(str, Enum):
    """Declared feature value types."""

    NUMERIC = "numeric"
    BOOLEAN = "boolean"
    CATEGORICAL = "categorical"
    JSON = "json"


class ComputationMode(str, Enum):
    """How a feature is materialized."""

    BATCH = "BATCH"
    STREAMING = "STREAMING"


class RunStatus(str, Enum):
    """Materialization run status."""

    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class DependencyType(str, Enum):
    """How a feature depends on its parent."""

    DIRECT = "DIRECT"
    DERIVED = "DERIVED"
    AGGREGATED = "AGGREGATED"


class AlertType(str, Enum):
    """Monitoring alert categories."""

    DRIFT = "DRIFT"
    QUALITY = "QUALITY"
    FRESHNESS = "FRESHNESS"


class Severity(str, Enum):
    """Alert severity tiers."""

    MINOR = "MINOR"
    MODERATE = "MODERATE"
    HIGH = "HIGH"


def coerce_value(value_type: ValueType, value: Any) -> Any:
    """Validate a computed value against its declared type.

    ``None`` is a legitimate stored null for every type. Raises
    ``ValidationError`` when the value cannot represent the type.
    """
    if value is None:
        return None

    if value_type == ValueType.NUMERIC:
        if isinstance(value, bool) or not isinstance(value, int | float | Decimal):
            raise ValidationError(f"expected numeric value, got {value!r}")
        if isinstance(value, Decimal):
            value = float(value)
        if isinstance(value, float) and not math.isfinite(value):
            raise ValidationError(f"non-finite numeric value {value!r}")
        return value

    if value_type == ValueType.BOOLEAN:
        if isinstance(value, bool):
            return value
        if isinstance(value, int) and value in (0, 1):
            return bool(value)
        raise ValidationError(f"expected boolean value, got {value!r}")

    if value_type == ValueType.CATEGORICAL:
        if isinstance(value, str):
            return value
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        raise ValidationError(f"expected categorical value, got {value!r}")

    try:
        json.dumps(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"value is not JSON serializable: {e}") from e
    return value


# SQLAlchemy Models
class FeatureDefinition(SQLBaseModel):
    """Versioned feature definition; the highest version is current."""

    __tablename__ = "feature_definitions"
    __table_args__ = (
        UniqueConstraint("feature_id", "version"),
        Index("ix_feature_definitions_group", "feature_group"),
        Index("ix_feature_definitions_mode_active", "computation_mode", "is_active"),
    )

    feature_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    feature_group: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    entity_type: Mapped[str] = mapped_column(String(100), nullable=False)
    value_type: Mapped[ValueType] = mapped_column(SQLEnum(ValueType), nullable=False)
    computation_mode: Mapped[ComputationMode] = mapped_column(
        SQLEnum(ComputationMode), nullable=False
    )
    expression: Mapped[str] = mapped_column(Text, nullable=False)  # JSON string
    refresh_interval_seconds: Mapped[int] = mapped_column(Integer, nullable=False)
    online_sync_interval_seconds: Mapped[int | None] = mapped_column(
        Integer, nullable=True
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    owner: Mapped[str | None] = mapped_column(String(255), nullable=True)
    tags: Mapped[str | None] = mapped_column(Text, nullable=True)  # JSON string


class FeatureSet(SQLBaseModel):
    """Named, ordered list of pinned feature versions."""

    __tablename__ = "feature_sets"

    feature_set_id: Mapped[str] = mapped_column(
        String(255), unique=True, nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    use_case: Mapped[str | None] = mapped_column(String(255), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    members: Mapped[str] = mapped_column(Text, nullable=False)  # JSON string
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    owner: Mapped[str | None] = mapped_column(String(255), nullable=True)


class FeatureLineage(SQLBaseModel):
    """Upstream dependency of a published feature version."""

    __tablename__ = "feature_lineage"
    __table_args__ = (Index("ix_feature_lineage_parent_table", "parent_table"),)

    feature_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    parent_table: Mapped[str | None] = mapped_column(String(255), nullable=True)
    parent_feature_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    dependency_type: Mapped[DependencyType] = mapped_column(
        SQLEnum(DependencyType), nullable=False
    )
    transformation: Mapped[str | None] = mapped_column(Text, nullable=True)


class FeatureValue(SQLBaseModel):
    """Append-only offline fact. ``id`` is the insertion sequence."""

    __tablename__ = "feature_values"
    __table_args__ = (
        Index("ix_feature_values_lookup", "entity_id", "feature_id", "as_of"),
        Index("ix_feature_values_feature_seq", "feature_id", "id"),
        Index("ix_feature_values_feature_as_of", "feature_id", "as_of"),
    )

    entity_id: Mapped[str] = mapped_column(String(255), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(100), nullable=False)
    feature_id: Mapped[str] = mapped_column(String(255), nullable=False)
    feature_version: Mapped[int] = mapped_column(Integer, nullable=False)
    value: Mapped[str] = mapped_column(Text, nullable=False)  # JSON string
    as_of: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    run_id: Mapped[str | None] = mapped_column(String(36), nullable=True)


class OnlineFeatureVector(SQLBaseModel):
    """Latest feature values per entity."""

    __tablename__ = "online_features"
    __table_args__ = (UniqueConstraint("entity_id", "entity_type"),)

    entity_id: Mapped[str] = mapped_column(String(255), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(100), nullable=False)
    feature_vector: Mapped[str] = mapped_column(Text, nullable=False)  # JSON string
    feature_timestamps: Mapped[str] = mapped_column(
        Text, nullable=False
    )  # JSON string
    last_updated: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    revision: Mapped[int] = mapped_column(Integer, default=1, nullable=False)


class OnlineSyncCursor(SQLBaseModel):
    """Highest offline fact id already folded into the online store."""

    __tablename__ = "online_sync_cursors"
    __table_args__ = (UniqueConstraint("feature_id", "shard", "shard_count"),)

    feature_id: Mapped[str] = mapped_column(String(255), nullable=False)
    shard: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    shard_count: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    last_fact_id: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class FeatureStatistics(SQLBaseModel):
    """Distribution summary of one feature for one calendar day."""

    __tablename__ = "feature_statistics"
    __table_args__ = (UniqueConstraint("feature_id", "computation_date"),)

    feature_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    computation_date: Mapped[date] = mapped_column(Date, nullable=False)
    total_count: Mapped[int] = mapped_column(Integer, nullable=False)
    null_count: Mapped[int] = mapped_column(Integer, nullable=False)
    null_rate: Mapped[float] = mapped_column(Float, nullable=False)
    distinct_count: Mapped[int] = mapped_column(Integer, nullable=False)
    mean: Mapped[float | None] = mapped_column(Float, nullable=True)
    stddev: Mapped[float | None] = mapped_column(Float, nullable=True)
    min_value: Mapped[float | None] = mapped_column(Float, nullable=True)
    max_value: Mapped[float | None] = mapped_column(Float, nullable=True)
    p25: Mapped[float | None] = mapped_column(Float, nullable=True)
    p50: Mapped[float | None] = mapped_column(Float, nullable=True)
    p75: Mapped[float | None] = mapped_column(Float, nullable=True)
    p95: Mapped[float | None] = mapped_column(Float, nullable=True)
    p99: Mapped[float | None] = mapped_column(Float, nullable=True)
    value_counts: Mapped[str | None] = mapped_column(Text, nullable=True)  # JSON


class ComputeLog(SQLBaseModel):
    """Audit record of one materialization run."""

    __tablename__ = "feature_compute_logs"
    __table_args__ = (
        Index("ix_feature_compute_logs_feature_status", "feature_id", "status"),
    )

    run_id: Mapped[str] = mapped_column(String(36), unique=True, nullable=False)
    feature_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    feature_version: Mapped[int] = mapped_column(Integer, nullable=False)
    run_kind: Mapped[ComputationMode] = mapped_column(
        SQLEnum(ComputationMode), nullable=False
    )
    status: Mapped[RunStatus] = mapped_column(SQLEnum(RunStatus), nullable=False)
    started_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    deadline: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    rows_processed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)


class FeatureRunLock(SQLBaseModel):
    """Exclusive run lock per feature."""

    __tablename__ = "feature_run_locks"

    feature_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    run_id: Mapped[str] = mapped_column(String(36), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class StreamOffset(SQLBaseModel):
    """Committed change feed offset per consumer."""

    __tablename__ = "stream_offsets"

    consumer_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    committed_offset: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    committed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class ScheduledJobRun(SQLBaseModel):
    """Claim on one firing of a cron-scheduled job."""

    __tablename__ = "scheduled_job_runs"
    __table_args__ = (UniqueConstraint("job_name", "scheduled_for"),)

    job_name: Mapped[str] = mapped_column(String(100), nullable=False)
    scheduled_for: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class DriftAlert(SQLBaseModel):
    """Append-only monitoring alert."""

    __tablename__ = "feature_drift_alerts"
    __table_args__ = (
        Index("ix_feature_drift_alerts_feature_date", "feature_id", "evaluation_date"),
    )

    feature_id: Mapped[str] = mapped_column(String(255), nullable=False)
    alert_type: Mapped[AlertType] = mapped_column(SQLEnum(AlertType), nullable=False)
    severity: Mapped[Severity] = mapped_column(SQLEnum(Severity), nullable=False)
    drift_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    evaluation_date: Mapped[date] = mapped_column(Date, nullable=False)
    baseline_start: Mapped[date | None] = mapped_column(Date, nullable=True)
    baseline_end: Mapped[date | None] = mapped_column(Date, nullable=True)
    recent_start: Mapped[date | None] = mapped_column(Date, nullable=True)
    recent_end: Mapped[date | None] = mapped_column(Date, nullable=True)
    baseline_stats: Mapped[str | None] = mapped_column(Text, nullable=True)  # JSON
    recent_stats: Mapped[str | None] = mapped_column(Text, nullable=True)  # JSON
    message: Mapped[str] = mapped_column(Text, nullable=False)


class TrainingDataset(SQLBaseModel):
    """Immutable training dataset artifact metadata."""

    __tablename__ = "training_datasets"

    dataset_id: Mapped[str] = mapped_column(
        String(36), unique=True, nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    feature_set_id: Mapped[str] = mapped_column(String(255), nullable=False)
    feature_members: Mapped[str] = mapped_column(Text, nullable=False)  # JSON
    start_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    end_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    label_definition: Mapped[str] = mapped_column(Text, nullable=False)
    label_columns: Mapped[str] = mapped_column(Text, nullable=False)  # JSON
    row_count: Mapped[int] = mapped_column(Integer, nullable=False)
    entity_count: Mapped[int] = mapped_column(Integer, nullable=False)
    coverage_warnings: Mapped[str] = mapped_column(Text, nullable=False)  # JSON


class TrainingDatasetRow(SQLBaseModel):
    """One labeled row of a training dataset artifact."""

    __tablename__ = "training_dataset_rows"
    __table_args__ = (UniqueConstraint("dataset_id", "row_index"),)

    dataset_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("training_datasets.dataset_id", ondelete="CASCADE"),
        nullable=False,
    )
    row_index: Mapped[int] = mapped_column(Integer, nullable=False)
    entity_id: Mapped[str] = mapped_column(String(255), nullable=False)
    label_timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    labels: Mapped[str] = mapped_column(Text, nullable=False)  # JSON
    features: Mapped[str] = mapped_column(Text, nullable=False)  # JSON
    missing_features: Mapped[str] = mapped_column(Text, nullable=False)  # JSON


# Pydantic Models for API
class FeatureDefinitionCreate(BaseModel):
    """Model for registering a feature definition."""

    feature_id: str = Field(
        ...,
        description="Stable feature identifier",
        min_length=1,
        max_length=255,
        pattern=FEATURE_ID_PATTERN,
    )
    name: str = Field(..., description="Display name", min_length=1, max_length=255)
    feature_group: str = Field(
        ..., description="Owning feature group", min_length=1, max_length=255
    )
    description: str | None = Field(None, description="Feature description")
    entity_type: str = Field(
        ..., description="Entity type, e.g. CUSTOMER", min_length=1, max_length=100
    )
    value_type: ValueType = Field(..., description="Declared value type")
    computation_mode: ComputationMode = Field(..., description="BATCH or STREAMING")
    expression: MaterializationExpression = Field(
        ..., description="Materialization expression"
    )
    refresh_interval_seconds: int = Field(
        ..., gt=0, description="Batch cadence or streaming tick budget"
    )
    online_sync_interval_seconds: int | None = Field(
        None, gt=0, description="Online sync interval (defaults from settings)"
    )
    owner: str | None = Field(None, description="Feature owner", max_length=255)
    tags: list[str] | None = Field(None, description="Feature tags")


class FeatureDefinitionResponse(BaseModel):
    """Model for feature definition response."""

    model_config = ConfigDict(from_attributes=True)

    feature_id: str = Field(..., description="Feature identifier")
    version: int = Field(..., description="Definition version")
    name: str = Field(..., description="Display name")
    feature_group: str = Field(..., description="Feature group")
    description: str | None = Field(None, description="Feature description")
    entity_type: str = Field(..., description="Entity type")
    value_type: ValueType = Field(..., description="Declared value type")
    computation_mode: ComputationMode = Field(..., description="Computation mode")
    expression: MaterializationExpression = Field(..., description="Expression")
    refresh_interval_seconds: int = Field(..., description="Refresh cadence")
    online_sync_interval_seconds: int | None = Field(
        None, description="Online sync interval"
    )
    is_active: bool = Field(..., description="Whether new runs include it")
    owner: str | None = Field(None, description="Feature owner")
    tags: list[str] | None = Field(None, description="Feature tags")
    created_at: datetime | None = Field(None, description="Creation timestamp")


class FeatureSetCreate(BaseModel):
    """Model for creating a feature set."""

    feature_set_id: str = Field(
        ..., min_length=1, max_length=255, pattern=FEATURE_ID_PATTERN
    )
    name: str = Field(..., min_length=1, max_length=255)
    use_case: str | None = Field(None, description="Consuming use case")
    description: str | None = Field(None, description="Feature set description")
    feature_ids: list[str] = Field(
        ..., min_length=1, description="Ordered member feature ids"
    )
    owner: str | None = Field(None, max_length=255)


class FeatureSetMember(BaseModel):
    """Feature reference pinned to a version."""

    feature_id: str
    version: int


class FeatureSetResponse(BaseModel):
    """Model for feature set response."""

    feature_set_id: str
    name: str
    use_case: str | None = None
    description: str | None = None
    members: list[FeatureSetMember]
    is_active: bool
    owner: str | None = None


class LineageRecord(BaseModel):
    """Model for a lineage edge."""

    model_config = ConfigDict(from_attributes=True)

    feature_id: str
    version: int
    parent_table: str | None = None
    parent_feature_id: str | None = None
    dependency_type: DependencyType
    transformation: str | None = None


class FeatureFact(BaseModel):
    """Decoded offline fact."""

    id: int = Field(..., description="Insertion sequence")
    entity_id: str
    entity_type: str
    feature_id: str
    feature_version: int
    value: Any = Field(None, description="Stored value; None is a stored null")
    as_of: datetime
    run_id: str | None = None


class NewFact(BaseModel):
    """Fact to append to the offline store."""

    entity_id: str = Field(..., min_length=1, max_length=255)
    entity_type: str
    feature_id: str
    feature_version: int
    value: Any = None
    as_of: datetime
    run_id: str | None = None


class ComputeLogResponse(BaseModel):
    """Model for compute log response."""

    model_config = ConfigDict(from_attributes=True)

    run_id: str
    feature_id: str
    feature_version: int
    run_kind: ComputationMode
    status: RunStatus
    started_at: datetime
    ended_at: datetime | None = None
    deadline: datetime
    rows_processed: int
    error_message: str | None = None


class ComputeSummary(BaseModel):
    """Aggregated run health for one feature."""

    feature_id: str
    total_runs: int
    failed_runs: int
    failure_rate: float
    avg_duration_seconds: float | None = None
    rows_per_second: float | None = None
    last_success_at: datetime | None = None


class MaterializationResult(BaseModel):
    """Outcome of one materialization attempt."""

    feature_id: str
    run_id: str | None = None
    status: RunStatus
    rows_processed: int = 0
    as_of: datetime | None = None
    error: str | None = None


class OnlineFeatureResponse(BaseModel):
    """Model for online feature lookup response."""

    entity_id: str
    entity_type: str
    features: dict[str, Any] = Field(..., description="Feature id to value mapping")
    feature_timestamps: dict[str, datetime] = Field(default_factory=dict)
    last_updated: datetime
    revision: int | None = Field(default=None, description="Vector revision")


class EntityTimestamp(BaseModel):
    """Entity and label timestamp for point-in-time retrieval."""

    entity_id: str = Field(..., description="Entity identifier")
    timestamp: datetime = Field(..., description="Label timestamp")


class HistoricalFeaturesRequest(BaseModel):
    """Model for point-in-time feature requests."""

    feature_set_id: str = Field(..., min_length=1)
    entities: list[EntityTimestamp] = Field(..., min_length=1)


class HistoricalFeatureRow(BaseModel):
    """One point-in-time row; absent features are listed, not defaulted."""

    entity_id: str
    as_of: datetime | None = None
    values: dict[str, Any] = Field(default_factory=dict)
    missing_features: list[str] = Field(default_factory=list)
    error: str | None = None

    @property
    def is_complete(self) -> bool:
        return self.error is None and not self.missing_features


class FeatureStatisticsResponse(BaseModel):
    """Model for feature statistics response."""

    model_config = ConfigDict(from_attributes=True)

    feature_id: str
    computation_date: date
    total_count: int
    null_count: int
    null_rate: float
    distinct_count: int
    mean: float | None = None
    stddev: float | None = None
    min_value: float | None = None
    max_value: float | None = None
    p25: float | None = None
    p50: float | None = None
    p75: float | None = None
    p95: float | None = None
    p99: float | None = None
    value_counts: dict[str, int] | None = None


class DriftAlertResponse(BaseModel):
    """Model for monitoring alert response."""

    id: int
    feature_id: str
    alert_type: AlertType
    severity: Severity
    drift_score: float | None = None
    evaluation_date: date
    baseline_start: date | None = None
    baseline_end: date | None = None
    recent_start: date | None = None
    recent_end: date | None = None
    baseline_stats: dict[str, Any] | None = None
    recent_stats: dict[str, Any] | None = None
    message: str
    created_at: datetime | None = None
