"""Initial feature store schema migration.

Revision ID: 001_feature_store
Revises:
Create Date: 2026-06-01 00:00:00.000000

"""

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers
revision = "001_feature_store"
down_revision = None
branch_labels = None
depends_on = None

# Enum types are created once up front; columns only reference them
VALUE_TYPE = postgresql.ENUM(
    "NUMERIC", "BOOLEAN", "CATEGORICAL", "JSON", name="valuetype", create_type=False
)
COMPUTATION_MODE = postgresql.ENUM(
    "BATCH", "STREAMING", name="computationmode", create_type=False
)
RUN_STATUS = postgresql.ENUM(
    "RUNNING", "SUCCESS", "FAILED", name="runstatus", create_type=False
)
DEPENDENCY_TYPE = postgresql.ENUM(
    "DIRECT", "DERIVED", "AGGREGATED", name="dependencytype", create_type=False
)
ALERT_TYPE = postgresql.ENUM(
    "DRIFT", "QUALITY", "FRESHNESS", name="alerttype", create_type=False
)
SEVERITY = postgresql.ENUM(
    "MINOR", "MODERATE", "HIGH", name="severity", create_type=False
)
ENUM_TYPES = [
    VALUE_TYPE,
    COMPUTATION_MODE,
    RUN_STATUS,
    DEPENDENCY_TYPE,
    ALERT_TYPE,
    SEVERITY,
]

TABLES = [
    "feature_definitions",
    "feature_sets",
    "feature_lineage",
    "feature_values",
    "online_features",
    "online_sync_cursors",
    "feature_statistics",
    "feature_compute_logs",
    "feature_run_locks",
    "stream_offsets",
    "scheduled_job_runs",
    "feature_drift_alerts",
    "training_datasets",
    "training_dataset_rows",
]


def _base_columns() -> list[sa.Column]:
    return [
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    ]


def _create_table(name: str, *elements) -> None:
    op.create_table(
        name,
        *_base_columns(),
        *elements,
        sa.PrimaryKeyConstraint("id", name=f"pk_{name}"),
    )
    op.create_index(f"ix_{name}_id", name, ["id"])


def upgrade() -> None:
    """Create feature store tables."""
    bind = op.get_bind()
    for enum_type in ENUM_TYPES:
        enum_type.create(bind, checkfirst=True)

    _create_table(
        "feature_definitions",
        sa.Column("feature_id", sa.String(length=255), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("feature_group", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("entity_type", sa.String(length=100), nullable=False),
        sa.Column("value_type", VALUE_TYPE, nullable=False),
        sa.Column("computation_mode", COMPUTATION_MODE, nullable=False),
        sa.Column("expression", sa.Text(), nullable=False),
        sa.Column("refresh_interval_seconds", sa.Integer(), nullable=False),
        sa.Column("online_sync_interval_seconds", sa.Integer(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("owner", sa.String(length=255), nullable=True),
        sa.Column("tags", sa.Text(), nullable=True),
        sa.UniqueConstraint(
            "feature_id", "version", name="uq_feature_definitions_feature_id"
        ),
    )
    op.create_index(
        "ix_feature_definitions_feature_id", "feature_definitions", ["feature_id"]
    )
    op.create_index(
        "ix_feature_definitions_group", "feature_definitions", ["feature_group"]
    )
    op.create_index(
        "ix_feature_definitions_mode_active",
        "feature_definitions",
        ["computation_mode", "is_active"],
    )

    _create_table(
        "feature_sets",
        sa.Column("feature_set_id", sa.String(length=255), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("use_case", sa.String(length=255), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("members", sa.Text(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("owner", sa.String(length=255), nullable=True),
    )
    op.create_index(
        "ix_feature_sets_feature_set_id",
        "feature_sets",
        ["feature_set_id"],
        unique=True,
    )

    _create_table(
        "feature_lineage",
        sa.Column("feature_id", sa.String(length=255), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("parent_table", sa.String(length=255), nullable=True),
        sa.Column("parent_feature_id", sa.String(length=255), nullable=True),
        sa.Column("dependency_type", DEPENDENCY_TYPE, nullable=False),
        sa.Column("transformation", sa.Text(), nullable=True),
    )
    op.create_index("ix_feature_lineage_feature_id", "feature_lineage", ["feature_id"])
    op.create_index(
        "ix_feature_lineage_parent_table", "feature_lineage", ["parent_table"]
    )

    _create_table(
        "feature_values",
        sa.Column("entity_id", sa.String(length=255), nullable=False),
        sa.Column("entity_type", sa.String(length=100), nullable=False),
        sa.Column("feature_id", sa.String(length=255), nullable=False),
        sa.Column("feature_version", sa.Integer(), nullable=False),
        sa.Column("value", sa.Text(), nullable=False),
        sa.Column("as_of", sa.DateTime(), nullable=False),
        sa.Column("run_id", sa.String(length=36), nullable=True),
    )
    op.create_index(
        "ix_feature_values_lookup",
        "feature_values",
        ["entity_id", "feature_id", "as_of"],
    )
    op.create_index(
        "ix_feature_values_feature_seq", "feature_values", ["feature_id", "id"]
    )
    op.create_index(
        "ix_feature_values_feature_as_of", "feature_values", ["feature_id", "as_of"]
    )

    _create_table(
        "online_features",
        sa.Column("entity_id", sa.String(length=255), nullable=False),
        sa.Column("entity_type", sa.String(length=100), nullable=False),
        sa.Column("feature_vector", sa.Text(), nullable=False),
        sa.Column("feature_timestamps", sa.Text(), nullable=False),
        sa.Column("last_updated", sa.DateTime(), nullable=False),
        sa.Column("revision", sa.Integer(), nullable=False),
        sa.UniqueConstraint(
            "entity_id", "entity_type", name="uq_online_features_entity_id"
        ),
    )

    _create_table(
        "online_sync_cursors",
        sa.Column("feature_id", sa.String(length=255), nullable=False),
        sa.Column("shard", sa.Integer(), nullable=False),
        sa.Column("shard_count", sa.Integer(), nullable=False),
        sa.Column("last_fact_id", sa.Integer(), nullable=False),
        sa.Column("last_synced_at", sa.DateTime(), nullable=True),
        sa.UniqueConstraint(
            "feature_id",
            "shard",
            "shard_count",
            name="uq_online_sync_cursors_feature_id",
        ),
    )

    _create_table(
        "feature_statistics",
        sa.Column("feature_id", sa.String(length=255), nullable=False),
        sa.Column("computation_date", sa.Date(), nullable=False),
        sa.Column("total_count", sa.Integer(), nullable=False),
        sa.Column("null_count", sa.Integer(), nullable=False),
        sa.Column("null_rate", sa.Float(), nullable=False),
        sa.Column("distinct_count", sa.Integer(), nullable=False),
        sa.Column("mean", sa.Float(), nullable=True),
        sa.Column("stddev", sa.Float(), nullable=True),
        sa.Column("min_value", sa.Float(), nullable=True),
        sa.Column("max_value", sa.Float(), nullable=True),
        sa.Column("p25", sa.Float(), nullable=True),
        sa.Column("p50", sa.Float(), nullable=True),
        sa.Column("p75", sa.Float(), nullable=True),
        sa.Column("p95", sa.Float(), nullable=True),
        sa.Column("p99", sa.Float(), nullable=True),
        sa.Column("value_counts", sa.Text(), nullable=True),
        sa.UniqueConstraint(
            "feature_id",
            "computation_date",
            name="uq_feature_statistics_feature_id",
        ),
    )
    op.create_index(
        "ix_feature_statistics_feature_id", "feature_statistics", ["feature_id"]
    )

    _create_table(
        "feature_compute_logs",
        sa.Column("run_id", sa.String(length=36), nullable=False),
        sa.Column("feature_id", sa.String(length=255), nullable=False),
        sa.Column("feature_version", sa.Integer(), nullable=False),
        sa.Column("run_kind", COMPUTATION_MODE, nullable=False),
        sa.Column("status", RUN_STATUS, nullable=False),
        sa.Column("started_at", sa.DateTime(), nullable=False),
        sa.Column("ended_at", sa.DateTime(), nullable=True),
        sa.Column("deadline", sa.DateTime(), nullable=False),
        sa.Column("rows_processed", sa.Integer(), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.UniqueConstraint("run_id", name="uq_feature_compute_logs_run_id"),
    )
    op.create_index(
        "ix_feature_compute_logs_feature_id", "feature_compute_logs", ["feature_id"]
    )
    op.create_index(
        "ix_feature_compute_logs_feature_status",
        "feature_compute_logs",
        ["feature_id", "status"],
    )

    _create_table(
        "feature_run_locks",
        sa.Column("feature_id", sa.String(length=255), nullable=False),
        sa.Column("run_id", sa.String(length=36), nullable=False),
        sa.Column("acquired_at", sa.DateTime(), nullable=False),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("feature_id", name="uq_feature_run_locks_feature_id"),
    )

    _create_table(
        "stream_offsets",
        sa.Column("consumer_id", sa.String(length=255), nullable=False),
        sa.Column("committed_offset", sa.Integer(), nullable=False),
        sa.Column("committed_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("consumer_id", name="uq_stream_offsets_consumer_id"),
    )

    _create_table(
        "scheduled_job_runs",
        sa.Column("job_name", sa.String(length=100), nullable=False),
        sa.Column("scheduled_for", sa.DateTime(), nullable=False),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.UniqueConstraint(
            "job_name", "scheduled_for", name="uq_scheduled_job_runs_job_name"
        ),
    )

    _create_table(
        "feature_drift_alerts",
        sa.Column("feature_id", sa.String(length=255), nullable=False),
        sa.Column("alert_type", ALERT_TYPE, nullable=False),
        sa.Column("severity", SEVERITY, nullable=False),
        sa.Column("drift_score", sa.Float(), nullable=True),
        sa.Column("evaluation_date", sa.Date(), nullable=False),
        sa.Column("baseline_start", sa.Date(), nullable=True),
        sa.Column("baseline_end", sa.Date(), nullable=True),
        sa.Column("recent_start", sa.Date(), nullable=True),
        sa.Column("recent_end", sa.Date(), nullable=True),
        sa.Column("baseline_stats", sa.Text(), nullable=True),
        sa.Column("recent_stats", sa.Text(), nullable=True),
        sa.Column("message", sa.Text(), nullable=False),
    )
    op.create_index(
        "ix_feature_drift_alerts_feature_date",
        "feature_drift_alerts",
        ["feature_id", "evaluation_date"],
    )

    _create_table(
        "training_datasets",
        sa.Column("dataset_id", sa.String(length=36), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("feature_set_id", sa.String(length=255), nullable=False),
        sa.Column("feature_members", sa.Text(), nullable=False),
        sa.Column("start_date", sa.DateTime(), nullable=False),
        sa.Column("end_date", sa.DateTime(), nullable=False),
        sa.Column("label_definition", sa.Text(), nullable=False),
        sa.Column("label_columns", sa.Text(), nullable=False),
        sa.Column("row_count", sa.Integer(), nullable=False),
        sa.Column("entity_count", sa.Integer(), nullable=False),
        sa.Column("coverage_warnings", sa.Text(), nullable=False),
    )
    op.create_index(
        "ix_training_datasets_dataset_id",
        "training_datasets",
        ["dataset_id"],
        unique=True,
    )

    _create_table(
        "training_dataset_rows",
        sa.Column("dataset_id", sa.String(length=36), nullable=False),
        sa.Column("row_index", sa.Integer(), nullable=False),
        sa.Column("entity_id", sa.String(length=255), nullable=False),
        sa.Column("label_timestamp", sa.DateTime(), nullable=False),
        sa.Column("labels", sa.Text(), nullable=False),
        sa.Column("features", sa.Text(), nullable=False),
        sa.Column("missing_features", sa.Text(), nullable=False),
        sa.ForeignKeyConstraint(
            ["dataset_id"],
            ["training_datasets.dataset_id"],
            name="fk_training_dataset_rows_dataset_id_training_datasets",
            ondelete="CASCADE",
        ),
        sa.UniqueConstraint(
            "dataset_id", "row_index", name="uq_training_dataset_rows_dataset_id"
        ),
    )


def downgrade() -> None:
    """Drop feature store tables."""
    for name in reversed(TABLES):
        op.drop_table(name)

    bind = op.get_bind()
    for enum_type in reversed(ENUM_TYPES):
        enum_type.drop(bind, checkfirst=True)
