"""Training dataset builder.

Joins point-in-time feature vectors onto caller-supplied labels and stores
the result as an immutable artifact tagged with its generation parameters.
"""

import json
from datetime import datetime
from typing import Any
from uuid import uuid4

import pandas as pd
import structlog
from pydantic import BaseModel, Field, model_validator
from sqlalchemy import select, text

from libs.persistence import DatabaseManager

from .config import FeatureStoreSettings, get_feature_store_settings
from .exceptions import IncompleteFeatureCoverage, NotFound, ValidationError
from .models import (
    FeatureSetMember,
    TrainingDataset,
    TrainingDatasetRow,
    as_naive_utc,
)
from .registry import FeatureRegistry, parse_payload
from .retrieval import PointInTimeRetriever

logger = structlog.get_logger(__name__)


class LabelRow(BaseModel):
    """One labeled observation."""

    entity_id: str = Field(..., min_length=1)
    timestamp: datetime = Field(..., description="Label timestamp")
    labels: dict[str, Any] = Field(default_factory=dict)


class LabelQuery(BaseModel):
    """Labels supplied inline or selected read-only from the raw source."""

    rows: list[LabelRow] | None = Field(None, description="Inline label rows")
    sql: str | None = Field(None, description="Read-only SELECT over the source")
    entity_column: str = Field("entity_id", description="Entity column of the SQL")
    timestamp_column: str = Field(
        "label_timestamp", description="Label timestamp column of the SQL"
    )

    @model_validator(mode="after")
    def _one_source(self) -> "LabelQuery":
        if (self.rows is None) == (self.sql is None):
            raise ValueError("exactly one of rows or sql is required")
        if self.sql is not None and not self.sql.lstrip().lower().startswith(
            ("select", "with")
        ):
            raise ValueError("sql must be a read-only SELECT statement")
        return self

    def describe(self) -> str:
        if self.sql is not None:
            return f"sql: {self.sql.strip()}"
        return f"inline: {len(self.rows or [])} rows"


class TrainingWindow(BaseModel):
    """Inclusive label timestamp range."""

    start: datetime
    end: datetime

    @model_validator(mode="after")
    def _ordered(self) -> "TrainingWindow":
        if as_naive_utc(self.start) > as_naive_utc(self.end):
            raise ValueError("window start must not be after its end")
        return self


class TrainingDatasetRequest(BaseModel):
    """Model for building a training dataset over HTTP."""

    feature_set_id: str = Field(..., min_length=1)
    label_query: LabelQuery
    window: TrainingWindow
    name: str | None = Field(None, max_length=255)
    strict: bool | None = Field(None, description="Override strict coverage")


class CoverageWarning(BaseModel):
    """Row whose feature vector is incomplete."""

    row_index: int
    entity_id: str
    label_timestamp: datetime
    missing_features: list[str]
    error: str | None = None


class TrainingDatasetHandle(BaseModel):
    """Reference to a stored training dataset artifact."""

    dataset_id: str
    name: str
    feature_set_id: str
    feature_members: list[FeatureSetMember]
    start_date: datetime
    end_date: datetime
    label_definition: str
    label_columns: list[str]
    row_count: int
    entity_count: int
    coverage_warnings: list[CoverageWarning] = Field(default_factory=list)
    created_at: datetime | None = None


class TrainingDatasetBuilder:
    """Build and read back immutable training datasets."""

    def __init__(
        self,
        db_manager: DatabaseManager,
        registry: FeatureRegistry,
        retriever: PointInTimeRetriever,
        source_db: DatabaseManager | None = None,
        settings: FeatureStoreSettings | None = None,
    ) -> None:
        self.db_manager = db_manager
        self.registry = registry
        self.retriever = retriever
        self.source_db = source_db or db_manager
        self.settings = settings or get_feature_store_settings()

    async def build(
        self,
        label_query: LabelQuery | dict[str, Any],
        feature_set_id: str,
        window: TrainingWindow | tuple[datetime, datetime] | dict[str, Any],
        name: str | None = None,
        strict: bool | None = None,
    ) -> TrainingDatasetHandle:
        """Build a dataset from labels inside ``window``.

        Missing features are recorded as coverage warnings on the artifact;
        with ``strict`` the build raises ``IncompleteFeatureCoverage`` and
        nothing is written.
        """
        label_query = parse_payload(LabelQuery, label_query)
        if isinstance(window, tuple):
            window = TrainingWindow(start=window[0], end=window[1])
        window = parse_payload(TrainingWindow, window)
        strict = self.settings.strict_coverage if strict is None else strict

        feature_set = await self.registry.get_feature_set(feature_set_id)
        start, end = as_naive_utc(window.start), as_naive_utc(window.end)

        labels = [
            label
            for label in await self._load_labels(label_query)
            if start <= as_naive_utc(label.timestamp) <= end
        ]
        rows = await self.retriever.retrieve(
            [(label.entity_id, label.timestamp) for label in labels], feature_set_id
        )
        feature_ids = [member.feature_id for member in feature_set.members]

        warnings = [
            CoverageWarning(
                row_index=index,
                entity_id=label.entity_id,
                label_timestamp=as_naive_utc(label.timestamp),
                missing_features=row.missing_features,
                error=row.error,
            )
            for index, (label, row) in enumerate(zip(labels, rows))
            if row.missing_features or row.error
        ]
        if warnings and strict:
            raise IncompleteFeatureCoverage(
                [warning.model_dump(mode="json") for warning in warnings]
            )

        label_columns: list[str] = []
        for label in labels:
            for column_name in label.labels:
                if column_name not in label_columns:
                    label_columns.append(column_name)

        dataset_id = str(uuid4())
        name = name or f"{feature_set_id}_{start:%Y%m%d}_{end:%Y%m%d}"

        async with self.db_manager.get_session() as session:
            dataset = TrainingDataset(
                dataset_id=dataset_id,
                name=name,
                feature_set_id=feature_set_id,
                feature_members=json.dumps(
                    [member.model_dump() for member in feature_set.members]
                ),
                start_date=start,
                end_date=end,
                label_definition=label_query.describe(),
                label_columns=json.dumps(label_columns),
                row_count=len(labels),
                entity_count=len({label.entity_id for label in labels}),
                coverage_warnings=json.dumps(
                    [warning.model_dump(mode="json") for warning in warnings]
                ),
            )
            session.add(dataset)
            await session.flush()

            session.add_all(
                TrainingDatasetRow(
                    dataset_id=dataset_id,
                    row_index=index,
                    entity_id=label.entity_id,
                    label_timestamp=as_naive_utc(label.timestamp),
                    labels=json.dumps(label.labels, default=str),
                    features=json.dumps(row.values),
                    missing_features=json.dumps(row.missing_features),
                )
                for index, (label, row) in enumerate(zip(labels, rows))
            )

        if warnings:
            logger.warning(
                "Training dataset has incomplete feature coverage",
                dataset_id=dataset_id,
                rows_affected=len(warnings),
                features=feature_ids,
            )
        logger.info(
            "Training dataset built",
            dataset_id=dataset_id,
            feature_set_id=feature_set_id,
            rows=len(labels),
        )
        return await self.get_dataset(dataset_id)

    async def get_dataset(self, dataset_id: str) -> TrainingDatasetHandle:
        async with self.db_manager.get_session() as session:
            result = await session.execute(
                select(TrainingDataset).where(TrainingDataset.dataset_id == dataset_id)
            )
            dataset = result.scalar_one_or_none()

        if dataset is None:
            raise NotFound(f"training dataset {dataset_id} not found")
        return self._to_handle(dataset)

    async def list_datasets(
        self, feature_set_id: str | None = None
    ) -> list[TrainingDatasetHandle]:
        stmt = select(TrainingDataset).order_by(TrainingDataset.id.desc())
        if feature_set_id:
            stmt = stmt.where(TrainingDataset.feature_set_id == feature_set_id)

        async with self.db_manager.get_session() as session:
            result = await session.execute(stmt)
            return [self._to_handle(row) for row in result.scalars().all()]

    async def load_dataset(self, dataset_id: str) -> pd.DataFrame:
        """Read an artifact back as a DataFrame.

        Absent features are ``pd.NA``; stored nulls stay ``None``.
        """
        handle = await self.get_dataset(dataset_id)
        feature_ids = [member.feature_id for member in handle.feature_members]

        async with self.db_manager.get_session() as session:
            result = await session.execute(
                select(TrainingDatasetRow)
                .where(TrainingDatasetRow.dataset_id == dataset_id)
                .order_by(TrainingDatasetRow.row_index)
            )
            rows = result.scalars().all()

        labels = [json.loads(row.labels) for row in rows]
        features = [json.loads(row.features) for row in rows]

        columns: dict[str, pd.Series] = {
            "entity_id": pd.Series([row.entity_id for row in rows], dtype=object),
            "label_timestamp": pd.to_datetime(
                pd.Series([row.label_timestamp for row in rows])
            ),
        }
        for column_name in handle.label_columns:
            columns[column_name] = pd.Series(
                [label.get(column_name) for label in labels], dtype=object
            )
        for feature_id in feature_ids:
            columns[feature_id] = pd.Series(
                [
                    values[feature_id] if feature_id in values else pd.NA
                    for values in features
                ],
                dtype=object,
            )
        columns["missing_features"] = pd.Series(
            [json.loads(row.missing_features) for row in rows], dtype=object
        )
        return pd.DataFrame(columns)

    async def _load_labels(self, label_query: LabelQuery) -> list[LabelRow]:
        if label_query.rows is not None:
            return list(label_query.rows)

        async with self.source_db.get_session() as session:
            result = await session.execute(text(label_query.sql))
            records = [dict(row._mapping) for row in result]

        labels = []
        for record in records:
            try:
                entity_id = record.pop(label_query.entity_column)
                timestamp = record.pop(label_query.timestamp_column)
            except KeyError as e:
                raise ValidationError(f"label query is missing column {e}") from e
            if entity_id is None or timestamp is None:
                continue
            if isinstance(timestamp, str):
                timestamp = datetime.fromisoformat(timestamp)
            labels.append(
                LabelRow(entity_id=str(entity_id), timestamp=timestamp, labels=record)
            )
        return labels

    @staticmethod
    def _to_handle(dataset: TrainingDataset) -> TrainingDatasetHandle:
        return TrainingDatasetHandle(
            dataset_id=dataset.dataset_id,
            name=dataset.name,
            feature_set_id=dataset.feature_set_id,
            feature_members=[
                FeatureSetMember(**member)
                for member in json.loads(dataset.feature_members)
            ],
            start_date=dataset.start_date,
            end_date=dataset.end_date,
            label_definition=dataset.label_definition,
            label_columns=json.loads(dataset.label_columns),
            row_count=dataset.row_count,
            entity_count=dataset.entity_count,
            coverage_warnings=[
                CoverageWarning(**warning)
                for warning in json.loads(dataset.coverage_warnings)
            ],
            created_at=dataset.created_at,
        )
