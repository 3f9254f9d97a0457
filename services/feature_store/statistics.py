"""Daily feature statistics."""

import json
from datetime import date, datetime, time, timedelta
from typing import Any

import pandas as pd
import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from libs.persistence import DatabaseManager

from .exceptions import FeatureStoreError
from .models import (
    FeatureStatistics,
    FeatureStatisticsResponse,
    ValueType,
    utcnow,
)
from .offline_store import OfflineStore
from .registry import FeatureRegistry

logger = structlog.get_logger(__name__)

PERCENTILES = {"p25": 0.25, "p50": 0.5, "p75": 0.75, "p95": 0.95, "p99": 0.99}
TOP_VALUE_COUNTS = 20


def _category_key(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, sort_keys=True)


def summarize(value_type: ValueType, values: list[Any]) -> dict[str, Any]:
    """Summary statistics of one day's values.

    Numeric and boolean features get moments and percentiles (booleans as
    0/1); every other type gets top value counts.
    """
    total = len(values)
    non_null = [value for value in values if value is not None]
    summary: dict[str, Any] = {
        "total_count": total,
        "null_count": total - len(non_null),
        "null_rate": (total - len(non_null)) / total if total else 0.0,
        "distinct_count": len({_category_key(value) for value in non_null}),
        "mean": None,
        "stddev": None,
        "min_value": None,
        "max_value": None,
        **{name: None for name in PERCENTILES},
        "value_counts": None,
    }

    if value_type in (ValueType.NUMERIC, ValueType.BOOLEAN) and non_null:
        series = pd.Series([float(value) for value in non_null], dtype="float64")
        quantiles = series.quantile(list(PERCENTILES.values()))
        summary.update(
            mean=float(series.mean()),
            stddev=float(series.std(ddof=1)) if len(series) > 1 else None,
            min_value=float(series.min()),
            max_value=float(series.max()),
            **{
                name: float(quantiles.loc[q])
                for name, q in PERCENTILES.items()
            },
        )

    if value_type != ValueType.NUMERIC and non_null:
        counts = pd.Series([_category_key(value) for value in non_null]).value_counts()
        summary["value_counts"] = {
            str(key): int(count) for key, count in counts.head(TOP_VALUE_COUNTS).items()
        }

    return summary


class StatisticsEngine:
    """Compute one FeatureStatistics row per feature and calendar day."""

    def __init__(
        self,
        db_manager: DatabaseManager,
        registry: FeatureRegistry,
        offline_store: OfflineStore,
    ) -> None:
        self.db_manager = db_manager
        self.registry = registry
        self.offline_store = offline_store

    async def compute_for_date(
        self, feature_id: str, computation_date: date
    ) -> FeatureStatisticsResponse:
        """Summarize facts with ``as_of`` inside the day. Idempotent."""
        definition = await self.registry.get(feature_id)
        day_start = datetime.combine(computation_date, time.min)
        facts = await self.offline_store.facts_between(
            feature_id, day_start, day_start + timedelta(days=1)
        )
        summary = summarize(definition.value_type, [fact.value for fact in facts])

        try:
            row = await self._upsert(feature_id, computation_date, summary)
        except IntegrityError:
            # A concurrent run inserted the same day first
            row = await self._upsert(feature_id, computation_date, summary)

        logger.info(
            "Feature statistics computed",
            feature_id=feature_id,
            computation_date=computation_date.isoformat(),
            total_count=summary["total_count"],
        )
        return self._to_response(row)

    async def run_nightly(
        self, today: date | None = None
    ) -> list[FeatureStatisticsResponse]:
        """Compute the prior calendar day for every active feature."""
        target = (today or utcnow().date()) - timedelta(days=1)
        results = []
        for definition in await self.registry.active_definitions():
            try:
                results.append(
                    await self.compute_for_date(definition.feature_id, target)
                )
            except (FeatureStoreError, SQLAlchemyError, OSError) as e:
                logger.error(
                    "Feature statistics failed",
                    feature_id=definition.feature_id,
                    computation_date=target.isoformat(),
                    error=str(e),
                )
        return results

    async def get_statistics(
        self,
        feature_id: str,
        start_date: date | None = None,
        end_date: date | None = None,
    ) -> list[FeatureStatisticsResponse]:
        """Stored daily statistics, oldest first, within inclusive bounds."""
        stmt = select(FeatureStatistics).where(FeatureStatistics.feature_id == feature_id)
        if start_date is not None:
            stmt = stmt.where(FeatureStatistics.computation_date >= start_date)
        if end_date is not None:
            stmt = stmt.where(FeatureStatistics.computation_date <= end_date)
        stmt = stmt.order_by(FeatureStatistics.computation_date)

        async with self.db_manager.get_session() as session:
            result = await session.execute(stmt)
            return [self._to_response(row) for row in result.scalars().all()]

    async def _upsert(
        self, feature_id: str, computation_date: date, summary: dict[str, Any]
    ) -> FeatureStatistics:
        values = {
            **summary,
            "value_counts": (
                json.dumps(summary["value_counts"])
                if summary["value_counts"] is not None
                else None
            ),
        }

        async with self.db_manager.get_session() as session:
            result = await session.execute(
                select(FeatureStatistics).where(
                    FeatureStatistics.feature_id == feature_id,
                    FeatureStatistics.computation_date == computation_date,
                )
            )
            row = result.scalar_one_or_none()
            if row is None:
                row = FeatureStatistics(
                    feature_id=feature_id, computation_date=computation_date, **values
                )
                session.add(row)
            else:
                for field, value in values.items():
                    setattr(row, field, value)
            await session.flush()
        return row

    @staticmethod
    def _to_response(row: FeatureStatistics) -> FeatureStatisticsResponse:
        return FeatureStatisticsResponse(
            feature_id=row.feature_id,
            computation_date=row.computation_date,
            total_count=row.total_count,
            null_count=row.null_count,
            null_rate=row.null_rate,
            distinct_count=row.distinct_count,
            mean=row.mean,
            stddev=row.stddev,
            min_value=row.min_value,
            max_value=row.max_value,
            p25=row.p25,
            p50=row.p50,
            p75=row.p75,
            p95=row.p95,
            p99=row.p99,
            value_counts=json.loads(row.value_counts) if row.value_counts else None,
        )
