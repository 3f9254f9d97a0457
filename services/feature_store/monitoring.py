"""Feature monitoring: drift, data quality and freshness alerts."""

import json
from datetime import date, datetime, timedelta

import numpy as np
import structlog
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from libs.observability.metrics import FeatureStoreMetrics, get_metrics
from libs.persistence import DatabaseManager

from .config import FeatureStoreSettings, get_feature_store_settings
from .exceptions import FeatureStoreError
from .models import (
    AlertType,
    DriftAlert,
    DriftAlertResponse,
    FeatureStatistics,
    Severity,
    as_naive_utc,
    utcnow,
)
from .registry import FeatureRegistry
from .runs import RunLockManager

logger = structlog.get_logger(__name__)


class WindowStats(BaseModel):
    """Statistics pooled over a window of daily rows."""

    days: int = Field(..., description="Daily rows pooled")
    count: int = Field(..., description="Non-null values pooled")
    mean: float
    stddev: float | None = None


def pool_statistics(rows: list[FeatureStatistics]) -> WindowStats | None:
    """Combine daily mean/stddev rows into one window.

    Uses the exact decomposition of the total sample variance into
    within-day and between-day parts.
    """
    parts = [
        (row.total_count - row.null_count, row.mean, row.stddev or 0.0)
        for row in rows
        if row.mean is not None and row.total_count - row.null_count > 0
    ]
    if not parts:
        return None

    counts, means, stds = (np.array(column, dtype=float) for column in zip(*parts))
    total = int(counts.sum())
    mean = float(np.average(means, weights=counts))
    if total < 2:
        return WindowStats(days=len(parts), count=total, mean=mean)

    within = np.sum((counts - 1) * stds**2)
    between = np.sum(counts * (means - mean) ** 2)
    return WindowStats(
        days=len(parts),
        count=total,
        mean=mean,
        stddev=float(np.sqrt((within + between) / (total - 1))),
    )


class FeatureMonitor:
    """Evaluate stored statistics and compute logs into alerts.

    The monitor is the only writer of alert rows; it reads statistics and
    run history but never touches feature values.
    """

    def __init__(
        self,
        db_manager: DatabaseManager,
        registry: FeatureRegistry,
        locks: RunLockManager,
        settings: FeatureStoreSettings | None = None,
        metrics: FeatureStoreMetrics | None = None,
    ) -> None:
        self.db_manager = db_manager
        self.registry = registry
        self.locks = locks
        self.settings = settings or get_feature_store_settings()
        self.metrics = metrics or get_metrics()

    def severity_for(self, score: float) -> Severity | None:
        """Map a normalized shift onto an alert tier."""
        if score > self.settings.drift_high_threshold:
            return Severity.HIGH
        if score > self.settings.drift_moderate_threshold:
            return Severity.MODERATE
        if score > self.settings.drift_minor_threshold:
            return Severity.MINOR
        return None

    async def evaluate_drift(
        self, feature_id: str, evaluation_date: date
    ) -> DriftAlertResponse | None:
        """Compare the recent window against the baseline before it.

        The recent window covers the days just before ``evaluation_date``;
        the baseline covers the same number of days before that. The score
        is the absolute shift of the mean in baseline standard deviations.
        """
        days = self.settings.drift_window_days
        recent_end = evaluation_date - timedelta(days=1)
        recent_start = evaluation_date - timedelta(days=days)
        baseline_end = recent_start - timedelta(days=1)
        baseline_start = recent_start - timedelta(days=days)

        rows = await self._statistics(feature_id, baseline_start, recent_end)
        baseline = pool_statistics(
            [row for row in rows if row.computation_date <= baseline_end]
        )
        recent = pool_statistics(
            [row for row in rows if row.computation_date >= recent_start]
        )

        if baseline is None or recent is None:
            logger.info(
                "Drift skipped, insufficient statistics",
                feature_id=feature_id,
                evaluation_date=evaluation_date.isoformat(),
            )
            return None
        if not baseline.stddev:
            logger.info(
                "Drift skipped, baseline has no variance",
                feature_id=feature_id,
                evaluation_date=evaluation_date.isoformat(),
            )
            return None

        score = abs(recent.mean - baseline.mean) / baseline.stddev
        severity = self.severity_for(score)
        if severity is None:
            logger.debug("No drift", feature_id=feature_id, drift_score=score)
            return None

        return await self._emit(
            DriftAlert(
                feature_id=feature_id,
                alert_type=AlertType.DRIFT,
                severity=severity,
                drift_score=score,
                evaluation_date=evaluation_date,
                baseline_start=baseline_start,
                baseline_end=baseline_end,
                recent_start=recent_start,
                recent_end=recent_end,
                baseline_stats=baseline.model_dump_json(),
                recent_stats=recent.model_dump_json(),
                message=(
                    f"Mean of '{feature_id}' moved from {baseline.mean:.4g} to "
                    f"{recent.mean:.4g} ({score:.2f} baseline std devs)"
                ),
            )
        )

    async def check_quality(
        self, feature_id: str, computation_date: date
    ) -> DriftAlertResponse | None:
        """Alert when a day's null rate exceeds the configured limit."""
        rows = await self._statistics(feature_id, computation_date, computation_date)
        if not rows or not rows[0].total_count:
            return None

        row = rows[0]
        limit = self.settings.null_rate_limit
        if row.null_rate <= limit:
            return None

        severity = Severity.HIGH if row.null_rate > 2 * limit else Severity.MODERATE
        return await self._emit(
            DriftAlert(
                feature_id=feature_id,
                alert_type=AlertType.QUALITY,
                severity=severity,
                drift_score=row.null_rate,
                evaluation_date=computation_date,
                recent_start=computation_date,
                recent_end=computation_date,
                recent_stats=json.dumps(
                    {
                        "total_count": row.total_count,
                        "null_count": row.null_count,
                        "null_rate": row.null_rate,
                    }
                ),
                message=(
                    f"Null rate of '{feature_id}' on {computation_date.isoformat()} "
                    f"is {row.null_rate:.1%} (limit {limit:.1%})"
                ),
            )
        )

    async def check_freshness(
        self, now: datetime | None = None
    ) -> list[DriftAlertResponse]:
        """Alert on active features whose last success is overdue.

        A feature is stale once its last successful run started more than
        ``freshness_factor`` refresh intervals ago. Features that never
        succeeded are measured from the registration of their first version.
        """
        now = as_naive_utc(now) if now is not None else utcnow()
        definitions = await self.registry.active_definitions()
        last_successes = await self.locks.last_successes(
            [definition.feature_id for definition in definitions]
        )
        registered = await self.registry.registered_at(
            [definition.feature_id for definition in definitions]
        )

        alerts = []
        for definition in definitions:
            budget = timedelta(
                seconds=definition.refresh_interval_seconds
                * self.settings.freshness_factor
            )
            last_success = last_successes.get(definition.feature_id)
            reference = last_success or registered.get(definition.feature_id)
            if reference is None:
                continue

            age = now - as_naive_utc(reference)
            if age <= budget:
                continue

            overdue = age / budget
            if overdue >= 3:
                severity = Severity.HIGH
            elif overdue >= 2:
                severity = Severity.MODERATE
            else:
                severity = Severity.MINOR

            if last_success is None:
                message = (
                    f"'{definition.feature_id}' has never materialized "
                    f"successfully since {as_naive_utc(reference).isoformat()}"
                )
            else:
                message = (
                    f"Last successful run of '{definition.feature_id}' started "
                    f"{age.total_seconds():.0f}s ago "
                    f"(budget {budget.total_seconds():.0f}s)"
                )

            alerts.append(
                await self._emit(
                    DriftAlert(
                        feature_id=definition.feature_id,
                        alert_type=AlertType.FRESHNESS,
                        severity=severity,
                        drift_score=overdue,
                        evaluation_date=now.date(),
                        message=message,
                    )
                )
            )
        return alerts

    async def run_nightly(self, today: date | None = None) -> list[DriftAlertResponse]:
        """Drift and quality checks for every active feature.

        Expects the prior day's statistics to be computed already.
        """
        today = today or utcnow().date()
        alerts = []
        for definition in await self.registry.active_definitions():
            try:
                drift = await self.evaluate_drift(definition.feature_id, today)
                quality = await self.check_quality(
                    definition.feature_id, today - timedelta(days=1)
                )
            except (FeatureStoreError, SQLAlchemyError, OSError) as e:
                logger.error(
                    "Monitoring failed",
                    feature_id=definition.feature_id,
                    error=str(e),
                )
                continue
            alerts.extend(alert for alert in (drift, quality) if alert is not None)

        logger.info(
            "Nightly monitoring completed",
            evaluation_date=today.isoformat(),
            alerts=len(alerts),
        )
        return alerts

    async def list_alerts(
        self,
        feature_id: str | None = None,
        alert_type: AlertType | None = None,
        severity: Severity | None = None,
        since: date | None = None,
        limit: int = 100,
    ) -> list[DriftAlertResponse]:
        stmt = select(DriftAlert)
        if feature_id:
            stmt = stmt.where(DriftAlert.feature_id == feature_id)
        if alert_type:
            stmt = stmt.where(DriftAlert.alert_type == alert_type)
        if severity:
            stmt = stmt.where(DriftAlert.severity == severity)
        if since:
            stmt = stmt.where(DriftAlert.evaluation_date >= since)
        stmt = stmt.order_by(DriftAlert.evaluation_date.desc(), DriftAlert.id.desc())
        stmt = stmt.limit(limit)

        async with self.db_manager.get_session() as session:
            result = await session.execute(stmt)
            return [self._to_response(alert) for alert in result.scalars().all()]

    async def _statistics(
        self, feature_id: str, start: date, end: date
    ) -> list[FeatureStatistics]:
        async with self.db_manager.get_session() as session:
            result = await session.execute(
                select(FeatureStatistics)
                .where(
                    FeatureStatistics.feature_id == feature_id,
                    FeatureStatistics.computation_date >= start,
                    FeatureStatistics.computation_date <= end,
                )
                .order_by(FeatureStatistics.computation_date)
            )
            return list(result.scalars().all())

    async def _emit(self, alert: DriftAlert) -> DriftAlertResponse:
        async with self.db_manager.get_session() as session:
            session.add(alert)
            await session.flush()
            await session.refresh(alert)
            response = self._to_response(alert)

        self.metrics.record_alert(
            alert.feature_id,
            alert.alert_type.value,
            alert.severity.value,
            alert.drift_score if alert.alert_type == AlertType.DRIFT else None,
        )
        logger.warning(
            "Feature alert raised",
            feature_id=alert.feature_id,
            alert_type=alert.alert_type.value,
            severity=alert.severity.value,
            score=alert.drift_score,
        )
        return response

    @staticmethod
    def _to_response(alert: DriftAlert) -> DriftAlertResponse:
        return DriftAlertResponse(
            id=alert.id,
            feature_id=alert.feature_id,
            alert_type=alert.alert_type,
            severity=alert.severity,
            drift_score=alert.drift_score,
            evaluation_date=alert.evaluation_date,
            baseline_start=alert.baseline_start,
            baseline_end=alert.baseline_end,
            recent_start=alert.recent_start,
            recent_end=alert.recent_end,
            baseline_stats=(
                json.loads(alert.baseline_stats) if alert.baseline_stats else None
            ),
            recent_stats=json.loads(alert.recent_stats) if alert.recent_stats else None,
            message=alert.message,
            created_at=alert.created_at,
        )
