"""Per-feature run locks, compute logs and the reaper."""

from datetime import datetime, timedelta
from uuid import uuid4

import structlog
from pydantic import BaseModel
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from libs.observability.metrics import FeatureStoreMetrics, get_metrics
from libs.persistence import DatabaseManager

from .config import FeatureStoreSettings, get_feature_store_settings
from .exceptions import RunLockHeld
from .models import (
    ComputationMode,
    ComputeLog,
    ComputeLogResponse,
    ComputeSummary,
    FeatureRunLock,
    RunStatus,
    utcnow,
)

logger = structlog.get_logger(__name__)

REAPED_MESSAGE = "exceeded wall-clock budget"


class RunHandle(BaseModel):
    """A held run lock and its RUNNING compute log."""

    run_id: str
    feature_id: str
    feature_version: int
    run_kind: ComputationMode
    started_at: datetime
    deadline: datetime


class RunLockManager:
    """At most one concurrent run per feature, enforced by a lock row.

    The lock is taken with a conditional write and released by the run's
    terminal status. Runs past their deadline are failed by ``reap_expired``,
    never by the run itself.
    """

    def __init__(
        self,
        db_manager: DatabaseManager,
        settings: FeatureStoreSettings | None = None,
        metrics: FeatureStoreMetrics | None = None,
    ) -> None:
        self.db_manager = db_manager
        self.settings = settings or get_feature_store_settings()
        self.metrics = metrics or get_metrics()

    async def acquire(
        self,
        feature_id: str,
        run_kind: ComputationMode,
        feature_version: int,
        now: datetime | None = None,
    ) -> RunHandle:
        """Take the feature's lock and open a RUNNING compute log.

        Raises:
            RunLockHeld: an unexpired lock exists for the feature
        """
        now = now or utcnow()
        handle = RunHandle(
            run_id=str(uuid4()),
            feature_id=feature_id,
            feature_version=feature_version,
            run_kind=run_kind,
            started_at=now,
            deadline=now + timedelta(seconds=self.settings.run_timeout_seconds),
        )

        try:
            async with self.db_manager.get_session() as session:
                result = await session.execute(
                    select(FeatureRunLock).where(FeatureRunLock.feature_id == feature_id)
                )
                lock = result.scalar_one_or_none()

                if lock is None:
                    session.add(
                        FeatureRunLock(
                            feature_id=feature_id,
                            run_id=handle.run_id,
                            acquired_at=now,
                            expires_at=handle.deadline,
                        )
                    )
                    await session.flush()
                else:
                    if lock.expires_at > now:
                        raise RunLockHeld(feature_id, lock.run_id)
                    await self._take_over(session, lock, handle, now)

                session.add(
                    ComputeLog(
                        run_id=handle.run_id,
                        feature_id=feature_id,
                        feature_version=feature_version,
                        run_kind=run_kind,
                        status=RunStatus.RUNNING,
                        started_at=now,
                        deadline=handle.deadline,
                        rows_processed=0,
                    )
                )
        except IntegrityError as e:
            # Another worker inserted the lock first
            raise RunLockHeld(feature_id) from e

        logger.debug(
            "Run lock acquired",
            feature_id=feature_id,
            run_id=handle.run_id,
            run_kind=run_kind.value,
        )
        return handle

    async def complete(
        self,
        handle: RunHandle,
        rows_processed: int,
        session: AsyncSession | None = None,
        now: datetime | None = None,
    ) -> bool:
        """Mark the run SUCCESS and release its lock.

        When ``session`` is given the update joins the caller's transaction.
        Returns False when the run was already finalized (e.g. reaped).
        """
        if session is None:
            async with self.db_manager.get_session() as own_session:
                return await self._finish(
                    own_session, handle, RunStatus.SUCCESS, rows_processed, None, now
                )
        return await self._finish(
            session, handle, RunStatus.SUCCESS, rows_processed, None, now
        )

    async def fail(
        self, handle: RunHandle, error: str, now: datetime | None = None
    ) -> bool:
        """Mark the run FAILED with an error message and release its lock."""
        async with self.db_manager.get_session() as session:
            return await self._finish(
                session, handle, RunStatus.FAILED, 0, error[:4000], now
            )

    async def reap_expired(self, now: datetime | None = None) -> list[str]:
        """Fail RUNNING runs past their deadline and release their locks."""
        now = now or utcnow()
        reaped: list[tuple[str, str]] = []

        async with self.db_manager.get_session() as session:
            result = await session.execute(
                select(ComputeLog.run_id, ComputeLog.feature_id).where(
                    ComputeLog.status == RunStatus.RUNNING,
                    ComputeLog.deadline <= now,
                )
            )
            for run_id, feature_id in result.all():
                updated = await session.execute(
                    update(ComputeLog)
                    .where(
                        ComputeLog.run_id == run_id,
                        ComputeLog.status == RunStatus.RUNNING,
                    )
                    .values(
                        status=RunStatus.FAILED,
                        ended_at=now,
                        error_message=REAPED_MESSAGE,
                    )
                )
                if updated.rowcount:
                    reaped.append((run_id, feature_id))

            # Locks whose run already ended or never logged
            await session.execute(
                delete(FeatureRunLock).where(FeatureRunLock.expires_at <= now)
            )

        for run_id, feature_id in reaped:
            self.metrics.record_reaped_run(feature_id)
            logger.warning(
                "Run reaped after exceeding its budget",
                feature_id=feature_id,
                run_id=run_id,
            )
        return [run_id for run_id, _ in reaped]

    async def compute_logs(
        self,
        feature_id: str | None = None,
        status: RunStatus | None = None,
        limit: int = 100,
    ) -> list[ComputeLogResponse]:
        stmt = select(ComputeLog)
        if feature_id:
            stmt = stmt.where(ComputeLog.feature_id == feature_id)
        if status:
            stmt = stmt.where(ComputeLog.status == status)
        stmt = stmt.order_by(ComputeLog.started_at.desc(), ComputeLog.id.desc()).limit(
            limit
        )

        async with self.db_manager.get_session() as session:
            result = await session.execute(stmt)
            rows = result.scalars().all()
        return [ComputeLogResponse.model_validate(row) for row in rows]

    async def last_successes(
        self, feature_ids: list[str] | None = None
    ) -> dict[str, datetime]:
        """Start time of the last successful run per feature."""
        stmt = (
            select(ComputeLog.feature_id, func.max(ComputeLog.started_at))
            .where(ComputeLog.status == RunStatus.SUCCESS)
            .group_by(ComputeLog.feature_id)
        )
        if feature_ids is not None:
            stmt = stmt.where(ComputeLog.feature_id.in_(feature_ids))

        async with self.db_manager.get_session() as session:
            result = await session.execute(stmt)
            return {feature_id: started for feature_id, started in result.all()}

    async def compute_summary(
        self, feature_id: str, since: datetime | None = None
    ) -> ComputeSummary:
        """Run count, failure rate, duration and throughput for one feature."""
        stmt = select(ComputeLog).where(
            ComputeLog.feature_id == feature_id,
            ComputeLog.status != RunStatus.RUNNING,
        )
        if since is not None:
            stmt = stmt.where(ComputeLog.started_at >= since)

        async with self.db_manager.get_session() as session:
            result = await session.execute(stmt)
            runs = result.scalars().all()

        failed = sum(1 for run in runs if run.status == RunStatus.FAILED)
        durations = [
            (run.ended_at - run.started_at).total_seconds()
            for run in runs
            if run.ended_at is not None
        ]
        successes = [run for run in runs if run.status == RunStatus.SUCCESS]
        success_seconds = sum(
            (run.ended_at - run.started_at).total_seconds()
            for run in successes
            if run.ended_at is not None
        )
        success_rows = sum(run.rows_processed for run in successes)

        return ComputeSummary(
            feature_id=feature_id,
            total_runs=len(runs),
            failed_runs=failed,
            failure_rate=failed / len(runs) if runs else 0.0,
            avg_duration_seconds=sum(durations) / len(durations) if durations else None,
            rows_per_second=(
                success_rows / success_seconds if success_seconds > 0 else None
            ),
            last_success_at=max((run.started_at for run in successes), default=None),
        )

    async def _take_over(
        self,
        session: AsyncSession,
        lock: FeatureRunLock,
        handle: RunHandle,
        now: datetime,
    ) -> None:
        stale_run_id = lock.run_id
        result = await session.execute(
            update(FeatureRunLock)
            .where(
                FeatureRunLock.feature_id == handle.feature_id,
                FeatureRunLock.run_id == stale_run_id,
                FeatureRunLock.expires_at <= now,
            )
            .values(
                run_id=handle.run_id,
                acquired_at=now,
                expires_at=handle.deadline,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise RunLockHeld(handle.feature_id)

        await session.execute(
            update(ComputeLog)
            .where(
                ComputeLog.run_id == stale_run_id,
                ComputeLog.status == RunStatus.RUNNING,
            )
            .values(status=RunStatus.FAILED, ended_at=now, error_message=REAPED_MESSAGE)
        )
        logger.warning(
            "Expired run lock taken over",
            feature_id=handle.feature_id,
            stale_run_id=stale_run_id,
            run_id=handle.run_id,
        )

    async def _finish(
        self,
        session: AsyncSession,
        handle: RunHandle,
        status: RunStatus,
        rows_processed: int,
        error: str | None,
        now: datetime | None,
    ) -> bool:
        now = now or utcnow()
        result = await session.execute(
            update(ComputeLog)
            .where(
                ComputeLog.run_id == handle.run_id,
                ComputeLog.status == RunStatus.RUNNING,
            )
            .values(
                status=status,
                ended_at=now,
                rows_processed=rows_processed,
                error_message=error,
            )
        )
        await session.execute(
            delete(FeatureRunLock).where(
                FeatureRunLock.feature_id == handle.feature_id,
                FeatureRunLock.run_id == handle.run_id,
            )
        )

        if not result.rowcount:
            logger.warning(
                "Run was already finalized",
                feature_id=handle.feature_id,
                run_id=handle.run_id,
                status=status.value,
            )
            return False
        return True
