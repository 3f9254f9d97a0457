"""Batch materializer for windowed aggregate features."""

import time
from datetime import datetime, timedelta

import structlog
from sqlalchemy.exc import SQLAlchemyError

from libs.observability.metrics import FeatureStoreMetrics, get_metrics
from libs.persistence import DatabaseManager

from .exceptions import ComputeFailure, FeatureStoreError, RunLockHeld, ValidationError
from .expressions import evaluate
from .models import (
    ComputationMode,
    MaterializationResult,
    NewFact,
    RunStatus,
    coerce_value,
    utcnow,
)
from .offline_store import OfflineStore
from .registry import FeatureRegistry
from .runs import RunLockManager

logger = structlog.get_logger(__name__)


class BatchMaterializer:
    """Recompute BATCH features over the raw source on their cadence."""

    def __init__(
        self,
        db_manager: DatabaseManager,
        registry: FeatureRegistry,
        offline_store: OfflineStore,
        locks: RunLockManager,
        source_db: DatabaseManager | None = None,
        metrics: FeatureStoreMetrics | None = None,
    ) -> None:
        self.db_manager = db_manager
        self.registry = registry
        self.offline_store = offline_store
        self.locks = locks
        self.source_db = source_db or db_manager
        self.metrics = metrics or get_metrics()

    async def materialize(
        self, feature_id: str, now: datetime | None = None
    ) -> MaterializationResult:
        """Run one batch materialization, stamping facts with the run start.

        Raises:
            NotFound: unknown feature
            ValidationError: the feature is inactive or not a BATCH feature
            RunLockHeld: another run of the feature is in progress
            ComputeFailure: the run failed; the compute log records why
        """
        definition = await self.registry.get(feature_id)
        if not definition.is_active:
            raise ValidationError(f"feature {feature_id} is inactive")
        if definition.computation_mode != ComputationMode.BATCH:
            raise ValidationError(f"feature {feature_id} is not a BATCH feature")

        handle = await self.locks.acquire(
            feature_id, ComputationMode.BATCH, definition.version, now=now
        )
        as_of = handle.started_at
        started = time.perf_counter()

        try:
            values = await evaluate(self.source_db, definition.expression, as_of)
            facts = [
                NewFact(
                    entity_id=entity_id,
                    entity_type=definition.entity_type,
                    feature_id=feature_id,
                    feature_version=definition.version,
                    value=coerce_value(definition.value_type, value),
                    as_of=as_of,
                    run_id=handle.run_id,
                )
                for entity_id, value in sorted(values.items())
            ]

            async with self.db_manager.get_session() as session:
                written = await self.offline_store.append(session, facts)
                if not await self.locks.complete(handle, written, session=session):
                    raise ComputeFailure(
                        feature_id,
                        "run was finalized before its facts were written",
                        handle.run_id,
                    )
        except Exception as e:
            await self.locks.fail(handle, str(e))
            self.metrics.record_run(
                feature_id, "BATCH", RunStatus.FAILED.value, time.perf_counter() - started
            )
            logger.error(
                "Batch run failed",
                feature_id=feature_id,
                run_id=handle.run_id,
                error=str(e),
            )
            if isinstance(e, ComputeFailure):
                raise
            raise ComputeFailure(feature_id, str(e), handle.run_id) from e

        duration = time.perf_counter() - started
        self.metrics.record_run(feature_id, "BATCH", RunStatus.SUCCESS.value, duration)
        self.metrics.record_facts_written(feature_id, written)
        logger.info(
            "Batch run completed",
            feature_id=feature_id,
            version=definition.version,
            run_id=handle.run_id,
            rows=written,
            as_of=as_of.isoformat(),
            duration_seconds=round(duration, 3),
        )

        return MaterializationResult(
            feature_id=feature_id,
            run_id=handle.run_id,
            status=RunStatus.SUCCESS,
            rows_processed=written,
            as_of=as_of,
        )

    async def run_due(self, now: datetime | None = None) -> list[MaterializationResult]:
        """Materialize every active BATCH feature whose refresh is due.

        A failing feature yields a FAILED result and never stops the others.
        """
        now = now or utcnow()
        definitions = await self.registry.active_definitions(ComputationMode.BATCH)
        last_successes = await self.locks.last_successes(
            [definition.feature_id for definition in definitions]
        )

        results = []
        for definition in definitions:
            last_success = last_successes.get(definition.feature_id)
            interval = timedelta(seconds=definition.refresh_interval_seconds)
            if last_success is not None and now - last_success < interval:
                continue

            try:
                results.append(await self.materialize(definition.feature_id, now=now))
            except RunLockHeld as e:
                logger.info(
                    "Batch run skipped; lock held",
                    feature_id=definition.feature_id,
                    holder_run_id=e.holder_run_id,
                )
                results.append(
                    MaterializationResult(
                        feature_id=definition.feature_id,
                        status=RunStatus.RUNNING,
                        run_id=e.holder_run_id,
                        error=str(e),
                    )
                )
            except FeatureStoreError as e:
                results.append(
                    MaterializationResult(
                        feature_id=definition.feature_id,
                        run_id=getattr(e, "run_id", None),
                        status=RunStatus.FAILED,
                        error=str(e),
                    )
                )
            except (SQLAlchemyError, OSError) as e:
                logger.error(
                    "Batch run aborted",
                    feature_id=definition.feature_id,
                    error=str(e),
                )
                results.append(
                    MaterializationResult(
                        feature_id=definition.feature_id,
                        status=RunStatus.FAILED,
                        error=str(e),
                    )
                )

        logger.info(
            "Due batch features processed",
            candidates=len(definitions),
            runs=len(results),
            failed=sum(1 for r in results if r.status == RunStatus.FAILED),
        )
        return results
