"""Streaming materializer for short-window features.

Each tick reads the change feed from the committed offset, recomputes the
window fresh from the raw source for the affected entities, appends facts,
and only then commits the new offset. A crash between the two replays the
same events on the next tick; duplicate facts are harmless because
retrieval always takes the latest ``as_of``.
"""

import asyncio
import time
from collections.abc import Callable
from datetime import datetime
from typing import Any, Protocol

import structlog
from pydantic import BaseModel, Field
from sqlalchemy import Integer, column, literal_column, select, table
from sqlalchemy.exc import SQLAlchemyError

from libs.observability.metrics import FeatureStoreMetrics, get_metrics
from libs.persistence import DatabaseManager

from .config import FeatureStoreSettings, get_feature_store_settings
from .exceptions import ComputeFailure, FeatureStoreError, RunLockHeld
from .expressions import evaluate
from .models import (
    ComputationMode,
    FeatureDefinitionResponse,
    MaterializationResult,
    NewFact,
    RunStatus,
    StreamOffset,
    coerce_value,
    utcnow,
)
from .offline_store import OfflineStore
from .registry import FeatureRegistry
from .runs import RunHandle, RunLockManager

logger = structlog.get_logger(__name__)


class ChangeEvent(BaseModel):
    """One row-insert event from the raw source."""

    entity_id: str = Field(..., description="Entity the new row belongs to")
    payload: dict[str, Any] = Field(default_factory=dict, description="Row values")
    sequence_offset: int = Field(..., description="Monotonic feed position")


class ChangeFeed(Protocol):
    """Ordered, replayable feed of raw row inserts."""

    async def read(
        self, after_offset: int, limit: int, timeout: float
    ) -> list[ChangeEvent]:
        """Events after ``after_offset``, waiting at most ``timeout`` seconds."""
        ...


class TableChangeFeed:
    """Change feed over a raw table with an increasing sequence column."""

    def __init__(
        self,
        source_db: DatabaseManager,
        table_name: str,
        entity_column: str,
        sequence_column: str = "id",
        poll_interval: float = 0.2,
    ) -> None:
        self.source_db = source_db
        self.table_name = table_name
        self.entity_column = entity_column
        self.sequence_column = sequence_column
        self.poll_interval = poll_interval

    async def read(
        self, after_offset: int, limit: int, timeout: float
    ) -> list[ChangeEvent]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while True:
            events = await self._fetch(after_offset, limit)
            remaining = deadline - loop.time()
            if events or remaining <= 0:
                return events
            await asyncio.sleep(min(self.poll_interval, remaining))

    async def _fetch(self, after_offset: int, limit: int) -> list[ChangeEvent]:
        schema, _, name = self.table_name.rpartition(".")
        src = table(name, column(self.sequence_column, Integer), schema=schema or None)
        sequence = src.c[self.sequence_column]
        stmt = (
            select(literal_column("*"))
            .select_from(src)
            .where(sequence > after_offset)
            .order_by(sequence)
            .limit(limit)
        )

        async with self.source_db.get_session() as session:
            result = await session.execute(stmt)
            rows = [dict(row._mapping) for row in result]

        return [
            ChangeEvent(
                entity_id=str(row[self.entity_column]),
                payload=row,
                sequence_offset=int(row[self.sequence_column]),
            )
            for row in rows
            if row.get(self.entity_column) is not None
        ]


FeedFactory = Callable[[FeatureDefinitionResponse], ChangeFeed]


class StreamingMaterializer:
    """Maintain STREAMING features from a change feed, one consumer per feature."""

    def __init__(
        self,
        db_manager: DatabaseManager,
        registry: FeatureRegistry,
        offline_store: OfflineStore,
        locks: RunLockManager,
        source_db: DatabaseManager | None = None,
        feed_factory: FeedFactory | None = None,
        settings: FeatureStoreSettings | None = None,
        metrics: FeatureStoreMetrics | None = None,
    ) -> None:
        self.db_manager = db_manager
        self.registry = registry
        self.offline_store = offline_store
        self.locks = locks
        self.source_db = source_db or db_manager
        self.settings = settings or get_feature_store_settings()
        self.metrics = metrics or get_metrics()
        self.feed_factory = feed_factory or self._table_feed

    def _table_feed(self, definition: FeatureDefinitionResponse) -> ChangeFeed:
        expression = definition.expression
        return TableChangeFeed(
            self.source_db,
            expression.source_table,
            expression.entity_column,
            poll_interval=self.settings.streaming_poll_interval_seconds,
        )

    async def tick(self, now: datetime | None = None) -> list[MaterializationResult]:
        """Process every active STREAMING feature once, independently."""
        definitions = await self.registry.active_definitions(ComputationMode.STREAMING)

        results = []
        for definition in definitions:
            try:
                results.append(await self.process_feature(definition, now=now))
            except RunLockHeld as e:
                logger.debug(
                    "Streaming tick skipped; lock held",
                    feature_id=definition.feature_id,
                    holder_run_id=e.holder_run_id,
                )
                results.append(
                    MaterializationResult(
                        feature_id=definition.feature_id,
                        run_id=e.holder_run_id,
                        status=RunStatus.RUNNING,
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
                    "Streaming tick aborted",
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
        return results

    async def process_feature(
        self, definition: FeatureDefinitionResponse, now: datetime | None = None
    ) -> MaterializationResult:
        """Run one tick for one feature."""
        feature_id = definition.feature_id
        handle = await self.locks.acquire(
            feature_id, ComputationMode.STREAMING, definition.version, now=now
        )
        as_of = handle.started_at
        started = time.perf_counter()

        try:
            offset = await self.committed_offset(feature_id)
            events = await self.feed_factory(definition).read(
                offset,
                self.settings.streaming_batch_size,
                self.settings.streaming_feed_timeout_seconds,
            )

            written = 0
            if events:
                entity_ids = sorted({event.entity_id for event in events})
                values = await evaluate(
                    self.source_db, definition.expression, as_of, entity_ids
                )
                facts = [
                    NewFact(
                        entity_id=entity_id,
                        entity_type=definition.entity_type,
                        feature_id=feature_id,
                        feature_version=definition.version,
                        value=coerce_value(definition.value_type, values[entity_id]),
                        as_of=as_of,
                        run_id=handle.run_id,
                    )
                    for entity_id in entity_ids
                    if entity_id in values
                ]
                written = await self.offline_store.append_facts(facts)
                new_offset = max(event.sequence_offset for event in events)
                await self._commit_offset(feature_id, new_offset, handle, written)
            elif not await self.locks.complete(handle, 0):
                raise ComputeFailure(feature_id, "run was finalized early", handle.run_id)
        except Exception as e:
            await self.locks.fail(handle, str(e))
            self.metrics.record_run(
                feature_id,
                "STREAMING",
                RunStatus.FAILED.value,
                time.perf_counter() - started,
            )
            logger.error(
                "Streaming tick failed",
                feature_id=feature_id,
                run_id=handle.run_id,
                error=str(e),
            )
            if isinstance(e, ComputeFailure):
                raise
            raise ComputeFailure(feature_id, str(e), handle.run_id) from e

        duration = time.perf_counter() - started
        self.metrics.record_run(
            feature_id, "STREAMING", RunStatus.SUCCESS.value, duration
        )
        if written:
            self.metrics.record_facts_written(feature_id, written)
            logger.info(
                "Streaming tick completed",
                feature_id=feature_id,
                run_id=handle.run_id,
                events=len(events),
                rows=written,
            )

        return MaterializationResult(
            feature_id=feature_id,
            run_id=handle.run_id,
            status=RunStatus.SUCCESS,
            rows_processed=written,
            as_of=as_of,
        )

    async def committed_offset(self, consumer_id: str) -> int:
        async with self.db_manager.get_session() as session:
            result = await session.execute(
                select(StreamOffset.committed_offset).where(
                    StreamOffset.consumer_id == consumer_id
                )
            )
            offset = result.scalar_one_or_none()
        return offset or 0

    async def _commit_offset(
        self, consumer_id: str, offset: int, handle: RunHandle, rows: int
    ) -> None:
        """Commit the offset and finish the run in one transaction."""
        async with self.db_manager.get_session() as session:
            result = await session.execute(
                select(StreamOffset).where(StreamOffset.consumer_id == consumer_id)
            )
            record = result.scalar_one_or_none()
            if record is None:
                session.add(
                    StreamOffset(
                        consumer_id=consumer_id,
                        committed_offset=offset,
                        committed_at=utcnow(),
                    )
                )
            else:
                record.committed_offset = max(record.committed_offset, offset)
                record.committed_at = utcnow()

            if not await self.locks.complete(handle, rows, session=session):
                raise ComputeFailure(
                    consumer_id, "run was finalized before offset commit", handle.run_id
                )

        self.metrics.record_offset_commit(consumer_id, offset)
        logger.debug("Stream offset committed", consumer_id=consumer_id, offset=offset)
