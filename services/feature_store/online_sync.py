"""Online sync: fold newly appended offline facts into online vectors."""

import zlib
from datetime import datetime, timedelta

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from libs.observability.metrics import FeatureStoreMetrics, get_metrics
from libs.persistence import DatabaseManager

from .config import FeatureStoreSettings, get_feature_store_settings
from .exceptions import FeatureStoreError, ValidationError
from .models import FeatureFact, OnlineSyncCursor, utcnow
from .offline_store import OfflineStore
from .online_store import OnlineStore
from .registry import FeatureRegistry

logger = structlog.get_logger(__name__)


def shard_of(entity_id: str, shard_count: int) -> int:
    """Stable shard assignment for an entity id."""
    return zlib.crc32(entity_id.encode("utf-8")) % shard_count


class OnlineSync:
    """Per-feature sync from the offline log to the online store.

    Each feature keeps a cursor on the offline insertion sequence, so
    every appended fact is considered exactly once per shard.
    """

    def __init__(
        self,
        db_manager: DatabaseManager,
        registry: FeatureRegistry,
        offline_store: OfflineStore,
        online_store: OnlineStore,
        settings: FeatureStoreSettings | None = None,
        metrics: FeatureStoreMetrics | None = None,
    ) -> None:
        self.db_manager = db_manager
        self.registry = registry
        self.offline_store = offline_store
        self.online_store = online_store
        self.settings = settings or get_feature_store_settings()
        self.metrics = metrics or get_metrics()

    async def sync_feature(
        self,
        feature_id: str,
        shard: int = 0,
        shard_count: int = 1,
        now: datetime | None = None,
    ) -> int:
        """Fold facts appended since the cursor. Returns vectors updated."""
        if shard_count < 1 or not 0 <= shard < shard_count:
            raise ValidationError(f"invalid shard {shard} of {shard_count}")

        await self.registry.get(feature_id)
        now = now or utcnow()
        batch_size = self.settings.online_sync_batch_size
        last_fact_id = await self._load_cursor(feature_id, shard, shard_count)
        updated = 0

        while True:
            facts = await self.offline_store.facts_after(
                feature_id, last_fact_id, limit=batch_size
            )
            if not facts:
                break

            for fact in self._latest_per_entity(facts, shard, shard_count):
                outcome = await self.online_store.merge(
                    fact.entity_id,
                    fact.entity_type,
                    {feature_id: (fact.value, fact.as_of)},
                    now=now,
                )
                if outcome.applied:
                    updated += 1

            last_fact_id = facts[-1].id
            await self._save_cursor(feature_id, shard, shard_count, last_fact_id, now)
            if len(facts) < batch_size:
                break

        await self._save_cursor(feature_id, shard, shard_count, last_fact_id, now)

        if updated:
            self.metrics.record_online_sync(feature_id, updated)
            logger.info(
                "Online sync completed",
                feature_id=feature_id,
                shard=shard,
                shard_count=shard_count,
                vectors=updated,
                cursor=last_fact_id,
            )
        return updated

    async def sync_due(self, now: datetime | None = None) -> dict[str, int]:
        """Sync every active feature whose sync interval has elapsed."""
        now = now or utcnow()
        definitions = await self.registry.active_definitions()
        last_synced = await self._last_synced()

        results: dict[str, int] = {}
        for definition in definitions:
            interval = timedelta(
                seconds=definition.online_sync_interval_seconds
                or self.settings.default_online_sync_interval_seconds
            )
            synced_at = last_synced.get(definition.feature_id)
            if synced_at is not None and now - synced_at < interval:
                continue

            try:
                results[definition.feature_id] = await self.sync_feature(
                    definition.feature_id, now=now
                )
            except (FeatureStoreError, SQLAlchemyError, OSError) as e:
                logger.error(
                    "Online sync failed",
                    feature_id=definition.feature_id,
                    error=str(e),
                )
        return results

    @staticmethod
    def _latest_per_entity(
        facts: list[FeatureFact], shard: int, shard_count: int
    ) -> list[FeatureFact]:
        latest: dict[tuple[str, str], FeatureFact] = {}
        for fact in facts:
            if shard_count > 1 and shard_of(fact.entity_id, shard_count) != shard:
                continue
            key = (fact.entity_id, fact.entity_type)
            current = latest.get(key)
            if current is None or (fact.as_of, fact.id) >= (current.as_of, current.id):
                latest[key] = fact
        return list(latest.values())

    async def _load_cursor(self, feature_id: str, shard: int, shard_count: int) -> int:
        async with self.db_manager.get_session() as session:
            result = await session.execute(
                select(OnlineSyncCursor.last_fact_id).where(
                    OnlineSyncCursor.feature_id == feature_id,
                    OnlineSyncCursor.shard == shard,
                    OnlineSyncCursor.shard_count == shard_count,
                )
            )
            return result.scalar_one_or_none() or 0

    async def _save_cursor(
        self,
        feature_id: str,
        shard: int,
        shard_count: int,
        last_fact_id: int,
        now: datetime,
    ) -> None:
        async with self.db_manager.get_session() as session:
            result = await session.execute(
                select(OnlineSyncCursor).where(
                    OnlineSyncCursor.feature_id == feature_id,
                    OnlineSyncCursor.shard == shard,
                    OnlineSyncCursor.shard_count == shard_count,
                )
            )
            cursor = result.scalar_one_or_none()
            if cursor is None:
                session.add(
                    OnlineSyncCursor(
                        feature_id=feature_id,
                        shard=shard,
                        shard_count=shard_count,
                        last_fact_id=last_fact_id,
                        last_synced_at=now,
                    )
                )
            else:
                cursor.last_fact_id = max(cursor.last_fact_id, last_fact_id)
                cursor.last_synced_at = now

    async def _last_synced(self) -> dict[str, datetime]:
        async with self.db_manager.get_session() as session:
            result = await session.execute(
                select(OnlineSyncCursor.feature_id, OnlineSyncCursor.last_synced_at).where(
                    OnlineSyncCursor.shard_count == 1
                )
            )
            return {
                feature_id: synced_at
                for feature_id, synced_at in result.all()
                if synced_at is not None
            }
