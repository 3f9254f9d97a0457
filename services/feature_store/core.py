"""Feature store service facade."""

from collections.abc import Sequence
from typing import Any

import pandas as pd
import structlog

from libs.observability.metrics import FeatureStoreMetrics, get_metrics
from libs.persistence import DatabaseManager

from .batch import BatchMaterializer
from .cache import FeatureCache
from .config import FeatureStoreSettings, get_feature_store_settings
from .models import HistoricalFeatureRow, OnlineFeatureResponse
from .monitoring import FeatureMonitor
from .offline_store import OfflineStore
from .online_store import OnlineStore
from .online_sync import OnlineSync
from .registry import FeatureRegistry
from .retrieval import PairLike, PointInTimeRetriever, to_dataframe
from .runs import RunLockManager
from .statistics import StatisticsEngine
from .streaming import FeedFactory, StreamingMaterializer
from .training import TrainingDatasetBuilder

logger = structlog.get_logger(__name__)


class FeatureStoreService:
    """Wires the feature store components over shared durable stores.

    ``db_manager`` holds the engine's own tables. ``source_db`` is the raw
    source that expressions and label queries read; it defaults to the
    engine database.
    """

    def __init__(
        self,
        db_manager: DatabaseManager,
        source_db: DatabaseManager | None = None,
        settings: FeatureStoreSettings | None = None,
        metrics: FeatureStoreMetrics | None = None,
        cache: FeatureCache | None = None,
        feed_factory: FeedFactory | None = None,
    ) -> None:
        self.db_manager = db_manager
        self.source_db = source_db or db_manager
        self.settings = settings or get_feature_store_settings()
        self.metrics = metrics or get_metrics()
        self.cache = cache or FeatureCache(
            redis_url=self.settings.redis_url,
            default_ttl=self.settings.cache_ttl_seconds,
        )

        self.registry = FeatureRegistry(db_manager)
        self.offline_store = OfflineStore(db_manager)
        self.locks = RunLockManager(db_manager, self.settings, self.metrics)
        self.batch = BatchMaterializer(
            db_manager,
            self.registry,
            self.offline_store,
            self.locks,
            source_db=self.source_db,
            metrics=self.metrics,
        )
        self.streaming = StreamingMaterializer(
            db_manager,
            self.registry,
            self.offline_store,
            self.locks,
            source_db=self.source_db,
            feed_factory=feed_factory,
            settings=self.settings,
            metrics=self.metrics,
        )
        self.online_store = OnlineStore(
            db_manager, self.cache, self.settings, self.metrics
        )
        self.online_sync = OnlineSync(
            db_manager,
            self.registry,
            self.offline_store,
            self.online_store,
            self.settings,
            self.metrics,
        )
        self.retriever = PointInTimeRetriever(
            self.registry, self.offline_store, self.settings, self.metrics
        )
        self.training = TrainingDatasetBuilder(
            db_manager,
            self.registry,
            self.retriever,
            source_db=self.source_db,
            settings=self.settings,
        )
        self.statistics = StatisticsEngine(db_manager, self.registry, self.offline_store)
        self.monitor = FeatureMonitor(
            db_manager, self.registry, self.locks, self.settings, self.metrics
        )

    async def get_online_features(
        self,
        entity_id: str,
        entity_type: str,
        feature_ids: list[str] | None = None,
    ) -> OnlineFeatureResponse:
        """Low-latency lookup of an entity's current feature vector."""
        return await self.online_store.get_online_features(
            entity_id, entity_type, feature_ids
        )

    async def get_historical_features(
        self,
        pairs: Sequence[PairLike],
        feature_set_id: str,
        as_dataframe: bool = False,
    ) -> list[HistoricalFeatureRow] | pd.DataFrame:
        """Point-in-time correct feature values for entity/timestamp pairs."""
        rows = await self.retriever.retrieve(pairs, feature_set_id)
        if not as_dataframe:
            return rows

        definitions = await self.registry.resolve_set(feature_set_id)
        return to_dataframe(rows, [definition.feature_id for definition in definitions])

    async def health_check(self) -> dict[str, Any]:
        database_ok = await self.db_manager.health_check()
        source_ok = (
            database_ok
            if self.source_db is self.db_manager
            else await self.source_db.health_check()
        )
        return {
            "status": "healthy" if database_ok and source_ok else "unhealthy",
            "database": database_ok,
            "source_database": source_ok,
            "cache": await self.cache.health_check(),
        }

    async def close(self) -> None:
        await self.cache.close()
        if self.source_db is not self.db_manager:
            await self.source_db.close()
        logger.info("Feature store service closed")
