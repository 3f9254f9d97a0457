"""Online store: one mutable feature vector per entity."""

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from libs.observability.metrics import FeatureStoreMetrics, get_metrics
from libs.persistence import DatabaseManager

from .cache import FeatureCache
from .config import FeatureStoreSettings, get_feature_store_settings
from .exceptions import NotFound, StaleWrite, WriteConflict
from .models import OnlineFeatureResponse, OnlineFeatureVector, as_naive_utc, utcnow

logger = structlog.get_logger(__name__)


class _RevisionConflict(Exception):
    pass


@dataclass
class MergeOutcome:
    """Result of folding updates into one entity's vector."""

    entity_id: str
    entity_type: str
    applied: list[str] = field(default_factory=list)
    stale: list[StaleWrite] = field(default_factory=list)
    revision: int | None = None


def _to_document(row: OnlineFeatureVector) -> dict[str, Any]:
    return {
        "entity_id": row.entity_id,
        "entity_type": row.entity_type,
        "features": json.loads(row.feature_vector),
        "feature_timestamps": json.loads(row.feature_timestamps),
        "last_updated": row.last_updated.isoformat(),
        "revision": row.revision,
    }


class OnlineStore:
    """Latest-value feature vectors keyed by entity."""

    def __init__(
        self,
        db_manager: DatabaseManager,
        cache: FeatureCache | None = None,
        settings: FeatureStoreSettings | None = None,
        metrics: FeatureStoreMetrics | None = None,
    ) -> None:
        self.db_manager = db_manager
        self.settings = settings or get_feature_store_settings()
        self.cache = cache or FeatureCache(
            redis_url=self.settings.redis_url,
            default_ttl=self.settings.cache_ttl_seconds,
        )
        self.metrics = metrics or get_metrics()

    async def get_online_features(
        self,
        entity_id: str,
        entity_type: str,
        feature_ids: list[str] | None = None,
    ) -> OnlineFeatureResponse:
        """Current vector of an entity.

        Features never synced for the entity are absent from the mapping;
        nothing is zero-filled.

        Raises:
            NotFound: no vector exists for the entity
        """
        document = await self.cache.get_vector(entity_type, entity_id)
        outcome = "hit"
        if document is not None and not await self._is_current(
            entity_id, entity_type, document
        ):
            document = None

        if document is None:
            async with self.db_manager.get_session() as session:
                result = await session.execute(
                    select(OnlineFeatureVector).where(
                        OnlineFeatureVector.entity_id == entity_id,
                        OnlineFeatureVector.entity_type == entity_type,
                    )
                )
                row = result.scalar_one_or_none()

            if row is None:
                self.metrics.record_online_lookup(entity_type, "not_found")
                raise NotFound(f"no online features for {entity_type} {entity_id}")

            document = _to_document(row)
            await self.cache.set_vector(entity_type, entity_id, document)
            outcome = "miss"

        self.metrics.record_online_lookup(entity_type, outcome)
        response = OnlineFeatureResponse.model_validate(document)

        if feature_ids is not None:
            response.features = {
                feature_id: response.features[feature_id]
                for feature_id in feature_ids
                if feature_id in response.features
            }
            response.feature_timestamps = {
                feature_id: response.feature_timestamps[feature_id]
                for feature_id in feature_ids
                if feature_id in response.feature_timestamps
            }
        return response

    async def _is_current(
        self, entity_id: str, entity_type: str, document: dict[str, Any]
    ) -> bool:
        # Writers in other processes cannot invalidate a local cache
        async with self.db_manager.get_session() as session:
            result = await session.execute(
                select(OnlineFeatureVector.revision).where(
                    OnlineFeatureVector.entity_id == entity_id,
                    OnlineFeatureVector.entity_type == entity_type,
                )
            )
            revision = result.scalar_one_or_none()
        return revision is not None and revision == document.get("revision")

    async def merge(
        self,
        entity_id: str,
        entity_type: str,
        updates: dict[str, tuple[Any, datetime]],
        now: datetime | None = None,
    ) -> MergeOutcome:
        """Fold ``{feature_id: (value, as_of)}`` into the entity's vector.

        An update older than the stored timestamp for its feature is a
        stale write: ignored, logged and counted. Equal timestamps apply,
        so the later insertion wins when updates arrive in sequence order.

        Raises:
            WriteConflict: concurrent writers exhausted the retries
        """
        for attempt in range(1, self.settings.online_write_retries + 1):
            try:
                outcome = await self._merge_once(entity_id, entity_type, updates, now)
            except (IntegrityError, _RevisionConflict):
                logger.debug(
                    "Online write conflict, retrying",
                    entity_id=entity_id,
                    entity_type=entity_type,
                    attempt=attempt,
                )
                continue

            for stale in outcome.stale:
                self.metrics.record_stale_write(stale.feature_id)
                logger.info(
                    "Stale online write ignored",
                    entity_id=entity_id,
                    entity_type=entity_type,
                    feature_id=stale.feature_id,
                )
            if outcome.applied:
                await self.cache.invalidate_vector(entity_type, entity_id)
            return outcome

        raise WriteConflict(
            f"online vector {entity_type} {entity_id} kept changing after "
            f"{self.settings.online_write_retries} attempts"
        )

    async def _merge_once(
        self,
        entity_id: str,
        entity_type: str,
        updates: dict[str, tuple[Any, datetime]],
        now: datetime | None,
    ) -> MergeOutcome:
        outcome = MergeOutcome(entity_id=entity_id, entity_type=entity_type)

        async with self.db_manager.get_session() as session:
            result = await session.execute(
                select(OnlineFeatureVector).where(
                    OnlineFeatureVector.entity_id == entity_id,
                    OnlineFeatureVector.entity_type == entity_type,
                )
            )
            row = result.scalar_one_or_none()

            vector = json.loads(row.feature_vector) if row is not None else {}
            stamps = json.loads(row.feature_timestamps) if row is not None else {}

            for feature_id, (value, as_of) in updates.items():
                as_of = as_naive_utc(as_of)
                stored = stamps.get(feature_id)
                if stored is not None and as_of < datetime.fromisoformat(stored):
                    outcome.stale.append(StaleWrite(entity_id, feature_id))
                    continue
                vector[feature_id] = value
                stamps[feature_id] = as_of.isoformat()
                outcome.applied.append(feature_id)

            if not outcome.applied:
                outcome.revision = row.revision if row is not None else None
                return outcome

            last_updated = now or utcnow()
            if row is None:
                session.add(
                    OnlineFeatureVector(
                        entity_id=entity_id,
                        entity_type=entity_type,
                        feature_vector=json.dumps(vector),
                        feature_timestamps=json.dumps(stamps),
                        last_updated=last_updated,
                        revision=1,
                    )
                )
                await session.flush()
                outcome.revision = 1
            else:
                result = await session.execute(
                    update(OnlineFeatureVector)
                    .where(
                        OnlineFeatureVector.id == row.id,
                        OnlineFeatureVector.revision == row.revision,
                    )
                    .values(
                        feature_vector=json.dumps(vector),
                        feature_timestamps=json.dumps(stamps),
                        last_updated=last_updated,
                        revision=row.revision + 1,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise _RevisionConflict()
                outcome.revision = row.revision + 1

        return outcome
