"""Point-in-time retrieval over the offline store.

For each requested (entity, timestamp) and each feature, the fact with the
greatest ``as_of <= timestamp`` wins; equal ``as_of`` values resolve to the
highest insertion id. Facts after the timestamp are never returned.
"""

from bisect import bisect_right
from collections.abc import Sequence
from datetime import datetime
from typing import Any

import pandas as pd
import structlog
from sqlalchemy.exc import SQLAlchemyError

from libs.observability.metrics import FeatureStoreMetrics, get_metrics

from .config import FeatureStoreSettings, get_feature_store_settings
from .exceptions import ValidationError
from .models import (
    EntityTimestamp,
    FeatureFact,
    HistoricalFeatureRow,
    as_naive_utc,
)
from .offline_store import OfflineStore
from .registry import FeatureRegistry

logger = structlog.get_logger(__name__)

PairLike = EntityTimestamp | tuple[str, datetime] | dict[str, Any]

# (entity_id, feature_id) -> (ascending as_of list, values in the same order)
FactIndex = dict[tuple[str, str], tuple[list[datetime], list[Any]]]


def _normalize_pair(pair: PairLike) -> tuple[str, datetime]:
    if isinstance(pair, EntityTimestamp):
        entity_id, timestamp = pair.entity_id, pair.timestamp
    elif isinstance(pair, dict):
        entity_id = pair.get("entity_id")
        timestamp = pair.get("timestamp", pair.get("as_of"))
    elif isinstance(pair, Sequence) and not isinstance(pair, str) and len(pair) == 2:
        entity_id, timestamp = pair
    else:
        raise ValidationError(f"unrecognized entity/timestamp pair: {pair!r}")

    if not isinstance(entity_id, str) or not entity_id:
        raise ValidationError(f"invalid entity id: {entity_id!r}")
    if isinstance(timestamp, str):
        try:
            timestamp = datetime.fromisoformat(timestamp)
        except ValueError as e:
            raise ValidationError(f"invalid timestamp: {timestamp!r}") from e
    if not isinstance(timestamp, datetime):
        raise ValidationError(f"invalid timestamp: {timestamp!r}")
    return entity_id, as_naive_utc(timestamp)


def _raw_entity_id(pair: Any) -> str:
    if isinstance(pair, dict):
        raw = pair.get("entity_id")
    elif isinstance(pair, tuple | list) and pair:
        raw = pair[0]
    else:
        raw = getattr(pair, "entity_id", None)
    return str(raw) if raw else ""


def _index_facts(facts: list[FeatureFact]) -> FactIndex:
    index: FactIndex = {}
    # facts arrive ordered by entity, feature, as_of, id
    for fact in facts:
        as_ofs, values = index.setdefault((fact.entity_id, fact.feature_id), ([], []))
        as_ofs.append(fact.as_of)
        values.append(fact.value)
    return index


def _row_for(
    entity_id: str, timestamp: datetime, feature_ids: list[str], index: FactIndex
) -> HistoricalFeatureRow:
    values: dict[str, Any] = {}
    missing: list[str] = []
    for feature_id in feature_ids:
        entry = index.get((entity_id, feature_id))
        position = bisect_right(entry[0], timestamp) - 1 if entry else -1
        if position < 0:
            missing.append(feature_id)
        else:
            values[feature_id] = entry[1][position]
    return HistoricalFeatureRow(
        entity_id=entity_id,
        as_of=timestamp,
        values=values,
        missing_features=missing,
    )


class PointInTimeRetriever:
    """As-of join of entity/timestamp pairs against the offline store."""

    def __init__(
        self,
        registry: FeatureRegistry,
        offline_store: OfflineStore,
        settings: FeatureStoreSettings | None = None,
        metrics: FeatureStoreMetrics | None = None,
    ) -> None:
        self.registry = registry
        self.offline_store = offline_store
        self.settings = settings or get_feature_store_settings()
        self.metrics = metrics or get_metrics()

    async def retrieve(
        self, pairs: Sequence[PairLike], feature_set_id: str
    ) -> list[HistoricalFeatureRow]:
        """One row per input pair, in input order.

        Invalid pairs and failed chunk queries mark only their own rows.

        Raises:
            NotFound: the feature set or a pinned member is missing
        """
        definitions = await self.registry.resolve_set(feature_set_id)
        feature_ids = [definition.feature_id for definition in definitions]
        return await self.retrieve_features(pairs, feature_ids)

    async def retrieve_features(
        self, pairs: Sequence[PairLike], feature_ids: list[str]
    ) -> list[HistoricalFeatureRow]:
        rows: list[HistoricalFeatureRow | None] = [None] * len(pairs)
        by_entity: dict[str, list[tuple[int, datetime]]] = {}

        for position, pair in enumerate(pairs):
            try:
                entity_id, timestamp = _normalize_pair(pair)
            except ValidationError as e:
                rows[position] = HistoricalFeatureRow(
                    entity_id=_raw_entity_id(pair),
                    missing_features=list(feature_ids),
                    error=str(e),
                )
                continue
            by_entity.setdefault(entity_id, []).append((position, timestamp))

        entity_ids = list(by_entity)
        chunk_size = self.settings.retrieval_chunk_size
        for start in range(0, len(entity_ids), chunk_size):
            chunk = entity_ids[start : start + chunk_size]
            until = max(ts for entity_id in chunk for _, ts in by_entity[entity_id])

            try:
                facts = await self.offline_store.facts_for(chunk, feature_ids, until)
            except SQLAlchemyError as e:
                logger.error(
                    "Point-in-time chunk failed",
                    entities=len(chunk),
                    error=str(e),
                )
                for entity_id in chunk:
                    for position, timestamp in by_entity[entity_id]:
                        rows[position] = HistoricalFeatureRow(
                            entity_id=entity_id,
                            as_of=timestamp,
                            missing_features=list(feature_ids),
                            error=f"retrieval failed: {e}",
                        )
                continue

            index = _index_facts(facts)
            for entity_id in chunk:
                for position, timestamp in by_entity[entity_id]:
                    rows[position] = _row_for(entity_id, timestamp, feature_ids, index)

        complete = sum(1 for row in rows if row is not None and row.is_complete)
        self.metrics.record_historical_rows(complete, len(rows) - complete)
        logger.info(
            "Point-in-time retrieval completed",
            pairs=len(rows),
            features=len(feature_ids),
            incomplete=len(rows) - complete,
        )
        return rows  # type: ignore[return-value]


def to_dataframe(
    rows: list[HistoricalFeatureRow], feature_ids: list[str] | None = None
) -> pd.DataFrame:
    """Tabular form: absent values are ``pd.NA``, stored nulls are ``None``."""
    if feature_ids is None:
        feature_ids = []
        for row in rows:
            for feature_id in [*row.values, *row.missing_features]:
                if feature_id not in feature_ids:
                    feature_ids.append(feature_id)

    columns: dict[str, pd.Series] = {
        "entity_id": pd.Series([row.entity_id for row in rows], dtype=object),
        "as_of": pd.to_datetime(pd.Series([row.as_of for row in rows])),
    }
    for feature_id in feature_ids:
        columns[feature_id] = pd.Series(
            [
                row.values[feature_id] if feature_id in row.values else pd.NA
                for row in rows
            ],
            dtype=object,
        )
    columns["missing_features"] = pd.Series(
        [list(row.missing_features) for row in rows], dtype=object
    )
    columns["error"] = pd.Series([row.error for row in rows], dtype=object)
    return pd.DataFrame(columns)
