"""Append-only offline fact store.

Facts are never updated or deleted; corrections are new facts with a later
``as_of``. Readers need no locks.
"""

import json
from collections.abc import Iterable
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import insert, select
from sqlalchemy.ext.asyncio import AsyncSession

from libs.persistence import DatabaseManager

from .models import FeatureFact, FeatureValue, NewFact, as_naive_utc

logger = structlog.get_logger(__name__)


def encode_value(value: Any) -> str:
    """Serialize a value; ``None`` becomes JSON null (a stored null)."""
    return json.dumps(value)


def decode_value(raw: str) -> Any:
    return json.loads(raw)


def _to_fact(row: FeatureValue) -> FeatureFact:
    return FeatureFact(
        id=row.id,
        entity_id=row.entity_id,
        entity_type=row.entity_type,
        feature_id=row.feature_id,
        feature_version=row.feature_version,
        value=decode_value(row.value),
        as_of=row.as_of,
        run_id=row.run_id,
    )


class OfflineStore:
    """Access layer over the ``feature_values`` fact log."""

    def __init__(self, db_manager: DatabaseManager) -> None:
        self.db_manager = db_manager

    async def append(self, session: AsyncSession, facts: Iterable[NewFact]) -> int:
        """Insert facts inside the caller's transaction."""
        rows = [
            {
                "entity_id": fact.entity_id,
                "entity_type": fact.entity_type,
                "feature_id": fact.feature_id,
                "feature_version": fact.feature_version,
                "value": encode_value(fact.value),
                "as_of": as_naive_utc(fact.as_of),
                "run_id": fact.run_id,
            }
            for fact in facts
        ]
        if not rows:
            return 0

        await session.execute(insert(FeatureValue), rows)
        return len(rows)

    async def append_facts(self, facts: Iterable[NewFact]) -> int:
        """Insert facts in their own transaction."""
        async with self.db_manager.get_session() as session:
            return await self.append(session, facts)

    async def facts_for(
        self,
        entity_ids: list[str],
        feature_ids: list[str],
        until: datetime | None = None,
    ) -> list[FeatureFact]:
        """Facts for the given entities and features, oldest first.

        Ordered by entity, feature, ``as_of`` and insertion sequence.
        """
        if not entity_ids or not feature_ids:
            return []

        stmt = select(FeatureValue).where(
            FeatureValue.entity_id.in_(entity_ids),
            FeatureValue.feature_id.in_(feature_ids),
        )
        if until is not None:
            stmt = stmt.where(FeatureValue.as_of <= as_naive_utc(until))
        stmt = stmt.order_by(
            FeatureValue.entity_id,
            FeatureValue.feature_id,
            FeatureValue.as_of,
            FeatureValue.id,
        )

        async with self.db_manager.get_session() as session:
            result = await session.execute(stmt)
            return [_to_fact(row) for row in result.scalars().all()]

    async def facts_after(
        self, feature_id: str, after_id: int, limit: int = 5000
    ) -> list[FeatureFact]:
        """Facts of one feature appended after insertion id ``after_id``."""
        stmt = (
            select(FeatureValue)
            .where(FeatureValue.feature_id == feature_id, FeatureValue.id > after_id)
            .order_by(FeatureValue.id)
            .limit(limit)
        )
        async with self.db_manager.get_session() as session:
            result = await session.execute(stmt)
            return [_to_fact(row) for row in result.scalars().all()]

    async def facts_between(
        self, feature_id: str, start: datetime, end: datetime
    ) -> list[FeatureFact]:
        """Facts of one feature with ``start <= as_of < end``."""
        stmt = (
            select(FeatureValue)
            .where(
                FeatureValue.feature_id == feature_id,
                FeatureValue.as_of >= as_naive_utc(start),
                FeatureValue.as_of < as_naive_utc(end),
            )
            .order_by(FeatureValue.as_of, FeatureValue.id)
        )
        async with self.db_manager.get_session() as session:
            result = await session.execute(stmt)
            return [_to_fact(row) for row in result.scalars().all()]

    async def latest_fact(
        self, entity_id: str, feature_id: str, as_of: datetime | None = None
    ) -> FeatureFact | None:
        """Latest fact at or before ``as_of`` (ties: highest insertion id)."""
        stmt = select(FeatureValue).where(
            FeatureValue.entity_id == entity_id,
            FeatureValue.feature_id == feature_id,
        )
        if as_of is not None:
            stmt = stmt.where(FeatureValue.as_of <= as_naive_utc(as_of))
        stmt = stmt.order_by(FeatureValue.as_of.desc(), FeatureValue.id.desc()).limit(1)

        async with self.db_manager.get_session() as session:
            result = await session.execute(stmt)
            row = result.scalar_one_or_none()
        return _to_fact(row) if row is not None else None
