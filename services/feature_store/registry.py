"""Feature registry: versioned definitions, feature sets and lineage."""

import json
from datetime import datetime
from typing import Any

import structlog
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import and_, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from libs.persistence import DatabaseManager

from .exceptions import NotFound, ValidationError
from .expressions import MaterializationExpression
from .models import (
    ComputationMode,
    DependencyType,
    FeatureDefinition,
    FeatureDefinitionCreate,
    FeatureDefinitionResponse,
    FeatureLineage,
    FeatureSet,
    FeatureSetCreate,
    FeatureSetMember,
    FeatureSetResponse,
    LineageRecord,
)

logger = structlog.get_logger(__name__)

# Streaming features maintain sub-hour windows
MAX_STREAMING_WINDOW_SECONDS = 3600

_COMPARED_FIELDS = (
    "name",
    "feature_group",
    "description",
    "entity_type",
    "computation_mode",
    "refresh_interval_seconds",
    "online_sync_interval_seconds",
    "owner",
)


def _current_versions_stmt():
    latest = (
        select(
            FeatureDefinition.feature_id,
            func.max(FeatureDefinition.version).label("version"),
        )
        .group_by(FeatureDefinition.feature_id)
        .subquery()
    )
    return select(FeatureDefinition).join(
        latest,
        and_(
            FeatureDefinition.feature_id == latest.c.feature_id,
            FeatureDefinition.version == latest.c.version,
        ),
    )


def parse_payload(model_cls, payload: Any):
    if isinstance(payload, model_cls):
        return payload
    try:
        return model_cls.model_validate(payload)
    except PydanticValidationError as e:
        raise ValidationError(str(e)) from e


class FeatureRegistry:
    """Durable catalog of feature definitions and feature sets."""

    def __init__(self, db_manager: DatabaseManager) -> None:
        self.db_manager = db_manager

    async def register(
        self, definition: FeatureDefinitionCreate | dict[str, Any]
    ) -> str:
        """Register a definition, publishing a new version when it changed.

        Raises:
            ValidationError: malformed input, or the feature exists with a
                different value type
        """
        definition = parse_payload(FeatureDefinitionCreate, definition)
        self._validate_semantics(definition)
        feature_id = definition.feature_id

        try:
            async with self.db_manager.get_session() as session:
                latest = await self._latest(session, feature_id)

                if latest is not None:
                    if latest.value_type != definition.value_type:
                        raise ValidationError(
                            f"feature {feature_id} is {latest.value_type.value}; "
                            f"cannot change value type to {definition.value_type.value}"
                        )
                    if latest.is_active and self._is_unchanged(latest, definition):
                        logger.info(
                            "Feature registration unchanged",
                            feature_id=feature_id,
                            version=latest.version,
                        )
                        return feature_id

                version = 1 if latest is None else latest.version + 1
                row = FeatureDefinition(
                    feature_id=feature_id,
                    version=version,
                    name=definition.name,
                    feature_group=definition.feature_group,
                    description=definition.description,
                    entity_type=definition.entity_type,
                    value_type=definition.value_type,
                    computation_mode=definition.computation_mode,
                    expression=json.dumps(
                        definition.expression.canonical(), sort_keys=True
                    ),
                    refresh_interval_seconds=definition.refresh_interval_seconds,
                    online_sync_interval_seconds=definition.online_sync_interval_seconds,
                    is_active=True,
                    owner=definition.owner,
                    tags=json.dumps(definition.tags) if definition.tags else None,
                )
                session.add(row)
                for edge in self._lineage_for(feature_id, version, definition.expression):
                    session.add(edge)
                await session.flush()
        except IntegrityError as e:
            raise ValidationError(
                f"concurrent registration of {feature_id}; retry"
            ) from e

        logger.info(
            "Feature registered",
            feature_id=feature_id,
            version=version,
            computation_mode=definition.computation_mode.value,
        )
        return feature_id

    async def deactivate(self, feature_id: str) -> None:
        """Exclude a feature from new runs. Idempotent."""
        async with self.db_manager.get_session() as session:
            latest = await self._latest(session, feature_id)
            if latest is None:
                raise NotFound(f"feature {feature_id} not found")
            if not latest.is_active:
                return

            await session.execute(
                update(FeatureDefinition)
                .where(FeatureDefinition.feature_id == feature_id)
                .values(is_active=False)
            )

        logger.info("Feature deactivated", feature_id=feature_id)

    async def get(
        self, feature_id: str, version: int | None = None
    ) -> FeatureDefinitionResponse:
        """Get the current (or a specific) version of a feature."""
        async with self.db_manager.get_session() as session:
            if version is None:
                row = await self._latest(session, feature_id)
            else:
                result = await session.execute(
                    select(FeatureDefinition).where(
                        FeatureDefinition.feature_id == feature_id,
                        FeatureDefinition.version == version,
                    )
                )
                row = result.scalar_one_or_none()

        if row is None:
            suffix = f" version {version}" if version is not None else ""
            raise NotFound(f"feature {feature_id}{suffix} not found")
        return self._to_response(row)

    async def list_features(
        self,
        feature_group: str | None = None,
        computation_mode: ComputationMode | None = None,
        active_only: bool = False,
    ) -> list[FeatureDefinitionResponse]:
        """List current versions with optional filtering."""
        stmt = _current_versions_stmt()
        if feature_group:
            stmt = stmt.where(FeatureDefinition.feature_group == feature_group)
        if computation_mode:
            stmt = stmt.where(FeatureDefinition.computation_mode == computation_mode)
        if active_only:
            stmt = stmt.where(FeatureDefinition.is_active.is_(True))
        stmt = stmt.order_by(FeatureDefinition.feature_id)

        async with self.db_manager.get_session() as session:
            result = await session.execute(stmt)
            rows = result.scalars().all()

        return [self._to_response(row) for row in rows]

    async def active_definitions(
        self, computation_mode: ComputationMode | None = None
    ) -> list[FeatureDefinitionResponse]:
        """Current versions eligible for new materialization runs."""
        return await self.list_features(
            computation_mode=computation_mode, active_only=True
        )

    async def registered_at(self, feature_ids: list[str]) -> dict[str, datetime]:
        """When each feature's first version was registered."""
        if not feature_ids:
            return {}

        async with self.db_manager.get_session() as session:
            result = await session.execute(
                select(FeatureDefinition.feature_id, FeatureDefinition.created_at)
                .where(
                    FeatureDefinition.feature_id.in_(feature_ids),
                    FeatureDefinition.version == 1,
                )
            )
            return {feature_id: created_at for feature_id, created_at in result.all()}

    async def list_versions(self, feature_id: str) -> list[FeatureDefinitionResponse]:
        async with self.db_manager.get_session() as session:
            result = await session.execute(
                select(FeatureDefinition)
                .where(FeatureDefinition.feature_id == feature_id)
                .order_by(FeatureDefinition.version)
            )
            rows = result.scalars().all()

        if not rows:
            raise NotFound(f"feature {feature_id} not found")
        return [self._to_response(row) for row in rows]

    async def create_feature_set(
        self, feature_set: FeatureSetCreate | dict[str, Any]
    ) -> str:
        """Create a feature set pinning each member's current version."""
        feature_set = parse_payload(FeatureSetCreate, feature_set)

        if len(set(feature_set.feature_ids)) != len(feature_set.feature_ids):
            raise ValidationError("feature set members must be unique")

        try:
            async with self.db_manager.get_session() as session:
                existing = await session.execute(
                    select(FeatureSet.id).where(
                        FeatureSet.feature_set_id == feature_set.feature_set_id
                    )
                )
                if existing.scalar_one_or_none() is not None:
                    raise ValidationError(
                        f"feature set {feature_set.feature_set_id} already exists"
                    )

                members = []
                for feature_id in feature_set.feature_ids:
                    latest = await self._latest(session, feature_id)
                    if latest is None:
                        raise ValidationError(f"unknown feature {feature_id}")
                    if not latest.is_active:
                        raise ValidationError(f"feature {feature_id} is inactive")
                    members.append(
                        {"feature_id": feature_id, "version": latest.version}
                    )

                session.add(
                    FeatureSet(
                        feature_set_id=feature_set.feature_set_id,
                        name=feature_set.name,
                        use_case=feature_set.use_case,
                        description=feature_set.description,
                        members=json.dumps(members),
                        is_active=True,
                        owner=feature_set.owner,
                    )
                )
                await session.flush()
        except IntegrityError as e:
            raise ValidationError(
                f"feature set {feature_set.feature_set_id} already exists"
            ) from e

        logger.info(
            "Feature set created",
            feature_set_id=feature_set.feature_set_id,
            members=len(members),
        )
        return feature_set.feature_set_id

    async def get_feature_set(self, feature_set_id: str) -> FeatureSetResponse:
        async with self.db_manager.get_session() as session:
            row = await self._feature_set(session, feature_set_id)
        return self._set_to_response(row)

    async def list_feature_sets(self) -> list[FeatureSetResponse]:
        async with self.db_manager.get_session() as session:
            result = await session.execute(
                select(FeatureSet).order_by(FeatureSet.feature_set_id)
            )
            rows = result.scalars().all()
        return [self._set_to_response(row) for row in rows]

    async def resolve_set(self, feature_set_id: str) -> list[FeatureDefinitionResponse]:
        """Resolve a feature set to its pinned definitions, in declared order.

        Raises:
            NotFound: the set or one of its pinned members is missing
        """
        async with self.db_manager.get_session() as session:
            row = await self._feature_set(session, feature_set_id)
            resolved = []
            for member in json.loads(row.members):
                result = await session.execute(
                    select(FeatureDefinition).where(
                        FeatureDefinition.feature_id == member["feature_id"],
                        FeatureDefinition.version == member["version"],
                    )
                )
                definition = result.scalar_one_or_none()
                if definition is None:
                    raise NotFound(
                        f"feature {member['feature_id']} version "
                        f"{member['version']} of set {feature_set_id} not found"
                    )
                resolved.append(self._to_response(definition))

        return resolved

    async def get_lineage(self, feature_id: str) -> list[LineageRecord]:
        async with self.db_manager.get_session() as session:
            result = await session.execute(
                select(FeatureLineage)
                .where(FeatureLineage.feature_id == feature_id)
                .order_by(FeatureLineage.version, FeatureLineage.id)
            )
            rows = result.scalars().all()

        if not rows:
            raise NotFound(f"no lineage recorded for {feature_id}")
        return [LineageRecord.model_validate(row) for row in rows]

    async def get_dependents(self, table_name: str) -> list[str]:
        """Features whose current or past versions read ``table_name``."""
        async with self.db_manager.get_session() as session:
            result = await session.execute(
                select(FeatureLineage.feature_id)
                .where(FeatureLineage.parent_table == table_name)
                .distinct()
                .order_by(FeatureLineage.feature_id)
            )
            return list(result.scalars().all())

    @staticmethod
    def _validate_semantics(definition: FeatureDefinitionCreate) -> None:
        if (
            definition.computation_mode == ComputationMode.STREAMING
            and definition.expression.window_seconds > MAX_STREAMING_WINDOW_SECONDS
        ):
            raise ValidationError(
                f"streaming feature {definition.feature_id} window exceeds "
                f"{MAX_STREAMING_WINDOW_SECONDS} seconds"
            )

    @staticmethod
    def _is_unchanged(
        latest: FeatureDefinition, definition: FeatureDefinitionCreate
    ) -> bool:
        for field in _COMPARED_FIELDS:
            if getattr(latest, field) != getattr(definition, field):
                return False
        if json.loads(latest.expression) != definition.expression.canonical():
            return False
        stored_tags = json.loads(latest.tags) if latest.tags else None
        return stored_tags == (definition.tags or None)

    @staticmethod
    def _lineage_for(
        feature_id: str, version: int, expression: MaterializationExpression
    ) -> list[FeatureLineage]:
        edges = [
            FeatureLineage(
                feature_id=feature_id,
                version=version,
                parent_table=expression.source_table,
                dependency_type=(
                    DependencyType.DERIVED
                    if expression.sql is not None
                    else DependencyType.AGGREGATED
                ),
                transformation=expression.describe(),
            )
        ]
        if expression.entity_table and expression.entity_table != expression.source_table:
            edges.append(
                FeatureLineage(
                    feature_id=feature_id,
                    version=version,
                    parent_table=expression.entity_table,
                    dependency_type=DependencyType.DIRECT,
                    transformation="default entity population",
                )
            )
        return edges

    @staticmethod
    async def _latest(
        session: AsyncSession, feature_id: str
    ) -> FeatureDefinition | None:
        result = await session.execute(
            select(FeatureDefinition)
            .where(FeatureDefinition.feature_id == feature_id)
            .order_by(FeatureDefinition.version.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def _feature_set(session: AsyncSession, feature_set_id: str) -> FeatureSet:
        result = await session.execute(
            select(FeatureSet).where(FeatureSet.feature_set_id == feature_set_id)
        )
        row = result.scalar_one_or_none()
        if row is None:
            raise NotFound(f"feature set {feature_set_id} not found")
        return row

    @staticmethod
    def _to_response(row: FeatureDefinition) -> FeatureDefinitionResponse:
        return FeatureDefinitionResponse(
            feature_id=row.feature_id,
            version=row.version,
            name=row.name,
            feature_group=row.feature_group,
            description=row.description,
            entity_type=row.entity_type,
            value_type=row.value_type,
            computation_mode=row.computation_mode,
            expression=MaterializationExpression.model_validate(
                json.loads(row.expression)
            ),
            refresh_interval_seconds=row.refresh_interval_seconds,
            online_sync_interval_seconds=row.online_sync_interval_seconds,
            is_active=row.is_active,
            owner=row.owner,
            tags=json.loads(row.tags) if row.tags else None,
            created_at=row.created_at,
        )

    @staticmethod
    def _set_to_response(row: FeatureSet) -> FeatureSetResponse:
        return FeatureSetResponse(
            feature_set_id=row.feature_set_id,
            name=row.name,
            use_case=row.use_case,
            description=row.description,
            members=[FeatureSetMember(**m) for m in json.loads(row.members)],
            is_active=row.is_active,
            owner=row.owner,
        )
