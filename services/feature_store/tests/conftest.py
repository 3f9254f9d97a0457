"""Shared fixtures for feature store tests."""

from datetime import datetime
from typing import Any

import pytest
import pytest_asyncio
from prometheus_client import CollectorRegistry
from sqlalchemy import (
    Column,
    DateTime,
    Float,
    Integer,
    MetaData,
    String,
    Table,
    insert,
)

from libs.config import create_test_database_url
from libs.observability.metrics import FeatureStoreMetrics
from libs.persistence import DatabaseManager

from ..cache import FeatureCache
from ..config import FeatureStoreSettings
from ..core import FeatureStoreService

T0 = datetime(2024, 1, 15, 12, 0, 0)

# Raw source tables the expressions aggregate over
raw_metadata = MetaData()

transactions = Table(
    "transactions",
    raw_metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("customer_id", String(50)),
    Column("amount", Float),
    Column("status", String(20)),
    Column("created_at", DateTime),
)

customers = Table(
    "customers",
    raw_metadata,
    Column("customer_id", String(50), primary_key=True),
    Column("segment", String(20)),
)


@pytest.fixture
def settings() -> FeatureStoreSettings:
    """Deterministic settings, independent of the environment."""
    return FeatureStoreSettings(
        _env_file=None,
        run_timeout_seconds=600,
        streaming_feed_timeout_seconds=0,
        streaming_batch_size=100,
        cache_ttl_seconds=60,
        redis_url=None,
        retrieval_chunk_size=500,
    )


@pytest.fixture
def metrics_registry() -> CollectorRegistry:
    return CollectorRegistry()


@pytest.fixture
def metrics(metrics_registry) -> FeatureStoreMetrics:
    return FeatureStoreMetrics(registry=metrics_registry)


@pytest_asyncio.fixture
async def db_manager():
    """In-memory SQLite database with the engine and raw source tables."""
    manager = DatabaseManager(create_test_database_url())
    await manager.create_all_tables()
    async with manager.async_engine.begin() as conn:
        await conn.run_sync(raw_metadata.create_all)

    yield manager

    await manager.close()


@pytest.fixture
def service(db_manager, settings, metrics) -> FeatureStoreService:
    return FeatureStoreService(
        db_manager,
        settings=settings,
        metrics=metrics,
        cache=FeatureCache(default_ttl=settings.cache_ttl_seconds),
    )


async def insert_rows(db_manager: DatabaseManager, target: Table, rows: list[dict]):
    async with db_manager.get_session() as session:
        await session.execute(insert(target), rows)


def feature_payload(feature_id: str = "txn_sum_30d", **overrides: Any) -> dict:
    """Registration payload for a windowed aggregate over transactions."""
    expression = {
        "source_table": "transactions",
        "entity_column": "customer_id",
        "timestamp_column": "created_at",
        "aggregation": "sum",
        "value_column": "amount",
        "window_seconds": 30 * 24 * 3600,
    }
    expression.update(overrides.pop("expression", {}))
    payload = {
        "feature_id": feature_id,
        "name": feature_id.replace("_", " ").title(),
        "feature_group": "customer_transactions",
        "entity_type": "CUSTOMER",
        "value_type": "numeric",
        "computation_mode": "BATCH",
        "expression": expression,
        "refresh_interval_seconds": 3600,
    }
    payload.update(overrides)
    return payload
