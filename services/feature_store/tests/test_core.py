"""Tests for the feature store service facade."""

from datetime import timedelta
from unittest.mock import AsyncMock

from .conftest import T0, feature_payload, insert_rows, transactions


class TestFeatureStoreService:
    async def test_materialize_sync_and_serve(self, service, db_manager):
        await insert_rows(
            db_manager,
            transactions,
            [
                {"customer_id": "c1", "amount": 10.0, "status": "ok", "created_at": T0 - timedelta(days=1)},
                {"customer_id": "c1", "amount": 15.0, "status": "ok", "created_at": T0 - timedelta(days=2)},
            ],
        )
        await service.registry.register(feature_payload())
        await service.registry.create_feature_set(
            {"feature_set_id": "churn", "name": "Churn", "feature_ids": ["txn_sum_30d"]}
        )

        await service.batch.materialize("txn_sum_30d", now=T0)
        await service.online_sync.sync_feature("txn_sum_30d", now=T0)

        online = await service.get_online_features("c1", "CUSTOMER")
        assert online.features == {"txn_sum_30d": 25.0}

        rows = await service.get_historical_features(
            [("c1", T0 - timedelta(hours=1)), ("c1", T0)], "churn"
        )
        # The fact is stamped with the run start, so earlier labels miss it
        assert rows[0].missing_features == ["txn_sum_30d"]
        assert rows[1].values == {"txn_sum_30d": 25.0}

    async def test_health_check(self, service):
        health = await service.health_check()

        assert health["status"] == "healthy"
        assert health["database"] is True
        assert health["source_database"] is True
        assert health["cache"]["memory"]["available"] is True

    async def test_unhealthy_database(self, service, monkeypatch):
        monkeypatch.setattr(
            service.db_manager, "health_check", AsyncMock(return_value=False)
        )

        health = await service.health_check()

        assert health["status"] == "unhealthy"
        assert health["source_database"] is False
