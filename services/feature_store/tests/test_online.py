"""Tests for the online store and online sync."""

from datetime import timedelta

import pytest

from ..cache import FeatureCache
from ..core import FeatureStoreService
from ..exceptions import NotFound, ValidationError
from ..models import NewFact
from ..online_sync import shard_of
from .conftest import T0, feature_payload, insert_rows, transactions


def _fact(entity_id, value, as_of, feature_id="txn_sum_30d"):
    return NewFact(
        entity_id=entity_id,
        entity_type="CUSTOMER",
        feature_id=feature_id,
        feature_version=1,
        value=value,
        as_of=as_of,
    )


class TestOnlineStore:
    async def test_merge_and_read_vector(self, service):
        outcome = await service.online_store.merge(
            "c1", "CUSTOMER", {"f1": (1.5, T0), "f2": ("gold", T0)}, now=T0
        )

        assert sorted(outcome.applied) == ["f1", "f2"]
        assert outcome.revision == 1

        vector = await service.get_online_features("c1", "CUSTOMER")
        assert vector.features == {"f1": 1.5, "f2": "gold"}
        assert vector.feature_timestamps["f1"] == T0
        assert vector.last_updated == T0

    async def test_older_update_is_a_counted_stale_write(
        self, service, metrics_registry
    ):
        await service.online_store.merge("c1", "CUSTOMER", {"f1": (2.0, T0)})

        outcome = await service.online_store.merge(
            "c1", "CUSTOMER", {"f1": (1.0, T0 - timedelta(minutes=1))}
        )

        assert outcome.applied == []
        assert [stale.feature_id for stale in outcome.stale] == ["f1"]
        vector = await service.get_online_features("c1", "CUSTOMER")
        assert vector.features["f1"] == 2.0
        assert (
            metrics_registry.get_sample_value(
                "feature_store_stale_writes_total", {"feature_id": "f1"}
            )
            == 1.0
        )

    async def test_equal_timestamp_overwrites(self, service):
        await service.online_store.merge("c1", "CUSTOMER", {"f1": (2.0, T0)})
        outcome = await service.online_store.merge("c1", "CUSTOMER", {"f1": (3.0, T0)})

        assert outcome.applied == ["f1"]
        assert outcome.revision == 2
        assert (await service.get_online_features("c1", "CUSTOMER")).features == {
            "f1": 3.0
        }

    async def test_unknown_entity(self, service, metrics_registry):
        with pytest.raises(NotFound):
            await service.get_online_features("nobody", "CUSTOMER")
        assert (
            metrics_registry.get_sample_value(
                "feature_store_online_lookups_total",
                {"entity_type": "CUSTOMER", "outcome": "not_found"},
            )
            == 1.0
        )

    async def test_unsynced_features_are_absent_not_zero_filled(self, service):
        await service.online_store.merge("c1", "CUSTOMER", {"f1": (None, T0)})

        vector = await service.get_online_features(
            "c1", "CUSTOMER", feature_ids=["f1", "f2"]
        )

        # A stored null is present; a never-synced feature is absent
        assert vector.features == {"f1": None}

    async def test_reads_through_cache_and_invalidates_on_write(
        self, service, metrics_registry
    ):
        await service.online_store.merge("c1", "CUSTOMER", {"f1": (1.0, T0)})
        await service.get_online_features("c1", "CUSTOMER")
        await service.get_online_features("c1", "CUSTOMER")

        await service.online_store.merge(
            "c1", "CUSTOMER", {"f1": (5.0, T0 + timedelta(hours=1))}
        )
        vector = await service.get_online_features("c1", "CUSTOMER")

        assert vector.features["f1"] == 5.0

        def lookups(outcome):
            return metrics_registry.get_sample_value(
                "feature_store_online_lookups_total",
                {"entity_type": "CUSTOMER", "outcome": outcome},
            )

        assert lookups("miss") == 2.0
        assert lookups("hit") == 1.0

    async def test_write_from_another_process_is_visible_despite_local_cache(
        self, db_manager, settings, metrics
    ):
        api = FeatureStoreService(
            db_manager, settings=settings, metrics=metrics, cache=FeatureCache(default_ttl=300)
        )
        worker = FeatureStoreService(
            db_manager, settings=settings, metrics=metrics, cache=FeatureCache(default_ttl=300)
        )

        await worker.online_store.merge("c1", "CUSTOMER", {"f1": (1.0, T0)})
        first = await api.get_online_features("c1", "CUSTOMER")
        await worker.online_store.merge(
            "c1", "CUSTOMER", {"f1": (2.0, T0 + timedelta(minutes=1))}
        )
        second = await api.get_online_features("c1", "CUSTOMER")

        assert first.features["f1"] == 1.0
        assert second.features["f1"] == 2.0
        assert second.revision == 2


class TestOnlineSync:
    @pytest.fixture
    async def materialized(self, service, db_manager):
        await insert_rows(
            db_manager,
            transactions,
            [
                {"customer_id": "c1", "amount": 10.0, "status": "ok", "created_at": T0 - timedelta(days=1)},
                {"customer_id": "c2", "amount": 4.0, "status": "ok", "created_at": T0 - timedelta(days=1)},
            ],
        )
        await service.registry.register(feature_payload())
        await service.batch.materialize("txn_sum_30d", now=T0)
        return service

    async def test_sync_folds_new_facts_once(self, materialized, metrics_registry):
        assert await materialized.online_sync.sync_feature("txn_sum_30d", now=T0) == 2

        vector = await materialized.get_online_features("c1", "CUSTOMER")
        assert vector.features == {"txn_sum_30d": 10.0}
        assert vector.feature_timestamps["txn_sum_30d"] == T0

        # Cursor advanced; nothing new to fold
        assert await materialized.online_sync.sync_feature("txn_sum_30d", now=T0) == 0
        assert (
            metrics_registry.get_sample_value(
                "feature_store_online_vectors_synced_total",
                {"feature_id": "txn_sum_30d"},
            )
            == 2.0
        )

    async def test_backfilled_older_fact_does_not_overwrite(self, materialized):
        await materialized.online_sync.sync_feature("txn_sum_30d", now=T0)
        await materialized.offline_store.append_facts(
            [_fact("c1", 999.0, T0 - timedelta(days=3))]
        )

        assert await materialized.online_sync.sync_feature("txn_sum_30d", now=T0) == 0
        vector = await materialized.get_online_features("c1", "CUSTOMER")
        assert vector.features["txn_sum_30d"] == 10.0

    async def test_latest_fact_per_entity_wins_within_a_batch(self, materialized):
        await materialized.offline_store.append_facts(
            [
                _fact("c1", 11.0, T0 + timedelta(hours=2)),
                _fact("c1", 12.0, T0 + timedelta(hours=1)),
            ]
        )

        await materialized.online_sync.sync_feature("txn_sum_30d", now=T0)

        vector = await materialized.get_online_features("c1", "CUSTOMER")
        assert vector.features["txn_sum_30d"] == 11.0

    async def test_shards_partition_entities(self, materialized):
        shard_count = 2
        first = await materialized.online_sync.sync_feature(
            "txn_sum_30d", shard=0, shard_count=shard_count, now=T0
        )
        second = await materialized.online_sync.sync_feature(
            "txn_sum_30d", shard=1, shard_count=shard_count, now=T0
        )

        assert first + second == 2
        expected_first = sum(
            1 for entity_id in ("c1", "c2") if shard_of(entity_id, shard_count) == 0
        )
        assert first == expected_first
        assert shard_of("c1", shard_count) == shard_of("c1", shard_count)

    async def test_invalid_shard(self, materialized):
        with pytest.raises(ValidationError):
            await materialized.online_sync.sync_feature("txn_sum_30d", shard=2, shard_count=2)

    async def test_sync_due_respects_interval(self, materialized):
        assert await materialized.online_sync.sync_due(now=T0) == {"txn_sum_30d": 2}

        # Default interval is 60 seconds
        assert await materialized.online_sync.sync_due(now=T0 + timedelta(seconds=30)) == {}
        assert await materialized.online_sync.sync_due(
            now=T0 + timedelta(seconds=61)
        ) == {"txn_sum_30d": 0}
