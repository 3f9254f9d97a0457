"""Tests for batch materialization."""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from .. import batch as batch_module
from ..exceptions import ComputeFailure, RunLockHeld, ValidationError
from ..models import ComputationMode, RunStatus
from .conftest import T0, feature_payload, insert_rows, transactions


@pytest.fixture
async def seeded_service(service, db_manager):
    await insert_rows(
        db_manager,
        transactions,
        [
            {"customer_id": "c1", "amount": 10.0, "status": "ok", "created_at": T0 - timedelta(days=2)},
            {"customer_id": "c1", "amount": 20.0, "status": "ok", "created_at": T0 - timedelta(days=5)},
            {"customer_id": "c1", "amount": 30.0, "status": "ok", "created_at": T0 - timedelta(days=10)},
            {"customer_id": "c2", "amount": 4.0, "status": "ok", "created_at": T0 - timedelta(days=1)},
        ],
    )
    await service.registry.register(feature_payload())
    return service


class TestMaterialize:
    async def test_appends_one_fact_per_entity_stamped_with_run_start(
        self, seeded_service
    ):
        result = await seeded_service.batch.materialize("txn_sum_30d", now=T0)

        assert result.status == RunStatus.SUCCESS
        assert result.rows_processed == 2
        assert result.as_of == T0

        facts = await seeded_service.offline_store.facts_for(
            ["c1", "c2"], ["txn_sum_30d"]
        )
        assert [(f.entity_id, f.value, f.as_of) for f in facts] == [
            ("c1", 60.0, T0),
            ("c2", 4.0, T0),
        ]
        assert all(f.run_id == result.run_id for f in facts)

        logs = await seeded_service.locks.compute_logs("txn_sum_30d")
        assert logs[0].status == RunStatus.SUCCESS
        assert logs[0].rows_processed == 2

    async def test_count_excludes_rows_outside_window(self, service, db_manager):
        await insert_rows(
            db_manager,
            transactions,
            [
                {"customer_id": "C1", "amount": 1.0, "status": "ok", "created_at": T0 - timedelta(days=days)}
                for days in (1, 10, 29, 40)
            ],
        )
        await service.registry.register(
            feature_payload(
                "txn_count_30d", expression={"aggregation": "count", "value_column": None}
            )
        )

        await service.batch.materialize("txn_count_30d", now=T0)

        fact = await service.offline_store.latest_fact("C1", "txn_count_30d")
        assert fact.value == 3

    async def test_rerun_appends_new_facts(self, seeded_service):
        await seeded_service.batch.materialize("txn_sum_30d", now=T0)
        await seeded_service.batch.materialize(
            "txn_sum_30d", now=T0 + timedelta(days=6)
        )

        facts = await seeded_service.offline_store.facts_for(["c1"], ["txn_sum_30d"])
        assert [f.value for f in facts] == [60.0, 60.0]
        latest = await seeded_service.offline_store.latest_fact("c1", "txn_sum_30d")
        assert latest.as_of == T0 + timedelta(days=6)

    async def test_type_mismatch_fails_run_without_facts(self, seeded_service):
        await seeded_service.registry.register(
            feature_payload(
                "txn_flag",
                value_type="boolean",
                expression={"aggregation": "sum"},
            )
        )

        with pytest.raises(ComputeFailure):
            await seeded_service.batch.materialize("txn_flag", now=T0)

        logs = await seeded_service.locks.compute_logs("txn_flag")
        assert logs[0].status == RunStatus.FAILED
        assert "boolean" in logs[0].error_message
        assert await seeded_service.offline_store.facts_for(["c1"], ["txn_flag"]) == []

    async def test_lock_held_rejects_second_run(self, seeded_service):
        definition = await seeded_service.registry.get("txn_sum_30d")
        await seeded_service.locks.acquire(
            "txn_sum_30d", ComputationMode.BATCH, definition.version, now=T0
        )

        with pytest.raises(RunLockHeld):
            await seeded_service.batch.materialize("txn_sum_30d", now=T0)

    async def test_inactive_feature_rejected(self, seeded_service):
        await seeded_service.registry.deactivate("txn_sum_30d")

        with pytest.raises(ValidationError):
            await seeded_service.batch.materialize("txn_sum_30d", now=T0)

    async def test_streaming_feature_rejected(self, seeded_service):
        await seeded_service.registry.register(
            feature_payload(
                "txn_count_1h",
                computation_mode="STREAMING",
                expression={"aggregation": "count", "window_seconds": 3600},
            )
        )

        with pytest.raises(ValidationError):
            await seeded_service.batch.materialize("txn_count_1h", now=T0)

    async def test_reaped_run_writes_nothing(self, seeded_service, monkeypatch):
        real_evaluate = batch_module.evaluate

        async def slow_evaluate(source_db, expression, window_end, entity_ids=None):
            # The reaper fails the run while it is still computing
            await seeded_service.locks.reap_expired(now=T0 + timedelta(days=1))
            return await real_evaluate(source_db, expression, window_end, entity_ids)

        monkeypatch.setattr(batch_module, "evaluate", slow_evaluate)

        with pytest.raises(ComputeFailure):
            await seeded_service.batch.materialize("txn_sum_30d", now=T0)

        assert await seeded_service.offline_store.facts_for(["c1"], ["txn_sum_30d"]) == []
        logs = await seeded_service.locks.compute_logs("txn_sum_30d")
        assert logs[0].status == RunStatus.FAILED
        assert logs[0].error_message == "exceeded wall-clock budget"


class TestRunDue:
    async def test_runs_only_due_features_and_isolates_failures(
        self, seeded_service, metrics_registry
    ):
        await seeded_service.registry.register(
            feature_payload(
                "txn_flag",
                value_type="boolean",
                expression={"aggregation": "sum"},
            )
        )

        results = await seeded_service.batch.run_due(now=T0)
        by_feature = {r.feature_id: r for r in results}
        assert by_feature["txn_sum_30d"].status == RunStatus.SUCCESS
        assert by_feature["txn_flag"].status == RunStatus.FAILED

        # Refresh interval not yet elapsed for the successful feature
        results = await seeded_service.batch.run_due(now=T0 + timedelta(minutes=30))
        assert [r.feature_id for r in results] == ["txn_flag"]

        assert (
            metrics_registry.get_sample_value(
                "feature_store_materialization_runs_total",
                {"feature_id": "txn_sum_30d", "run_kind": "BATCH", "status": "SUCCESS"},
            )
            == 1.0
        )

    async def test_database_error_in_one_feature_does_not_stop_the_others(
        self, seeded_service, monkeypatch
    ):
        await seeded_service.registry.register(feature_payload("a_feature"))
        real_acquire = seeded_service.locks.acquire

        async def flaky_acquire(feature_id, *args, **kwargs):
            if feature_id == "a_feature":
                raise OperationalError("INSERT", {}, Exception("database is locked"))
            return await real_acquire(feature_id, *args, **kwargs)

        monkeypatch.setattr(seeded_service.locks, "acquire", flaky_acquire)

        results = await seeded_service.batch.run_due(now=T0)

        by_feature = {r.feature_id: r for r in results}
        assert by_feature["a_feature"].status == RunStatus.FAILED
        assert "database is locked" in by_feature["a_feature"].error
        assert by_feature["txn_sum_30d"].status == RunStatus.SUCCESS


class TestConcurrentRuns:
    async def test_overlapping_runs_of_one_feature(self, seeded_service, monkeypatch):
        real_evaluate = batch_module.evaluate
        computing = asyncio.Event()
        second_done = asyncio.Event()

        async def gated_evaluate(source_db, expression, window_end, entity_ids=None):
            # Hold the first run open until the second one has tried
            computing.set()
            await second_done.wait()
            return await real_evaluate(source_db, expression, window_end, entity_ids)

        monkeypatch.setattr(batch_module, "evaluate", gated_evaluate)

        async def second_run():
            await computing.wait()
            try:
                return await seeded_service.batch.materialize(
                    "txn_sum_30d", now=T0 + timedelta(minutes=1)
                )
            finally:
                second_done.set()

        first, second = await asyncio.gather(
            seeded_service.batch.materialize("txn_sum_30d", now=T0),
            second_run(),
            return_exceptions=True,
        )

        assert first.status == RunStatus.SUCCESS
        assert isinstance(second, RunLockHeld)
        assert second.holder_run_id == first.run_id

        logs = await seeded_service.locks.compute_logs("txn_sum_30d")
        assert [(log.run_id, log.status) for log in logs] == [
            (first.run_id, RunStatus.SUCCESS)
        ]
        facts = await seeded_service.offline_store.facts_for(
            ["c1", "c2"], ["txn_sum_30d"]
        )
        assert {fact.run_id for fact in facts} == {first.run_id}
