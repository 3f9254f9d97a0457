"""Tests for run locks, compute logs and the reaper."""

from datetime import timedelta

import pytest

from ..exceptions import RunLockHeld
from ..models import ComputationMode, RunStatus
from ..runs import REAPED_MESSAGE, RunLockManager
from .conftest import T0


@pytest.fixture
def locks(db_manager, settings, metrics) -> RunLockManager:
    return RunLockManager(db_manager, settings=settings, metrics=metrics)


class TestLocks:
    async def test_second_acquire_rejected_while_held(self, locks):
        first = await locks.acquire("f1", ComputationMode.BATCH, 1, now=T0)

        with pytest.raises(RunLockHeld) as exc_info:
            await locks.acquire("f1", ComputationMode.BATCH, 1, now=T0 + timedelta(seconds=5))
        assert exc_info.value.holder_run_id == first.run_id

    async def test_locks_are_per_feature(self, locks):
        await locks.acquire("f1", ComputationMode.BATCH, 1, now=T0)
        handle = await locks.acquire("f2", ComputationMode.STREAMING, 1, now=T0)

        assert handle.feature_id == "f2"
        assert handle.deadline == T0 + timedelta(seconds=600)

    async def test_terminal_status_releases_lock(self, locks):
        handle = await locks.acquire("f1", ComputationMode.BATCH, 1, now=T0)
        assert await locks.complete(handle, 3, now=T0 + timedelta(seconds=10))

        again = await locks.acquire("f1", ComputationMode.BATCH, 1, now=T0 + timedelta(seconds=11))
        assert await locks.fail(again, "boom")

        logs = await locks.compute_logs("f1")
        assert [log.status for log in logs] == [RunStatus.FAILED, RunStatus.SUCCESS]
        assert logs[0].error_message == "boom"
        assert logs[1].rows_processed == 3

    async def test_expired_lock_taken_over(self, locks):
        stale = await locks.acquire("f1", ComputationMode.BATCH, 1, now=T0)

        fresh = await locks.acquire(
            "f1", ComputationMode.BATCH, 1, now=T0 + timedelta(seconds=601)
        )

        assert fresh.run_id != stale.run_id
        logs = {log.run_id: log for log in await locks.compute_logs("f1")}
        assert logs[stale.run_id].status == RunStatus.FAILED
        assert logs[stale.run_id].error_message == REAPED_MESSAGE
        assert logs[fresh.run_id].status == RunStatus.RUNNING


class TestReaper:
    async def test_reaps_only_expired_runs(self, locks, metrics_registry):
        expired = await locks.acquire("f1", ComputationMode.BATCH, 1, now=T0)
        live = await locks.acquire(
            "f2", ComputationMode.BATCH, 1, now=T0 + timedelta(seconds=500)
        )

        reaped = await locks.reap_expired(now=T0 + timedelta(seconds=700))

        assert reaped == [expired.run_id]
        running = await locks.compute_logs(status=RunStatus.RUNNING)
        assert [log.run_id for log in running] == [live.run_id]
        assert (
            metrics_registry.get_sample_value(
                "feature_store_runs_reaped_total", {"feature_id": "f1"}
            )
            == 1.0
        )

        # Lock released: a new run starts without a takeover
        await locks.acquire("f1", ComputationMode.BATCH, 1, now=T0 + timedelta(seconds=701))

    async def test_completion_after_reap_is_rejected(self, locks):
        handle = await locks.acquire("f1", ComputationMode.BATCH, 1, now=T0)
        await locks.reap_expired(now=T0 + timedelta(hours=1))

        assert not await locks.complete(handle, 10)

        log = (await locks.compute_logs("f1"))[0]
        assert log.status == RunStatus.FAILED
        assert log.rows_processed == 0


class TestSummary:
    async def test_compute_summary(self, locks):
        for offset, rows in ((0, 100), (100, 300)):
            handle = await locks.acquire(
                "f1", ComputationMode.BATCH, 1, now=T0 + timedelta(seconds=offset)
            )
            await locks.complete(handle, rows, now=T0 + timedelta(seconds=offset + 10))
        failed = await locks.acquire(
            "f1", ComputationMode.BATCH, 1, now=T0 + timedelta(seconds=200)
        )
        await locks.fail(failed, "boom", now=T0 + timedelta(seconds=230))
        # Still running, excluded
        await locks.acquire("f1", ComputationMode.BATCH, 1, now=T0 + timedelta(seconds=300))

        summary = await locks.compute_summary("f1")

        assert summary.total_runs == 3
        assert summary.failed_runs == 1
        assert summary.failure_rate == pytest.approx(1 / 3)
        assert summary.avg_duration_seconds == pytest.approx(50 / 3)
        assert summary.rows_per_second == pytest.approx(20.0)
        assert summary.last_success_at == T0 + timedelta(seconds=100)

    async def test_last_successes(self, locks):
        handle = await locks.acquire("f1", ComputationMode.BATCH, 1, now=T0)
        await locks.complete(handle, 1)
        await locks.acquire("f2", ComputationMode.BATCH, 1, now=T0)

        assert await locks.last_successes(["f1", "f2"]) == {"f1": T0}
