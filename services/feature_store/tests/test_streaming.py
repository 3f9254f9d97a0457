"""Tests for the streaming materializer."""

from datetime import timedelta

import pytest

from ..models import RunStatus
from ..streaming import ChangeEvent, TableChangeFeed
from .conftest import T0, feature_payload, insert_rows, transactions


def _txn(customer_id, created_at, amount=1.0):
    return {"customer_id": customer_id, "amount": amount, "status": "ok", "created_at": created_at}


@pytest.fixture
async def streaming_service(service, db_manager):
    await service.registry.register(
        feature_payload(
            "txn_count_1h",
            computation_mode="STREAMING",
            refresh_interval_seconds=60,
            expression={"aggregation": "count", "value_column": None, "window_seconds": 3600},
        )
    )
    await insert_rows(
        db_manager,
        transactions,
        [
            _txn("c1", T0 - timedelta(hours=2)),
            _txn("c1", T0 - timedelta(minutes=20)),
            _txn("c1", T0 - timedelta(minutes=10)),
            _txn("c2", T0 - timedelta(minutes=5)),
        ],
    )
    return service


class TestTableChangeFeed:
    async def test_reads_after_offset_in_order(self, db_manager):
        await insert_rows(
            db_manager,
            transactions,
            [_txn("c1", T0), _txn(None, T0), _txn("c2", T0)],
        )
        feed = TableChangeFeed(db_manager, "transactions", "customer_id")

        events = await feed.read(after_offset=1, limit=10, timeout=0)

        # Rows without an entity are skipped
        assert [(e.entity_id, e.sequence_offset) for e in events] == [("c2", 3)]
        assert events[0].payload["amount"] == 1.0


class TestTick:
    async def test_recomputes_window_and_commits_offset(
        self, streaming_service, metrics_registry
    ):
        results = await streaming_service.streaming.tick(now=T0)

        assert [(r.feature_id, r.status, r.rows_processed) for r in results] == [
            ("txn_count_1h", RunStatus.SUCCESS, 2)
        ]
        assert await streaming_service.streaming.committed_offset("txn_count_1h") == 4
        assert (
            metrics_registry.get_sample_value(
                "feature_store_stream_committed_offset", {"consumer_id": "txn_count_1h"}
            )
            == 4.0
        )

        facts = await streaming_service.offline_store.facts_for(
            ["c1", "c2"], ["txn_count_1h"]
        )
        # The two hour old row is outside the window
        assert [(f.entity_id, f.value, f.as_of) for f in facts] == [
            ("c1", 2, T0),
            ("c2", 1, T0),
        ]

    async def test_only_affected_entities_are_recomputed(
        self, streaming_service, db_manager
    ):
        await streaming_service.streaming.tick(now=T0)
        await insert_rows(db_manager, transactions, [_txn("c2", T0 + timedelta(minutes=1))])

        results = await streaming_service.streaming.tick(now=T0 + timedelta(minutes=2))

        assert results[0].rows_processed == 1
        latest = await streaming_service.offline_store.latest_fact("c2", "txn_count_1h")
        assert latest.value == 2
        assert latest.as_of == T0 + timedelta(minutes=2)
        assert await streaming_service.streaming.committed_offset("txn_count_1h") == 5

    async def test_idle_tick_keeps_offset(self, streaming_service):
        await streaming_service.streaming.tick(now=T0)

        results = await streaming_service.streaming.tick(now=T0 + timedelta(seconds=30))

        assert results[0].status == RunStatus.SUCCESS
        assert results[0].rows_processed == 0
        assert await streaming_service.streaming.committed_offset("txn_count_1h") == 4

    async def test_crash_before_commit_replays_events(
        self, streaming_service, monkeypatch
    ):
        streaming = streaming_service.streaming

        async def crash(*args, **kwargs):
            raise RuntimeError("worker killed")

        monkeypatch.setattr(streaming, "_commit_offset", crash)
        results = await streaming.tick(now=T0)

        assert results[0].status == RunStatus.FAILED
        assert "worker killed" in results[0].error
        assert await streaming.committed_offset("txn_count_1h") == 0

        monkeypatch.undo()
        results = await streaming.tick(now=T0 + timedelta(seconds=1))

        assert results[0].status == RunStatus.SUCCESS
        assert await streaming.committed_offset("txn_count_1h") == 4
        # Replayed events produce duplicate facts; the newest wins on read
        facts = await streaming_service.offline_store.facts_for(["c1"], ["txn_count_1h"])
        assert [f.value for f in facts] == [2, 2]
        assert facts[-1].as_of == T0 + timedelta(seconds=1)

    async def test_custom_feed_factory(self, streaming_service):
        class FixedFeed:
            async def read(self, after_offset, limit, timeout):
                if after_offset >= 42:
                    return []
                return [ChangeEvent(entity_id="c2", sequence_offset=42)]

        streaming = streaming_service.streaming
        streaming.feed_factory = lambda definition: FixedFeed()

        results = await streaming.tick(now=T0)

        assert results[0].rows_processed == 1
        assert await streaming.committed_offset("txn_count_1h") == 42
