"""Tests for drift, quality and freshness monitoring."""

from datetime import date, timedelta

import numpy as np
import pytest
from sqlalchemy import update

from ..models import (
    AlertType,
    ComputationMode,
    FeatureDefinition,
    FeatureStatistics,
    Severity,
    utcnow,
)
from ..monitoring import pool_statistics
from .conftest import T0, feature_payload

EVALUATION_DATE = date(2024, 1, 20)


def _stat(feature_id, day, mean, stddev, count=50, nulls=0):
    return FeatureStatistics(
        feature_id=feature_id,
        computation_date=day,
        total_count=count,
        null_count=nulls,
        null_rate=nulls / count if count else 0.0,
        distinct_count=count - nulls,
        mean=mean,
        stddev=stddev,
    )


async def _store(db_manager, *rows):
    async with db_manager.get_session() as session:
        session.add_all(rows)


class TestPoolStatistics:
    def test_matches_direct_computation(self):
        first, second = [1.0, 2.0, 3.0], [4.0, 5.0]
        pooled = pool_statistics(
            [
                _stat("f", date(2024, 1, 1), np.mean(first), np.std(first, ddof=1), count=3),
                _stat("f", date(2024, 1, 2), np.mean(second), np.std(second, ddof=1), count=2),
            ]
        )

        values = first + second
        assert pooled.days == 2
        assert pooled.count == 5
        assert pooled.mean == pytest.approx(np.mean(values))
        assert pooled.stddev == pytest.approx(np.std(values, ddof=1))

    def test_ignores_days_without_values(self):
        assert pool_statistics([_stat("f", date(2024, 1, 1), None, None, count=4, nulls=4)]) is None


class TestDrift:
    async def test_mean_shift_of_three_and_a_half_std_is_high(
        self, service, db_manager, metrics_registry
    ):
        await _store(
            db_manager,
            _stat("txn_sum_30d", EVALUATION_DATE - timedelta(days=10), 100.0, 10.0),
            _stat("txn_sum_30d", EVALUATION_DATE - timedelta(days=3), 135.0, 10.0),
        )

        alert = await service.monitor.evaluate_drift("txn_sum_30d", EVALUATION_DATE)

        assert alert.alert_type == AlertType.DRIFT
        assert alert.severity == Severity.HIGH
        assert alert.drift_score == pytest.approx(3.5)
        assert alert.baseline_start == date(2024, 1, 6)
        assert alert.baseline_end == date(2024, 1, 12)
        assert alert.recent_start == date(2024, 1, 13)
        assert alert.recent_end == date(2024, 1, 19)
        assert alert.baseline_stats["mean"] == pytest.approx(100.0)
        assert (
            metrics_registry.get_sample_value(
                "feature_store_drift_alerts_total",
                {"feature_id": "txn_sum_30d", "alert_type": "DRIFT", "severity": "HIGH"},
            )
            == 1.0
        )
        assert metrics_registry.get_sample_value(
            "feature_store_drift_score", {"feature_id": "txn_sum_30d"}
        ) == pytest.approx(3.5)

    async def test_zero_baseline_variance_raises_no_alert(self, service, db_manager):
        await _store(
            db_manager,
            _stat("f", EVALUATION_DATE - timedelta(days=10), 100.0, 0.0),
            _stat("f", EVALUATION_DATE - timedelta(days=3), 500.0, 3.0),
        )

        assert await service.monitor.evaluate_drift("f", EVALUATION_DATE) is None

    async def test_small_shift_raises_no_alert(self, service, db_manager):
        await _store(
            db_manager,
            _stat("f", EVALUATION_DATE - timedelta(days=10), 100.0, 10.0),
            _stat("f", EVALUATION_DATE - timedelta(days=3), 105.0, 10.0),
        )

        assert await service.monitor.evaluate_drift("f", EVALUATION_DATE) is None

    async def test_missing_window_raises_no_alert(self, service, db_manager):
        await _store(db_manager, _stat("f", EVALUATION_DATE - timedelta(days=3), 135.0, 10.0))

        assert await service.monitor.evaluate_drift("f", EVALUATION_DATE) is None

    @pytest.mark.parametrize(
        "score,expected",
        [
            (0.5, None),
            (1.0, None),
            (1.5, Severity.MINOR),
            (2.5, Severity.MODERATE),
            (3.0, Severity.MODERATE),
            (3.5, Severity.HIGH),
        ],
    )
    def test_severity_tiers(self, service, score, expected):
        assert service.monitor.severity_for(score) == expected


class TestQuality:
    @pytest.mark.parametrize(
        "nulls,expected", [(5, None), (15, Severity.MODERATE), (25, Severity.HIGH)]
    )
    async def test_null_rate_tiers(self, service, db_manager, nulls, expected):
        day = EVALUATION_DATE - timedelta(days=1)
        await _store(db_manager, _stat("f", day, 1.0, 1.0, count=50, nulls=nulls))

        alert = await service.monitor.check_quality("f", day)

        if expected is None:
            assert alert is None
        else:
            assert alert.alert_type == AlertType.QUALITY
            assert alert.severity == expected
            assert alert.recent_stats["null_count"] == nulls


class TestFreshness:
    async def _succeed_at(self, service, feature_id, started_at):
        handle = await service.locks.acquire(
            feature_id, ComputationMode.BATCH, 1, now=started_at
        )
        await service.locks.complete(handle, 1, now=started_at + timedelta(seconds=5))

    async def test_overdue_tiers(self, service):
        await service.registry.register(feature_payload())
        await self._succeed_at(service, "txn_sum_30d", T0)

        # refresh 1h, factor 2: budget is two hours
        assert await service.monitor.check_freshness(now=T0 + timedelta(hours=2)) == []

        alerts = await service.monitor.check_freshness(now=T0 + timedelta(hours=3))
        assert [(a.feature_id, a.severity) for a in alerts] == [
            ("txn_sum_30d", Severity.MINOR)
        ]
        alerts = await service.monitor.check_freshness(now=T0 + timedelta(hours=7))
        assert alerts[0].severity == Severity.HIGH
        assert alerts[0].drift_score == pytest.approx(3.5)

    async def test_never_succeeded_measured_from_registration(self, service):
        await service.registry.register(feature_payload())

        alerts = await service.monitor.check_freshness(now=utcnow() + timedelta(hours=5))

        assert alerts[0].severity == Severity.MODERATE
        assert "never materialized" in alerts[0].message

    async def test_never_succeeded_clock_survives_new_versions(
        self, service, db_manager
    ):
        await service.registry.register(feature_payload())
        async with db_manager.get_session() as session:
            await session.execute(
                update(FeatureDefinition)
                .where(FeatureDefinition.feature_id == "txn_sum_30d")
                .values(created_at=utcnow() - timedelta(hours=10))
            )
        await service.registry.register(feature_payload(name="Renamed"))

        assert (await service.registry.get("txn_sum_30d")).version == 2
        alerts = await service.monitor.check_freshness(now=utcnow())

        # Ten hours against a two hour budget
        assert [(a.feature_id, a.severity) for a in alerts] == [
            ("txn_sum_30d", Severity.HIGH)
        ]

    async def test_inactive_features_ignored(self, service):
        await service.registry.register(feature_payload())
        await service.registry.deactivate("txn_sum_30d")

        assert await service.monitor.check_freshness(now=utcnow() + timedelta(days=5)) == []


class TestNightlyAndListing:
    async def test_run_nightly_and_filters(self, service, db_manager):
        await service.registry.register(feature_payload())
        await _store(
            db_manager,
            _stat("txn_sum_30d", EVALUATION_DATE - timedelta(days=10), 100.0, 10.0),
            _stat("txn_sum_30d", EVALUATION_DATE - timedelta(days=1), 135.0, 10.0, nulls=30),
        )

        alerts = await service.monitor.run_nightly(today=EVALUATION_DATE)

        assert sorted(a.alert_type for a in alerts) == [AlertType.DRIFT, AlertType.QUALITY]

        quality = await service.monitor.list_alerts(alert_type=AlertType.QUALITY)
        assert [a.severity for a in quality] == [Severity.HIGH]
        assert await service.monitor.list_alerts(feature_id="other") == []
        assert (
            await service.monitor.list_alerts(since=EVALUATION_DATE + timedelta(days=1))
            == []
        )
        assert len(await service.monitor.list_alerts(severity=Severity.HIGH)) == 2
