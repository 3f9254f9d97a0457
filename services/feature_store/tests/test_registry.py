"""Tests for the feature registry."""

import pytest

from ..exceptions import NotFound, ValidationError
from ..models import ComputationMode, DependencyType
from ..registry import FeatureRegistry
from .conftest import feature_payload


@pytest.fixture
def registry(db_manager) -> FeatureRegistry:
    return FeatureRegistry(db_manager)


class TestRegister:
    async def test_register_creates_version_one(self, registry):
        feature_id = await registry.register(feature_payload())

        feature = await registry.get(feature_id)
        assert feature.version == 1
        assert feature.is_active
        assert feature.expression.value_column == "amount"

    async def test_identical_registration_is_idempotent(self, registry):
        await registry.register(feature_payload())
        await registry.register(feature_payload())

        versions = await registry.list_versions("txn_sum_30d")
        assert [v.version for v in versions] == [1]

    async def test_changed_expression_publishes_new_version(self, registry):
        await registry.register(feature_payload())
        await registry.register(
            feature_payload(expression={"window_seconds": 7 * 24 * 3600})
        )

        current = await registry.get("txn_sum_30d")
        first = await registry.get("txn_sum_30d", version=1)
        assert current.version == 2
        assert current.expression.window_seconds == 7 * 24 * 3600
        assert first.expression.window_seconds == 30 * 24 * 3600

    async def test_value_type_change_rejected(self, registry):
        await registry.register(feature_payload())

        with pytest.raises(ValidationError):
            await registry.register(feature_payload(value_type="categorical"))

    async def test_malformed_payload_rejected(self, registry):
        with pytest.raises(ValidationError):
            await registry.register(feature_payload(feature_id="Not Valid"))

    async def test_streaming_window_capped_at_one_hour(self, registry):
        payload = feature_payload(
            "txn_count_2h",
            computation_mode="STREAMING",
            expression={"aggregation": "count", "window_seconds": 7200},
        )
        with pytest.raises(ValidationError):
            await registry.register(payload)

    async def test_unknown_feature(self, registry):
        with pytest.raises(NotFound):
            await registry.get("missing")


class TestDeactivate:
    async def test_deactivated_feature_leaves_active_listing(self, registry):
        await registry.register(feature_payload())
        await registry.register(feature_payload("txn_max_30d", expression={"aggregation": "max"}))

        await registry.deactivate("txn_sum_30d")

        active = await registry.active_definitions(ComputationMode.BATCH)
        assert [d.feature_id for d in active] == ["txn_max_30d"]
        # History stays readable
        assert not (await registry.get("txn_sum_30d")).is_active

    async def test_reregistering_inactive_feature_reactivates_as_new_version(
        self, registry
    ):
        await registry.register(feature_payload())
        await registry.deactivate("txn_sum_30d")

        await registry.register(feature_payload())

        current = await registry.get("txn_sum_30d")
        assert current.version == 2
        assert current.is_active


class TestFeatureSets:
    async def test_members_pinned_to_current_versions(self, registry):
        await registry.register(feature_payload())
        await registry.register(feature_payload("txn_max_30d", expression={"aggregation": "max"}))
        await registry.create_feature_set(
            {
                "feature_set_id": "churn",
                "name": "Churn model",
                "feature_ids": ["txn_max_30d", "txn_sum_30d"],
            }
        )

        # A later version does not move the pin
        await registry.register(feature_payload(expression={"window_seconds": 3600}))

        feature_set = await registry.get_feature_set("churn")
        assert [(m.feature_id, m.version) for m in feature_set.members] == [
            ("txn_max_30d", 1),
            ("txn_sum_30d", 1),
        ]
        resolved = await registry.resolve_set("churn")
        assert [d.feature_id for d in resolved] == ["txn_max_30d", "txn_sum_30d"]
        assert resolved[1].expression.window_seconds == 30 * 24 * 3600

    async def test_inactive_member_rejected(self, registry):
        await registry.register(feature_payload())
        await registry.deactivate("txn_sum_30d")

        with pytest.raises(ValidationError):
            await registry.create_feature_set(
                {"feature_set_id": "s", "name": "s", "feature_ids": ["txn_sum_30d"]}
            )

    async def test_unknown_member_rejected(self, registry):
        with pytest.raises(ValidationError):
            await registry.create_feature_set(
                {"feature_set_id": "s", "name": "s", "feature_ids": ["missing"]}
            )

    async def test_duplicate_set_rejected(self, registry):
        await registry.register(feature_payload())
        payload = {"feature_set_id": "s", "name": "s", "feature_ids": ["txn_sum_30d"]}
        await registry.create_feature_set(payload)

        with pytest.raises(ValidationError):
            await registry.create_feature_set(payload)

    async def test_unknown_set(self, registry):
        with pytest.raises(NotFound):
            await registry.resolve_set("missing")


class TestLineage:
    async def test_lineage_recorded_per_version(self, registry):
        await registry.register(
            feature_payload(
                expression={
                    "default": 0,
                    "entity_table": "customers",
                    "entity_table_column": "customer_id",
                }
            )
        )

        lineage = await registry.get_lineage("txn_sum_30d")
        edges = {(edge.parent_table, edge.dependency_type) for edge in lineage}
        assert edges == {
            ("transactions", DependencyType.AGGREGATED),
            ("customers", DependencyType.DIRECT),
        }
        assert await registry.get_dependents("transactions") == ["txn_sum_30d"]

    async def test_sql_feature_is_derived(self, registry):
        await registry.register(
            feature_payload(
                "txn_custom",
                expression={"sql": "SELECT customer_id, 1 FROM transactions"},
            )
        )

        lineage = await registry.get_lineage("txn_custom")
        assert lineage[0].dependency_type == DependencyType.DERIVED

    async def test_missing_lineage(self, registry):
        with pytest.raises(NotFound):
            await registry.get_lineage("missing")
