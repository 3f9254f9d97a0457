"""Tests for feature store data models."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from pydantic import ValidationError as PydanticValidationError

from ..exceptions import ValidationError
from ..models import (
    FeatureDefinitionCreate,
    HistoricalFeatureRow,
    ValueType,
    as_naive_utc,
    coerce_value,
)
from .conftest import feature_payload


class TestCoerceValue:
    @pytest.mark.parametrize(
        "value_type,value,expected",
        [
            (ValueType.NUMERIC, 3, 3),
            (ValueType.NUMERIC, Decimal("2.5"), 2.5),
            (ValueType.BOOLEAN, 1, True),
            (ValueType.BOOLEAN, False, False),
            (ValueType.CATEGORICAL, "gold", "gold"),
            (ValueType.CATEGORICAL, 7, "7"),
            (ValueType.JSON, {"a": [1, 2]}, {"a": [1, 2]}),
            (ValueType.NUMERIC, None, None),
        ],
    )
    def test_accepts(self, value_type, value, expected):
        assert coerce_value(value_type, value) == expected

    @pytest.mark.parametrize(
        "value_type,value",
        [
            (ValueType.NUMERIC, True),
            (ValueType.NUMERIC, "12"),
            (ValueType.NUMERIC, float("nan")),
            (ValueType.BOOLEAN, 2),
            (ValueType.CATEGORICAL, 1.5),
            (ValueType.JSON, {1, 2}),
        ],
    )
    def test_rejects(self, value_type, value):
        with pytest.raises(ValidationError):
            coerce_value(value_type, value)


class TestTimestamps:
    def test_aware_timestamps_normalize_to_naive_utc(self):
        aware = datetime(2024, 1, 15, 14, 0, tzinfo=timezone(timedelta(hours=2)))
        assert as_naive_utc(aware) == datetime(2024, 1, 15, 12, 0)

    def test_naive_timestamps_unchanged(self):
        naive = datetime(2024, 1, 15, 12, 0)
        assert as_naive_utc(naive) is naive


class TestFeatureDefinitionCreate:
    def test_valid_payload(self):
        definition = FeatureDefinitionCreate(**feature_payload(tags=["finance"]))
        assert definition.value_type == ValueType.NUMERIC
        assert definition.tags == ["finance"]

    @pytest.mark.parametrize(
        "overrides",
        [
            {"feature_id": "Txn Sum"},
            {"refresh_interval_seconds": 0},
            {"value_type": "integer"},
            {"computation_mode": "ONLINE"},
        ],
    )
    def test_invalid_payload(self, overrides):
        with pytest.raises(PydanticValidationError):
            FeatureDefinitionCreate(**feature_payload(**overrides))


class TestHistoricalFeatureRow:
    def test_completeness(self):
        assert HistoricalFeatureRow(entity_id="C1", values={"f": None}).is_complete
        assert not HistoricalFeatureRow(entity_id="C1", missing_features=["f"]).is_complete
        assert not HistoricalFeatureRow(entity_id="C1", error="bad pair").is_complete
