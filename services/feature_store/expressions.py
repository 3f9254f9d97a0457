"""Declarative materialization expressions and their evaluation.

An expression describes one windowed aggregate over a raw source table,
grouped by entity. Evaluation is read-only against the source database and
returns ``{entity_id: value}`` for the entities that have qualifying rows,
plus defaults for the remaining candidate entities when a default is
explicitly declared.
"""

import math
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field, model_validator
from sqlalchemy import (
    DateTime,
    and_,
    bindparam,
    column,
    distinct,
    func,
    select,
    table,
    text,
)
from sqlalchemy.ext.asyncio import AsyncSession

from libs.persistence import DatabaseManager

logger = structlog.get_logger(__name__)

IDENTIFIER_PATTERN = r"^[A-Za-z_][A-Za-z0-9_]*$"
TABLE_PATTERN = r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$"

# Max bound parameters per IN clause
ENTITY_CHUNK_SIZE = 500


class AggregationType(str, Enum):
    """Supported windowed aggregations."""

    COUNT = "count"
    SUM = "sum"
    AVG = "avg"
    MIN = "min"
    MAX = "max"
    STDDEV = "stddev"
    COUNT_DISTINCT = "count_distinct"


class MaterializationExpression(BaseModel):
    """Pure description of how a feature is computed from raw rows."""

    model_config = ConfigDict(extra="forbid")

    source_table: str = Field(
        ..., description="Raw table, optionally schema-qualified", pattern=TABLE_PATTERN
    )
    entity_column: str = Field(..., pattern=IDENTIFIER_PATTERN)
    timestamp_column: str = Field(..., pattern=IDENTIFIER_PATTERN)
    aggregation: AggregationType = Field(..., description="Aggregate function")
    value_column: str | None = Field(
        None,
        description="Aggregated column (not needed for count)",
        pattern=IDENTIFIER_PATTERN,
    )
    window_seconds: int = Field(..., gt=0, description="Trailing window length")
    filters: dict[str, str | int | float | bool] = Field(
        default_factory=dict, description="Equality filters applied to source rows"
    )
    absolute_values: bool = Field(
        False, description="Aggregate the absolute value of value_column"
    )
    default: Any = Field(
        None, description="Value for entities without qualifying rows, when set"
    )
    entity_table: str | None = Field(
        None,
        description="Table listing every entity eligible for the default",
        pattern=TABLE_PATTERN,
    )
    entity_table_column: str | None = Field(None, pattern=IDENTIFIER_PATTERN)
    sql: str | None = Field(
        None,
        description=(
            "Raw SELECT returning (entity_id, value); may bind :window_start "
            "and :window_end"
        ),
    )

    @model_validator(mode="after")
    def _check_columns(self) -> "MaterializationExpression":
        if self.sql is None:
            if self.aggregation != AggregationType.COUNT and not self.value_column:
                raise ValueError(
                    f"value_column is required for {self.aggregation.value}"
                )
            if self.absolute_values and not self.value_column:
                raise ValueError("absolute_values requires value_column")
        else:
            if not self.sql.lstrip().lower().startswith(("select", "with")):
                raise ValueError("sql must be a read-only SELECT statement")
        for name in self.filters:
            if not name.isidentifier():
                raise ValueError(f"invalid filter column: {name}")
        return self

    @property
    def has_default(self) -> bool:
        """Whether a default was declared (an explicit ``None`` counts)."""
        return "default" in self.model_fields_set

    @property
    def window(self) -> timedelta:
        return timedelta(seconds=self.window_seconds)

    def canonical(self) -> dict[str, Any]:
        """JSON-ready form used for storage and change detection."""
        data = self.model_dump(mode="json", exclude={"default"})
        if self.has_default:
            data["default"] = self.default
        return data

    def describe(self) -> str:
        """Short human-readable transformation used in lineage records."""
        if self.sql is not None:
            return "custom sql"
        target = self.value_column or "*"
        if self.absolute_values:
            target = f"abs({target})"
        return (
            f"{self.aggregation.value}({target}) over {self.window_seconds}s "
            f"by {self.entity_column}"
        )


def _source_table(name: str, *columns):
    schema, _, table_name = name.rpartition(".")
    return table(table_name, *columns, schema=schema or None)


def _normalize(value: Any) -> Any:
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    return value


def _chunks(items: list[str], size: int = ENTITY_CHUNK_SIZE):
    for start in range(0, len(items), size):
        yield items[start : start + size]


def _sample_stddev(total: Any, total_squares: Any, count: int) -> float | None:
    if not count or count < 2:
        return None
    total = float(total)
    variance = (float(total_squares) - total * total / count) / (count - 1)
    return math.sqrt(max(variance, 0.0))


def build_aggregate_query(
    expression: MaterializationExpression,
    window_start: datetime,
    window_end: datetime,
    entity_ids: list[str] | None = None,
):
    """Build the grouped aggregate SELECT for one expression."""
    column_names = {expression.entity_column, *expression.filters}
    if expression.value_column:
        column_names.add(expression.value_column)
    column_names.discard(expression.timestamp_column)

    src = _source_table(
        expression.source_table,
        column(expression.timestamp_column, DateTime),
        *(column(name) for name in sorted(column_names)),
    )
    entity = src.c[expression.entity_column]
    timestamp = src.c[expression.timestamp_column]

    conditions = [timestamp >= window_start, timestamp <= window_end]
    for name, expected in expression.filters.items():
        conditions.append(src.c[name] == expected)
    if entity_ids is not None:
        conditions.append(entity.in_(entity_ids))

    value = src.c[expression.value_column] if expression.value_column else None
    if value is not None and expression.absolute_values:
        value = func.abs(value)

    aggregation = expression.aggregation
    if aggregation == AggregationType.COUNT:
        aggregates = [func.count(value) if value is not None else func.count()]
    elif aggregation == AggregationType.SUM:
        aggregates = [func.sum(value)]
    elif aggregation == AggregationType.AVG:
        aggregates = [func.avg(value)]
    elif aggregation == AggregationType.MIN:
        aggregates = [func.min(value)]
    elif aggregation == AggregationType.MAX:
        aggregates = [func.max(value)]
    elif aggregation == AggregationType.COUNT_DISTINCT:
        aggregates = [func.count(distinct(value))]
    else:
        # Sample stddev from sums; not every backend ships STDDEV_SAMP
        aggregates = [func.sum(value), func.sum(value * value), func.count(value)]

    return (
        select(entity.label("entity_id"), *aggregates)
        .where(and_(*conditions))
        .group_by(entity)
    )


async def _candidate_entities(
    session: AsyncSession,
    expression: MaterializationExpression,
    entity_ids: list[str] | None,
) -> set[str]:
    if expression.entity_table:
        id_column = expression.entity_table_column or expression.entity_column
        src = _source_table(expression.entity_table, column(id_column))
    else:
        id_column = expression.entity_column
        src = _source_table(expression.source_table, column(id_column))

    stmt = select(distinct(src.c[id_column]))
    result = await session.execute(stmt)
    candidates = {str(row[0]) for row in result if row[0] is not None}
    if entity_ids is not None:
        candidates &= set(entity_ids)
    return candidates


async def _evaluate_sql(
    session: AsyncSession,
    expression: MaterializationExpression,
    window_start: datetime,
    window_end: datetime,
) -> dict[str, Any]:
    stmt = text(expression.sql)
    params = {}
    for name, bound in (("window_start", window_start), ("window_end", window_end)):
        if f":{name}" in expression.sql:
            stmt = stmt.bindparams(bindparam(name, type_=DateTime))
            params[name] = bound

    result = await session.execute(stmt, params)
    return {str(row[0]): _normalize(row[1]) for row in result if row[0] is not None}


async def evaluate(
    source_db: DatabaseManager,
    expression: MaterializationExpression,
    window_end: datetime,
    entity_ids: list[str] | None = None,
) -> dict[str, Any]:
    """Evaluate an expression over ``[window_end - window, window_end]``.

    Args:
        source_db: Read-only raw source database
        expression: Expression to evaluate
        window_end: Inclusive end of the window (naive UTC)
        entity_ids: Restrict evaluation to these entities

    Returns:
        Mapping of entity id to computed value. Entities without
        qualifying rows are absent unless the expression declares a default.
    """
    window_start = window_end - expression.window
    values: dict[str, Any] = {}

    async with source_db.get_session() as session:
        if expression.sql is not None:
            values = await _evaluate_sql(session, expression, window_start, window_end)
            if entity_ids is not None:
                wanted = set(entity_ids)
                values = {k: v for k, v in values.items() if k in wanted}
        else:
            batches = [None] if entity_ids is None else list(_chunks(entity_ids))
            for batch in batches:
                stmt = build_aggregate_query(expression, window_start, window_end, batch)
                result = await session.execute(stmt)
                for row in result:
                    if row[0] is None:
                        continue
                    if expression.aggregation == AggregationType.STDDEV:
                        value = _sample_stddev(row[1], row[2], row[3])
                    else:
                        value = _normalize(row[1])
                    values[str(row[0])] = value

        if expression.has_default:
            for entity_id in await _candidate_entities(session, expression, entity_ids):
                values.setdefault(entity_id, expression.default)

    logger.debug(
        "Expression evaluated",
        source_table=expression.source_table,
        aggregation=expression.aggregation.value,
        window_start=window_start.isoformat(),
        window_end=window_end.isoformat(),
        entities=len(values),
    )
    return values
