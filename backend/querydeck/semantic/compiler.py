"""
Query Plan Compiler
===================

Lowers TablePlan / TimeseriesPlan objects into SQLAlchemy Core selects
against the `events` table. This is the "compiled" execution strategy.

WHY THIS FILE EXISTS
--------------------
Loading every event into Python does not scale past a few hundred thousand
rows. The compiled strategy lets the database do the grouping, while
keeping results identical to the scan strategy. Every rule from the catalog
has a SQL twin here:

    catalog (Python)                      SQL
    ------------------------------------  ------------------------------------------
    derive_dimension -> "(none)"          COALESCE(CAST(properties->>'x' AS TEXT), '(none)')
    coerce_number                         CASE WHEN text ~ NUMERIC_PATTERN THEN CAST(text AS FLOAT) ELSE 0
    format_day / format_hour              day_bucket / hour_bucket (compiled per dialect)
    contains (case-insensitive)           lower(x) LIKE '%' || lower(:v) || '%' (autoescaped)
    date field eq "2026-02-01"            timestamp >= day AND timestamp < day + 1

SHAPE OF THE SQL
----------------
    filtered = SELECT d0.., v0.. FROM events WHERE <tenant + range + segment>

    rows   = SELECT d0.., agg(..) AS m0.. FROM filtered
             GROUP BY d0.. ORDER BY <sort alias>, d0.. LIMIT :limit OFFSET :offset
             (dimension ordering is by code point, COLLATE "C" on PostgreSQL)
    totals = SELECT agg(..) AS m0.. FROM filtered

The rows and totals statements select from the SAME `filtered` subquery, so
the WHERE predicate is identical by construction. Grouping happens on the
subquery's columns, which keeps GROUP BY free of bound parameters.

All values are bound parameters; catalog keys never reach the SQL text.

RELATED FILES
-------------
- querydeck/semantic/engine.py: Plans and result normalisation
- querydeck/semantic/model.py: Sources and coercion rules mirrored here
- querydeck/services/event_sources.py: Executes the compiled statements
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import Float, String, and_, case, cast, distinct, false, func, or_, select
from sqlalchemy.exc import CompileError
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.sql import ColumnElement, Select
from sqlalchemy.sql.expression import FunctionElement

from querydeck.models import Event
from querydeck.semantic.engine import TablePlan, TimeseriesPlan
from querydeck.semantic.model import (
    DIMENSIONS,
    METRICS,
    NONE_LABEL,
    NUMERIC_PATTERN,
    Aggregation,
    DimensionType,
    FieldType,
    get_segment_field,
)
from querydeck.semantic.query import SegmentOperator, SegmentRule
from querydeck.semantic.segments import SegmentNode, coerce_operand


# =============================================================================
# TIME BUCKETS (dialect specific)
# =============================================================================

class day_bucket(FunctionElement):
    """`YYYY-MM-DD` of a timestamp column."""
    type = String()
    name = "day_bucket"
    inherit_cache = True


class hour_bucket(FunctionElement):
    """`YYYY-MM-DDTHH:00:00Z` of a timestamp column."""
    type = String()
    name = "hour_bucket"
    inherit_cache = True


@compiles(day_bucket)
@compiles(hour_bucket)
def _unsupported_bucket(element, compiler, **kw):
    raise CompileError(f"{element.name} is not supported on dialect '{compiler.dialect.name}'")


@compiles(day_bucket, "postgresql")
def _pg_day_bucket(element, compiler, **kw):
    return "to_char(date_trunc('day', %s), 'YYYY-MM-DD')" % compiler.process(element.clauses, **kw)


@compiles(hour_bucket, "postgresql")
def _pg_hour_bucket(element, compiler, **kw):
    return (
        "to_char(date_trunc('hour', %s), 'YYYY-MM-DD\"T\"HH24:00:00\"Z\"')"
        % compiler.process(element.clauses, **kw)
    )


@compiles(day_bucket, "sqlite")
def _sqlite_day_bucket(element, compiler, **kw):
    return "strftime('%%Y-%%m-%%d', %s)" % compiler.process(element.clauses, **kw)


@compiles(hour_bucket, "sqlite")
def _sqlite_hour_bucket(element, compiler, **kw):
    return "strftime('%%Y-%%m-%%dT%%H:00:00Z', %s)" % compiler.process(element.clauses, **kw)


# =============================================================================
# ORDERING
# =============================================================================

class codepoint_order(FunctionElement):
    """
    Text ordered by code point, the way Python orders str.

    PostgreSQL sorts with the database collation (usually en_US.UTF-8, which
    ignores case and punctuation), so dimension ordering pins "C" there.
    SQLite's default BINARY collation already compares code points.
    """
    type = String()
    name = "codepoint_order"
    inherit_cache = True


@compiles(codepoint_order)
def _plain_codepoint_order(element, compiler, **kw):
    return compiler.process(element.clauses, **kw)


@compiles(codepoint_order, "postgresql")
def _pg_codepoint_order(element, compiler, **kw):
    return '%s COLLATE "C"' % compiler.process(element.clauses, **kw)


# =============================================================================
# FIELD EXPRESSIONS
# =============================================================================

def property_text(name: str) -> ColumnElement:
    """Text value of a JSON property, NULL when missing or JSON null."""
    return cast(Event.properties[name].as_string(), String)


def source_text(property: Optional[str], column: Optional[str]) -> ColumnElement:
    if column is not None:
        return getattr(Event, column)
    return property_text(property)


def numeric_property(name: str) -> ColumnElement:
    """SQL twin of coerce_number: guarded cast, 0 when not numeric."""
    text = property_text(name)
    return case(
        (text.regexp_match(NUMERIC_PATTERN), cast(text, Float)),
        else_=0.0,
    )


def dimension_expression(key: str) -> ColumnElement:
    dimension = DIMENSIONS[key]
    if dimension.type is DimensionType.TEMPORAL:
        if dimension.granularity == "hour":
            return hour_bucket(Event.timestamp)
        return day_bucket(Event.timestamp)
    return func.coalesce(source_text(dimension.property, dimension.column), NONE_LABEL)


def metric_input(key: str) -> Optional[ColumnElement]:
    """Per-row value the metric aggregates, or None for plain counts."""
    metric = METRICS[key]
    if metric.aggregation is Aggregation.COUNT_DISTINCT:
        return getattr(Event, metric.column)
    if metric.aggregation is Aggregation.SUM:
        return numeric_property(metric.property)
    return None


def metric_aggregate(key: str, value_column: Optional[ColumnElement]) -> ColumnElement:
    aggregation = METRICS[key].aggregation
    if aggregation is Aggregation.COUNT:
        return func.count()
    if aggregation is Aggregation.COUNT_DISTINCT:
        return func.count(distinct(value_column))
    return func.coalesce(func.sum(value_column), 0.0)


# =============================================================================
# SEGMENTS
# =============================================================================

def _date_condition(op: SegmentOperator, day: datetime) -> ColumnElement:
    ts = Event.timestamp
    next_day = day + timedelta(days=1)
    if op is SegmentOperator.EQ or op is SegmentOperator.IN:
        return and_(ts >= day, ts < next_day)
    if op is SegmentOperator.NEQ:
        return or_(ts < day, ts >= next_day)
    if op is SegmentOperator.GT:
        return ts >= next_day
    if op is SegmentOperator.GTE:
        return ts >= day
    if op is SegmentOperator.LT:
        return ts < day
    if op is SegmentOperator.LTE:
        return ts < next_day
    return false()


def compile_rule(rule: SegmentRule) -> ColumnElement:
    field = get_segment_field(rule.field)
    if field is None:
        return false()

    values = rule.value if isinstance(rule.value, list) else [rule.value]
    operands = [coerce_operand(field.type, v) for v in values]

    if field.type is FieldType.DATE:
        if rule.op is SegmentOperator.IN:
            return or_(*[_date_condition(rule.op, day) for day in operands])
        return _date_condition(rule.op, operands[0])

    if field.type is FieldType.NUMBER:
        expr = numeric_property(field.property)
    else:
        expr = func.coalesce(source_text(field.property, field.column), "")

    operand = operands[0]
    if rule.op is SegmentOperator.EQ:
        return expr == operand
    if rule.op is SegmentOperator.NEQ:
        return expr != operand
    if rule.op is SegmentOperator.CONTAINS:
        return expr.icontains(str(operand), autoescape=True)
    if rule.op is SegmentOperator.GT:
        return expr > operand
    if rule.op is SegmentOperator.GTE:
        return expr >= operand
    if rule.op is SegmentOperator.LT:
        return expr < operand
    if rule.op is SegmentOperator.LTE:
        return expr <= operand
    return expr.in_(operands)


def compile_segment(node: SegmentNode) -> ColumnElement:
    if isinstance(node, SegmentRule):
        return compile_rule(node)
    children = [compile_segment(child) for child in node.rules]
    if node.op == "OR":
        return or_(*children)
    return and_(*children)


def where_clause(org_id: str, start: datetime, end: datetime, segment: Optional[SegmentNode]) -> ColumnElement:
    """Tenant, inclusive date range and segment, ANDed."""
    conditions = [
        Event.org_id == org_id,
        Event.timestamp >= start,
        Event.timestamp <= end,
    ]
    if segment is not None:
        conditions.append(compile_segment(segment))
    return and_(*conditions)


# =============================================================================
# STATEMENTS
# =============================================================================

@dataclass
class CompiledTableQuery:
    where: ColumnElement
    filtered: object
    rows_statement: Select
    totals_statement: Select
    dimension_labels: List[str]
    metric_labels: List[str]


@dataclass
class CompiledTimeseriesQuery:
    where: ColumnElement
    statement: Select
    has_dimension: bool


def compile_table_plan(plan: TablePlan) -> CompiledTableQuery:
    """
    Build the grouped rows statement and the totals statement for a plan.

    Result columns are labelled d0..dn (dimensions) and m0..mn (metrics) in
    plan order.
    """
    where = where_clause(plan.org_id, plan.start, plan.end, plan.segment)

    dimension_labels = [f"d{i}" for i in range(len(plan.dimensions))]
    metric_labels = [f"m{i}" for i in range(len(plan.metrics))]

    inner = [Event.id.label("event_pk")]
    inner += [dimension_expression(key).label(label) for key, label in zip(plan.dimensions, dimension_labels)]
    for i, key in enumerate(plan.metrics):
        value = metric_input(key)
        if value is not None:
            inner.append(value.label(f"v{i}"))
    filtered = select(*inner).where(where).subquery("filtered")

    def aggregates():
        return [
            metric_aggregate(key, filtered.c.get(f"v{i}")).label(label)
            for i, (key, label) in enumerate(zip(plan.metrics, metric_labels))
        ]

    dimension_columns = [filtered.c[label] for label in dimension_labels]
    metric_columns = aggregates()

    rows = select(*dimension_columns, *metric_columns).select_from(filtered)
    if dimension_columns:
        rows = rows.group_by(*dimension_columns)

    if plan.sort_is_metric:
        sort_column = metric_columns[plan.metrics.index(plan.sort_key)]
    else:
        sort_column = codepoint_order(dimension_columns[plan.dimensions.index(plan.sort_key)])
    primary_order = sort_column.desc() if plan.sort_direction == "desc" else sort_column.asc()

    rows = (
        rows.order_by(primary_order, *[codepoint_order(column).asc() for column in dimension_columns])
        .limit(plan.limit)
        .offset(plan.offset)
    )

    totals = select(*aggregates()).select_from(filtered)

    return CompiledTableQuery(
        where=where,
        filtered=filtered,
        rows_statement=rows,
        totals_statement=totals,
        dimension_labels=dimension_labels,
        metric_labels=metric_labels,
    )


def compile_timeseries_plan(plan: TimeseriesPlan) -> CompiledTimeseriesQuery:
    """Grouped (bucket[, dimension]) statement ordered by bucket then dimension."""
    where = where_clause(plan.org_id, plan.start, plan.end, plan.segment)

    bucket = hour_bucket(Event.timestamp) if plan.granularity == "hour" else day_bucket(Event.timestamp)
    inner = [Event.id.label("event_pk"), bucket.label("bucket")]
    if plan.dimension is not None:
        inner.append(dimension_expression(plan.dimension).label("dimension"))
    value = metric_input(plan.metric)
    if value is not None:
        inner.append(value.label("v0"))
    filtered = select(*inner).where(where).subquery("filtered")

    group_columns = [filtered.c.bucket]
    if plan.dimension is not None:
        group_columns.append(filtered.c.dimension)

    statement = (
        select(*group_columns, metric_aggregate(plan.metric, filtered.c.get("v0")).label("value"))
        .select_from(filtered)
        .group_by(*group_columns)
        .order_by(*[codepoint_order(column).asc() for column in group_columns])
    )
    return CompiledTimeseriesQuery(where=where, statement=statement, has_dimension=plan.dimension is not None)
