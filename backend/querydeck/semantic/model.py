"""
Semantic Catalog
================

Single source of truth for what can be queried about an event.
This model defines WHAT each dimension, metric and segment field means and
which event field backs it. Both execution strategies read it.

WHY THIS FILE EXISTS
--------------------
The compiled strategy (SQL) and the scan strategy (Python) must produce the
same numbers. That only holds if they agree on:

- which event column or JSON property backs each key
- what a missing value turns into ("(none)" for dimensions, 0 for sums)
- when a property counts as numeric

So every definition here carries its *source* (`property` or `column`), and
the coercion rules (`stringify`, `coerce_number`) are written once. The SQL
lowering in compiler.py emits the same rules as SQL expressions:

    coerce_number   <->  CASE WHEN text ~ NUMERIC_PATTERN THEN CAST(text AS FLOAT) ELSE 0
    derive_dimension <-> COALESCE(CAST(property AS TEXT), '(none)')

DESIGN PRINCIPLES
-----------------
1. **Closed sets**: Unknown keys are rejected by the validator, never guessed
2. **Total derivations**: Reading a key from any event never raises
3. **Declarative**: Definitions describe sources, the engine does the work

RELATED FILES
-------------
- querydeck/semantic/segments.py: Evaluates segment rules with these readers
- querydeck/semantic/engine.py: Groups events by derive_dimension()
- querydeck/semantic/compiler.py: SQL rendition of the same sources
- querydeck/semantic/validator.py: Allowlists derived from these definitions
"""

import math
import re
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Union

from querydeck.semantic.dates import EPOCH, floor_day, format_day, format_hour


# =============================================================================
# ENUMS: Type-safe classifications
# =============================================================================

class DimensionType(Enum):
    """
    Type of dimension for query building.

    - CATEGORICAL: Flat enumeration read from a property or column
    - TEMPORAL: Time bucket derived from the event timestamp
    """
    CATEGORICAL = "categorical"
    TEMPORAL = "temporal"


class MetricType(Enum):
    """How metric values are displayed."""
    COUNT = "count"            # 1,234 (events, users)
    CURRENCY = "currency"      # $1,234.56 (revenue, netDemand)


class Aggregation(Enum):
    """How per-event contributions fold into a bucket value."""
    COUNT = "count"
    COUNT_DISTINCT = "count_distinct"
    SUM = "sum"


class FieldType(Enum):
    """
    Type domain a segment field is compared in.

    Determines both the legal operators and how rule values are coerced
    before comparison.
    """
    TEXT = "text"
    NUMBER = "number"
    DATE = "date"


# =============================================================================
# CONSTANTS
# =============================================================================

NONE_LABEL = "(none)"

# Text only counts as numeric if it matches this exactly. The compiled
# strategy emits the same pattern as a SQL regex guard; JSON numbers come back
# from the database in this form too ("120.5", "1e-05", "1.0e+16").
NUMERIC_PATTERN = r"^-?[0-9]+(\.[0-9]+)?([eE][-+]?[0-9]+)?$"
_NUMERIC_RE = re.compile(NUMERIC_PATTERN)

LEGACY_PROPERTY_PREFIX = "properties."
PROPERTY_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_\-]{1,64}$")

# Event columns a definition may read directly
EVENT_NAME_COLUMN = "event_name"
USER_ID_COLUMN = "user_id"
TIMESTAMP_COLUMN = "timestamp"


# =============================================================================
# DATA CLASSES: Structured definitions
# =============================================================================

@dataclass(frozen=True)
class Dimension:
    """
    Definition of a grouping key.

    PARAMETERS:
        name: Catalog key (e.g., "channel")
        display_name: Human-readable name
        type: CATEGORICAL or TEMPORAL
        property: JSON property the value is read from (categorical)
        column: Event column the value is read from
        granularity: "day" or "hour" for TEMPORAL dimensions

    EXAMPLES:
        >>> DIMENSIONS["channel"].property
        'channel'
        >>> DIMENSIONS["hour"].granularity
        'hour'
    """
    name: str
    display_name: str
    type: DimensionType
    property: Optional[str] = None
    column: Optional[str] = None
    granularity: Optional[str] = None


@dataclass(frozen=True)
class Metric:
    """
    Definition of an aggregate.

    PARAMETERS:
        name: Catalog key (e.g., "revenue")
        display_name: Human-readable name
        type: Display type
        aggregation: COUNT, COUNT_DISTINCT or SUM
        property: JSON property summed (SUM metrics)
        column: Event column counted distinctly (COUNT_DISTINCT metrics)
    """
    name: str
    display_name: str
    type: MetricType
    aggregation: Aggregation
    property: Optional[str] = None
    column: Optional[str] = None


@dataclass(frozen=True)
class SegmentField:
    """A field segment rules can filter on, with its comparison domain."""
    name: str
    type: FieldType
    property: Optional[str] = None
    column: Optional[str] = None


# =============================================================================
# DIMENSION DEFINITIONS
# =============================================================================

DIMENSIONS: Dict[str, Dimension] = {
    "channel": Dimension(
        name="channel",
        display_name="Channel",
        type=DimensionType.CATEGORICAL,
        property="channel",
    ),
    "brand": Dimension(
        name="brand",
        display_name="Brand",
        type=DimensionType.CATEGORICAL,
        property="brand",
    ),
    "product": Dimension(
        name="product",
        display_name="Product",
        type=DimensionType.CATEGORICAL,
        property="product",
    ),
    "campaign": Dimension(
        name="campaign",
        display_name="Campaign",
        type=DimensionType.CATEGORICAL,
        property="campaign",
    ),
    "eventName": Dimension(
        name="eventName",
        display_name="Event Name",
        type=DimensionType.CATEGORICAL,
        column=EVENT_NAME_COLUMN,
    ),
    "day": Dimension(
        name="day",
        display_name="Day",
        type=DimensionType.TEMPORAL,
        column=TIMESTAMP_COLUMN,
        granularity="day",
    ),
    "hour": Dimension(
        name="hour",
        display_name="Hour",
        type=DimensionType.TEMPORAL,
        column=TIMESTAMP_COLUMN,
        granularity="hour",
    ),
}


# =============================================================================
# METRIC DEFINITIONS
# =============================================================================

METRICS: Dict[str, Metric] = {
    "events": Metric(
        name="events",
        display_name="Events",
        type=MetricType.COUNT,
        aggregation=Aggregation.COUNT,
    ),
    "users": Metric(
        name="users",
        display_name="Unique Users",
        type=MetricType.COUNT,
        aggregation=Aggregation.COUNT_DISTINCT,
        column=USER_ID_COLUMN,
    ),
    "revenue": Metric(
        name="revenue",
        display_name="Revenue",
        type=MetricType.CURRENCY,
        aggregation=Aggregation.SUM,
        property="revenue",
    ),
    "netDemand": Metric(
        name="netDemand",
        display_name="Net Demand",
        type=MetricType.CURRENCY,
        aggregation=Aggregation.SUM,
        property="netDemand",
    ),
}


# =============================================================================
# SEGMENT FIELD DEFINITIONS
# =============================================================================

SEGMENT_FIELDS: Dict[str, SegmentField] = {
    "channel": SegmentField("channel", FieldType.TEXT, property="channel"),
    "brand": SegmentField("brand", FieldType.TEXT, property="brand"),
    "product": SegmentField("product", FieldType.TEXT, property="product"),
    "campaign": SegmentField("campaign", FieldType.TEXT, property="campaign"),
    "eventName": SegmentField("eventName", FieldType.TEXT, column=EVENT_NAME_COLUMN),
    "userId": SegmentField("userId", FieldType.TEXT, column=USER_ID_COLUMN),
    "day": SegmentField("day", FieldType.DATE, column=TIMESTAMP_COLUMN),
    "revenue": SegmentField("revenue", FieldType.NUMBER, property="revenue"),
    "netDemand": SegmentField("netDemand", FieldType.NUMBER, property="netDemand"),
}

OPERATORS_BY_TYPE: Dict[FieldType, FrozenSet[str]] = {
    FieldType.TEXT: frozenset(["eq", "neq", "contains", "in"]),
    FieldType.NUMBER: frozenset(["eq", "neq", "gt", "gte", "lt", "lte", "in"]),
    FieldType.DATE: frozenset(["eq", "neq", "gt", "gte", "lt", "lte", "in"]),
}


# =============================================================================
# FROZEN SETS FOR VALIDATION
# =============================================================================

ALLOWED_DIMENSIONS: FrozenSet[str] = frozenset(DIMENSIONS.keys())
ALLOWED_METRICS: FrozenSet[str] = frozenset(METRICS.keys())
ALLOWED_SEGMENT_FIELDS: FrozenSet[str] = frozenset(SEGMENT_FIELDS.keys())


# =============================================================================
# LOOKUPS
# =============================================================================

def get_dimension(name: str) -> Optional[Dimension]:
    return DIMENSIONS.get(name)


def get_metric(name: str) -> Optional[Metric]:
    return METRICS.get(name)


def get_segment_field(name: str) -> Optional[SegmentField]:
    """
    Resolve a segment field by catalog key or legacy dotted property path.

    Legacy paths (`properties.<name>`) that have no catalog alias are read
    as raw text properties.

    EXAMPLES:
        >>> get_segment_field("revenue").type
        <FieldType.NUMBER: 'number'>
        >>> get_segment_field("properties.country")
        SegmentField(name='properties.country', type=<FieldType.TEXT: 'text'>, property='country', column=None)
        >>> get_segment_field("unknown") is None
        True
    """
    field = SEGMENT_FIELDS.get(name)
    if field is not None:
        return field
    if name.startswith(LEGACY_PROPERTY_PREFIX):
        prop = name[len(LEGACY_PROPERTY_PREFIX):]
        if PROPERTY_NAME_PATTERN.match(prop):
            return SegmentField(name, FieldType.TEXT, property=prop)
    return None


def field_type(name: str) -> Optional[FieldType]:
    """Comparison domain of a segment field, or None if the field is unknown."""
    field = get_segment_field(name)
    return field.type if field is not None else None


# =============================================================================
# COERCION
# =============================================================================

def stringify(value: Any) -> str:
    """
    Text form of a stored value, as SQL renders it.

    None -> "", booleans -> "true"/"false", everything else -> str().
    """
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def coerce_number(value: Any) -> float:
    """
    Lenient numeric coercion used for sums and numeric segment fields.

    Finite numbers pass through. Strings are numeric only if they match
    NUMERIC_PATTERN. Anything else (missing, boolean, "abc", " 5", NaN,
    infinity) becomes 0.0. Never raises.

    EXAMPLES:
        >>> coerce_number("120.50")
        120.5
        >>> coerce_number(0.00001)
        1e-05
        >>> coerce_number("2.5e3")
        2500.0
        >>> coerce_number("abc")
        0.0
        >>> coerce_number(True)
        0.0
    """
    if isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float, Decimal)):
        try:
            number = float(value)
        except OverflowError:
            return 0.0
    elif isinstance(value, str) and _NUMERIC_RE.match(value):
        number = float(value)
    else:
        return 0.0
    return number if math.isfinite(number) else 0.0


def read_source(event: Any, property: Optional[str] = None, column: Optional[str] = None) -> Any:
    """Read the raw backing value of a definition from an event."""
    if column is not None:
        return getattr(event, column, None)
    if property is not None:
        properties = getattr(event, "properties", None) or {}
        return properties.get(property)
    return None


# =============================================================================
# DERIVATIONS
# =============================================================================

def derive_dimension(event: Any, key: str) -> str:
    """
    Group value of an event for a dimension key.

    Total: unknown keys and missing sources yield "(none)".

    EXAMPLES:
        >>> derive_dimension(event, "day")
        '2026-02-01'
        >>> derive_dimension(event_without_channel, "channel")
        '(none)'
    """
    dimension = DIMENSIONS.get(key)
    if dimension is None:
        return NONE_LABEL

    if dimension.type is DimensionType.TEMPORAL:
        timestamp = getattr(event, TIMESTAMP_COLUMN, None)
        if timestamp is None:
            return NONE_LABEL
        if dimension.granularity == "hour":
            return format_hour(timestamp)
        return format_day(timestamp)

    raw = read_source(event, dimension.property, dimension.column)
    if raw is None:
        return NONE_LABEL
    return stringify(raw)


def derive_metric_contribution(event: Any, key: str) -> Union[float, str, None]:
    """
    Per-event contribution to a metric.

    - events: 1
    - users: the user id, or None when absent (not counted)
    - revenue / netDemand: coerced number, 0.0 when non-numeric
    """
    metric = METRICS.get(key)
    if metric is None:
        return None
    if metric.aggregation is Aggregation.COUNT:
        return 1
    if metric.aggregation is Aggregation.COUNT_DISTINCT:
        return read_source(event, metric.property, metric.column)
    return coerce_number(read_source(event, metric.property, metric.column))


def read_segment_value(event: Any, field: SegmentField) -> Union[str, float, datetime]:
    """Value of a segment field on an event, in the field's type domain."""
    raw = read_source(event, field.property, field.column)
    if field.type is FieldType.NUMBER:
        return coerce_number(raw)
    if field.type is FieldType.DATE:
        return floor_day(raw) if isinstance(raw, datetime) else EPOCH
    return stringify(raw)


def normalize_metric_value(key: str, raw: Any) -> Union[int, float]:
    """
    Canonical result value for a metric.

    Counts are ints. Sums are floats rounded to 6 places so both strategies
    report the same figure regardless of summation order.
    """
    metric = METRICS.get(key)
    if metric is not None and metric.aggregation is not Aggregation.SUM:
        return int(raw or 0)
    if raw is None:
        return 0.0
    return round(float(raw), 6)


def normalize_dimension_value(raw: Any) -> str:
    """Canonical result value for a dimension read back from SQL."""
    if raw is None:
        return NONE_LABEL
    return stringify(raw)
