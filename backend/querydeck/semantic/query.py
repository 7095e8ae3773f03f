"""
Query Structures
================

Pydantic models for the declarative queries the engine accepts.

WHY THIS FILE EXISTS
--------------------
Queries arrive as JSON from the query builder (and from older saved
reports). This file is the construction boundary:

- Structural problems (missing metrics, empty segment groups, empty `in`
  lists, limit out of range) fail here as Pydantic validation errors.
- Legacy keys are translated to catalog keys here, once, through
  querydeck/semantic/aliases.py.
- Catalog membership and operator typing are NOT checked here; that is
  querydeck/semantic/validator.py, which produces actionable QueryErrors.

Both camelCase (builder) and snake_case (Python callers) field names are
accepted on input.

EXAMPLE
-------
    TableQuery.model_validate({
        "orgId": "org_1",
        "dateRange": {"from": "2026-02-01", "to": "2026-02-07"},
        "rows": ["channel"],
        "metrics": ["events", "revenue"],
        "segmentDsl": {"op": "AND", "rules": [
            {"field": "brand", "op": "eq", "value": "Gap"},
        ]},
        "sort": {"key": "revenue", "direction": "desc"},
        "limit": 50,
    })

RELATED FILES
-------------
- querydeck/semantic/validator.py: Semantic checks on these models
- querydeck/semantic/engine.py: Executes them
- querydeck/semantic/freeform.py: Legacy request flavor that builds a TableQuery
"""

from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    StrictBool,
    StrictFloat,
    StrictInt,
    StrictStr,
    field_validator,
    model_validator,
)

from querydeck.semantic.aliases import (
    translate_dimension_key,
    translate_metric_key,
    translate_segment_field,
    translate_sort_key,
)
from querydeck.semantic.dates import is_date_string

Scalar = Union[StrictBool, StrictInt, StrictFloat, StrictStr]

MAX_LIMIT = 1000
DEFAULT_LIMIT = 100


class DateRangePreset(str, Enum):
    TODAY = "today"
    LAST_7_DAYS = "last_7_days"
    LAST_30_DAYS = "last_30_days"
    LAST_90_DAYS = "last_90_days"


class SegmentOperator(str, Enum):
    EQ = "eq"
    NEQ = "neq"
    CONTAINS = "contains"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    IN = "in"


class DateRange(BaseModel):
    """
    Inclusive date window of a query.

    Supports two modes:
    1. Explicit: {"from": "2026-02-01", "to": "2026-02-07"}
       Date-only values cover whole UTC days; datetimes are taken as given.
    2. Preset: {"preset": "last_7_days"}, resolved when the query runs.

    Validation:
    - Exactly one mode must be used
    - Explicit bounds must look like dates (full parsing is semantic validation)
    """
    model_config = ConfigDict(populate_by_name=True)

    from_: Optional[str] = Field(default=None, alias="from")
    to: Optional[str] = None
    preset: Optional[DateRangePreset] = None

    @field_validator("from_", "to")
    @classmethod
    def _check_format(cls, v):
        if v is not None and not is_date_string(v.strip()):
            raise ValueError("must be YYYY-MM-DD or an ISO-8601 datetime")
        return v

    @model_validator(mode="after")
    def validate_xor(self):
        has_explicit = self.from_ is not None or self.to is not None
        has_preset = self.preset is not None
        if has_explicit == has_preset:
            raise ValueError("dateRange must specify either 'from'/'to' OR 'preset', not both")
        if has_explicit and (self.from_ is None or self.to is None):
            raise ValueError("dateRange requires both 'from' and 'to'")
        return self


class SegmentRule(BaseModel):
    """Single predicate: `{field, op, value}`."""
    model_config = ConfigDict(populate_by_name=True)

    field: str = Field(min_length=1)
    op: SegmentOperator = Field(validation_alias=AliasChoices("op", "operator"))
    value: Union[Scalar, List[Scalar]]

    @field_validator("field")
    @classmethod
    def _translate_field(cls, v: str) -> str:
        return translate_segment_field(v.strip())

    @model_validator(mode="after")
    def _check_value_shape(self):
        if self.op is SegmentOperator.IN:
            if not isinstance(self.value, list) or not self.value:
                raise ValueError("'in' requires a non-empty list of values")
        elif isinstance(self.value, list):
            raise ValueError(f"'{self.op.value}' requires a single value, not a list")
        return self


def _normalize_group_op(v: Any) -> Any:
    return v.upper() if isinstance(v, str) else v


GroupOp = Annotated[Literal["AND", "OR"], BeforeValidator(_normalize_group_op)]


class SegmentGroup(BaseModel):
    """Nested group: a boolean combination of rules."""
    op: GroupOp
    rules: List[SegmentRule] = Field(min_length=1)


class SegmentTree(BaseModel):
    """
    Root of a segment: rules and at most one level of nested groups.

    Example:
        {"op": "AND", "rules": [
            {"field": "channel", "op": "eq", "value": "Email"},
            {"op": "OR", "rules": [
                {"field": "brand", "op": "eq", "value": "Gap"},
                {"field": "brand", "op": "eq", "value": "Old Navy"},
            ]},
        ]}
    """
    op: GroupOp = "AND"
    rules: List[Union[SegmentRule, SegmentGroup]] = Field(min_length=1)


class SortSpec(BaseModel):
    key: str = Field(min_length=1)
    direction: Literal["asc", "desc"] = "desc"

    @field_validator("key")
    @classmethod
    def _translate_key(cls, v: str) -> str:
        return translate_sort_key(v)


class TableQuery(BaseModel):
    """
    Grouped aggregation request.

    `dimensions` may be empty, in which case the result is a single
    aggregate row. When `sort` is omitted the first metric sorts descending.
    """
    model_config = ConfigDict(populate_by_name=True)

    org_id: str = Field(min_length=1, validation_alias=AliasChoices("org_id", "orgId"))
    date_range: DateRange = Field(validation_alias=AliasChoices("date_range", "dateRange"))
    dimensions: List[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("dimensions", "rows", "dimensionKeys"),
    )
    metrics: List[str] = Field(
        min_length=1,
        validation_alias=AliasChoices("metrics", "metricKeys"),
    )
    segment: Optional[SegmentTree] = Field(
        default=None,
        validation_alias=AliasChoices("segment", "segmentDsl"),
    )
    sort: Optional[SortSpec] = None
    limit: int = Field(default=DEFAULT_LIMIT, ge=1, le=MAX_LIMIT)
    offset: int = Field(default=0, ge=0)

    @field_validator("dimensions")
    @classmethod
    def _translate_dimensions(cls, v: List[str]) -> List[str]:
        return [translate_dimension_key(key) for key in v]

    @field_validator("metrics")
    @classmethod
    def _translate_metrics(cls, v: List[str]) -> List[str]:
        return [translate_metric_key(key) for key in v]

    def cache_payload(self) -> Dict[str, Any]:
        """Canonical JSON-able form, used to build the result cache key."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class TimeseriesQuery(BaseModel):
    """Single metric bucketed by day or hour, optionally split by one dimension."""
    model_config = ConfigDict(populate_by_name=True)

    org_id: str = Field(min_length=1, validation_alias=AliasChoices("org_id", "orgId"))
    metric: str = Field(min_length=1, validation_alias=AliasChoices("metric", "metricKey"))
    dimension: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("dimension", "dimensionKey"),
    )
    granularity: Literal["day", "hour"] = "day"
    date_range: DateRange = Field(validation_alias=AliasChoices("date_range", "dateRange"))
    segment: Optional[SegmentTree] = Field(
        default=None,
        validation_alias=AliasChoices("segment", "segmentDsl"),
    )

    @field_validator("metric")
    @classmethod
    def _translate_metric(cls, v: str) -> str:
        return translate_metric_key(v)

    @field_validator("dimension")
    @classmethod
    def _translate_dimension(cls, v: Optional[str]) -> Optional[str]:
        return translate_dimension_key(v) if v is not None else None

    def cache_payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
