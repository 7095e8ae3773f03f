"""
Semantic Query Layer
====================

Table and timeseries queries over behavioral events, expressed in catalog
keys (dimensions, metrics, segment fields) instead of SQL.

ARCHITECTURE OVERVIEW
---------------------
```
TableQuery / TimeseriesQuery (semantic/query.py)
    |   legacy keys translated once (semantic/aliases.py)
    v
QueryValidator (semantic/validator.py)
    |   unknown keys, operator/type mismatches, bad dates -> QueryError
    v
AggregationEngine (semantic/engine.py)
    |   resolves the date range into a plan
    |
    +--> ScanEventSource      fetch_candidates, engine filters + groups
    |
    +--> PushdownEventSource  plan lowered by semantic/compiler.py
    v
TableResult / TimeseriesResult
```

Both execution strategies share the coercion rules in semantic/model.py, so
they return the same rows for the same data.

RELATED FILES
-------------
- querydeck/services/event_sources.py: SQL and in-memory event sources
- querydeck/services/query_service.py: Cache in front of the engine
"""

from querydeck.semantic.engine import (
    AggregationEngine,
    PushdownEventSource,
    ScanEventSource,
    TablePlan,
    TableResult,
    TimeseriesPlan,
    TimeseriesResult,
)
from querydeck.semantic.errors import ErrorCategory, ErrorCode, QueryError
from querydeck.semantic.model import DIMENSIONS, METRICS, SEGMENT_FIELDS, get_dimension, get_metric
from querydeck.semantic.query import (
    DateRange,
    SegmentGroup,
    SegmentRule,
    SegmentTree,
    SortSpec,
    TableQuery,
    TimeseriesQuery,
)
from querydeck.semantic.validator import QueryValidator, ValidationResult

__all__ = [
    # Queries (query.py)
    "TableQuery",
    "TimeseriesQuery",
    "DateRange",
    "SegmentRule",
    "SegmentGroup",
    "SegmentTree",
    "SortSpec",
    # Catalog (model.py)
    "DIMENSIONS",
    "METRICS",
    "SEGMENT_FIELDS",
    "get_dimension",
    "get_metric",
    # Validation (validator.py, errors.py)
    "QueryValidator",
    "ValidationResult",
    "QueryError",
    "ErrorCode",
    "ErrorCategory",
    # Execution (engine.py)
    "AggregationEngine",
    "ScanEventSource",
    "PushdownEventSource",
    "TablePlan",
    "TimeseriesPlan",
    "TableResult",
    "TimeseriesResult",
]
