"""
Semantic Query Validator
========================

Semantic validation of table and timeseries queries.

WHY THIS FILE EXISTS
--------------------
Validation happens in two layers with different responsibilities:

    Layer 1: Schema Validation (querydeck/semantic/query.py, Pydantic)
        - Types, required fields, limit bounds
        - Empty groups, empty `in` lists
        - Legacy key translation

    Layer 2: Semantic Validation (THIS FILE)
        - Dimension / metric / segment field keys exist in the catalog
        - No duplicate keys
        - Operator is legal for the field's type
        - Rule values can be read in the field's domain
        - Sort key is one of the query's dimensions or metrics
        - Dates parse, and `from` is not after `to`

All errors are collected and returned together; ensure_valid_* raises
the first one as a QueryError with the full list attached in `details`.

RELATED FILES
-------------
- querydeck/semantic/errors.py: QueryError and suggestions
- querydeck/semantic/model.py: Catalog allowlists
- querydeck/services/query_service.py: Calls ensure_valid_* before execution
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from querydeck.semantic.dates import parse_date_bound, try_parse_date_bound
from querydeck.semantic.errors import ErrorCode, QueryError, suggest_key
from querydeck.semantic.model import (
    ALLOWED_DIMENSIONS,
    ALLOWED_METRICS,
    ALLOWED_SEGMENT_FIELDS,
    NUMERIC_PATTERN,
    OPERATORS_BY_TYPE,
    FieldType,
    get_segment_field,
)
from querydeck.semantic.query import (
    DateRange,
    SegmentRule,
    SegmentTree,
    TableQuery,
    TimeseriesQuery,
)
from querydeck.semantic.segments import iter_rules

logger = logging.getLogger(__name__)


@dataclass
class ValidationResult:
    """
    Result of semantic validation.

    ATTRIBUTES:
        valid: True if no errors were found
        errors: Every QueryError found, in query order

    USAGE:
        result = QueryValidator().validate_table(query)
        if not result.valid:
            raise result.to_exception()
    """
    valid: bool = True
    errors: List[QueryError] = field(default_factory=list)

    def add_error(self, error: QueryError) -> None:
        self.errors.append(error)
        self.valid = False

    def to_exception(self) -> QueryError:
        """First error, carrying all errors in its details."""
        first = self.errors[0]
        if len(self.errors) > 1:
            first.details = {
                **first.details,
                "errors": [e.to_dict() for e in self.errors],
            }
        return first

    def to_dict(self) -> Dict[str, Any]:
        return {"valid": self.valid, "errors": [e.to_dict() for e in self.errors]}


class QueryValidator:
    """
    Catalog-aware checks for TableQuery and TimeseriesQuery.

    Stateless; one instance can be shared.
    """

    def validate_table(self, query: TableQuery) -> ValidationResult:
        result = ValidationResult()

        self._check_keys(result, query.dimensions, ALLOWED_DIMENSIONS, "dimensions", ErrorCode.UNKNOWN_DIMENSION, "dimension")
        self._check_keys(result, query.metrics, ALLOWED_METRICS, "metrics", ErrorCode.UNKNOWN_METRIC, "metric")

        if query.sort is not None:
            allowed = set(query.dimensions) | set(query.metrics)
            if query.sort.key not in allowed:
                result.add_error(QueryError(
                    code=ErrorCode.INVALID_SORT_KEY,
                    message=f"Cannot sort by '{query.sort.key}': it is not one of the query's dimensions or metrics",
                    field_name="sort.key",
                    suggestion=suggest_key(query.sort.key, allowed),
                ))

        self._check_date_range(result, query.date_range)
        self._check_segment(result, query.segment)

        if not result.valid:
            logger.info(f"[QUERY_VALIDATOR] Table query rejected with {len(result.errors)} error(s)")
        return result

    def validate_timeseries(self, query: TimeseriesQuery) -> ValidationResult:
        result = ValidationResult()

        self._check_keys(result, [query.metric], ALLOWED_METRICS, "metric", ErrorCode.UNKNOWN_METRIC, "metric")
        if query.dimension is not None:
            self._check_keys(result, [query.dimension], ALLOWED_DIMENSIONS, "dimension", ErrorCode.UNKNOWN_DIMENSION, "dimension")

        self._check_date_range(result, query.date_range)
        self._check_segment(result, query.segment)

        if not result.valid:
            logger.info(f"[QUERY_VALIDATOR] Timeseries query rejected with {len(result.errors)} error(s)")
        return result

    # -------------------------------------------------------------------------
    # Checks
    # -------------------------------------------------------------------------

    def _check_keys(
        self,
        result: ValidationResult,
        keys: Sequence[str],
        allowed,
        field_name: str,
        code: ErrorCode,
        label: str,
    ) -> None:
        seen = set()
        for key in keys:
            if key not in allowed:
                result.add_error(QueryError(
                    code=code,
                    message=f"Unknown {label} '{key}'",
                    field_name=field_name,
                    suggestion=suggest_key(key, allowed),
                ))
            elif key in seen:
                result.add_error(QueryError(
                    code=ErrorCode.DUPLICATE_KEY,
                    message=f"{label.capitalize()} '{key}' is listed more than once",
                    field_name=field_name,
                ))
            seen.add(key)

    def _check_date_range(self, result: ValidationResult, date_range: DateRange) -> None:
        if date_range.preset is not None:
            return

        bounds = {}
        for name, value, mode in (("from", date_range.from_, "start"), ("to", date_range.to, "end")):
            try:
                bounds[name] = parse_date_bound(value, mode)
            except (TypeError, ValueError):
                result.add_error(QueryError(
                    code=ErrorCode.INVALID_DATE,
                    message=f"'{value}' is not a valid date",
                    field_name=f"dateRange.{name}",
                    suggestion="Use YYYY-MM-DD or an ISO-8601 datetime such as 2026-02-01T00:00:00Z",
                ))

        if len(bounds) == 2 and bounds["from"] > bounds["to"]:
            result.add_error(QueryError(
                code=ErrorCode.INVALID_DATE_RANGE,
                message="dateRange 'from' is after 'to'",
                field_name="dateRange",
            ))

    def _check_segment(self, result: ValidationResult, segment: Optional[SegmentTree]) -> None:
        for rule in iter_rules(segment):
            self._check_rule(result, rule)

    def _check_rule(self, result: ValidationResult, rule: SegmentRule) -> None:
        field_def = get_segment_field(rule.field)
        if field_def is None:
            result.add_error(QueryError(
                code=ErrorCode.UNKNOWN_SEGMENT_FIELD,
                message=f"Unknown segment field '{rule.field}'",
                field_name="segment.field",
                suggestion=suggest_key(rule.field, ALLOWED_SEGMENT_FIELDS),
            ))
            return

        legal = OPERATORS_BY_TYPE[field_def.type]
        if rule.op.value not in legal:
            result.add_error(QueryError(
                code=ErrorCode.OPERATOR_TYPE_MISMATCH,
                message=f"Operator '{rule.op.value}' cannot be used on {field_def.type.value} field '{rule.field}'",
                field_name="segment.op",
                suggestion=f"Valid operators are: {', '.join(sorted(legal))}",
            ))
            return

        values = rule.value if isinstance(rule.value, list) else [rule.value]
        for value in values:
            problem = _value_problem(field_def.type, value)
            if problem:
                result.add_error(QueryError(
                    code=ErrorCode.INVALID_SEGMENT_VALUE,
                    message=f"Value {value!r} for '{rule.field}' {problem}",
                    field_name="segment.value",
                ))


def _value_problem(field_type: FieldType, value: Any) -> Optional[str]:
    """Describe why a rule value cannot be read in a field's domain, if it cannot."""
    if field_type is FieldType.NUMBER:
        if isinstance(value, bool):
            return "must be a number"
        if isinstance(value, str) and not re.match(NUMERIC_PATTERN, value):
            return "must be a number"
        return None
    if field_type is FieldType.DATE:
        if try_parse_date_bound(value, "start") is None:
            return "must be a date (YYYY-MM-DD)"
    return None


# =============================================================================
# CONVENIENCE FUNCTIONS
# =============================================================================

_validator = QueryValidator()


def ensure_valid_table_query(query: TableQuery) -> None:
    """Raise QueryError if the table query fails semantic validation."""
    result = _validator.validate_table(query)
    if not result.valid:
        raise result.to_exception()


def ensure_valid_timeseries_query(query: TimeseriesQuery) -> None:
    """Raise QueryError if the timeseries query fails semantic validation."""
    result = _validator.validate_timeseries(query)
    if not result.valid:
        raise result.to_exception()
