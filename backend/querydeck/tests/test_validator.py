"""Tests for semantic query validation.

WHAT: QueryValidator and the ensure_valid_* helpers reject queries that
      parse but cannot run, with structured QueryError details
WHY: The HTTP layer turns these into 400 responses; codes and suggestions
     are part of the API contract
"""

import pytest

from querydeck.semantic.errors import ErrorCategory, ErrorCode, QueryError, suggest_key
from querydeck.semantic.query import TableQuery, TimeseriesQuery
from querydeck.semantic.validator import (
    QueryValidator,
    ensure_valid_table_query,
    ensure_valid_timeseries_query,
)


def _table(**overrides) -> TableQuery:
    payload = {
        "orgId": "org-1",
        "dateRange": {"from": "2026-02-01", "to": "2026-02-07"},
        "rows": ["channel"],
        "metrics": ["events"],
    }
    payload.update(overrides)
    return TableQuery.model_validate(payload)


class TestTableValidation:
    """Catalog and semantic checks on table queries."""

    def test_valid_query_passes(self):
        result = QueryValidator().validate_table(_table())
        assert result.valid
        assert result.errors == []

    def test_unknown_metric_with_suggestion(self):
        """WHAT: A near-miss metric key gets a 'did you mean'.
        WHY: Typos are the most common cause of rejected queries.
        """
        with pytest.raises(QueryError) as exc_info:
            ensure_valid_table_query(_table(metrics=["revenu"]))

        error = exc_info.value
        assert error.code is ErrorCode.UNKNOWN_METRIC
        assert error.category is ErrorCategory.SEMANTIC
        assert error.suggestion == "Did you mean 'revenue'?"
        assert error.to_dict()["field"] == "metrics"

    def test_unknown_dimension_lists_options_when_nothing_close(self):
        result = QueryValidator().validate_table(_table(rows=["zzzz"]))
        assert not result.valid
        assert result.errors[0].code is ErrorCode.UNKNOWN_DIMENSION
        assert result.errors[0].suggestion.startswith("Valid options are:")

    def test_duplicate_keys(self):
        result = QueryValidator().validate_table(_table(metrics=["events", "events"]))
        assert [e.code for e in result.errors] == [ErrorCode.DUPLICATE_KEY]

    def test_sort_key_must_be_selected(self):
        """WHAT: Sorting by a metric that is not requested is rejected."""
        result = QueryValidator().validate_table(_table(sort={"key": "revenue", "direction": "desc"}))
        assert result.errors[0].code is ErrorCode.INVALID_SORT_KEY

    def test_date_range_order(self):
        result = QueryValidator().validate_table(
            _table(dateRange={"from": "2026-02-07", "to": "2026-02-01"})
        )
        assert result.errors[0].code is ErrorCode.INVALID_DATE_RANGE

    def test_unparseable_date(self):
        result = QueryValidator().validate_table(
            _table(dateRange={"from": "2026-13-01", "to": "2026-02-01"})
        )
        assert result.errors[0].code is ErrorCode.INVALID_DATE
        assert result.errors[0].field_name == "dateRange.from"

    def test_operator_type_mismatch(self):
        """WHAT: 'contains' on a number field and 'gt' on a text field are rejected."""
        result = QueryValidator().validate_table(_table(segmentDsl={"rules": [
            {"field": "revenue", "op": "contains", "value": "1"},
            {"field": "channel", "op": "gt", "value": "Email"},
        ]}))
        assert [e.code for e in result.errors] == [
            ErrorCode.OPERATOR_TYPE_MISMATCH,
            ErrorCode.OPERATOR_TYPE_MISMATCH,
        ]

    def test_segment_value_checks(self):
        result = QueryValidator().validate_table(_table(segmentDsl={"rules": [
            {"field": "revenue", "op": "gt", "value": "lots"},
            {"field": "day", "op": "eq", "value": "soon"},
            {"field": "revenue", "op": "gte", "value": True},
        ]}))
        assert [e.code for e in result.errors] == [ErrorCode.INVALID_SEGMENT_VALUE] * 3

    def test_unknown_segment_field(self):
        result = QueryValidator().validate_table(_table(segmentDsl={"rules": [
            {"field": "chanel", "op": "eq", "value": "Email"},
        ]}))
        assert result.errors[0].code is ErrorCode.UNKNOWN_SEGMENT_FIELD
        assert result.errors[0].suggestion == "Did you mean 'channel'?"

    def test_multiple_errors_are_carried_on_the_first(self):
        """WHAT: The raised error is the first one, with all of them in details."""
        with pytest.raises(QueryError) as exc_info:
            ensure_valid_table_query(_table(rows=["nope"], metrics=["nada"]))
        details = exc_info.value.to_dict()["details"]
        assert [e["code"] for e in details["errors"]] == ["ERR_011", "ERR_010"]


class TestTimeseriesValidation:

    def test_unknown_dimension(self):
        query = TimeseriesQuery.model_validate({
            "orgId": "org-1",
            "metricKey": "events",
            "dimensionKey": "country",
            "dateRange": {"preset": "last_7_days"},
        })
        with pytest.raises(QueryError) as exc_info:
            ensure_valid_timeseries_query(query)
        assert exc_info.value.code is ErrorCode.UNKNOWN_DIMENSION

    def test_valid_timeseries(self):
        query = TimeseriesQuery.model_validate({
            "orgId": "org-1",
            "metricKey": "metric:revenue_sum",
            "granularity": "hour",
            "dateRange": {"from": "2026-02-01", "to": "2026-02-01"},
        })
        ensure_valid_timeseries_query(query)
        assert query.metric == "revenue"


class TestQueryError:

    def test_user_message_and_str(self):
        error = QueryError(
            code=ErrorCode.UNKNOWN_METRIC,
            message="Unknown metric 'revenu'",
            field_name="metrics",
            suggestion="Did you mean 'revenue'?",
        )
        assert str(error) == "[ERR_010] metrics: Unknown metric 'revenu'"
        assert error.user_message() == "Unknown metric 'revenu'. Did you mean 'revenue'?"

    def test_suggest_key_empty_candidates(self):
        assert suggest_key("x", []) is None
