"""Unit tests for the semantic layer building blocks.

WHAT:
    - Date parsing, presets and bucket labels (semantic/dates.py)
    - Numeric coercion, stringification and derivations (semantic/model.py)
    - Segment evaluation (semantic/segments.py)
    - Legacy key translation (semantic/aliases.py, semantic/freeform.py)

WHY:
    Both execution strategies rest on these rules. If coercion or date
    handling drifts, the compiled and scan strategies stop agreeing.

REFERENCES:
    - querydeck/semantic/
"""

from datetime import datetime, timezone
from decimal import Decimal
from types import SimpleNamespace

import pytest
from pydantic import ValidationError

from querydeck.semantic.aliases import (
    get_alias_table,
    translate_dimension_key,
    translate_metric_key,
    translate_segment_field,
    translate_sort_key,
)
from querydeck.semantic.dates import (
    floor_millisecond,
    format_day,
    format_hour,
    parse_date_bound,
    resolve_preset,
    try_parse_date_bound,
)
from querydeck.semantic.freeform import FreeformQuery
from querydeck.semantic.model import (
    NONE_LABEL,
    FieldType,
    coerce_number,
    derive_dimension,
    derive_metric_contribution,
    get_segment_field,
    normalize_metric_value,
    stringify,
)
from querydeck.semantic.query import SegmentRule, SegmentTree, TableQuery
from querydeck.semantic.segments import coerce_operand, matches


def _event(**kwargs):
    defaults = dict(
        event_id="e",
        event_name="purchase",
        timestamp=datetime(2026, 2, 1, 10, 30),
        user_id="u1",
        session_id=None,
        properties={},
    )
    defaults.update(kwargs)
    return SimpleNamespace(**defaults)


# =============================================================================
# DATES
# =============================================================================

class TestDates:
    """Date bounds and buckets."""

    def test_date_only_bounds_cover_whole_day(self):
        """WHAT: A date-only 'to' ends at 23:59:59.999 of that day.
        WHY: Ranges are inclusive; an event at 23:59:59 must be counted.
        """
        assert parse_date_bound("2026-02-01", "start") == datetime(2026, 2, 1)
        assert parse_date_bound("2026-02-01", "end") == datetime(2026, 2, 1, 23, 59, 59, 999000)

    def test_datetime_bounds_are_converted_to_naive_utc(self):
        assert parse_date_bound("2026-02-01T10:30:00Z") == datetime(2026, 2, 1, 10, 30)
        assert parse_date_bound("2026-02-01T12:30:00+02:00") == datetime(2026, 2, 1, 10, 30)

    def test_invalid_dates(self):
        with pytest.raises(ValueError):
            parse_date_bound("yesterday")
        assert try_parse_date_bound("2026-02-30") is None
        assert try_parse_date_bound(42) is None

    def test_presets_end_today(self):
        """WHAT: last_7_days covers today and the six days before it."""
        now = datetime(2026, 2, 10, 15, 45)
        start, end = resolve_preset("last_7_days", now)
        assert start == datetime(2026, 2, 4)
        assert end == datetime(2026, 2, 10, 23, 59, 59, 999000)

        start, end = resolve_preset("today", now)
        assert start == datetime(2026, 2, 10)

    def test_unknown_preset_raises(self):
        with pytest.raises(ValueError):
            resolve_preset("last_year", datetime(2026, 2, 10))

    def test_bucket_labels(self):
        aware = datetime(2026, 2, 1, 23, 30, tzinfo=timezone.utc)
        assert format_day(aware) == "2026-02-01"
        assert format_hour(aware) == "2026-02-01T23:00:00Z"

    def test_floor_millisecond(self):
        """WHAT: Sub-millisecond precision is dropped.
        WHY: An event at 23:59:59.9995 must still fall inside a date-only 'to' bound.
        """
        late = datetime(2026, 2, 1, 23, 59, 59, 999500)
        assert floor_millisecond(late) == datetime(2026, 2, 1, 23, 59, 59, 999000)
        assert floor_millisecond(late) <= parse_date_bound("2026-02-01", "end")
        assert floor_millisecond(datetime(2026, 2, 1, 10, 0, 0, 1234, tzinfo=timezone.utc)) == datetime(
            2026, 2, 1, 10, 0, 0, 1000
        )


# =============================================================================
# COERCION
# =============================================================================

class TestCoercion:
    """Lenient numeric coercion and text rendering."""

    @pytest.mark.parametrize(
        "value,expected",
        [
            (120.5, 120.5),
            ("80", 80.0),
            ("-3.25", -3.25),
            (7, 7.0),
            ("abc", 0.0),
            ("1e3", 1000.0),
            ("2.5E-3", 0.0025),
            (0.00001, 0.00001),
            (1e16, 1e16),
            (Decimal("19.99"), 19.99),
            ("1e", 0.0),
            (" 5", 0.0),
            ("5.", 0.0),
            (None, 0.0),
            (True, 0.0),
            (float("nan"), 0.0),
            (float("inf"), 0.0),
            (10 ** 400, 0.0),
        ],
    )
    def test_coerce_number(self, value, expected):
        """WHAT: Finite numbers pass through; text must match -?digits(.digits)?(e[+-]digits)?.
        WHY: The SQL strategy applies the same regex before casting, and JSON
             numbers such as 1e-05 come back from the database in exponent form.
        """
        assert coerce_number(value) == expected

    def test_stringify(self):
        assert stringify(None) == ""
        assert stringify(True) == "true"
        assert stringify(False) == "false"
        assert stringify(12) == "12"

    def test_normalize_metric_value(self):
        assert normalize_metric_value("events", 3.0) == 3
        assert isinstance(normalize_metric_value("events", 3.0), int)
        assert normalize_metric_value("users", None) == 0
        assert normalize_metric_value("revenue", None) == 0.0
        assert normalize_metric_value("revenue", 0.1 + 0.2) == 0.3


class TestDerivations:
    """Per-event dimension values and metric contributions."""

    def test_missing_dimension_source_is_none_label(self):
        event = _event(properties={"brand": "Gap"})
        assert derive_dimension(event, "channel") == NONE_LABEL
        assert derive_dimension(event, "brand") == "Gap"
        assert derive_dimension(event, "unknown") == NONE_LABEL

    def test_temporal_dimensions(self):
        event = _event(timestamp=datetime(2026, 2, 1, 13, 45))
        assert derive_dimension(event, "day") == "2026-02-01"
        assert derive_dimension(event, "hour") == "2026-02-01T13:00:00Z"
        assert derive_dimension(event, "eventName") == "purchase"

    def test_metric_contributions(self):
        event = _event(properties={"revenue": "n/a"})
        assert derive_metric_contribution(event, "events") == 1
        assert derive_metric_contribution(event, "users") == "u1"
        assert derive_metric_contribution(event, "revenue") == 0.0
        assert derive_metric_contribution(_event(user_id=None), "users") is None

    def test_legacy_property_fields_resolve_as_text(self):
        """WHAT: Unaliased properties.<name> paths are read as raw text."""
        field = get_segment_field("properties.country")
        assert field is not None
        assert field.type is FieldType.TEXT
        assert field.property == "country"
        assert get_segment_field("properties.bad name") is None
        assert get_segment_field("nope") is None


# =============================================================================
# SEGMENTS
# =============================================================================

def _tree(payload):
    return SegmentTree.model_validate(payload)


class TestSegments:
    """Segment evaluation on single events."""

    def test_missing_segment_matches_everything(self):
        assert matches(_event(), None)

    def test_and_or_nesting(self):
        """WHAT: channel = Email AND (brand = Gap OR brand = Old Navy)."""
        tree = _tree({
            "op": "AND",
            "rules": [
                {"field": "channel", "op": "eq", "value": "Email"},
                {"op": "OR", "rules": [
                    {"field": "brand", "op": "eq", "value": "Gap"},
                    {"field": "brand", "op": "eq", "value": "Old Navy"},
                ]},
            ],
        })
        assert matches(_event(properties={"channel": "Email", "brand": "Gap"}), tree)
        assert matches(_event(properties={"channel": "Email", "brand": "Old Navy"}), tree)
        assert not matches(_event(properties={"channel": "Email", "brand": "PariAI"}), tree)
        assert not matches(_event(properties={"channel": "Organic", "brand": "Gap"}), tree)

    def test_numeric_comparison_uses_coercion(self):
        """WHAT: revenue > 50 compares numbers, not strings.
        WHY: "80" must beat 50 and "abc" counts as 0.
        """
        tree = _tree({"rules": [{"field": "revenue", "op": "gt", "value": "50"}]})
        assert matches(_event(properties={"revenue": "80"}), tree)
        assert matches(_event(properties={"revenue": 120.5}), tree)
        assert not matches(_event(properties={"revenue": "abc"}), tree)
        assert not matches(_event(properties={}), tree)

    def test_small_numeric_operand_is_kept(self):
        """WHAT: revenue >= 0.00001 keeps its operand instead of comparing against 0."""
        tree = _tree({"rules": [{"field": "revenue", "op": "gte", "value": 0.00001}]})
        assert coerce_operand(FieldType.NUMBER, 0.00001) == 0.00001
        assert not matches(_event(properties={"revenue": 0.000001}), tree)
        assert matches(_event(properties={"revenue": "2e-05"}), tree)

    def test_text_operators(self):
        contains = _tree({"rules": [{"field": "channel", "op": "contains", "value": "MAIL"}]})
        assert matches(_event(properties={"channel": "Email"}), contains)

        accented = _tree({"rules": [{"field": "channel", "op": "contains", "value": "ÉTÉ"}]})
        assert matches(_event(properties={"channel": "Soldes été"}), accented)

        neq = _tree({"rules": [{"field": "channel", "op": "neq", "value": "Email"}]})
        assert matches(_event(properties={}), neq)

        in_rule = _tree({"rules": [{"field": "channel", "op": "in", "value": ["Email", "Organic"]}]})
        assert matches(_event(properties={"channel": "Organic"}), in_rule)
        assert not matches(_event(properties={"channel": "Direct"}), in_rule)

    def test_boolean_property_compares_as_text(self):
        tree = _tree({"rules": [{"field": "properties.isVip", "op": "eq", "value": "true"}]})
        assert matches(_event(properties={"isVip": True}), tree)
        assert not matches(_event(properties={"isVip": False}), tree)

    def test_day_field_compares_whole_days(self):
        """WHAT: day = 2026-02-01 matches any time on that UTC day."""
        tree = _tree({"rules": [{"field": "day", "op": "eq", "value": "2026-02-01"}]})
        assert matches(_event(timestamp=datetime(2026, 2, 1, 0, 0)), tree)
        assert matches(_event(timestamp=datetime(2026, 2, 1, 23, 59, 59)), tree)
        assert not matches(_event(timestamp=datetime(2026, 2, 2, 0, 0)), tree)

        after = _tree({"rules": [{"field": "day", "op": "gt", "value": "2026-02-01"}]})
        assert not matches(_event(timestamp=datetime(2026, 2, 1, 23, 0)), after)
        assert matches(_event(timestamp=datetime(2026, 2, 2, 0, 0)), after)

    def test_coerce_operand(self):
        assert coerce_operand(FieldType.NUMBER, "100") == 100.0
        assert coerce_operand(FieldType.DATE, "2026-02-01T18:30:00Z") == datetime(2026, 2, 1)
        assert coerce_operand(FieldType.TEXT, False) == "false"

    def test_in_requires_non_empty_list(self):
        with pytest.raises(ValidationError):
            SegmentRule.model_validate({"field": "channel", "op": "in", "value": []})
        with pytest.raises(ValidationError):
            SegmentRule.model_validate({"field": "channel", "op": "eq", "value": ["Email"]})

    def test_group_op_is_case_insensitive(self):
        tree = _tree({"op": "or", "rules": [{"field": "channel", "operator": "eq", "value": "Email"}]})
        assert tree.op == "OR"


# =============================================================================
# ALIASES & FREEFORM
# =============================================================================

class TestAliases:
    """Versioned legacy vocabulary."""

    def test_translations(self):
        assert translate_dimension_key("dimension:eventName") == "eventName"
        assert translate_dimension_key("properties.channel") == "channel"
        assert translate_metric_key("metric:unique_users") == "users"
        assert translate_segment_field("user_id") == "userId"
        assert translate_segment_field("properties.country") == "properties.country"
        assert translate_sort_key("metric:revenue_sum") == "revenue"
        assert translate_sort_key("dimension:brand") == "brand"
        assert translate_metric_key("revenue") == "revenue"

    def test_unknown_version(self):
        with pytest.raises(ValueError):
            get_alias_table(99)

    def test_table_query_translates_legacy_keys_on_construction(self):
        """WHAT: Legacy keys are mapped once, when the query is built.
        WHY: The engine only ever sees catalog keys.
        """
        query = TableQuery.model_validate({
            "orgId": "org-1",
            "dateRange": {"preset": "last_7_days"},
            "rows": ["dimension:channel"],
            "metrics": ["metric:event_count"],
            "sort": {"key": "metric:event_count"},
        })
        assert query.dimensions == ["channel"]
        assert query.metrics == ["events"]
        assert query.sort.key == "events"


class TestFreeform:
    """Legacy freeform payload translation."""

    def test_to_table_query(self):
        payload = FreeformQuery.model_validate({
            "rows": ["dimension:eventName", "properties.brand"],
            "columns": ["metric:event_count", "metric:revenue_sum"],
            "segments": [
                {"op": "OR", "rules": [
                    {"field": "properties.channel", "operator": "eq", "value": "Email"},
                    {"field": "properties.channel", "operator": "eq", "value": "Organic"},
                ]},
                {"op": "AND", "rules": [{"field": "properties.country", "operator": "neq", "value": "US"}]},
            ],
            "dateRange": {"type": "custom", "from": "2026-02-01", "to": "2026-02-07"},
            "sort": [
                {"column": "metric:revenue_sum", "direction": "asc"},
                {"column": "metric:event_count", "direction": "desc"},
            ],
            "limit": 25,
            "offset": 5,
        })
        query = payload.to_table_query("org-1")

        assert query.org_id == "org-1"
        assert query.dimensions == ["eventName", "brand"]
        assert query.metrics == ["events", "revenue"]
        assert query.date_range.from_ == "2026-02-01"
        assert query.sort.key == "revenue"
        assert query.sort.direction == "asc"
        assert (query.limit, query.offset) == (25, 5)

        assert query.segment.op == "AND"
        first, second = query.segment.rules
        assert first.op == "OR"
        assert [rule.field for rule in first.rules] == ["channel", "channel"]
        assert second.rules[0].field == "properties.country"

    def test_preset_range_and_limits(self):
        payload = FreeformQuery.model_validate({
            "columns": ["metric:event_count"],
            "dateRange": {"type": "preset", "value": "last_30_days"},
        })
        query = payload.to_table_query("org-1")
        assert query.date_range.preset.value == "last_30_days"
        assert query.limit == 50
        assert query.segment is None

    def test_reports_without_rows_group_by_event_name(self):
        """WHAT: A saved report with no rows keeps its per-event-name shape."""
        payload = FreeformQuery.model_validate({
            "columns": ["metric:event_count"],
            "dateRange": {"type": "preset", "value": "last_7_days"},
        })
        assert payload.to_table_query("org-1").dimensions == ["eventName"]

        with pytest.raises(ValidationError):
            FreeformQuery.model_validate({
                "columns": ["metric:event_count"],
                "dateRange": {"type": "preset", "value": "last_7_days"},
                "limit": 501,
            })
