"""
Segment Predicate Evaluator
===========================

In-process evaluation of segment trees against single events.

WHY THIS FILE EXISTS
--------------------
The scan strategy filters candidate events in Python; the compiled strategy
emits the same predicate as SQL (compiler.py). Both follow one rule set:

    Comparison happens in the field's type domain.

    text    both sides stringified (booleans as "true"/"false")
    number  both sides through coerce_number (non-numeric -> 0)
    date    both sides truncated to the UTC day (unparseable -> epoch)

    contains  case-insensitive substring (text fields)
    in        equality against any element
    AND / OR  all / any child

Evaluation is pure and total on validated input: it never raises.

RELATED FILES
-------------
- querydeck/semantic/model.py: Field definitions and readers
- querydeck/semantic/compiler.py: SQL rendition of the same rules
"""

import operator
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, Optional, Union

from querydeck.semantic.dates import EPOCH, floor_day, try_parse_date_bound
from querydeck.semantic.model import (
    FieldType,
    coerce_number,
    get_segment_field,
    read_segment_value,
    stringify,
)
from querydeck.semantic.query import SegmentGroup, SegmentOperator, SegmentRule, SegmentTree

SegmentNode = Union[SegmentTree, SegmentGroup, SegmentRule]

_ORDERING: Dict[SegmentOperator, Callable[[Any, Any], bool]] = {
    SegmentOperator.GT: operator.gt,
    SegmentOperator.GTE: operator.ge,
    SegmentOperator.LT: operator.lt,
    SegmentOperator.LTE: operator.le,
}


def coerce_operand(field_type: FieldType, value: Any) -> Union[str, float, datetime]:
    """
    Bring a rule value into the comparison domain of its field.

    EXAMPLES:
        >>> coerce_operand(FieldType.NUMBER, "100")
        100.0
        >>> coerce_operand(FieldType.DATE, "2026-02-01T18:30:00Z")
        datetime.datetime(2026, 2, 1, 0, 0)
        >>> coerce_operand(FieldType.TEXT, True)
        'true'
    """
    if field_type is FieldType.NUMBER:
        return coerce_number(value)
    if field_type is FieldType.DATE:
        parsed = try_parse_date_bound(value, "start")
        return floor_day(parsed) if parsed is not None else EPOCH
    return stringify(value)


def evaluate_rule(event: Any, rule: SegmentRule) -> bool:
    field = get_segment_field(rule.field)
    if field is None:
        return False

    actual = read_segment_value(event, field)

    if rule.op is SegmentOperator.IN:
        values = rule.value if isinstance(rule.value, list) else [rule.value]
        return any(actual == coerce_operand(field.type, v) for v in values)

    expected = coerce_operand(field.type, rule.value)

    if rule.op is SegmentOperator.EQ:
        return actual == expected
    if rule.op is SegmentOperator.NEQ:
        return actual != expected
    if rule.op is SegmentOperator.CONTAINS:
        return stringify(expected).lower() in stringify(actual).lower()
    return _ORDERING[rule.op](actual, expected)


def matches(event: Any, node: Optional[SegmentNode]) -> bool:
    """
    True if the event satisfies the segment node.

    A missing segment matches everything.
    """
    if node is None:
        return True
    if isinstance(node, SegmentRule):
        return evaluate_rule(event, node)
    results = (matches(event, child) for child in node.rules)
    if node.op == "OR":
        return any(results)
    return all(results)


def iter_rules(node: Optional[SegmentNode]) -> Iterator[SegmentRule]:
    """Yield every rule in a segment tree, depth first."""
    if node is None:
        return
    if isinstance(node, SegmentRule):
        yield node
        return
    for child in node.rules:
        yield from iter_rules(child)
