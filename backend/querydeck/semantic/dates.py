"""
Date Boundary Parsing
=====================

Turns the date strings that arrive in queries into concrete UTC instants.

WHY THIS FILE EXISTS
--------------------
Both execution strategies, the segment evaluator and the date-range resolver
must agree on what "2026-02-01" means. Getting this wrong silently moves
events in or out of a report, so the rounding rule lives in exactly one place:

    date-only value, "start" mode  -> 2026-02-01T00:00:00.000 UTC
    date-only value, "end" mode    -> 2026-02-01T23:59:59.999 UTC
    full datetime                  -> converted to UTC as given

All instants returned here are *naive* datetimes in UTC, matching how the
`events.timestamp` column is stored.

RELATED FILES
-------------
- querydeck/semantic/engine.py: resolves query date ranges
- querydeck/semantic/segments.py: date-typed segment rules
- querydeck/semantic/compiler.py: binds these instants into SQL
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from typing import Literal, Optional, Tuple

DATE_ONLY_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")
DATETIME_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}T")

EPOCH = datetime(1970, 1, 1)

# Presets resolve to whole UTC days ending today
PRESET_DAYS = {
    "today": 1,
    "last_7_days": 7,
    "last_30_days": 30,
    "last_90_days": 90,
}

BoundMode = Literal["start", "end"]


def to_utc_naive(value: datetime) -> datetime:
    """Convert an aware datetime to naive UTC; naive values are taken as UTC."""
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def is_date_string(value: str) -> bool:
    """True if value looks like `YYYY-MM-DD` or `YYYY-MM-DDT...`."""
    return bool(DATE_ONLY_PATTERN.match(value) or DATETIME_PATTERN.match(value))


def parse_date_bound(value: str, mode: BoundMode = "start") -> datetime:
    """
    Parse a date or datetime string into a naive UTC instant.

    PARAMETERS:
        value: "YYYY-MM-DD" or an ISO-8601 datetime ("...Z" or "+hh:mm" offsets)
        mode: "start" rounds date-only values to midnight,
              "end" rounds them to 23:59:59.999

    RAISES:
        ValueError: If the string is not a recognisable date

    EXAMPLES:
        >>> parse_date_bound("2026-02-01", "end")
        datetime.datetime(2026, 2, 1, 23, 59, 59, 999000)
        >>> parse_date_bound("2026-02-01T10:30:00Z")
        datetime.datetime(2026, 2, 1, 10, 30)
    """
    text = value.strip()
    if DATE_ONLY_PATTERN.match(text):
        day = datetime.strptime(text, "%Y-%m-%d")
        if mode == "end":
            return day + timedelta(days=1) - timedelta(milliseconds=1)
        return day

    if not DATETIME_PATTERN.match(text):
        raise ValueError(f"Invalid date format: {value!r}")

    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    return to_utc_naive(datetime.fromisoformat(text))


def try_parse_date_bound(value: object, mode: BoundMode = "start") -> Optional[datetime]:
    """Like parse_date_bound but returns None for anything unparseable."""
    if isinstance(value, datetime):
        return to_utc_naive(value)
    if not isinstance(value, str):
        return None
    try:
        return parse_date_bound(value, mode)
    except ValueError:
        return None


def floor_millisecond(value: datetime) -> datetime:
    """
    Naive UTC instant truncated to whole milliseconds.

    Stored timestamps carry millisecond precision, so an event can never fall
    between a date-only end bound (23:59:59.999) and the next midnight.
    """
    value = to_utc_naive(value)
    return value.replace(microsecond=value.microsecond // 1000 * 1000)


def floor_day(value: datetime) -> datetime:
    """Truncate an instant to UTC midnight."""
    value = to_utc_naive(value)
    return value.replace(hour=0, minute=0, second=0, microsecond=0)


def floor_hour(value: datetime) -> datetime:
    """Truncate an instant to the start of its UTC hour."""
    value = to_utc_naive(value)
    return value.replace(minute=0, second=0, microsecond=0)


def format_day(value: datetime) -> str:
    """`YYYY-MM-DD` of the UTC day containing value."""
    return floor_day(value).strftime("%Y-%m-%d")


def format_hour(value: datetime) -> str:
    """Hour-truncated ISO-8601 string, e.g. `2026-02-01T13:00:00Z`."""
    return floor_hour(value).strftime("%Y-%m-%dT%H:00:00Z")


def resolve_preset(preset: str, now: datetime) -> Tuple[datetime, datetime]:
    """
    Resolve a named preset against the current instant.

    The range always covers whole UTC days: from midnight of the first day
    through 23:59:59.999 of today.

    RAISES:
        ValueError: For an unknown preset name
    """
    if preset not in PRESET_DAYS:
        raise ValueError(f"Unknown date range preset: {preset!r}")
    today = floor_day(now)
    start = today - timedelta(days=PRESET_DAYS[preset] - 1)
    end = today + timedelta(days=1) - timedelta(milliseconds=1)
    return start, end
