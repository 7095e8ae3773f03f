"""
Legacy Key Translation
======================

Maps the keys used by the older freeform query flavor onto catalog keys.

WHY THIS FILE EXISTS
--------------------
Saved reports from the freeform builder still send keys such as
`dimension:eventName`, `metric:unique_users` or `properties.channel`.
Instead of teaching the engine both vocabularies, every legacy key is
translated exactly once, when the query object is constructed. After that
the engine only ever sees catalog keys.

The table is versioned. A new vocabulary gets a new version entry; old
versions stay so old saved reports keep resolving.

Keys that are not in the table pass through unchanged. If they are not
catalog keys either, the validator rejects them with a suggestion.

RELATED FILES
-------------
- querydeck/semantic/query.py: Calls translate_* in field validators
- querydeck/semantic/freeform.py: Legacy request shape
"""

from dataclasses import dataclass, field
from typing import Dict, Optional


@dataclass(frozen=True)
class AliasTable:
    """One version of the legacy vocabulary."""
    version: int
    dimensions: Dict[str, str] = field(default_factory=dict)
    metrics: Dict[str, str] = field(default_factory=dict)
    segment_fields: Dict[str, str] = field(default_factory=dict)


_V1_PROPERTY_FIELDS = {
    "properties.channel": "channel",
    "properties.brand": "brand",
    "properties.product": "product",
    "properties.campaign": "campaign",
    "properties.revenue": "revenue",
    "properties.netDemand": "netDemand",
}

ALIAS_TABLES: Dict[int, AliasTable] = {
    1: AliasTable(
        version=1,
        dimensions={
            "dimension:eventName": "eventName",
            "dimension:channel": "channel",
            "dimension:brand": "brand",
            "dimension:product": "product",
            "dimension:campaign": "campaign",
            "dimension:day": "day",
            "dimension:hour": "hour",
            "properties.channel": "channel",
            "properties.brand": "brand",
            "properties.product": "product",
            "properties.campaign": "campaign",
            "event_name": "eventName",
        },
        metrics={
            "metric:event_count": "events",
            "metric:unique_users": "users",
            "metric:revenue_sum": "revenue",
            "metric:net_demand_sum": "netDemand",
        },
        segment_fields={
            **_V1_PROPERTY_FIELDS,
            "event_name": "eventName",
            "eventName": "eventName",
            "user_id": "userId",
        },
    ),
}

CURRENT_ALIAS_VERSION = max(ALIAS_TABLES)


def get_alias_table(version: Optional[int] = None) -> AliasTable:
    """Return the alias table for a version (latest when omitted)."""
    if version is None:
        version = CURRENT_ALIAS_VERSION
    try:
        return ALIAS_TABLES[version]
    except KeyError:
        raise ValueError(f"Unknown alias table version: {version}")


def translate_dimension_key(key: str, version: Optional[int] = None) -> str:
    """
    Translate a legacy dimension key to its catalog key.

    EXAMPLES:
        >>> translate_dimension_key("dimension:eventName")
        'eventName'
        >>> translate_dimension_key("channel")
        'channel'
    """
    return get_alias_table(version).dimensions.get(key, key)


def translate_metric_key(key: str, version: Optional[int] = None) -> str:
    """
    Translate a legacy metric key to its catalog key.

    EXAMPLES:
        >>> translate_metric_key("metric:unique_users")
        'users'
    """
    return get_alias_table(version).metrics.get(key, key)


def translate_segment_field(name: str, version: Optional[int] = None) -> str:
    """
    Translate a legacy segment field to its catalog field.

    Dotted property paths without an alias stay as they are and are read as
    raw text properties by the catalog.

    EXAMPLES:
        >>> translate_segment_field("properties.channel")
        'channel'
        >>> translate_segment_field("properties.country")
        'properties.country'
    """
    return get_alias_table(version).segment_fields.get(name, name)


def translate_sort_key(key: str, version: Optional[int] = None) -> str:
    """Sort keys may name either a dimension or a metric."""
    table = get_alias_table(version)
    if key in table.metrics:
        return table.metrics[key]
    return table.dimensions.get(key, key)
