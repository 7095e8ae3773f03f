"""
Legacy Freeform Queries
=======================

Request shape of the original drag-and-drop freeform table, and its
translation into a TableQuery.

WHY THIS FILE EXISTS
--------------------
Saved freeform reports use their own vocabulary:

    rows      ["dimension:eventName", "properties.channel"]
    columns   ["metric:event_count", "metric:revenue_sum"]
    segments  [{"op": "AND", "rules": [{"field": "properties.brand", "operator": "eq", "value": "Gap"}]}]
    dateRange {"type": "preset", "value": "last_7_days"}
              {"type": "custom", "from": "2026-02-01", "to": "2026-02-07"}
    sort      [{"column": "metric:event_count", "direction": "desc"}]
    limit / offset paging

They are not executed by a second engine. to_table_query() maps every key
through the alias table once and hands a plain TableQuery to the engine.
Multiple segment groups are ANDed together, and a report without rows is
grouped by event name.
"""

from typing import List, Literal, Optional, Union

from pydantic import BaseModel, Field

from querydeck.semantic.aliases import (
    translate_dimension_key,
    translate_metric_key,
    translate_segment_field,
    translate_sort_key,
)
from querydeck.semantic.query import TableQuery


DEFAULT_ROW = "dimension:eventName"


class FreeformSegmentRule(BaseModel):
    field: str = Field(min_length=1)
    operator: Literal["eq", "neq", "contains"]
    value: str


class FreeformSegmentGroup(BaseModel):
    op: Literal["AND", "OR"]
    rules: List[FreeformSegmentRule] = Field(min_length=1)


class FreeformPresetRange(BaseModel):
    type: Literal["preset"]
    value: Literal["last_7_days", "last_30_days"]


class FreeformCustomRange(BaseModel):
    type: Literal["custom"]
    from_: str = Field(alias="from", pattern=r"^\d{4}-\d{2}-\d{2}$")
    to: str = Field(pattern=r"^\d{4}-\d{2}-\d{2}$")


class FreeformSort(BaseModel):
    column: str
    direction: Literal["asc", "desc"]


class FreeformQuery(BaseModel):
    """Body of POST /orgs/{org_id}/query/freeform."""
    orgId: Optional[str] = Field(default=None, min_length=1)
    rows: List[str] = Field(default_factory=list)
    columns: List[str] = Field(min_length=1)
    segments: List[FreeformSegmentGroup] = Field(default_factory=list)
    dateRange: Union[FreeformPresetRange, FreeformCustomRange] = Field(discriminator="type")
    limit: int = Field(default=50, ge=1, le=500)
    offset: int = Field(default=0, ge=0)
    sort: List[FreeformSort] = Field(default_factory=list)

    def to_table_query(self, org_id: str, alias_version: Optional[int] = None) -> TableQuery:
        """
        Translate into an engine query for `org_id`.

        Only the first sort entry is honoured, as in the original builder.
        A report without rows groups by event name.
        """
        if isinstance(self.dateRange, FreeformPresetRange):
            date_range = {"preset": self.dateRange.value}
        else:
            date_range = {"from": self.dateRange.from_, "to": self.dateRange.to}

        segment = None
        if self.segments:
            segment = {
                "op": "AND",
                "rules": [
                    {
                        "op": group.op,
                        "rules": [
                            {
                                "field": translate_segment_field(rule.field, alias_version),
                                "op": rule.operator,
                                "value": rule.value,
                            }
                            for rule in group.rules
                        ],
                    }
                    for group in self.segments
                ],
            }

        sort = None
        if self.sort:
            sort = {
                "key": translate_sort_key(self.sort[0].column, alias_version),
                "direction": self.sort[0].direction,
            }

        return TableQuery.model_validate({
            "org_id": org_id,
            "date_range": date_range,
            "dimensions": [translate_dimension_key(k, alias_version) for k in self.rows or [DEFAULT_ROW]],
            "metrics": [translate_metric_key(k, alias_version) for k in self.columns],
            "segment": segment,
            "sort": sort,
            "limit": self.limit,
            "offset": self.offset,
        })
