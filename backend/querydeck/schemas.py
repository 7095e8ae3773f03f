"""Pydantic schemas for request/response payloads.

Query request bodies live in querydeck/semantic/query.py and
querydeck/semantic/freeform.py; this module holds ingestion payloads and
response envelopes.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from pydantic import (
    AliasChoices,
    AwareDatetime,
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictFloat,
    StrictInt,
    StrictStr,
)

PropertyValue = Optional[Union[StrictStr, StrictInt, StrictFloat, StrictBool]]

MAX_BATCH_SIZE = 500


# =============================================================================
# INGESTION
# =============================================================================

class IngestEvent(BaseModel):
    """One behavioral event as sent by a customer backend."""

    model_config = ConfigDict(populate_by_name=True, allow_inf_nan=False)

    event_id: str = Field(
        min_length=1,
        max_length=200,
        validation_alias=AliasChoices("eventId", "event_id"),
        description="Sender-side unique id; re-sending the same id is a no-op",
    )
    event_name: str = Field(
        min_length=1,
        max_length=120,
        validation_alias=AliasChoices("eventName", "event_name"),
    )
    timestamp: AwareDatetime = Field(description="ISO-8601 with timezone, e.g. 2026-02-01T10:30:00Z")
    user_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("userId", "user_id"))
    session_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("sessionId", "session_id"))
    properties: Dict[str, PropertyValue] = Field(default_factory=dict)


class IngestBatchRequest(BaseModel):
    """Payload for POST /ingest/events."""

    org_id: Optional[str] = Field(
        default=None,
        min_length=1,
        validation_alias=AliasChoices("orgId", "org_id"),
        description="Optional; must match the API key's organization when given",
    )
    events: List[IngestEvent] = Field(min_length=1, max_length=MAX_BATCH_SIZE)

    model_config = {
        "populate_by_name": True,
        "json_schema_extra": {
            "example": {
                "events": [
                    {
                        "eventId": "evt-0001",
                        "eventName": "purchase",
                        "timestamp": "2026-02-01T10:30:00Z",
                        "userId": "user-42",
                        "properties": {"channel": "Email", "brand": "Gap", "revenue": 120.5},
                    }
                ]
            }
        },
    }


class IngestResponse(BaseModel):
    accepted: int
    rejected: int
    total: int


# =============================================================================
# QUERIES
# =============================================================================

class TableResponse(BaseModel):
    columns: List[str]
    rows: List[Dict[str, Any]]
    totals: Dict[str, Union[int, float]]


class FreeformResponse(TableResponse):
    queryMs: int = Field(description="Server-side execution time in milliseconds")


class TimeseriesResponse(BaseModel):
    series: List[Dict[str, Any]]


# =============================================================================
# ORGANIZATIONS
# =============================================================================

class SampleDataResponse(BaseModel):
    org_id: str
    accepted: int
    rejected: int
    total: int
    cache_entries_swept: int


class HealthResponse(BaseModel):
    status: str
    strategy: str
    timestamp: datetime
