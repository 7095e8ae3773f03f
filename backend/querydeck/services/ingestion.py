"""
Event Ingestion Service
=======================

Idempotent batch insert of behavioral events.

WHY THIS FILE EXISTS
--------------------
Senders retry. A batch that timed out on the client may have been stored,
and will be sent again. Every event carries a sender-side `event_id`, and
(org_id, event_id) is unique, so a re-sent event is absorbed rather than
counted twice:

    accepted = events newly stored
    rejected = duplicates (within the batch or already stored)
    total    = events in the request

FLOW
----
    1. Normalise (UTC naive millisecond timestamps, empty user/session ids -> None)
    2. Drop in-batch duplicates (first occurrence wins)
    3. Drop ids the org already has
    4. Insert the rest in one transaction
    5. On a unique-constraint race with a concurrent batch, retry row by
       row with savepoints so the winners of the race are not lost
    6. If anything was accepted, sweep the org's cached query results

RELATED FILES
-------------
- querydeck/routers/ingest.py: HTTP entry point
- querydeck/services/sample_data.py: Reuses ingest_events for demo data
- querydeck/services/query_cache.py: invalidate_org_cache
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from querydeck.models import Event
from querydeck.semantic.dates import floor_millisecond
from querydeck.services.query_cache import QueryCacheStore, invalidate_org_cache

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IngestResult:
    accepted: int
    rejected: int
    total: int

    def to_dict(self) -> Dict[str, int]:
        return {"accepted": self.accepted, "rejected": self.rejected, "total": self.total}


def _blank_to_none(value: Optional[str]) -> Optional[str]:
    if value is None or not str(value).strip():
        return None
    return value


def normalize_event(org_id: str, event: Any) -> Dict[str, Any]:
    """
    Column values for one incoming event.

    `event` is anything with event_id, event_name, timestamp, user_id,
    session_id and properties attributes (IngestEvent, EventRecord).
    """
    return {
        "org_id": org_id,
        "event_id": event.event_id,
        "event_name": event.event_name,
        "timestamp": floor_millisecond(event.timestamp),
        "user_id": _blank_to_none(event.user_id),
        "session_id": _blank_to_none(event.session_id),
        "properties": dict(event.properties or {}),
    }


def _existing_event_ids(db: Session, org_id: str, event_ids: Sequence[str]) -> set:
    existing = set()
    # Chunked to stay under bind-parameter limits
    for i in range(0, len(event_ids), 500):
        chunk = event_ids[i:i + 500]
        rows = db.query(Event.event_id).filter(Event.org_id == org_id, Event.event_id.in_(chunk)).all()
        existing.update(event_id for (event_id,) in rows)
    return existing


def _insert_rows(db: Session, rows: List[Dict[str, Any]]) -> int:
    if not rows:
        return 0
    try:
        db.add_all([Event(**row) for row in rows])
        db.commit()
        return len(rows)
    except IntegrityError:
        db.rollback()
        logger.info(f"[INGEST] Duplicate race on batch of {len(rows)}, retrying row by row")

    accepted = 0
    for row in rows:
        try:
            with db.begin_nested():
                db.add(Event(**row))
            accepted += 1
        except IntegrityError:
            logger.debug(f"[INGEST] Skipped duplicate event_id {row['event_id']}")
    db.commit()
    return accepted


def ingest_events(
    db: Session,
    org_id: str,
    events: Iterable[Any],
    cache: Optional[QueryCacheStore] = None,
) -> IngestResult:
    """
    Store a batch of events for an organization.

    PARAMETERS:
        db: Session; committed by this function
        org_id: Owning organization (already authorised by the caller)
        events: Incoming events
        cache: When given, the org's cached results are swept if any
               event was accepted

    RETURNS:
        IngestResult with accepted / rejected / total counts
    """
    incoming = list(events)
    unique: Dict[str, Dict[str, Any]] = {}
    for event in incoming:
        row = normalize_event(org_id, event)
        unique.setdefault(row["event_id"], row)

    existing = _existing_event_ids(db, org_id, list(unique))
    fresh = [row for event_id, row in unique.items() if event_id not in existing]

    accepted = _insert_rows(db, fresh)
    result = IngestResult(accepted=accepted, rejected=len(incoming) - accepted, total=len(incoming))

    logger.info(
        f"[INGEST] org={org_id} accepted={result.accepted} "
        f"rejected={result.rejected} total={result.total}"
    )

    if cache is not None and accepted > 0:
        invalidate_org_cache(cache, org_id)

    return result
