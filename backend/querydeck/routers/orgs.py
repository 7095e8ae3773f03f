"""
Organization-scoped endpoints.

- POST /orgs/{org_id}/query/freeform: Legacy query-builder payloads. Legacy
  keys are translated once through the versioned alias table, then the
  query runs through the same service (and cache) as /query/table.
- POST /orgs/{org_id}/sample-data: (Re)provision demo events and sweep the
  organization's cached results.
"""

import logging
import time
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..database import get_db
from ..deps import Settings, get_query_cache, get_query_service, get_settings
from ..models import Organization
from ..schemas import FreeformResponse, SampleDataResponse
from ..semantic.freeform import FreeformQuery
from ..services.query_cache import QueryCacheStore
from ..services.query_service import QueryService
from ..services.sample_data import provision_sample_events
from ..telemetry import capture_exception, set_org_context

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/orgs", tags=["orgs"])


@router.post("/{org_id}/query/freeform", response_model=FreeformResponse)
def query_freeform(
    org_id: str,
    payload: FreeformQuery,
    service: QueryService = Depends(get_query_service),
) -> Dict[str, Any]:
    if payload.orgId and payload.orgId != org_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="orgId in body does not match the path",
        )
    set_org_context(org_id)

    started = time.perf_counter()
    try:
        result = service.run_table(payload.to_table_query(org_id))
    except SQLAlchemyError as e:
        logger.error(f"[QUERY_ENGINE] freeform failed for org={org_id}: {e}")
        capture_exception(e, extra={"org_id": org_id, "endpoint": "freeform"})
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Query failed against the event store",
        )

    return {**result, "queryMs": int((time.perf_counter() - started) * 1000)}


@router.post("/{org_id}/sample-data", response_model=SampleDataResponse)
def provision_sample_data(
    org_id: str,
    db: Session = Depends(get_db),
    cache: QueryCacheStore = Depends(get_query_cache),
    settings: Settings = Depends(get_settings),
) -> Dict[str, Any]:
    """
    Fill the last SAMPLE_DATA_DAYS days with demo events.

    Creates the organization on first use. Safe to call repeatedly.
    """
    set_org_context(org_id)

    if db.get(Organization, org_id) is None:
        db.add(Organization(id=org_id, name=org_id))
        db.commit()
        logger.info(f"[SAMPLE_DATA] Created organization {org_id}")

    result, swept = provision_sample_events(
        db,
        org_id,
        cache=cache,
        days=settings.SAMPLE_DATA_DAYS,
        events_per_day=settings.SAMPLE_DATA_EVENTS_PER_DAY,
    )
    return {"org_id": org_id, **result.to_dict(), "cache_entries_swept": swept}
