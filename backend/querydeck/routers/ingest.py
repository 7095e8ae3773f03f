"""
Event ingestion API.

WHY:
- Customer backends push behavioral events in batches
- Re-sending a batch must never double count (event_id is unique per org)
- One noisy key must not starve the database (per-key rate limit)

WHAT:
- POST /ingest/events authenticated with the X-API-Key header
- Checks run in order: key present and valid (401), rate limit (429),
  optional orgId matches the key's organization (403)
- Accepted events sweep the organization's cached query results

REFERENCES:
- querydeck/services/api_keys.py (key format and verification)
- querydeck/services/rate_limiter.py (60s sliding window)
- querydeck/services/ingestion.py (idempotent insert)
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Response, status
from sqlalchemy.orm import Session

from ..database import get_db
from ..deps import Settings, get_query_cache, get_rate_limiter, get_settings
from ..schemas import IngestBatchRequest, IngestResponse
from ..services.api_keys import authenticate_api_key
from ..services.ingestion import ingest_events
from ..services.query_cache import QueryCacheStore
from ..services.rate_limiter import RateLimiterStore
from ..telemetry import set_org_context

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ingest", tags=["ingest"])


@router.post(
    "/events",
    response_model=IngestResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
def ingest_batch(
    payload: IngestBatchRequest,
    response: Response,
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
    db: Session = Depends(get_db),
    cache: QueryCacheStore = Depends(get_query_cache),
    limiter: RateLimiterStore = Depends(get_rate_limiter),
    settings: Settings = Depends(get_settings),
):
    """
    Ingest a batch of 1..500 events for the API key's organization.

    Duplicates (within the batch or already stored) are counted as rejected.
    """
    if not x_api_key:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing API key")

    api_key = authenticate_api_key(db, x_api_key, settings.INGEST_HMAC_SALT)
    if api_key is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key")

    set_org_context(api_key.org_id, api_key.prefix)

    limit = limiter.hit(api_key.id, settings.API_KEY_RATE_LIMIT_PER_MINUTE)
    response.headers["X-RateLimit-Limit"] = str(limit.limit)
    response.headers["X-RateLimit-Remaining"] = str(limit.remaining)
    if not limit.allowed:
        logger.warning(f"[RATE_LIMITER] Key {api_key.prefix} exceeded {limit.limit}/min")
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Rate limit exceeded",
            headers={"Retry-After": str(limit.retry_after)},
        )

    if payload.org_id and payload.org_id != api_key.org_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="orgId does not match the API key's organization",
        )

    result = ingest_events(db, api_key.org_id, payload.events, cache=cache)
    return result.to_dict()
