"""
Query Router
============

HTTP endpoints for the semantic query engine.

Endpoints:
- POST /query/table: Grouped table with per-metric totals
- POST /query/timeseries: One metric bucketed by day or hour

Request bodies are the engine's own models (querydeck/semantic/query.py), so
Pydantic rejects malformed payloads with 422 before anything runs. Semantic
problems (unknown keys, operator/type mismatches, bad dates) raise QueryError,
which main.py turns into a structured 400.

Related files:
- querydeck/services/query_service.py: Validation + cache + engine
- querydeck/deps.py: get_query_service
"""

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.exc import SQLAlchemyError

from ..deps import get_query_service
from ..schemas import TableResponse, TimeseriesResponse
from ..semantic.query import TableQuery, TimeseriesQuery
from ..services.query_service import QueryService
from ..telemetry import capture_exception, set_org_context

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/query", tags=["query"])


def _database_failure(e: SQLAlchemyError, org_id: str, endpoint: str) -> HTTPException:
    logger.error(f"[QUERY_ENGINE] {endpoint} failed for org={org_id}: {e}")
    capture_exception(e, extra={"org_id": org_id, "endpoint": endpoint})
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="Query failed against the event store",
    )


@router.post("/table", response_model=TableResponse)
def query_table(
    query: TableQuery,
    service: QueryService = Depends(get_query_service),
) -> Dict[str, Any]:
    """
    Run a grouped table query.

    Example body:
        {
          "orgId": "org-1",
          "dateRange": {"preset": "last_7_days"},
          "rows": ["channel"],
          "metrics": ["events", "revenue"],
          "sort": {"key": "revenue", "direction": "desc"},
          "limit": 10
        }
    """
    set_org_context(query.org_id)
    try:
        return service.run_table(query)
    except SQLAlchemyError as e:
        raise _database_failure(e, query.org_id, "table")


@router.post("/timeseries", response_model=TimeseriesResponse)
def query_timeseries(
    query: TimeseriesQuery,
    service: QueryService = Depends(get_query_service),
) -> Dict[str, Any]:
    """Run a timeseries query."""
    set_org_context(query.org_id)
    try:
        return service.run_timeseries(query)
    except SQLAlchemyError as e:
        raise _database_failure(e, query.org_id, "timeseries")
