"""
Query Service
=============

Validation, caching and execution of table/timeseries queries, in that order.

    query
      │
      ▼
    ensure_valid_*            QueryError -> 400, nothing cached
      │
      ▼
    cache.get(key) ── hit ──► result
      │ miss
      ▼
    AggregationEngine.run*    SQLAlchemyError propagates, nothing cached
      │
      ▼
    cache.set(key, result, ttl)
      │
      ▼
    result

Concurrent identical misses may both compute; the second write simply
overwrites the first with an identical value.

RELATED FILES
-------------
- querydeck/semantic/engine.py: Execution
- querydeck/services/query_cache.py: Cache stores and key format
- querydeck/deps.py: get_query_service wires engine, source and cache
"""

import logging
import time
from typing import Any, Callable, Dict

from querydeck.semantic.engine import AggregationEngine
from querydeck.semantic.query import TableQuery, TimeseriesQuery
from querydeck.semantic.validator import ensure_valid_table_query, ensure_valid_timeseries_query
from querydeck.services.query_cache import DEFAULT_TTL_SECONDS, QueryCacheStore, build_query_cache_key

logger = logging.getLogger(__name__)


class QueryService:
    """
    Cache-fronted access to the aggregation engine.

    PARAMETERS:
        engine: AggregationEngine bound to the request's event source
        cache: QueryCacheStore shared across requests
        ttl_seconds: Lifetime of cached results
    """

    def __init__(self, engine: AggregationEngine, cache: QueryCacheStore, ttl_seconds: int = DEFAULT_TTL_SECONDS):
        self.engine = engine
        self.cache = cache
        self.ttl_seconds = ttl_seconds

    def run_table(self, query: TableQuery) -> Dict[str, Any]:
        ensure_valid_table_query(query)
        return self._cached(
            "table",
            query.org_id,
            query.cache_payload(),
            lambda: self.engine.run(query).to_dict(),
        )

    def run_timeseries(self, query: TimeseriesQuery) -> Dict[str, Any]:
        ensure_valid_timeseries_query(query)
        return self._cached(
            "timeseries",
            query.org_id,
            query.cache_payload(),
            lambda: self.engine.run_timeseries(query).to_dict(),
        )

    def _cached(self, namespace: str, org_id: str, payload: Dict[str, Any], compute: Callable[[], Dict[str, Any]]) -> Dict[str, Any]:
        key = build_query_cache_key(namespace, org_id, payload)

        cached = self.cache.get(key)
        if cached is not None:
            logger.info(f"[QUERY_CACHE] HIT {namespace} org={org_id}")
            return cached

        started = time.perf_counter()
        result = compute()
        elapsed_ms = (time.perf_counter() - started) * 1000
        logger.info(f"[QUERY_CACHE] MISS {namespace} org={org_id} computed in {elapsed_ms:.1f}ms")

        self.cache.set(key, result, self.ttl_seconds)
        return result
