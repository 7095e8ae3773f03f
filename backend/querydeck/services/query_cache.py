"""
Query Result Cache
==================

Short-lived cache of finished query results, keyed per organization.

WHY THIS FILE EXISTS
--------------------
The query builder re-issues the same query many times while a user drags
fields around. A 30 second cache absorbs those repeats without letting
results go noticeably stale. Freshness after ingestion is handled by
sweeping the org's keys (invalidate_org_cache), not by a short TTL.

KEY FORMAT
----------
    "{namespace}:{org_id}:{sha256(canonical JSON of the query)}"

    namespace  "table" or "timeseries"
    canonical  json.dumps(payload, sort_keys=True, separators=(",", ":"))

Two payloads that differ only in key order share a cache entry.

FAILURE POLICY
--------------
A broken cache must never break a query. Read and write failures are logged
and treated as a miss / no-op. Only successful results are ever stored.

STORES
------
- RedisQueryCache: production, shared across API processes (setex, scan_iter)
- InMemoryQueryCache: single process (local runs, tests)

RELATED FILES
-------------
- querydeck/services/query_service.py: Reads/writes through this cache
- querydeck/services/ingestion.py: Sweeps the org after accepted events
- querydeck/state.py: Chooses the store from REDIS_URL
"""

import hashlib
import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional, Tuple

from redis import Redis, RedisError

logger = logging.getLogger(__name__)

QUERY_CACHE_NAMESPACES = ("table", "timeseries")
DEFAULT_TTL_SECONDS = 30


def canonical_json(payload: Any) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)


def build_query_cache_key(namespace: str, org_id: str, payload: Any) -> str:
    """
    Cache key for a query payload.

    EXAMPLES:
        >>> build_query_cache_key("table", "org_1", {"metrics": ["events"]})
        'table:org_1:6f1c...'
    """
    digest = hashlib.sha256(canonical_json(payload).encode("utf-8")).hexdigest()
    return f"{namespace}:{org_id}:{digest}"


class QueryCacheStore(ABC):
    """Key/value store for JSON-able results with per-entry TTL."""

    @abstractmethod
    def get(self, key: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    def set(self, key: str, value: Dict[str, Any], ttl_seconds: int) -> None:
        ...

    @abstractmethod
    def sweep(self, prefix: str) -> int:
        """Delete every key starting with prefix. Returns how many were removed."""


# =============================================================================
# REDIS STORE
# =============================================================================

def _escape_glob(text: str) -> str:
    """Escape Redis MATCH glob characters so org ids match literally."""
    for char in ("\\", "*", "?", "[", "]"):
        text = text.replace(char, "\\" + char)
    return text


class RedisQueryCache(QueryCacheStore):
    """
    Redis-backed store.

    Values are stored as JSON strings with SETEX. Sweeps use SCAN rather than
    KEYS so large keyspaces do not block the server.
    """

    def __init__(self, redis_client: Redis):
        self.redis = redis_client

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        try:
            raw = self.redis.get(key)
        except RedisError as e:
            logger.warning(f"[QUERY_CACHE] Cache read failed for {key}: {e}")
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError) as e:
            logger.warning(f"[QUERY_CACHE] Discarding unreadable cache entry {key}: {e}")
            return None

    def set(self, key: str, value: Dict[str, Any], ttl_seconds: int) -> None:
        try:
            self.redis.setex(key, ttl_seconds, json.dumps(value))
        except RedisError as e:
            logger.warning(f"[QUERY_CACHE] Cache write failed for {key}: {e}")

    def sweep(self, prefix: str) -> int:
        removed = 0
        try:
            for key in self.redis.scan_iter(match=f"{_escape_glob(prefix)}*", count=500):
                removed += self.redis.delete(key)
        except RedisError as e:
            logger.warning(f"[QUERY_CACHE] Cache sweep failed for {prefix}*: {e}")
        return removed


# =============================================================================
# IN-MEMORY STORE
# =============================================================================

class InMemoryQueryCache(QueryCacheStore):
    """
    Lock-guarded dict with monotonic expiry.

    Values are serialised on write so callers never share mutable results.
    `clock` is injectable for tests.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[str, Tuple[float, str]] = {}

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, raw = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
        return json.loads(raw)

    def set(self, key: str, value: Dict[str, Any], ttl_seconds: int) -> None:
        raw = json.dumps(value)
        with self._lock:
            self._entries[key] = (self._clock() + ttl_seconds, raw)

    def sweep(self, prefix: str) -> int:
        with self._lock:
            doomed = [key for key in self._entries if key.startswith(prefix)]
            for key in doomed:
                del self._entries[key]
        return len(doomed)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def invalidate_org_cache(store: QueryCacheStore, org_id: str) -> int:
    """
    Drop every cached result of an organization.

    Called after ingestion accepts events and after sample data is
    (re)provisioned.
    """
    removed = sum(store.sweep(f"{namespace}:{org_id}:") for namespace in QUERY_CACHE_NAMESPACES)
    logger.info(f"[QUERY_CACHE] Swept {removed} cached result(s) for org {org_id}")
    return removed
