"""
API Key Rate Limiter
====================

Per-API-key sliding window rate limiting for the ingestion endpoint.

WHY THIS FILE EXISTS
--------------------
Ingestion keys live in customer backends and tag managers. A misconfigured
retry loop can send thousands of batches a minute. Each key gets an
independent budget (default 300 requests per 60 seconds); beyond it the
endpoint answers 429 with Retry-After.

HOW
---
Sliding window: every accepted request records its timestamp; requests
older than the window are dropped before counting.

- RedisRateLimiter: sorted set per key, timestamps as scores. Shared by all
  API processes.
- InMemoryRateLimiter: deque per key behind a lock. Single process only.

If Redis is unreachable the request is allowed and a warning is logged.
Rejecting all ingestion because the limiter is down would lose customer data.

RELATED FILES
-------------
- querydeck/routers/ingest.py: Calls hit() before ingesting
- querydeck/state.py: Chooses the store from REDIS_URL
"""

import logging
import threading
import time
import uuid
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict

from redis import Redis, RedisError

logger = logging.getLogger(__name__)

# Window size in seconds (1 minute sliding window)
WINDOW_SIZE_SECONDS = 60
DEFAULT_LIMIT_PER_WINDOW = 300


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    retry_after: int = 0


class RateLimiterStore(ABC):
    """Check-and-record in one call."""

    @abstractmethod
    def hit(self, key: str, limit: int = DEFAULT_LIMIT_PER_WINDOW) -> RateLimitResult:
        """Record a request for key if it fits in the window."""


class RedisRateLimiter(RateLimiterStore):
    """
    Redis-backed sliding window.

    Key format: "ingest_rate:{key}". Each allowed request adds a unique
    member scored by its timestamp; the key expires after two windows.
    """

    def __init__(self, redis_client: Redis, window_seconds: int = WINDOW_SIZE_SECONDS):
        self.redis = redis_client
        self.window_seconds = window_seconds

    def _get_key(self, key: str) -> str:
        return f"ingest_rate:{key}"

    def hit(self, key: str, limit: int = DEFAULT_LIMIT_PER_WINDOW) -> RateLimitResult:
        redis_key = self._get_key(key)
        now = time.time()
        try:
            self.redis.zremrangebyscore(redis_key, "-inf", now - self.window_seconds)
            current_count = self.redis.zcard(redis_key)

            if current_count >= limit:
                oldest = self.redis.zrange(redis_key, 0, 0, withscores=True)
                retry_after = self.window_seconds
                if oldest:
                    retry_after = max(1, int(oldest[0][1] + self.window_seconds - now))
                logger.warning(
                    f"[RATE_LIMITER] Key {key} hit rate limit ({current_count}/{limit} per {self.window_seconds}s)"
                )
                return RateLimitResult(allowed=False, limit=limit, remaining=0, retry_after=retry_after)

            # Unique member so two requests in the same microsecond both count
            self.redis.zadd(redis_key, {f"{now}:{uuid.uuid4().hex[:8]}": now})
            self.redis.expire(redis_key, self.window_seconds * 2)
            return RateLimitResult(allowed=True, limit=limit, remaining=max(0, limit - current_count - 1))
        except RedisError as e:
            logger.warning(f"[RATE_LIMITER] Redis unavailable, allowing request for {key}: {e}")
            return RateLimitResult(allowed=True, limit=limit, remaining=limit)


class InMemoryRateLimiter(RateLimiterStore):
    """Process-local sliding window. `clock` is injectable for tests."""

    def __init__(self, window_seconds: int = WINDOW_SIZE_SECONDS, clock: Callable[[], float] = time.monotonic):
        self.window_seconds = window_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._hits: Dict[str, Deque[float]] = {}

    def hit(self, key: str, limit: int = DEFAULT_LIMIT_PER_WINDOW) -> RateLimitResult:
        now = self._clock()
        cutoff = now - self.window_seconds
        with self._lock:
            hits = self._hits.setdefault(key, deque())
            while hits and hits[0] <= cutoff:
                hits.popleft()

            if len(hits) >= limit:
                retry_after = max(1, int(hits[0] + self.window_seconds - now))
                logger.warning(f"[RATE_LIMITER] Key {key} hit rate limit ({len(hits)}/{limit} per {self.window_seconds}s)")
                return RateLimitResult(allowed=False, limit=limit, remaining=0, retry_after=retry_after)

            hits.append(now)
            return RateLimitResult(allowed=True, limit=limit, remaining=limit - len(hits))
