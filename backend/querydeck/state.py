"""
Application State
=================

Process-wide stores that persist across requests.

WHY this exists:
- Cached query results must outlive the request that computed them
- Rate-limit windows must see every request for a key
- The Redis connection pool should be shared to avoid connection overhead

WHAT it stores:
- redis_pool / redis_client: Shared Redis connection (None without REDIS_URL)
- query_cache: RedisQueryCache, or InMemoryQueryCache without Redis
- rate_limiter: RedisRateLimiter, or InMemoryRateLimiter without Redis

WHERE it's used:
- querydeck/deps.py: get_query_cache / get_rate_limiter
- querydeck/main.py: Logs the chosen backends on startup

Design:
- Simple module-level singleton pattern
- Redis client is thread-safe (connection pooling); in-memory stores lock
"""

import logging

from redis import ConnectionPool, Redis

from querydeck.deps import get_settings
from querydeck.services.query_cache import InMemoryQueryCache, QueryCacheStore, RedisQueryCache
from querydeck.services.rate_limiter import InMemoryRateLimiter, RateLimiterStore, RedisRateLimiter

logger = logging.getLogger(__name__)

redis_pool: ConnectionPool | None = None
redis_client: Redis | None = None

settings = get_settings()

if settings.REDIS_URL:
    redis_pool = ConnectionPool.from_url(
        settings.REDIS_URL,
        max_connections=20,  # Pool size for concurrent requests
        decode_responses=True,
    )
    redis_client = Redis(connection_pool=redis_pool)
    logger.info("[STATE] Shared Redis connection pool initialized (max_connections=20)")

if redis_client is not None:
    query_cache: QueryCacheStore = RedisQueryCache(redis_client)
    rate_limiter: RateLimiterStore = RedisRateLimiter(redis_client)
else:
    logger.warning("[STATE] REDIS_URL not set - using in-process query cache and rate limiter")
    query_cache = InMemoryQueryCache()
    rate_limiter = InMemoryRateLimiter()
