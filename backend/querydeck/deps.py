"""Dependency providers and settings management."""

from functools import lru_cache
from typing import Literal, Optional

from fastapi import Depends
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy.orm import Session

from .database import get_db
from .semantic.engine import AggregationEngine
from .services.event_sources import build_event_source
from .services.query_cache import QueryCacheStore
from .services.query_service import QueryService
from .services.rate_limiter import RateLimiterStore


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    BACKEND_CORS_ORIGINS: str = "http://localhost:3000"
    ENVIRONMENT: str = "development"

    # Redis Configuration (unset = in-process cache and rate limiter)
    REDIS_URL: Optional[str] = None

    # Query engine
    QUERY_ENGINE_STRATEGY: Literal["compiled", "scan"] = "compiled"
    QUERY_CACHE_TTL_SECONDS: int = 30

    # Ingestion
    INGEST_HMAC_SALT: str = "development-salt"
    API_KEY_RATE_LIMIT_PER_MINUTE: int = 300

    # Sample data
    SAMPLE_DATA_DAYS: int = 21
    SAMPLE_DATA_EVENTS_PER_DAY: int = 12

    # Create missing tables on startup (local development)
    AUTO_CREATE_TABLES: bool = False

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def cors_origins(self) -> list:
        return [origin.strip() for origin in self.BACKEND_CORS_ORIGINS.split(",") if origin.strip()]


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]


def get_query_cache() -> QueryCacheStore:
    """Process-wide result cache (Redis when REDIS_URL is set)."""
    from . import state
    return state.query_cache


def get_rate_limiter() -> RateLimiterStore:
    """Process-wide ingestion rate limiter (Redis when REDIS_URL is set)."""
    from . import state
    return state.rate_limiter


def get_query_service(
    db: Session = Depends(get_db),
    cache: QueryCacheStore = Depends(get_query_cache),
    settings: Settings = Depends(get_settings),
) -> QueryService:
    """Engine bound to this request's session, behind the shared cache."""
    source = build_event_source(db, settings.QUERY_ENGINE_STRATEGY)
    return QueryService(
        engine=AggregationEngine(source),
        cache=cache,
        ttl_seconds=settings.QUERY_CACHE_TTL_SECONDS,
    )
