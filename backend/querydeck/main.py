"""FastAPI application entrypoint.

Configures logging, Sentry, CORS, the QueryError handler and the routers,
and exposes a healthcheck endpoint.
"""

import logging
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from redis import RedisError

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from . import schemas  # noqa: E402
from . import state  # noqa: E402
from .database import init_db  # noqa: E402
from .deps import get_settings  # noqa: E402
from .routers import ingest as ingest_router  # noqa: E402
from .routers import orgs as orgs_router  # noqa: E402
from .routers import query as query_router  # noqa: E402
from .semantic.errors import QueryError  # noqa: E402
from .telemetry import init_sentry  # noqa: E402


def create_app() -> FastAPI:
    init_sentry()

    settings = get_settings()

    app = FastAPI(
        title="querydeck API",
        description="""
        querydeck is a multi-tenant product analytics API.

        - **Ingestion**: Batches of behavioral events, authenticated per organization with API keys
        - **Table queries**: Group by dimensions, aggregate metrics, filter with nested AND/OR segments
        - **Timeseries**: One metric bucketed by day or hour, optionally split by a dimension
        - **Sample data**: Deterministic demo events for new organizations
        """,
        version="1.0.0",
    )

    logger.info(f"[CORS] Allowed origins: {settings.cors_origins}")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(QueryError)
    async def query_error_handler(request: Request, exc: QueryError):
        logger.info(f"[QUERY_ENGINE] Rejected query on {request.url.path}: {exc.code.value} {exc.message}")
        return JSONResponse(status_code=400, content={"error": exc.to_dict()})

    app.include_router(query_router.router)
    app.include_router(orgs_router.router)
    app.include_router(ingest_router.router)

    @app.get(
        "/health",
        response_model=schemas.HealthResponse,
        tags=["Health"],
        summary="Health check",
    )
    def health():
        return schemas.HealthResponse(
            status="ok",
            strategy=get_settings().QUERY_ENGINE_STRATEGY,
            timestamp=datetime.now(timezone.utc),
        )

    @app.on_event("startup")
    async def startup_event():
        """Create tables when asked to and check Redis reachability."""
        if settings.AUTO_CREATE_TABLES:
            init_db()
            logger.info("[STARTUP] Database tables ensured")

        if state.redis_client is None:
            logger.info("[STARTUP] Using in-process query cache and rate limiter")
            return
        try:
            state.redis_client.ping()
            logger.info("[STARTUP] Redis is reachable")
        except RedisError as e:
            # Cache and rate limiter fail open, so the app still starts
            logger.warning(f"[STARTUP] Redis ping failed: {e}")

    return app


app = create_app()
