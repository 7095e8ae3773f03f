"""Database session and base configuration.

WHAT:
    Provides the SQLAlchemy engine and session factory for the event store.
    Exposes a FastAPI dependency and a context manager for database access.

WHY:
    - The compiled query strategy pushes aggregation into this database
    - The scan strategy and ingestion read/write through the same sessions
    - One engine per process keeps connection pooling effective

ARCHITECTURE:
    ┌──────────────────┐
    │  Engine          │  postgresql:// (psycopg2) or sqlite:// (dev/tests)
    └────────┬─────────┘
             │
    ┌────────▼─────────┐
    │  SessionLocal    │
    └────────┬─────────┘
             │
    ┌────────▼─────────┐     ┌────────────────────┐
    │  get_db()        │     │ get_sync_session() │
    │  (FastAPI dep)   │     │ (scripts, tests)   │
    └──────────────────┘     └────────────────────┘

REFERENCES:
    - querydeck/routers/ (consumers of these sessions)
    - querydeck/services/event_sources.py (query strategies)
"""

import logging
import os
from contextlib import contextmanager
from typing import Generator

from dotenv import load_dotenv
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

logger = logging.getLogger(__name__)


# =============================================================================
# ENVIRONMENT CONFIGURATION
# =============================================================================

def _get_database_url() -> str:
    """Get DATABASE_URL from environment, loading .env if needed.

    Returns:
        Database connection string

    Raises:
        RuntimeError: If DATABASE_URL is not configured
    """
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        # Existing variables are never overwritten
        if load_dotenv(override=False):
            logger.info("[DATABASE] Loaded local .env file")
        database_url = os.getenv("DATABASE_URL")

    if not database_url:
        raise RuntimeError(
            "DATABASE_URL is not set. "
            "Ensure backend/.env is loaded or env var is exported."
        )

    if database_url.startswith("postgres://"):
        # Heroku-style URL
        database_url = database_url.replace("postgres://", "postgresql://", 1)

    return database_url


def _get_statement_timeout_ms() -> int:
    """Per-statement timeout applied to PostgreSQL connections (0 disables)."""
    raw = os.getenv("QUERY_STATEMENT_TIMEOUT_MS", "15000")
    try:
        return max(0, int(raw))
    except ValueError:
        return 15000


DATABASE_URL = _get_database_url()


# =============================================================================
# ENGINE
# =============================================================================

# Connection pool configuration for production performance:
# - pool_size: Number of persistent connections to maintain
# - max_overflow: Additional connections allowed beyond pool_size during load spikes
# - pool_recycle: Recreate connections after 1 hour to prevent stale connections
# - pool_pre_ping: Check connection health before use
# - statement_timeout: the query engine's round trip is bounded by the server
#
# NOTE: SQLite engines (used in tests/dev) do not support pool_size/max_overflow.
if DATABASE_URL.startswith("sqlite"):
    engine = create_engine(
        DATABASE_URL,
        connect_args={"check_same_thread": False},
    )
else:
    _timeout_ms = _get_statement_timeout_ms()
    engine = create_engine(
        DATABASE_URL,
        pool_size=10,
        max_overflow=20,
        pool_recycle=3600,
        pool_pre_ping=True,
        connect_args={"options": f"-c statement_timeout={_timeout_ms}"} if _timeout_ms else {},
    )

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


# =============================================================================
# BASE MODEL (imported from models for single registry)
# =============================================================================

from .models import Base  # noqa: E402


def init_db() -> None:
    """Create all tables that do not exist yet.

    Used by start_api.py and local tooling. Production schemas are expected
    to be provisioned ahead of time; create_all never alters existing tables.
    """
    Base.metadata.create_all(bind=engine)


# =============================================================================
# FASTAPI DEPENDENCIES
# =============================================================================

def get_db() -> Generator[Session, None, None]:
    """Yield a database session for FastAPI dependency injection.

    Yields:
        SQLAlchemy Session instance

    Example:
        @router.post("/query/table")
        def query_table(query: TableQuery, db: Session = Depends(get_db)):
            ...
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# =============================================================================
# CONTEXT MANAGERS (for non-FastAPI usage)
# =============================================================================

@contextmanager
def get_sync_session() -> Generator[Session, None, None]:
    """Context manager for sessions outside FastAPI.

    WHAT:
        Creates a session with automatic cleanup.

    WHY:
        For use in scripts and tests where FastAPI dependency injection
        isn't available.

    Example:
        with get_sync_session() as db:
            provision_sample_events(db, org_id)
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
