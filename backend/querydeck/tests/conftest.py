"""Pytest configuration for querydeck tests

WHAT: Shared fixtures for engine, service and HTTP endpoint tests
WHY: One SQLite database per test, fresh in-process cache and rate limiter,
     and a small event dataset whose expected aggregates are written out by hand
REFERENCES:
    - querydeck/main.py: FastAPI application
    - querydeck/database.py: Database configuration
    - querydeck/deps.py: Dependency injection
"""

import os
from datetime import datetime
from typing import Generator, List

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Set test environment before querydeck.database is imported
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.pop("REDIS_URL", None)
os.environ.pop("SENTRY_DSN", None)

ORG_ID = "org-test"
OTHER_ORG_ID = "org-other"


# ============================================================================
# Dataset
# ============================================================================

def build_fixture_events() -> List["EventRecord"]:
    """
    Events for ORG_ID, 2026-02-01 .. 2026-02-05.

    Grouped by channel over 2026-02-01..2026-02-04 the expected table is:

        channel      events  users  revenue
        Email             3      2    200.5   (120.5 + "80" + missing)
        Organic           1      1     45.0
        Paid Search       1      1     10.0
        (none)            1      0      0.0   ("n/a" is not numeric)

    Totals: events 6, users 4, revenue 255.5. The 2026-02-05 event is
    outside that range.
    """
    from querydeck.services.event_sources import EventRecord

    return [
        EventRecord("e1", "purchase", datetime(2026, 2, 1, 9, 0), "u1", "s1",
                    {"channel": "Email", "brand": "Gap", "revenue": 120.5, "netDemand": 110}),
        EventRecord("e2", "page_view", datetime(2026, 2, 1, 15, 30), "u2", "s2",
                    {"channel": "Paid Search", "brand": "Old Navy", "revenue": 10}),
        EventRecord("e3", "purchase", datetime(2026, 2, 2, 0, 0, 0), "u1", "s3",
                    {"channel": "Email", "brand": "Old Navy", "revenue": "80", "netDemand": "abc"}),
        EventRecord("e4", "purchase", datetime(2026, 2, 2, 23, 59, 59), "u3", "s4",
                    {"channel": "Organic", "brand": "Gap", "revenue": 45}),
        EventRecord("e5", "signup", datetime(2026, 2, 3, 12, 0), "u4", "s5",
                    {"channel": "Email", "brand": "Gap"}),
        EventRecord("e6", "page_view", datetime(2026, 2, 3, 12, 30), None, None,
                    {"brand": "Gap", "revenue": "n/a"}),
        EventRecord("e7", "purchase", datetime(2026, 2, 5, 8, 0), "u2", "s6",
                    {"channel": "Paid Search", "brand": "Gap", "revenue": 300}),
    ]


def build_other_org_events() -> List["EventRecord"]:
    """Same shape, different tenant; must never leak into ORG_ID results."""
    from querydeck.services.event_sources import EventRecord

    return [
        EventRecord("e1", "purchase", datetime(2026, 2, 1, 10, 0), "x1", None,
                    {"channel": "Email", "brand": "Gap", "revenue": 1000}),
    ]


def table_payload(**overrides) -> dict:
    """camelCase /query/table body over the fixture range."""
    payload = {
        "orgId": ORG_ID,
        "dateRange": {"from": "2026-02-01", "to": "2026-02-04"},
        "rows": ["channel"],
        "metrics": ["events", "users", "revenue"],
    }
    payload.update(overrides)
    return payload


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def test_db_engine():
    """In-memory SQLite shared by every connection of one test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    from querydeck.models import Base
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def test_db_session(test_db_engine) -> Generator[Session, None, None]:
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_db_engine)
    session = SessionLocal()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def test_org(test_db_session):
    from querydeck.models import Organization

    org = Organization(id=ORG_ID, name="Test Org")
    other = Organization(id=OTHER_ORG_ID, name="Other Org")
    test_db_session.add_all([org, other])
    test_db_session.commit()
    return org


@pytest.fixture
def seeded_db(test_db_session, test_org) -> Session:
    """Session with the fixture events of both organizations stored."""
    from querydeck.services.ingestion import ingest_events

    ingest_events(test_db_session, ORG_ID, build_fixture_events())
    ingest_events(test_db_session, OTHER_ORG_ID, build_other_org_events())
    return test_db_session


@pytest.fixture
def memory_store():
    """InMemoryEventStore holding the same events as seeded_db."""
    from querydeck.services.event_sources import InMemoryEventStore

    store = InMemoryEventStore()
    store.add_events(ORG_ID, build_fixture_events())
    store.add_events(OTHER_ORG_ID, build_other_org_events())
    return store


# ============================================================================
# Shared Stores & Settings
# ============================================================================

@pytest.fixture
def query_cache():
    from querydeck.services.query_cache import InMemoryQueryCache
    return InMemoryQueryCache()


@pytest.fixture
def rate_limiter():
    from querydeck.services.rate_limiter import InMemoryRateLimiter
    return InMemoryRateLimiter()


@pytest.fixture
def settings():
    from querydeck.deps import Settings
    return Settings(
        QUERY_ENGINE_STRATEGY="compiled",
        INGEST_HMAC_SALT="test-salt",
        API_KEY_RATE_LIMIT_PER_MINUTE=300,
        SAMPLE_DATA_DAYS=2,
        SAMPLE_DATA_EVENTS_PER_DAY=3,
    )


# ============================================================================
# Application & Client Fixtures
# ============================================================================

@pytest.fixture
def app(test_db_session, query_cache, rate_limiter, settings):
    """FastAPI app with database, stores and settings overridden."""
    from querydeck.database import get_db
    from querydeck.deps import get_query_cache, get_rate_limiter, get_settings
    from querydeck.main import create_app

    test_app = create_app()

    def override_get_db():
        yield test_db_session

    test_app.dependency_overrides[get_db] = override_get_db
    test_app.dependency_overrides[get_query_cache] = lambda: query_cache
    test_app.dependency_overrides[get_rate_limiter] = lambda: rate_limiter
    test_app.dependency_overrides[get_settings] = lambda: settings

    return test_app


@pytest.fixture
def client(app) -> TestClient:
    return TestClient(app)


@pytest.fixture
def api_key(test_db_session, test_org, settings) -> str:
    """Plaintext ingestion key for ORG_ID."""
    from querydeck.services.api_keys import create_api_key

    _, plaintext = create_api_key(test_db_session, ORG_ID, "test key", salt=settings.INGEST_HMAC_SALT)
    return plaintext
