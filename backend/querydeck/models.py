"""SQLAlchemy ORM models.

This module defines the tenant-scoped event schema. Every row that carries
behavioral data belongs to exactly one organization, and every query the
engine issues is filtered by `org_id` first.
"""

import uuid
from datetime import datetime

from sqlalchemy import Column, String, DateTime, ForeignKey, JSON, Index, UniqueConstraint
from sqlalchemy.orm import relationship, declarative_base


# Single Base used by the entire application
Base = declarative_base()


def _uuid_str() -> str:
    return str(uuid.uuid4())


# Core models ----------------------------------------------------

class Organization(Base):
    """Organization is the tenant boundary.

    Events, API keys and cached query results are all scoped to one
    organization. Nothing in the query engine ever reads across two of them.
    """
    __tablename__ = "organizations"

    id = Column(String, primary_key=True, default=_uuid_str)
    name = Column(String, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    events = relationship("Event", back_populates="org")
    api_keys = relationship("ApiKey", back_populates="org", cascade="all, delete-orphan")

    def __str__(self):
        return self.name


class Event(Base):
    """Immutable behavioral fact.

    `event_id` is supplied by the sender and is unique per organization so
    that re-sending a batch is absorbed instead of double counted.
    `timestamp` is stored as naive UTC.
    `properties` is a flat JSON object of string/number/boolean/null values.
    """
    __tablename__ = "events"
    __table_args__ = (
        UniqueConstraint("org_id", "event_id", name="uq_events_org_event_id"),
        Index("ix_events_org_timestamp", "org_id", "timestamp"),
    )

    id = Column(String, primary_key=True, default=_uuid_str)
    org_id = Column(String, ForeignKey("organizations.id"), nullable=False)
    event_id = Column(String, nullable=False)
    event_name = Column(String, nullable=False)
    timestamp = Column(DateTime, nullable=False)
    user_id = Column(String, nullable=True)
    session_id = Column(String, nullable=True)
    properties = Column(JSON, nullable=False, default=dict)
    ingested_at = Column(DateTime, default=datetime.utcnow)

    org = relationship("Organization", back_populates="events")

    def __str__(self):
        return f"{self.event_name} @ {self.timestamp}"


class ApiKey(Base):
    """Ingestion credential.

    Only the HMAC of the secret part is stored. The public `prefix` is used
    to look the record up before verifying the secret.
    """
    __tablename__ = "api_keys"

    id = Column(String, primary_key=True, default=_uuid_str)
    org_id = Column(String, ForeignKey("organizations.id"), nullable=False)
    name = Column(String, nullable=False)
    prefix = Column(String, unique=True, index=True, nullable=False)
    secret_hash = Column(String, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    last_used_at = Column(DateTime, nullable=True)
    revoked_at = Column(DateTime, nullable=True)

    org = relationship("Organization", back_populates="api_keys")

    def __str__(self):
        return f"{self.name} ({self.prefix})"
