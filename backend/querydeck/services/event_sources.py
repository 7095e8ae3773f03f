"""
Event Sources
=============

Implementations of the engine's source ports.

    SqlPushdownSource  compiled strategy: grouped SQL via semantic/compiler.py
    SqlScanSource      scan strategy over the relational store
    InMemoryEventStore scan strategy over a process-local list (local runs, tests)

The engine decides nothing about storage; these classes decide nothing about
grouping. build_event_source() picks one from configuration.

RELATED FILES
-------------
- querydeck/semantic/engine.py: Port definitions and the engine
- querydeck/deps.py: QUERY_ENGINE_STRATEGY setting
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from querydeck.models import Event
from querydeck.semantic.compiler import compile_table_plan, compile_timeseries_plan
from querydeck.semantic.dates import floor_millisecond
from querydeck.semantic.engine import (
    PushdownEventSource,
    RawTable,
    ScanEventSource,
    TablePlan,
    TimeseriesPlan,
)

logger = logging.getLogger(__name__)

STRATEGIES = ("compiled", "scan")


# =============================================================================
# RELATIONAL SOURCES
# =============================================================================

class SqlPushdownSource(PushdownEventSource):
    """
    Compiled strategy. Two round trips per table query (rows, totals),
    one per timeseries query. SQLAlchemy errors propagate.
    """

    def __init__(self, db: Session):
        self.db = db

    def execute_table(self, plan: TablePlan) -> RawTable:
        compiled = compile_table_plan(plan)

        rows = []
        for record in self.db.execute(compiled.rows_statement).mappings():
            row: Dict[str, Any] = {}
            for key, label in zip(plan.dimensions, compiled.dimension_labels):
                row[key] = record[label]
            for key, label in zip(plan.metrics, compiled.metric_labels):
                row[key] = record[label]
            rows.append(row)

        totals_record = self.db.execute(compiled.totals_statement).mappings().one()
        totals = {key: totals_record[label] for key, label in zip(plan.metrics, compiled.metric_labels)}

        return RawTable(rows=rows, totals=totals)

    def execute_timeseries(self, plan: TimeseriesPlan) -> List[Dict[str, Any]]:
        compiled = compile_timeseries_plan(plan)
        points = []
        for record in self.db.execute(compiled.statement).mappings():
            points.append({
                "bucket": record["bucket"],
                "dimension": record["dimension"] if compiled.has_dimension else None,
                "value": record["value"],
            })
        return points


class SqlScanSource(ScanEventSource):
    """Scan strategy: loads candidate rows through the ORM, oldest first."""

    def __init__(self, db: Session):
        self.db = db

    def fetch_candidates(self, org_id: str, start: datetime, end: datetime) -> Iterable[Event]:
        return (
            self.db.query(Event)
            .filter(
                Event.org_id == org_id,
                Event.timestamp >= start,
                Event.timestamp <= end,
            )
            .order_by(Event.timestamp, Event.event_id)
            .all()
        )


# =============================================================================
# IN-MEMORY SOURCE
# =============================================================================

@dataclass(frozen=True)
class EventRecord:
    """Plain event used by the in-memory store and sample-data generator."""
    event_id: str
    event_name: str
    timestamp: datetime
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    properties: Dict[str, Any] = field(default_factory=dict)


class InMemoryEventStore(ScanEventSource):
    """
    Process-local event store.

    Deduplicates on (org_id, event_id) like the relational unique constraint.
    Guarded by a lock so ingestion and queries may run from several threads.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._events: Dict[str, List[EventRecord]] = {}
        self._ids: Dict[str, set] = {}

    def add_events(self, org_id: str, events: Iterable[EventRecord]) -> int:
        """Insert events, skipping known event ids. Returns how many were new."""
        accepted = 0
        with self._lock:
            bucket = self._events.setdefault(org_id, [])
            seen = self._ids.setdefault(org_id, set())
            for event in events:
                if event.event_id in seen:
                    continue
                seen.add(event.event_id)
                bucket.append(event)
                accepted += 1
        return accepted

    def count(self, org_id: str) -> int:
        with self._lock:
            return len(self._events.get(org_id, []))

    def fetch_candidates(self, org_id: str, start: datetime, end: datetime) -> List[EventRecord]:
        with self._lock:
            events = list(self._events.get(org_id, []))
        selected = [e for e in events if start <= floor_millisecond(e.timestamp) <= end]
        # sorted() is stable, so same-timestamp events keep insertion order
        return sorted(selected, key=lambda e: floor_millisecond(e.timestamp))


# =============================================================================
# FACTORY
# =============================================================================

def build_event_source(db: Session, strategy: str):
    """
    Source for the configured strategy.

    RAISES:
        ValueError: For an unknown strategy name
    """
    if strategy == "compiled":
        return SqlPushdownSource(db)
    if strategy == "scan":
        return SqlScanSource(db)
    raise ValueError(f"Unknown query engine strategy '{strategy}'. Expected one of {STRATEGIES}")
