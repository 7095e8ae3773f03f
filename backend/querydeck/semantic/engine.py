"""
Aggregation Engine
==================

Turns a validated TableQuery / TimeseriesQuery into grouped, aggregated,
sorted and capped results.

WHY THIS FILE EXISTS
--------------------
There are two ways to answer a query:

1. **Compiled** (PushdownEventSource): the whole aggregation is lowered to SQL
   and the database returns finished groups. Fast, used in production.
2. **Scan** (ScanEventSource): candidate events are loaded and grouped in
   Python. Used for local/ephemeral stores and as the reference behaviour.

Both must produce the same numbers. Instead of two engines that drift apart,
there is ONE engine with an injected source port. The engine owns the parts
that must be identical (range resolution, result shape, value
normalisation, sorting rules for the scan path) and the source only supplies
data.

ALGORITHM (scan path)
---------------------
    1. Resolve the date range to inclusive [start, end] UTC instants
    2. Fetch candidate events for (org, [start, end])
    3. Keep events matching the segment tree
    4. Group by the tuple of dimension values (discovery order)
    5. Fold metrics per group
    6. Totals over ALL filtered events (before limit)
    7. Stable sort by the requested key (default: first metric, desc)
    8. Apply offset and limit

With no dimensions there is always exactly one aggregate row.

RELATED FILES
-------------
- querydeck/semantic/model.py: Catalog derivations used for grouping
- querydeck/semantic/segments.py: Segment filter for the scan path
- querydeck/semantic/compiler.py: SQL lowering for the compiled path
- querydeck/services/event_sources.py: Source implementations
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

from querydeck.semantic.dates import (
    format_day,
    format_hour,
    parse_date_bound,
    resolve_preset,
    to_utc_naive,
)
from querydeck.semantic.model import (
    METRICS,
    Aggregation,
    derive_dimension,
    derive_metric_contribution,
    normalize_dimension_value,
    normalize_metric_value,
)
from querydeck.semantic.query import DateRange, SegmentTree, TableQuery, TimeseriesQuery
from querydeck.semantic.segments import matches

logger = logging.getLogger(__name__)

Number = Union[int, float]
Clock = Callable[[], datetime]


# =============================================================================
# PLANS
# =============================================================================

@dataclass(frozen=True)
class TablePlan:
    """
    A TableQuery with everything resolved that depends on "now" or on defaults.

    Sources receive plans, never raw queries, so both strategies see the
    exact same bounds and sort.
    """
    org_id: str
    start: datetime
    end: datetime
    dimensions: Tuple[str, ...]
    metrics: Tuple[str, ...]
    segment: Optional[SegmentTree]
    sort_key: str
    sort_direction: str
    limit: int
    offset: int = 0

    @property
    def sort_is_metric(self) -> bool:
        return self.sort_key in self.metrics


@dataclass(frozen=True)
class TimeseriesPlan:
    org_id: str
    start: datetime
    end: datetime
    metric: str
    dimension: Optional[str]
    granularity: str
    segment: Optional[SegmentTree]


# =============================================================================
# RESULTS
# =============================================================================

@dataclass
class TableResult:
    columns: List[str]
    rows: List[Dict[str, Any]]
    totals: Dict[str, Number]

    def to_dict(self) -> Dict[str, Any]:
        return {"columns": self.columns, "rows": self.rows, "totals": self.totals}


@dataclass
class TimeseriesResult:
    series: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"series": self.series}


@dataclass
class RawTable:
    """
    What a pushdown source returns for a table plan.

    rows: one dict per group, keyed by dimension and metric keys, already
          sorted and capped by the database
    totals: metric key -> aggregate over the whole filtered population
    """
    rows: List[Dict[str, Any]]
    totals: Dict[str, Any]


# =============================================================================
# SOURCE PORTS
# =============================================================================

class ScanEventSource(ABC):
    """Supplies candidate events; the engine filters, groups and sorts."""

    strategy = "scan"

    @abstractmethod
    def fetch_candidates(self, org_id: str, start: datetime, end: datetime) -> Iterable[Any]:
        """
        Events of `org_id` with start <= timestamp <= end, in a stable order.

        Returned objects need `event_name`, `timestamp`, `user_id` and
        `properties` attributes.
        """


class PushdownEventSource(ABC):
    """Executes whole plans inside the backing store."""

    strategy = "compiled"

    @abstractmethod
    def execute_table(self, plan: TablePlan) -> RawTable:
        ...

    @abstractmethod
    def execute_timeseries(self, plan: TimeseriesPlan) -> List[Dict[str, Any]]:
        """Points as dicts with `bucket`, `dimension` (or None) and `value`, sorted."""


EventSource = Union[ScanEventSource, PushdownEventSource]


# =============================================================================
# AGGREGATION BUCKET
# =============================================================================

class _Bucket:
    """Accumulator for one dimension tuple. Lives for one engine call."""

    __slots__ = ("metrics", "counts", "sums", "distinct")

    def __init__(self, metrics: Tuple[str, ...]):
        self.metrics = metrics
        self.counts: Dict[str, int] = {}
        self.sums: Dict[str, float] = {}
        self.distinct: Dict[str, set] = {}
        for key in metrics:
            aggregation = METRICS[key].aggregation
            if aggregation is Aggregation.COUNT:
                self.counts[key] = 0
            elif aggregation is Aggregation.COUNT_DISTINCT:
                self.distinct[key] = set()
            else:
                self.sums[key] = 0.0

    def add(self, event: Any) -> None:
        for key in self.metrics:
            contribution = derive_metric_contribution(event, key)
            if key in self.counts:
                self.counts[key] += 1
            elif key in self.distinct:
                if contribution is not None:
                    self.distinct[key].add(contribution)
            else:
                self.sums[key] += contribution

    def value(self, key: str) -> Number:
        if key in self.counts:
            return normalize_metric_value(key, self.counts[key])
        if key in self.distinct:
            return normalize_metric_value(key, len(self.distinct[key]))
        return normalize_metric_value(key, self.sums[key])

    def values(self) -> Dict[str, Number]:
        return {key: self.value(key) for key in self.metrics}


def sort_rows(rows: List[Dict[str, Any]], key: str, direction: str, numeric: bool) -> List[Dict[str, Any]]:
    """
    Stable sort of result rows.

    Metrics sort numerically, dimensions lexicographically. Rows that tie
    keep their relative order in both directions.
    """
    if numeric:
        sort_key = lambda row: row.get(key, 0)  # noqa: E731
    else:
        sort_key = lambda row: str(row.get(key, ""))  # noqa: E731
    return sorted(rows, key=sort_key, reverse=(direction == "desc"))


# =============================================================================
# ENGINE
# =============================================================================

class AggregationEngine:
    """
    Executes queries against one EventSource.

    PARAMETERS:
        source: ScanEventSource or PushdownEventSource
        clock: Returns the current instant; used to resolve presets.
               Defaults to the system UTC clock.

    USAGE:
        engine = AggregationEngine(SqlPushdownSource(db))
        result = engine.run(TableQuery.model_validate(payload))
        result.to_dict()
        # {"columns": [...], "rows": [...], "totals": {...}}

    The engine keeps no state between calls; instances may be shared.
    Backing-store errors propagate unchanged.
    """

    def __init__(self, source: EventSource, clock: Optional[Clock] = None):
        self.source = source
        self.clock: Clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def strategy(self) -> str:
        return getattr(self.source, "strategy", "scan")

    # -------------------------------------------------------------------------
    # Planning
    # -------------------------------------------------------------------------

    def resolve_range(self, date_range: DateRange) -> Tuple[datetime, datetime]:
        """Inclusive [start, end] as naive UTC instants."""
        if date_range.preset is not None:
            return resolve_preset(date_range.preset.value, to_utc_naive(self.clock()))
        return (
            parse_date_bound(date_range.from_, "start"),
            parse_date_bound(date_range.to, "end"),
        )

    def plan_table(self, query: TableQuery) -> TablePlan:
        start, end = self.resolve_range(query.date_range)
        if query.sort is not None:
            sort_key, direction = query.sort.key, query.sort.direction
        else:
            sort_key, direction = query.metrics[0], "desc"
        return TablePlan(
            org_id=query.org_id,
            start=start,
            end=end,
            dimensions=tuple(query.dimensions),
            metrics=tuple(query.metrics),
            segment=query.segment,
            sort_key=sort_key,
            sort_direction=direction,
            limit=query.limit,
            offset=query.offset,
        )

    def plan_timeseries(self, query: TimeseriesQuery) -> TimeseriesPlan:
        start, end = self.resolve_range(query.date_range)
        return TimeseriesPlan(
            org_id=query.org_id,
            start=start,
            end=end,
            metric=query.metric,
            dimension=query.dimension,
            granularity=query.granularity,
            segment=query.segment,
        )

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    def run(self, query: TableQuery) -> TableResult:
        """Execute a table query. Expects a semantically valid query."""
        plan = self.plan_table(query)
        started = time.perf_counter()

        if isinstance(self.source, PushdownEventSource):
            rows, totals = self._pushdown_table(plan)
        else:
            rows, totals = self._scan_table(plan)

        elapsed_ms = (time.perf_counter() - started) * 1000
        logger.info(
            f"[QUERY_ENGINE] table org={plan.org_id} strategy={self.strategy} "
            f"dims={list(plan.dimensions)} metrics={list(plan.metrics)} "
            f"rows={len(rows)} in {elapsed_ms:.1f}ms"
        )
        return TableResult(
            columns=list(plan.dimensions) + list(plan.metrics),
            rows=rows,
            totals=totals,
        )

    def run_timeseries(self, query: TimeseriesQuery) -> TimeseriesResult:
        """Execute a timeseries query. Points are sorted by bucket, then dimension."""
        plan = self.plan_timeseries(query)
        started = time.perf_counter()

        if isinstance(self.source, PushdownEventSource):
            points = self._pushdown_timeseries(plan)
        else:
            points = self._scan_timeseries(plan)

        elapsed_ms = (time.perf_counter() - started) * 1000
        logger.info(
            f"[QUERY_ENGINE] timeseries org={plan.org_id} strategy={self.strategy} "
            f"metric={plan.metric} granularity={plan.granularity} "
            f"points={len(points)} in {elapsed_ms:.1f}ms"
        )
        return TimeseriesResult(series=points)

    # -------------------------------------------------------------------------
    # Scan path
    # -------------------------------------------------------------------------

    def _filtered_events(self, org_id: str, start: datetime, end: datetime, segment) -> List[Any]:
        candidates = self.source.fetch_candidates(org_id, start, end)
        return [event for event in candidates if matches(event, segment)]

    def _scan_table(self, plan: TablePlan) -> Tuple[List[Dict[str, Any]], Dict[str, Number]]:
        events = self._filtered_events(plan.org_id, plan.start, plan.end, plan.segment)

        buckets: Dict[Tuple[str, ...], _Bucket] = {}
        totals = _Bucket(plan.metrics)
        for event in events:
            key = tuple(derive_dimension(event, d) for d in plan.dimensions)
            bucket = buckets.get(key)
            if bucket is None:
                bucket = buckets[key] = _Bucket(plan.metrics)
            bucket.add(event)
            totals.add(event)

        if not plan.dimensions and not buckets:
            buckets[()] = _Bucket(plan.metrics)

        rows = []
        for key, bucket in buckets.items():
            row: Dict[str, Any] = dict(zip(plan.dimensions, key))
            row.update(bucket.values())
            rows.append(row)

        rows = sort_rows(rows, plan.sort_key, plan.sort_direction, plan.sort_is_metric)
        page = rows[plan.offset:plan.offset + plan.limit]
        return page, totals.values()

    def _scan_timeseries(self, plan: TimeseriesPlan) -> List[Dict[str, Any]]:
        events = self._filtered_events(plan.org_id, plan.start, plan.end, plan.segment)
        bucket_label = format_hour if plan.granularity == "hour" else format_day
        metrics = (plan.metric,)

        buckets: Dict[Tuple[str, Optional[str]], _Bucket] = {}
        for event in events:
            dimension = derive_dimension(event, plan.dimension) if plan.dimension else None
            key = (bucket_label(event.timestamp), dimension)
            bucket = buckets.get(key)
            if bucket is None:
                bucket = buckets[key] = _Bucket(metrics)
            bucket.add(event)

        points = []
        for (label, dimension), bucket in sorted(buckets.items(), key=lambda item: (item[0][0], item[0][1] or "")):
            points.append(self._point(label, dimension, bucket.value(plan.metric), plan.dimension is not None))
        return points

    # -------------------------------------------------------------------------
    # Pushdown path
    # -------------------------------------------------------------------------

    def _pushdown_table(self, plan: TablePlan) -> Tuple[List[Dict[str, Any]], Dict[str, Number]]:
        raw = self.source.execute_table(plan)
        rows = []
        for raw_row in raw.rows:
            row: Dict[str, Any] = {d: normalize_dimension_value(raw_row.get(d)) for d in plan.dimensions}
            for m in plan.metrics:
                row[m] = normalize_metric_value(m, raw_row.get(m))
            rows.append(row)
        totals = {m: normalize_metric_value(m, raw.totals.get(m)) for m in plan.metrics}
        return rows, totals

    def _pushdown_timeseries(self, plan: TimeseriesPlan) -> List[Dict[str, Any]]:
        points = []
        for raw_point in self.source.execute_timeseries(plan):
            dimension = None
            if plan.dimension is not None:
                dimension = normalize_dimension_value(raw_point.get("dimension"))
            value = normalize_metric_value(plan.metric, raw_point.get("value"))
            points.append(self._point(raw_point["bucket"], dimension, value, plan.dimension is not None))
        return points

    @staticmethod
    def _point(bucket: str, dimension: Optional[str], value: Number, with_dimension: bool) -> Dict[str, Any]:
        point: Dict[str, Any] = {"bucket": bucket}
        if with_dimension:
            point["dimension"] = dimension
        point["value"] = value
        return point
