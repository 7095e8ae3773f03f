"""
Sample Data Provisioning
========================

Deterministic demo events so a fresh organization has something to explore.

WHY THIS FILE EXISTS
--------------------
An empty workspace makes the query builder look broken. Provisioning fills
the last N days (default 21) with a fixed number of events per day
(default 12) across channels, brands, products and campaigns, with
purchase revenue on a predictable pattern.

Event ids are derived from the calendar day and slot, so provisioning twice
on the same day inserts nothing new (ingestion absorbs the duplicates), and
provisioning on a later day only adds the new days.

The org's cached query results are swept on every (re)provisioning.

RELATED FILES
-------------
- querydeck/services/ingestion.py: Idempotent insert reused here
- querydeck/routers/orgs.py: POST /orgs/{org_id}/sample-data
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple

from sqlalchemy.orm import Session

from querydeck.semantic.dates import floor_day, to_utc_naive
from querydeck.services.event_sources import EventRecord
from querydeck.services.ingestion import IngestResult, ingest_events
from querydeck.services.query_cache import QueryCacheStore, invalidate_org_cache

logger = logging.getLogger(__name__)

SAMPLE_CHANNELS = ["Paid Search", "Organic", "Email", "Direct", "Social"]
SAMPLE_PRODUCTS = ["Denim Jacket", "Classic Tee", "Runner Shoes", "Canvas Tote"]
SAMPLE_BRANDS = ["Gap", "Old Navy", "PariAI", "Banana Republic"]
SAMPLE_CAMPAIGNS = ["Spring Launch", "Weekend Flash", "Retention Push", "Brand Awareness"]

DEFAULT_DAYS = 21
DEFAULT_EVENTS_PER_DAY = 12
SAMPLE_EVENT_ID_PREFIX = "sample-v1"


def _event_name(slot: int) -> str:
    if slot % 5 == 0:
        return "purchase"
    if slot % 3 == 0:
        return "add_to_cart"
    return "page_view"


def _page(product: str) -> str:
    if product == "Runner Shoes":
        return "/products/runner-shoes"
    if product == "Denim Jacket":
        return "/products/denim-jacket"
    return "/home"


def build_sample_events(
    days: int = DEFAULT_DAYS,
    events_per_day: int = DEFAULT_EVENTS_PER_DAY,
    now: Optional[datetime] = None,
) -> List[EventRecord]:
    """
    Generate the demo events, today first.

    Deterministic for a given UTC day: the same call returns the same ids
    and values.

    EXAMPLES:
        >>> events = build_sample_events(days=1, events_per_day=2, now=datetime(2026, 2, 1, 15))
        >>> [e.event_id for e in events]
        ['sample-v1-2026-02-01-0', 'sample-v1-2026-02-01-1']
    """
    today = floor_day(to_utc_naive(now or datetime.now(timezone.utc)))
    events: List[EventRecord] = []

    for day_offset in range(days):
        day_start = today - timedelta(days=day_offset)
        date_key = day_start.strftime("%Y-%m-%d")

        for slot in range(events_per_day):
            index = day_offset * events_per_day + slot
            channel = SAMPLE_CHANNELS[index % len(SAMPLE_CHANNELS)]
            product = SAMPLE_PRODUCTS[(index + 1) % len(SAMPLE_PRODUCTS)]
            brand = SAMPLE_BRANDS[(index + 3) % len(SAMPLE_BRANDS)]
            campaign = SAMPLE_CAMPAIGNS[(index + 2) % len(SAMPLE_CAMPAIGNS)]

            event_name = _event_name(slot)
            revenue = 49 + (index % 6) * 18 if event_name == "purchase" else 0
            net_demand = round(revenue * 0.92) if event_name == "purchase" else 0

            timestamp = day_start.replace(hour=(slot * 2) % 24, minute=(slot * 7) % 60)

            events.append(EventRecord(
                event_id=f"{SAMPLE_EVENT_ID_PREFIX}-{date_key}-{slot}",
                event_name=event_name,
                timestamp=timestamp,
                user_id=f"demo-user-{index % 35}",
                session_id=f"demo-session-{index % 80}",
                properties={
                    "channel": channel,
                    "brand": brand,
                    "product": product,
                    "campaign": campaign,
                    "revenue": revenue,
                    "netDemand": net_demand,
                    "country": "US" if channel in ("Paid Search", "Direct") else "CA",
                    "page": _page(product),
                },
            ))

    return events


def provision_sample_events(
    db: Session,
    org_id: str,
    cache: Optional[QueryCacheStore] = None,
    days: int = DEFAULT_DAYS,
    events_per_day: int = DEFAULT_EVENTS_PER_DAY,
    now: Optional[datetime] = None,
) -> Tuple[IngestResult, int]:
    """
    Insert the demo events for an organization.

    Idempotent per day. Always sweeps the org cache when one is given,
    even if every event already existed.

    RETURNS:
        (IngestResult, number of cache entries swept)
    """
    events = build_sample_events(days=days, events_per_day=events_per_day, now=now)
    result = ingest_events(db, org_id, events)

    logger.info(
        f"[SAMPLE_DATA] org={org_id} days={days} per_day={events_per_day} "
        f"accepted={result.accepted} already_present={result.rejected}"
    )

    swept = 0
    if cache is not None:
        swept = invalidate_org_cache(cache, org_id)
    return result, swept
