"""HTTP endpoint tests.

WHAT: Request/response contract of every route, through FastAPI's TestClient
WHY: Status codes, error envelopes and the ingest check order are what API
     clients depend on
REFERENCES:
    - querydeck/routers/query.py
    - querydeck/routers/orgs.py
    - querydeck/routers/ingest.py
    - querydeck/main.py (QueryError handler, /health)
"""

from datetime import datetime
from unittest.mock import patch

from sqlalchemy.exc import OperationalError

from querydeck.models import Event

from .conftest import ORG_ID, table_payload


def _event_payload(event_id: str = "api-1", **overrides) -> dict:
    event = {
        "eventId": event_id,
        "eventName": "purchase",
        "timestamp": "2026-02-01T10:30:00Z",
        "userId": "api-user",
        "properties": {"channel": "Email", "brand": "Gap", "revenue": 100},
    }
    event.update(overrides)
    return event


# =============================================================================
# QUERY ROUTES
# =============================================================================

class TestTableRoute:
    """POST /query/table"""

    def test_table_query(self, client, seeded_db):
        response = client.post("/query/table", json=table_payload(sort={"key": "revenue", "direction": "desc"}))
        assert response.status_code == 200

        body = response.json()
        assert body["columns"] == ["channel", "events", "users", "revenue"]
        assert body["rows"][0] == {"channel": "Email", "events": 3, "users": 2, "revenue": 200.5}
        assert body["totals"] == {"events": 6, "users": 4, "revenue": 255.5}

    def test_unknown_metric_is_structured_400(self, client, seeded_db):
        """WHAT: Semantic errors come back as {"error": {...}} with a suggestion."""
        response = client.post("/query/table", json=table_payload(metrics=["revenu"]))
        assert response.status_code == 400

        error = response.json()["error"]
        assert error["code"] == "ERR_010"
        assert error["category"] == "semantic"
        assert error["field"] == "metrics"
        assert error["suggestion"] == "Did you mean 'revenue'?"

    def test_schema_errors_are_422(self, client, seeded_db):
        assert client.post("/query/table", json=table_payload(limit=0)).status_code == 422
        assert client.post("/query/table", json=table_payload(metrics=[])).status_code == 422
        assert client.post(
            "/query/table",
            json=table_payload(dateRange={"preset": "last_7_days", "from": "2026-02-01", "to": "2026-02-02"}),
        ).status_code == 422

    def test_results_are_cached(self, client, seeded_db, query_cache):
        """WHAT: The second identical request is answered from the cache."""
        first = client.post("/query/table", json=table_payload()).json()
        assert len(query_cache) == 1

        seeded_db.add(Event(org_id=ORG_ID, event_id="behind-cache", event_name="signup",
                            timestamp=datetime(2026, 2, 1, 12), properties={"channel": "Email"}))
        seeded_db.commit()

        assert client.post("/query/table", json=table_payload()).json() == first

    def test_database_errors_are_500_and_not_cached(self, client, seeded_db, query_cache):
        failure = OperationalError("SELECT 1", {}, Exception("statement timeout"))
        with patch("querydeck.services.event_sources.SqlPushdownSource.execute_table", side_effect=failure):
            response = client.post("/query/table", json=table_payload())

        assert response.status_code == 500
        assert len(query_cache) == 0


class TestTimeseriesRoute:
    """POST /query/timeseries"""

    def test_timeseries(self, client, seeded_db):
        response = client.post("/query/timeseries", json={
            "orgId": ORG_ID,
            "metricKey": "events",
            "granularity": "day",
            "dateRange": {"from": "2026-02-01", "to": "2026-02-04"},
        })
        assert response.status_code == 200
        assert response.json()["series"] == [
            {"bucket": "2026-02-01", "value": 2},
            {"bucket": "2026-02-02", "value": 2},
            {"bucket": "2026-02-03", "value": 2},
        ]

    def test_unknown_dimension(self, client, seeded_db):
        response = client.post("/query/timeseries", json={
            "orgId": ORG_ID,
            "metricKey": "events",
            "dimensionKey": "chanel",
            "dateRange": {"preset": "last_7_days"},
        })
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "ERR_011"


class TestFreeformRoute:
    """POST /orgs/{org_id}/query/freeform"""

    def test_legacy_payload(self, client, seeded_db):
        """WHAT: Legacy keys are translated and run through the same engine."""
        response = client.post(f"/orgs/{ORG_ID}/query/freeform", json={
            "rows": ["dimension:channel"],
            "columns": ["metric:event_count", "metric:revenue_sum"],
            "segments": [{"op": "AND", "rules": [
                {"field": "properties.brand", "operator": "eq", "value": "Gap"},
            ]}],
            "dateRange": {"type": "custom", "from": "2026-02-01", "to": "2026-02-04"},
            "sort": [{"column": "metric:revenue_sum", "direction": "desc"}],
        })
        assert response.status_code == 200

        body = response.json()
        assert body["columns"] == ["channel", "events", "revenue"]
        assert body["rows"] == [
            {"channel": "Email", "events": 2, "revenue": 120.5},
            {"channel": "Organic", "events": 1, "revenue": 45.0},
            {"channel": "(none)", "events": 1, "revenue": 0.0},
        ]
        assert isinstance(body["queryMs"], int)

    def test_no_rows_groups_by_event_name(self, client, seeded_db):
        response = client.post(f"/orgs/{ORG_ID}/query/freeform", json={
            "columns": ["metric:event_count"],
            "dateRange": {"type": "custom", "from": "2026-02-01", "to": "2026-02-04"},
        })
        assert response.status_code == 200

        body = response.json()
        assert body["columns"] == ["eventName", "events"]
        assert body["rows"] == [
            {"eventName": "purchase", "events": 3},
            {"eventName": "page_view", "events": 2},
            {"eventName": "signup", "events": 1},
        ]

    def test_org_mismatch_is_403(self, client, seeded_db):
        response = client.post(f"/orgs/{ORG_ID}/query/freeform", json={
            "orgId": "someone-else",
            "columns": ["metric:event_count"],
            "dateRange": {"type": "preset", "value": "last_7_days"},
        })
        assert response.status_code == 403


# =============================================================================
# INGESTION
# =============================================================================

class TestIngestRoute:
    """POST /ingest/events"""

    def test_missing_and_invalid_keys_are_401(self, client, api_key):
        body = {"events": [_event_payload()]}
        assert client.post("/ingest/events", json=body).status_code == 401
        assert client.post("/ingest/events", json=body, headers={"X-API-Key": "qdk_nope_nope"}).status_code == 401

    def test_ingest_and_reingest(self, client, api_key, test_db_session):
        """WHAT: A batch is accepted once; re-sending it is absorbed."""
        body = {"orgId": ORG_ID, "events": [_event_payload("a"), _event_payload("b"), _event_payload("a")]}

        first = client.post("/ingest/events", json=body, headers={"X-API-Key": api_key})
        assert first.status_code == 202
        assert first.json() == {"accepted": 2, "rejected": 1, "total": 3}

        second = client.post("/ingest/events", json=body, headers={"X-API-Key": api_key})
        assert second.json() == {"accepted": 0, "rejected": 3, "total": 3}

        stored = test_db_session.query(Event).filter(Event.event_id == "a").one()
        assert stored.timestamp.isoformat() == "2026-02-01T10:30:00"

    def test_org_mismatch_is_403(self, client, api_key):
        body = {"orgId": "org-other", "events": [_event_payload()]}
        response = client.post("/ingest/events", json=body, headers={"X-API-Key": api_key})
        assert response.status_code == 403

    def test_rate_limit_is_429(self, client, api_key, settings):
        settings.API_KEY_RATE_LIMIT_PER_MINUTE = 1
        body = {"events": [_event_payload()]}

        assert client.post("/ingest/events", json=body, headers={"X-API-Key": api_key}).status_code == 202
        response = client.post("/ingest/events", json=body, headers={"X-API-Key": api_key})
        assert response.status_code == 429
        assert int(response.headers["Retry-After"]) >= 1

    def test_batch_limits(self, client, api_key):
        headers = {"X-API-Key": api_key}
        assert client.post("/ingest/events", json={"events": []}, headers=headers).status_code == 422
        too_many = {"events": [_event_payload(f"e{i}") for i in range(501)]}
        assert client.post("/ingest/events", json=too_many, headers=headers).status_code == 422

    def test_naive_timestamps_are_rejected(self, client, api_key):
        body = {"events": [_event_payload(timestamp="2026-02-01T10:30:00")]}
        assert client.post("/ingest/events", json=body, headers={"X-API-Key": api_key}).status_code == 422

    def test_ingestion_sweeps_cached_results(self, client, api_key, seeded_db, query_cache):
        """WHAT: New events make the next query recompute.
        WHY: Cached answers must not hide freshly ingested data beyond one request.
        """
        before = client.post("/query/table", json=table_payload(rows=[], metrics=["events"])).json()
        assert before["totals"] == {"events": 6}

        client.post("/ingest/events", json={"events": [_event_payload()]}, headers={"X-API-Key": api_key})
        assert len(query_cache) == 0

        after = client.post("/query/table", json=table_payload(rows=[], metrics=["events"])).json()
        assert after["totals"] == {"events": 7}


# =============================================================================
# SAMPLE DATA & HEALTH
# =============================================================================

class TestSampleDataRoute:
    """POST /orgs/{org_id}/sample-data"""

    def test_provision_twice(self, client, test_db_session):
        first = client.post("/orgs/new-org/sample-data")
        assert first.status_code == 200
        assert first.json()["accepted"] == 6
        assert first.json()["org_id"] == "new-org"

        second = client.post("/orgs/new-org/sample-data").json()
        assert (second["accepted"], second["rejected"], second["total"]) == (0, 6, 6)

    def test_provision_sweeps_cache(self, client, test_org, query_cache):
        query_cache.set(f"table:{ORG_ID}:cached", {"rows": []}, 30)
        body = client.post(f"/orgs/{ORG_ID}/sample-data").json()
        assert body["cache_entries_swept"] == 1
        assert len(query_cache) == 0


class TestHealth:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"
        assert response.json()["strategy"] == "compiled"
