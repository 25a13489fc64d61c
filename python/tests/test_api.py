"""
API endpoint tests for the Enforcement Ingest API

Uses TestClient and httpx.AsyncClient against the app with a real
IngestionService on in-memory SQLite. Crawls run synchronously so every
response reflects a finished crawl.
"""

import sys
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import patch

import pytest
from httpx import AsyncClient, ASGITransport

sys.path.insert(0, str(Path(__file__).parent.parent))

from conftest import ScriptedAdapter, make_raw
from config_manager import ConfigManager
from ingestion.adapters import build_adapter
from ingestion.service import IngestionService

# Configure pytest-asyncio mode
pytest_plugins = ['pytest_asyncio']


class SynchronousIngestionService(IngestionService):
    """Runs every crawl to completion before returning."""

    def _submit(self, session_id, adapter, limits, wait):
        super()._submit(session_id, adapter, limits, True)


PAGES = {
    1: [make_raw("4480001"), make_raw("4480002")],
    2: [make_raw("4480003")],
}


@pytest.fixture
def test_config(tmp_path):
    """Fast, single-worker configuration."""
    path = tmp_path / "config.yaml"
    path.write_text(
        "crawl:\n"
        "  pause_between_pages_ms: 0\n"
        "  requests_per_minute: 0\n"
        "performance:\n"
        "  max_workers: 1\n",
        encoding="utf-8"
    )
    return ConfigManager(str(path), environ={})


@pytest.fixture
def service(provider, tracker, test_config):
    def factory(source_config):
        if source_config.adapter == "hse_cases":
            return ScriptedAdapter(PAGES)
        return build_adapter(source_config)

    ingestion = SynchronousIngestionService(
        provider, test_config, tracker=tracker, adapter_factory=factory, sleep=lambda seconds: None
    )
    yield ingestion
    ingestion.shutdown()


@pytest.fixture
def client(service, test_config):
    """Create test client with the service patched into the server globals."""
    from api import server
    from fastapi.testclient import TestClient

    with patch.object(server, '_service', service):
        with patch.object(server, '_config', test_config):
            with patch.object(server, '_startup_time', datetime.now(timezone.utc)):
                yield TestClient(server.app)


def start(client, **payload):
    response = client.post("/api/v1/sessions", json=payload)
    assert response.status_code == 202, response.text
    return response.json()["session_id"]


# ============================================
# SESSION TESTS
# ============================================

class TestStartSession:
    """Tests for POST /api/v1/sessions."""

    def test_start_returns_202(self, client):
        """A new session is accepted with links to follow it."""
        response = client.post("/api/v1/sessions", json={"initiated_by": "api-test"})

        assert response.status_code == 202
        data = response.json()
        assert data["status"] == "completed"
        assert data["links"]["self"] == f"/api/v1/sessions/{data['session_id']}"
        assert data["links"]["cancel"].endswith("/cancel")

    def test_same_session_id_is_idempotent(self, client):
        """Repeating a start with the same session_id returns the same session."""
        first = start(client, session_id="nightly-2024-03-15")
        second = start(client, session_id="nightly-2024-03-15")

        assert first == second == "nightly-2024-03-15"
        data = client.get(f"/api/v1/sessions/{first}").json()
        assert data["records_created"] == 3

    def test_invalid_session_id(self, client):
        response = client.post("/api/v1/sessions", json={"session_id": "has spaces/slashes"})
        assert response.status_code == 422

    def test_invalid_page_range(self, client):
        response = client.post("/api/v1/sessions", json={"start_page": 5, "end_page": 2})
        assert response.status_code == 422

    def test_invalid_granularity(self, client):
        response = client.post("/api/v1/sessions", json={"stop_granularity": "window"})
        assert response.status_code == 422

    def test_unknown_adapter(self, client):
        """Unknown adapters are rejected with a standard error body."""
        response = client.post("/api/v1/sessions", json={"adapter": "ea_cases"})

        assert response.status_code == 422
        error = response.json()["error"]
        assert error["code"] == "HTTP_422"
        assert "Unknown adapter" in error["message"]

    def test_end_page_bounds_crawl(self, client):
        """end_page alone limits the crawl to the range."""
        session_id = start(client, end_page=1)
        data = client.get(f"/api/v1/sessions/{session_id}").json()

        assert data["stop_reason"] == "max_pages_reached"
        assert data["pages_processed"] == 1
        assert data["records_created"] == 2


class TestSessionStatus:
    """Tests for GET /api/v1/sessions/{id} and related reads."""

    def test_get_session(self, client):
        session_id = start(client)
        response = client.get(f"/api/v1/sessions/{session_id}")

        assert response.status_code == 200
        data = response.json()
        assert data["session_id"] == session_id
        assert data["status"] == "completed"
        assert data["stop_reason"] == "no_more_records"
        assert data["records_processed"] == 3
        assert data["success_rate"] == 100.0
        assert data["completion_percentage"] == 100.0

    def test_list_sessions(self, client, tracker):
        """Listing filters by status."""
        finished = start(client)
        tracker.create_session("hse_cases", "EnforcementCase", session_id="queued")

        all_ids = [s["session_id"] for s in client.get("/api/v1/sessions").json()]
        pending = client.get("/api/v1/sessions", params={"status": "pending"}).json()

        assert set(all_ids) == {finished, "queued"}
        assert [s["session_id"] for s in pending] == ["queued"]

    def test_unknown_session_404(self, client):
        response = client.get("/api/v1/sessions/does-not-exist")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "SESSION_NOT_FOUND"

    def test_database_unavailable_503(self, client, service):
        """Storage outages map to 503 with a retryable error code."""
        from sqlalchemy.exc import OperationalError

        outage = OperationalError("SELECT", {}, Exception("connection refused"))
        with patch.object(service, "get_session", side_effect=outage):
            response = client.get("/api/v1/sessions/any")

        assert response.status_code == 503
        assert response.json()["error"]["code"] == "DATABASE_UNAVAILABLE"

    def test_batches(self, client):
        session_id = start(client)
        batches = client.get(f"/api/v1/sessions/{session_id}/batches").json()

        assert [b["page_number"] for b in batches] == [1, 2, 3]
        assert batches[0]["records_created"] == 2
        assert all(b["status"] == "completed" for b in batches)

    def test_logs_filtered(self, client):
        session_id = start(client)
        response = client.get(f"/api/v1/sessions/{session_id}/logs", params={"event_type": "record_created"})

        assert response.status_code == 200
        entries = response.json()
        assert len(entries) == 3
        assert entries[0]["data"]["regulator_id"] == "4480001"
        sequences = [e["sequence"] for e in entries]
        assert sequences == sorted(sequences)


class TestSessionControl:
    """Tests for cancel/pause/resume/retry."""

    def test_cancel_finished_session_409(self, client):
        """A completed session cannot be cancelled."""
        session_id = start(client)
        response = client.post(f"/api/v1/sessions/{session_id}/cancel")

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "INVALID_TRANSITION"

    def test_cancel_pending_session(self, client, tracker):
        """A pending session is cancelled immediately."""
        summary, _ = tracker.create_session("hse_cases", "EnforcementCase", session_id="queued")
        response = client.post("/api/v1/sessions/queued/cancel")

        assert response.status_code == 200
        assert response.json() == {"session_id": "queued", "cancelled": True, "status": "cancelled"}

    def test_pause_requires_running(self, client):
        session_id = start(client)
        response = client.post(f"/api/v1/sessions/{session_id}/pause")
        assert response.status_code == 409

    def test_retry_requires_failed(self, client):
        session_id = start(client)
        response = client.post(f"/api/v1/sessions/{session_id}/retry")
        assert response.status_code == 409

    def test_cancel_unknown_404(self, client):
        response = client.post("/api/v1/sessions/nope/cancel")
        assert response.status_code == 404


# ============================================
# OPERATIONS TESTS
# ============================================

class TestHealth:
    """Tests for health check endpoint."""

    def test_health(self, client):
        response = client.get("/api/v1/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["database"] == "ok"
        assert "hse_cases" in data["adapters"]
        assert data["uptime_seconds"] is not None

    def test_health_reports_operation_timings(self, client):
        """Timings of crawl operations appear once a crawl has run."""
        start(client)
        operations = client.get("/api/v1/health").json()["operations"]

        assert operations["fetch_page"]["count"] >= 3
        assert operations["process_record"]["count"] >= 3

    def test_health_without_service(self):
        """Health reports an error body, still with HTTP 200, before startup."""
        from api import server
        from fastapi.testclient import TestClient

        with patch.object(server, '_service', None):
            response = TestClient(server.app).get("/api/v1/health")

        assert response.status_code == 200
        assert response.json()["status"] == "error"

    def test_sessions_unavailable_without_service(self):
        from api import server
        from fastapi.testclient import TestClient

        with patch.object(server, '_service', None):
            response = TestClient(server.app).get("/api/v1/sessions/any")
        assert response.status_code == 503


class TestMetricsAndDocs:
    """Tests for metrics exposition and documentation."""

    def test_metrics(self, client):
        start(client)
        response = client.get("/metrics")

        assert response.status_code == 200
        assert "enforcement_ingest_records_total" in response.text

    def test_openapi_available(self, client):
        response = client.get("/api/openapi.json")
        assert response.status_code == 200
        assert "/api/v1/sessions" in response.json()["paths"]

    def test_request_id_echoed(self, client):
        response = client.get("/api/v1/health", headers={"X-Request-ID": "req-42"})
        assert response.headers["X-Request-ID"] == "req-42"
        assert "X-Processing-Time-MS" in response.headers


class TestAsyncClient:
    """Async tests through httpx.AsyncClient."""

    @pytest.mark.asyncio
    async def test_start_and_read_async(self, service, test_config):
        from api import server

        with patch.object(server, '_service', service), patch.object(server, '_config', test_config):
            transport = ASGITransport(app=server.app)
            async with AsyncClient(transport=transport, base_url="http://test") as ac:
                created = await ac.post("/api/v1/sessions", json={"session_id": "async-1"})
                status = await ac.get("/api/v1/sessions/async-1")

        assert created.status_code == 202
        assert status.json()["records_created"] == 3
