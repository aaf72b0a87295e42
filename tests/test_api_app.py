"""Tests for FastAPI application endpoints."""

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from crag.api.app import create_app, get_service
from crag.models import JobStatus, JobType
from crag.service import RetrievalService, build_service

from .factories import generate_record


# =============================================================================
# Fixtures
# =============================================================================


def _create_test_app(settings, service=None) -> FastAPI:
    """Create an app with the service injected instead of built at startup."""
    app = create_app(settings=settings)
    if service is not None:
        app.state.service = service
        app.dependency_overrides[get_service] = lambda: service
    return app


@pytest.fixture
def client(settings, service: RetrievalService):
    """TestClient over a real service on a temp database (lifespan not run)."""
    app = _create_test_app(settings, service)
    return TestClient(app, raise_server_exceptions=False)


@pytest.fixture
def client_no_service(settings):
    """TestClient with no service (simulates startup not finished)."""
    return TestClient(_create_test_app(settings), raise_server_exceptions=False)


def _submit(client, entity_ids, **extra) -> str:
    resp = client.post("/api/jobs", json={"entity_ids": entity_ids, **extra})
    assert resp.status_code == 201
    return resp.json()["job_id"]


# =============================================================================
# Health Endpoint
# =============================================================================


class TestHealthEndpoint:
    def test_with_provider(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "healthy"
        assert data["service_loaded"] is True
        assert data["fallback_only"] is False

    def test_fallback_only(self, settings, catalog):
        app = _create_test_app(settings, build_service(settings))
        data = TestClient(app).get("/health").json()
        assert data["status"] == "degraded"
        assert data["fallback_only"] is True

    def test_no_service(self, client_no_service):
        resp = client_no_service.get("/health")
        assert resp.status_code == 200
        assert resp.json()["service_loaded"] is False


# =============================================================================
# Job Endpoints
# =============================================================================


class TestJobEndpoints:
    def test_submit(self, client, service):
        resp = client.post(
            "/api/jobs",
            json={"job_type": "generate_new", "entity_ids": ["texas_overtime"], "priority": "high"},
        )
        assert resp.status_code == 201
        job = service.get_job(resp.json()["job_id"])
        assert job.status == JobStatus.PENDING
        assert job.priority.value == "high"

    def test_submit_with_config(self, client, service):
        job_id = _submit(client, ["a", "b"], batch_size=1, retry_count=0, job_type="update_existing")
        job = service.get_job(job_id)
        assert job.job_type == JobType.UPDATE_EXISTING
        assert job.config.batch_size == 1
        assert job.config.retry_count == 0

    def test_submit_validation(self, client):
        assert client.post("/api/jobs", json={"entity_ids": []}).status_code == 422
        assert client.post("/api/jobs", json={"entity_ids": ["ok", " "]}).status_code == 422
        assert client.post(
            "/api/jobs", json={"entity_ids": ["a"], "priority": "urgent"}
        ).status_code == 422
        assert client.post(
            "/api/jobs", json={"entity_ids": ["a"], "batch_size": 0}
        ).status_code == 422

    def test_get_job(self, client):
        job_id = _submit(client, ["texas_overtime", "ghost"])

        resp = client.get(f"/api/jobs/{job_id}")

        assert resp.status_code == 200
        data = resp.json()
        assert data["job_id"] == job_id
        assert data["status"] == "pending"
        assert data["entity_count"] == 2
        assert data["progress"]["total"] == 2
        assert data["progress"]["progress_pct"] == 0.0

    def test_get_missing_job(self, client):
        resp = client.get("/api/jobs/nope")
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "NOT_FOUND"

    def test_list_jobs(self, client):
        _submit(client, ["a"])
        _submit(client, ["b"])

        data = client.get("/api/jobs").json()
        assert data["total"] == 2

        data = client.get("/api/jobs", params={"status": "failed"}).json()
        assert data["jobs"] == []

    def test_list_jobs_bad_limit(self, client):
        resp = client.get("/api/jobs", params={"limit": 0})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_process(self, client):
        job_id = _submit(client, ["texas_overtime", "ghost"])

        resp = client.post("/api/jobs/process", json={"max_jobs": 2})

        assert resp.status_code == 200
        data = resp.json()
        assert data["jobs_claimed"] == 1
        assert data["jobs_completed"] == 1
        assert data["entities_completed"] == 1
        assert data["entities_failed"] == 1
        assert data["job_ids"] == [job_id]

        job = client.get(f"/api/jobs/{job_id}").json()
        assert job["status"] == "completed"
        assert job["progress"]["errors"] == ["ghost: Entity ghost not found"]

    def test_process_without_body(self, client):
        resp = client.post("/api/jobs/process")
        assert resp.status_code == 200
        assert resp.json()["jobs_claimed"] == 0


# =============================================================================
# Search Endpoint
# =============================================================================


class TestSearchEndpoint:
    def test_search(self, client, service):
        _submit(client, ["texas_overtime"])
        client.post("/api/jobs/process")

        resp = client.post("/api/search", json={"query": "overtime", "k": 3})

        assert resp.status_code == 200
        data = resp.json()
        assert data["query"] == "overtime"
        assert data["total_candidates"] == 1
        # FakeProvider embeds every text to the same vector
        source = data["sources"][0]
        assert source["entity_id"] == "texas_overtime"
        assert source["similarity"] == pytest.approx(1.0)
        assert source["source_url"] == "https://www.dir.texas.gov/overtime"
        assert data["degraded"] is False

    def test_search_with_filters(self, client):
        _submit(client, ["texas_overtime"])
        client.post("/api/jobs/process")

        resp = client.post(
            "/api/search", json={"query": "overtime", "jurisdiction": "california"}
        )
        assert resp.status_code == 200
        assert resp.json()["sources"] == []

    def test_search_validation(self, client):
        assert client.post("/api/search", json={"query": ""}).status_code == 422
        assert client.post("/api/search", json={"query": "x", "k": 0}).status_code == 422
        assert client.post("/api/search", json={"query": "x", "threshold": 2}).status_code == 422
        assert client.post(
            "/api/search", json={"query": "x", "entity_type": "statute"}
        ).status_code == 422

    def test_dimension_mismatch(self, client, service):
        service.db.upsert_record(generate_record("odd", [1.0, 0.0]))
        resp = client.post("/api/search", json={"query": "overtime"})
        assert resp.status_code == 500
        assert resp.json()["error"]["code"] == "DIMENSION_MISMATCH"

    def test_no_service(self, client_no_service):
        resp = client_no_service.post("/api/search", json={"query": "overtime"})
        assert resp.status_code == 503
        assert resp.json()["error"]["code"] == "SERVICE_UNAVAILABLE"


# =============================================================================
# Stats Endpoint
# =============================================================================


class TestStatsEndpoint:
    def test_stats(self, client, service):
        _submit(client, ["texas_overtime"])
        client.post("/api/jobs/process")

        resp = client.get("/api/stats")

        assert resp.status_code == 200
        data = resp.json()
        assert data["jobs"]["completed"] == 1
        assert data["total_records"] == 1
        assert data["records_by_type"] == {"rule": 1}
        assert data["records_by_model"] == {"fake-embed": 1}
        assert data["embedding_model"] == "fake-embed"


# =============================================================================
# App factory
# =============================================================================


class TestCreateApp:
    def test_explicit_args_override_settings(self, settings):
        app = create_app(db_path="/tmp/other.db", rate_limit_rpm=0, settings=settings)
        assert app.state.settings.db_path == "/tmp/other.db"
        assert app.state.settings.rate_limit_rpm == 0

    def test_request_id_header(self, client):
        resp = client.get("/health", headers={"X-Request-ID": "abc123"})
        assert resp.headers["X-Request-ID"] == "abc123"

    def test_lifespan_builds_service(self, settings, catalog):
        app = create_app(settings=settings)
        with TestClient(app) as c:
            assert c.get("/health").json()["service_loaded"] is True
        assert app.state.service is None
