"""Tests for the import job HTTP API."""

from datetime import datetime

import pytest
from fastapi.testclient import TestClient

from nursery_import.api import deps
from nursery_import.api.deps import get_orchestrator
from nursery_import.config import settings
from nursery_import.db.models import ImportJob
from nursery_import.ingest.images import ImageDownloadService
from nursery_import.main import app

API_KEY = "test-admin-key"
HEADERS = {"X-Admin-API-Key": API_KEY}


class InMemoryOrchestrator:
    """Keeps jobs in a dict and records background executions."""

    def __init__(self):
        self.jobs: dict[int, ImportJob] = {}
        self.executed = []

    def _new_job(self, status="PENDING", **fields) -> ImportJob:
        job = ImportJob(
            id=len(self.jobs) + 1,
            job_type="FULL",
            status=status,
            products_processed=0,
            products_created=0,
            products_updated=0,
            errors=[],
            job_metadata={},
            created_at=datetime.utcnow(),
            **fields,
        )
        self.jobs[job.id] = job
        return job

    async def start_import_job(self, options):
        job = self._new_job()
        job.job_metadata = options.to_metadata()
        return job.id

    async def execute_import(self, job_id, options=None):
        self.executed.append((job_id, options))
        raise RuntimeError("worker crashed")

    async def get_job_status(self, job_id):
        return self.jobs.get(job_id)

    async def list_jobs(self, status=None, limit=50):
        jobs = sorted(self.jobs.values(), key=lambda j: j.id, reverse=True)
        if status:
            jobs = [j for j in jobs if j.status == status]
        return jobs[:limit]

    async def stop_import(self, job_id, force=False):
        job = self.jobs.get(job_id)
        if job is None or job.is_terminal:
            return job
        job.job_metadata = {**job.job_metadata, "stop_requested": True}
        if force or job.status == "PENDING":
            job.status = "FAILED"
            job.job_metadata = {**job.job_metadata, "stopped": True}
        return job


@pytest.fixture
def orchestrator(monkeypatch):
    monkeypatch.setattr(settings, "admin_api_key", API_KEY)
    fake = InMemoryOrchestrator()
    app.dependency_overrides[get_orchestrator] = lambda: fake
    yield fake
    app.dependency_overrides.clear()


@pytest.fixture
def client():
    return TestClient(app)


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


def test_start_import_returns_pending_job(client, orchestrator):
    response = client.post(
        "/api/import-jobs/start",
        json={"category": "trees", "max_products": 10, "download_images": True},
        headers=HEADERS,
    )

    assert response.status_code == 202
    assert response.json() == {"id": 1, "status": "PENDING"}
    job = orchestrator.jobs[1]
    assert job.job_metadata["category"] == "trees"
    assert job.job_metadata["use_api"] is False
    # background failure is logged, not surfaced
    assert orchestrator.executed[0][0] == 1
    assert orchestrator.executed[0][1].download_images is True


def test_start_rejects_bad_options(client, orchestrator):
    response = client.post("/api/import-jobs/start", json={"max_products": 0}, headers=HEADERS)
    assert response.status_code == 422

    response = client.post("/api/import-jobs/start", json={"job_type": "PARTIAL"}, headers=HEADERS)
    assert response.status_code == 422


def test_get_job(client, orchestrator):
    job = orchestrator._new_job(
        status="RUNNING",
        started_at=datetime.utcnow(),
    )
    job.errors = [{"product_id": str(i), "url": None, "message": "bad", "timestamp": "t"} for i in range(60)]

    response = client.get(f"/api/import-jobs/{job.id}", headers=HEADERS)

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "RUNNING"
    assert body["error_count"] == 60
    assert len(body["errors_tail"]) == 50
    assert body["errors_tail"][-1]["product_id"] == "59"


def test_get_missing_job(client, orchestrator):
    response = client.get("/api/import-jobs/42", headers=HEADERS)
    assert response.status_code == 404


def test_list_jobs(client, orchestrator):
    orchestrator._new_job(status="COMPLETED")
    orchestrator._new_job(status="PENDING")

    response = client.get("/api/import-jobs", params={"status": "PENDING"}, headers=HEADERS)

    assert response.status_code == 200
    assert [job["id"] for job in response.json()] == [2]


def test_stop_pending_job(client, orchestrator):
    job = orchestrator._new_job()

    response = client.post(f"/api/import-jobs/{job.id}/stop", headers=HEADERS)

    assert response.status_code == 200
    assert response.json()["status"] == "FAILED"
    assert response.json()["metadata"]["stopped"] is True


def test_stop_running_job_only_requests(client, orchestrator):
    job = orchestrator._new_job(status="RUNNING")

    response = client.post(f"/api/import-jobs/{job.id}/stop", headers=HEADERS)
    assert response.json()["status"] == "RUNNING"
    assert response.json()["metadata"]["stop_requested"] is True

    response = client.post(f"/api/import-jobs/{job.id}/stop", params={"force": "true"}, headers=HEADERS)
    assert response.json()["status"] == "FAILED"


def test_stop_missing_job(client, orchestrator):
    response = client.post("/api/import-jobs/7/stop", headers=HEADERS)
    assert response.status_code == 404


def test_wrong_api_key(client, orchestrator):
    response = client.get("/api/import-jobs", headers={"X-Admin-API-Key": "nope"})
    assert response.status_code == 403


def test_missing_api_key(client, orchestrator):
    response = client.get("/api/import-jobs")
    assert response.status_code == 422


def test_unconfigured_api_key(client, orchestrator, monkeypatch):
    monkeypatch.setattr(settings, "admin_api_key", "")
    response = client.get("/api/import-jobs", headers=HEADERS)
    assert response.status_code == 503


@pytest.mark.asyncio
async def test_shared_orchestrator_can_download_images(monkeypatch):
    monkeypatch.setattr(deps, "_orchestrator", None)

    orchestrator = deps.get_orchestrator()
    assert isinstance(orchestrator.image_service, ImageDownloadService)
    assert deps.get_orchestrator() is orchestrator

    await deps.close_orchestrator()
    assert deps._orchestrator is None
