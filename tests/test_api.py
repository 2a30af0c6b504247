"""HTTP API tests via FastAPI's TestClient."""

import pytest
from fastapi.testclient import TestClient

from audiojobs_modules.api.routes import create_app, get_cache, get_storage
from audiojobs_modules.jobs.queue import acquire_job, fail_job


@pytest.fixture
def client(storage, status_cache):
    app = create_app()
    app.dependency_overrides[get_storage] = lambda: storage
    app.dependency_overrides[get_cache] = lambda: status_cache
    with TestClient(app) as test_client:
        yield test_client


def _body(**overrides):
    body = {
        "filePath": "u1/123_clip.webm",
        "recordingId": "123",
        "userId": "u1",
        "organizationId": "org-1",
    }
    body.update(overrides)
    return body


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_submit_missing_file_is_rejected(client):
    response = client.post("/api/jobs", json=_body())

    assert response.status_code == 400
    assert "file not found" in response.json()["detail"]


def test_submit_then_read_status(client, storage):
    storage.put("u1/123_clip.webm", b"audio")

    response = client.post("/api/jobs", json=_body(jobId="job-123"))

    assert response.status_code == 202
    assert response.json() == {"jobId": "job-123", "status": "queued"}

    status = client.get("/api/status/123")
    assert status.status_code == 200
    assert status.json()["status"] == "pending"
    assert status.json()["jobId"] == "job-123"


def test_status_unknown_recording_is_404(client):
    assert client.get("/api/status/missing").status_code == 404


def test_queue_depth_and_failed_listing(client, storage):
    storage.put("u1/123_clip.webm", b"audio")
    job_id = client.post("/api/jobs", json=_body()).json()["jobId"]
    acquire_job(worker_id="w1")
    fail_job(job_id, worker_id="w1", reason="analyze_audio: TerminalStageError: bad key", retryable=False)

    depth = client.get("/api/queue/depth").json()
    assert depth["failed"] == 1
    assert depth["waiting"] == 0

    failed = client.get("/api/jobs/failed", params={"limit": 3}).json()
    assert [item["jobId"] for item in failed] == [job_id]
    assert failed[0]["failedReason"].endswith("bad key")
    assert failed[0]["filePath"] == "u1/123_clip.webm"
