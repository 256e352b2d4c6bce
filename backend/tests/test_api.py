import time

import pytest
from fastapi.testclient import TestClient

from config import Settings
from conftest import ServiceHarness
from main import create_app


def wait_until(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        time.sleep(0.01)
    raise AssertionError("condition not reached")


@pytest.fixture
def api():
    h = ServiceHarness()
    app = create_app(settings=Settings(), upload_service=h.service, correlation=h.correlation)
    with TestClient(app) as client:
        yield client, h


def job_payload(job_id="job-1", file_uri="file:///video.mp4"):
    return {"id": job_id, "file_uri": file_uri, "target_id": "insp-1", "filename": "video.mp4"}


def test_background_upload_driven_by_transport_events(api):
    client, h = api
    assert client.post("/lifecycle", json={"state": "background"}).status_code == 200

    response = client.post("/uploads", json=job_payload())
    assert response.status_code == 200
    assert response.json()["file_size"] == 12 * 1024 * 1024

    wait_until(lambda: len(h.transport.submissions) == 3)
    client.post("/transport/events", json={"handle": "h-1", "event": "progress", "progress": 50})
    for handle in ("h-1", "h-2", "h-3"):
        r = client.post("/transport/events", json={"handle": handle, "event": "completed", "status": 200})
        assert r.json() == {"status": "accepted"}

    wait_until(lambda: client.get("/uploads/job-1").json()["status"] == "completed")
    job = client.get("/uploads/job-1").json()
    assert job["progress"] == 100
    assert client.get("/uploads/active").json() == {"jobs": []}


def test_transport_error_event_fails_job_and_retry_restarts(api):
    client, h = api
    client.post("/lifecycle", json={"state": "background"})
    client.post("/uploads", json=job_payload())
    wait_until(lambda: len(h.transport.submissions) == 3)

    client.post("/transport/events", json={"handle": "h-2", "event": "error", "message": "disk full"})
    wait_until(lambda: client.get("/uploads/job-1").json()["status"] == "failed")
    assert "disk full" in client.get("/uploads/job-1").json()["error"]

    retried = client.post("/uploads/job-1/retry")
    assert retried.status_code == 200
    assert retried.json()["progress"] == 0
    wait_until(lambda: len(h.transport.submissions) == 6)
    assert len(h.control_plane.presign_calls) == 2


def test_pause_resume_and_cancel(api):
    client, h = api
    client.post("/lifecycle", json={"state": "background"})
    client.post("/uploads", json=job_payload())
    wait_until(lambda: len(h.transport.submissions) == 3)

    paused = client.post("/uploads/job-1/pause")
    assert paused.status_code == 200
    assert paused.json()["status"] == "paused"
    assert client.post("/uploads/job-1/pause").status_code == 409

    resumed = client.post("/uploads/job-1/resume")
    assert resumed.json()["status"] == "uploading"

    assert client.delete("/uploads/job-1").json() == {"status": "cancelled"}
    assert client.get("/uploads/job-1").status_code == 404


def test_unknown_job_returns_404(api):
    client, _ = api

    assert client.get("/uploads/nope").status_code == 404
    assert client.post("/uploads/nope/pause").status_code == 404
    assert client.post("/uploads/nope/retry").status_code == 404
    assert client.delete("/uploads/nope").status_code == 404


def test_missing_file_rejected(api):
    client, _ = api

    response = client.post("/uploads", json=job_payload(file_uri="file:///missing.mp4"))

    assert response.status_code == 400
    assert "missing.mp4" in response.json()["detail"]


def test_invalid_lifecycle_rejected(api):
    client, _ = api

    assert client.post("/lifecycle", json={"state": "sleeping"}).status_code == 422
