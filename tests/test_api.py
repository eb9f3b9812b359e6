"""
End-to-end tests of the HTTP and WebSocket surface.

The app runs with the in-memory store and near-instant simulated steps.
"""

import time

import pytest
from fastapi.testclient import TestClient

from render_worker.config import settings
from render_worker.main import app


@pytest.fixture
def configure(monkeypatch):
    def _configure(**overrides):
        values = {
            "job_store": "memory",
            "step_mode": "simulate",
            "simulated_step_scale": 0.0,
            "backoff_base_seconds": 0.0,
            "api_key": None,
            "retention_days": 0,
            "notify_webhook_url": None,
            "max_concurrency": 2,
            "queue_capacity": 100,
        }
        values.update(overrides)
        for key, value in values.items():
            monkeypatch.setattr(settings, key, value)
    return _configure


@pytest.fixture
def client(configure):
    configure()
    with TestClient(app) as client:
        yield client


def wait_for_status(client, job_id, statuses=("succeeded", "failed"), timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        response = client.get(f"/jobs/{job_id}")
        if response.status_code == 200 and response.json()["status"] in statuses:
            return response.json()
        time.sleep(0.02)
    raise AssertionError(f"job {job_id} did not reach {statuses}")


def test_liveness(client):
    response = client.get("/")
    assert response.status_code == 200
    assert response.json() == {"status": "success", "message": "FFmpeg Worker is alive and ready!"}


def test_healthz_reports_pool(client):
    data = client.get("/healthz").json()
    assert data["status"] == "OK"
    assert data["service"] == "ffmpeg-render-worker"
    assert data["pool"]["max_concurrency"] == 2


def test_create_video_is_accepted_and_completes(client):
    response = client.post("/create-video", json={"sutra_id": "abc123"})

    assert response.status_code == 202
    assert response.json() == {
        "status": "Accepted",
        "message": "Video rendering job accepted and will be processed in the background.",
        "job_id": "abc123",
    }

    job = wait_for_status(client, "abc123")
    assert job["status"] == "succeeded"
    assert job["phase"] == "succeeded"
    assert [e["step"] for e in job["history"]] == ["download", "transcode", "upload", "finalize"]
    assert job["completed_at"] is not None


def test_create_video_without_id_generates_one(client):
    response = client.post("/create-video", json={})
    assert response.status_code == 202
    job_id = response.json()["job_id"]
    assert wait_for_status(client, job_id)["payload"]["sutra_id"] == job_id


def test_invalid_body_rejected(client):
    response = client.post("/create-video", content="not json",
                           headers={"Content-Type": "application/json"})
    assert response.status_code == 400
    assert response.json()["error"] == "INVALID_PAYLOAD"

    response = client.post("/create-video", json={"sutra_id": "../../etc"})
    assert response.status_code == 400


def test_duplicate_job_id_conflicts(client):
    assert client.post("/create-video", json={"sutra_id": "dup"}).status_code == 202
    response = client.post("/create-video", json={"sutra_id": "dup"})
    assert response.status_code == 409
    assert response.json()["error"] == "DUPLICATE_JOB"


def test_api_key_required_when_configured(configure):
    configure(api_key="s3cret")
    with TestClient(app) as client:
        response = client.post("/create-video", json={"sutra_id": "locked"})
        assert response.status_code == 401
        assert response.json()["error"] == "UNAUTHORIZED"
        assert client.get("/jobs/locked").status_code == 404

        response = client.post("/create-video", json={"sutra_id": "locked"},
                               headers={"x-api-key": "s3cret"})
        assert response.status_code == 202


def test_queue_full_returns_503(configure):
    # steps long enough that the single worker is still busy
    configure(queue_capacity=1, max_concurrency=1, simulated_step_scale=0.5)
    with TestClient(app) as client:
        assert client.post("/create-video", json={"sutra_id": "running"}).status_code == 202
        wait_for_status(client, "running", statuses=("running",))
        assert client.post("/create-video", json={"sutra_id": "waiting"}).status_code == 202

        response = client.post("/create-video", json={"sutra_id": "rejected"})
        assert response.status_code == 503
        assert response.headers["Retry-After"] == "5"
        assert response.json()["retryable"] is True
        assert client.get("/jobs/rejected").status_code == 404

        client.delete("/jobs/running")
        client.delete("/jobs/waiting")


def test_unknown_job_is_404(client):
    response = client.get("/jobs/does-not-exist")
    assert response.status_code == 404
    assert response.json()["message"] == "Job not found"
    assert client.delete("/jobs/does-not-exist").status_code == 404


def test_list_jobs(client):
    for job_id in ["one", "two"]:
        client.post("/create-video", json={"sutra_id": job_id})
    wait_for_status(client, "one")
    wait_for_status(client, "two")

    jobs = client.get("/jobs").json()["jobs"]
    assert {j["job_id"] for j in jobs} == {"one", "two"}
    assert len(client.get("/jobs", params={"limit": 1}).json()["jobs"]) == 1


def test_cancel_running_job(configure):
    configure(simulated_step_scale=0.2)
    with TestClient(app) as client:
        client.post("/create-video", json={"sutra_id": "stop-me"})
        wait_for_status(client, "stop-me", statuses=("running",))

        response = client.delete("/jobs/stop-me")
        assert response.status_code == 202
        assert response.json()["cancel_requested"] is True
        assert response.json()["message"] == "Cancellation requested"

        job = wait_for_status(client, "stop-me")
        assert job["status"] == "failed"
        assert job["reason"] == "cancelled"
        assert job["history"][-1]["outcome"] == "cancelled"


def test_cancel_finished_job_is_noop(client):
    client.post("/create-video", json={"sutra_id": "done"})
    wait_for_status(client, "done")

    response = client.delete("/jobs/done")
    assert response.status_code == 202
    assert response.json()["message"] == "Job already succeeded"


def test_websocket_ping_pong(client):
    with client.websocket_connect("/ws/jobs/abc123") as websocket:
        assert websocket.receive_json()["type"] == "connected"
        websocket.send_json({"type": "ping"})
        assert websocket.receive_json()["type"] == "pong"


def test_websocket_receives_terminal_event(client):
    with client.websocket_connect("/ws/jobs/streamed") as websocket:
        assert websocket.receive_json()["type"] == "connected"
        client.post("/create-video", json={"sutra_id": "streamed"})

        types = []
        while True:
            message = websocket.receive_json()
            types.append(message["type"])
            if message["type"].startswith("job_") and message["type"] != "job_updated":
                break

    assert "job_updated" in types
    assert types[-1] == "job_succeeded"
    assert message["data"]["idempotency_key"] == "streamed:succeeded"


def test_websocket_connect_sends_job_snapshot(client):
    with client.websocket_connect("/ws/jobs/nobody") as websocket:
        assert websocket.receive_json()["job"] is None

    client.post("/create-video", json={"sutra_id": "snap"})
    wait_for_status(client, "snap")

    with client.websocket_connect("/ws/jobs/snap") as websocket:
        connected = websocket.receive_json()
        assert connected["job_id"] == "snap"
        assert connected["job"]["status"] == "succeeded"
        assert connected["job"]["phase"] == "succeeded"

        websocket.send_json({"type": "status"})
        status = websocket.receive_json()
        assert status["type"] == "status"
        assert status["job"]["status"] == "succeeded"
