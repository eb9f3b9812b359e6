"""
Tests for job admission: authorization, validation and queue limits.
"""

import pytest

from render_worker.errors import DuplicateJob, InvalidPayload, QueueFull, Unauthorized
from render_worker.models.job import JobStatus
from render_worker.services.gateway import ApiKeyAuthorizer, SubmissionGateway
from render_worker.services.scheduler import WorkerPool


@pytest.fixture
def make_gateway(memory_store, scripted, make_pipeline):
    def _make(api_key=None, queue_capacity=10):
        pool = WorkerPool(memory_store, make_pipeline(memory_store, scripted.handlers()),
                          queue_capacity=queue_capacity)
        return SubmissionGateway(pool, ApiKeyAuthorizer(api_key))
    return _make


def test_authorizer():
    assert ApiKeyAuthorizer(None)(None) is True
    check = ApiKeyAuthorizer("s3cret")
    assert check("s3cret") is True
    assert check("wrong") is False
    assert check(None) is False


@pytest.mark.asyncio
async def test_accepts_valid_request(make_gateway, memory_store):
    gateway = make_gateway()
    body = {
        "sutra_id": "abc123",
        "assets": [{"url": "https://cdn.example/intro.mp4", "name": "intro.mp4"}],
        "voice": "narrator-2",
    }

    job = gateway.submit(body)

    assert job.job_id == "abc123"
    stored = memory_store.get("abc123")
    assert stored.status == JobStatus.PENDING
    assert stored.payload["assets"][0]["name"] == "intro.mp4"
    # unknown fields travel with the payload
    assert stored.payload["voice"] == "narrator-2"


@pytest.mark.asyncio
async def test_accepts_allowed_encoder_args(make_gateway, memory_store):
    args = ["-c:v", "libx264", "-crf", "23", "-vf", "scale=1280:-2,fps=30", "-shortest"]
    make_gateway().submit({"sutra_id": "tuned", "ffmpeg_args": args,
                           "output_url": "https://storage.example/tuned.mp4"})

    stored = memory_store.get("tuned").payload
    assert stored["ffmpeg_args"] == args
    assert stored["output_url"] == "https://storage.example/tuned.mp4"


@pytest.mark.asyncio
async def test_generates_id_when_missing(make_gateway, memory_store):
    job = make_gateway().submit({})
    assert len(job.job_id) == 32
    assert memory_store.get(job.job_id).payload["sutra_id"] == job.job_id


@pytest.mark.asyncio
async def test_rejects_missing_or_wrong_key(make_gateway, memory_store):
    gateway = make_gateway(api_key="s3cret")
    with pytest.raises(Unauthorized):
        gateway.submit({"sutra_id": "abc123"})
    with pytest.raises(Unauthorized):
        gateway.submit({"sutra_id": "abc123"}, api_key="guess")
    assert memory_store.list_jobs() == []

    assert gateway.submit({"sutra_id": "abc123"}, api_key="s3cret").job_id == "abc123"


@pytest.mark.asyncio
async def test_auth_checked_before_validation(make_gateway):
    with pytest.raises(Unauthorized):
        make_gateway(api_key="s3cret").submit("not a dict")


@pytest.mark.asyncio
@pytest.mark.parametrize("body", [
    None,
    ["sutra_id", "abc123"],
    {"sutra_id": "../etc/passwd"},
    {"sutra_id": ""},
    {"assets": [{"name": "no-url.mp4"}]},
    {"assets": "https://cdn.example/intro.mp4"},
    {"assets": [{"url": "not a url"}]},
    {"assets": [{"url": "file:///etc/passwd"}]},
    {"output_url": "ftp://storage.example/out.mp4"},
    {"ffmpeg_args": ["-i", "/etc/passwd"]},
    {"ffmpeg_args": ["-vf", "movie=/etc/passwd"]},
    {"ffmpeg_args": ["-f", "mp4"]},
    {"ffmpeg_args": ["-c:v"]},
    {"ffmpeg_args": ["-c:v", "libx264;rm"]},
])
async def test_rejects_invalid_payload(make_gateway, memory_store, body):
    with pytest.raises(InvalidPayload):
        make_gateway().submit(body)
    assert memory_store.list_jobs() == []


@pytest.mark.asyncio
async def test_rejects_duplicate_id(make_gateway):
    gateway = make_gateway()
    gateway.submit({"sutra_id": "abc123"})
    with pytest.raises(DuplicateJob):
        gateway.submit({"sutra_id": "abc123"})


@pytest.mark.asyncio
async def test_rejects_when_queue_full(make_gateway, memory_store):
    gateway = make_gateway(queue_capacity=1)
    gateway.submit({"sutra_id": "one"})
    with pytest.raises(QueueFull) as exc_info:
        gateway.submit({"sutra_id": "two"})
    assert exc_info.value.retryable is True
    assert [j.job_id for j in memory_store.list_jobs()] == ["one"]
