"""Unit tests for HTTP client."""

from uuid import uuid4

import pytest
import pytest_asyncio
from aiohttp import test_utils, web

from call_pipeline.errors import RemoteHttpError
from call_pipeline.http_client import PipelineHttpClient


class PipelineApi:
    """Minimal stand-in for the pipeline router."""

    def __init__(self):
        self.requests = []
        self.job_id = str(uuid4())

    async def enqueue(self, request):
        self.requests.append(("enqueue", dict(request.headers), await request.json()))
        return web.json_response({"job_id": self.job_id, "status": "pending", "duplicate": False})

    async def get_job(self, request):
        self.requests.append(("get_job", dict(request.headers), None))
        if request.match_info["job_id"] != self.job_id:
            return web.json_response({"detail": "Job not found"}, status=404)
        return web.json_response({"id": self.job_id, "status": "pending"})

    async def list_jobs(self, request):
        self.requests.append(("list_jobs", dict(request.headers), dict(request.query)))
        return web.json_response([{"id": self.job_id}])

    async def resubmit(self, request):
        return web.json_response({"detail": "Cannot resubmit"}, status=409)

    async def requeue(self, request):
        return web.json_response({"job_id": str(uuid4()), "status": "pending", "duplicate": False})

    async def stats(self, request):
        return web.json_response({"counts": {"total": 0}, "health": {"is_healthy": True}})

    async def pause(self, request):
        self.requests.append(("pause", dict(request.headers), None))
        return web.json_response({"is_paused": True})

    async def resume(self, request):
        self.requests.append(("resume", dict(request.headers), None))
        return web.json_response({"is_paused": False})

    async def clean_completed(self, request):
        self.requests.append(("clean_completed", dict(request.headers), dict(request.query)))
        return web.json_response({"count": 2})


@pytest_asyncio.fixture
async def api():
    api = PipelineApi()
    app = web.Application()
    app.router.add_post("/jobs/enqueue", api.enqueue)
    app.router.add_get("/jobs", api.list_jobs)
    app.router.add_get("/jobs/{job_id}", api.get_job)
    app.router.add_post("/jobs/{job_id}/resubmit", api.resubmit)
    app.router.add_post("/jobs/{job_id}/requeue", api.requeue)
    app.router.add_get("/queue/stats", api.stats)
    app.router.add_post("/queue/pause", api.pause)
    app.router.add_post("/queue/resume", api.resume)
    app.router.add_post("/queue/clean-completed", api.clean_completed)
    server = test_utils.TestServer(app)
    await server.start_server()
    api.base_url = str(server.make_url("")).rstrip("/")
    yield api
    await server.close()


@pytest.mark.asyncio
async def test_enqueue_call(api):
    """Test enqueueing a call with the auth header."""
    client = PipelineHttpClient(api.base_url, auth_token="secret")

    handle = await client.enqueue_call(
        call_id="call-123",
        user_id="user-42",
        file_url="https://storage.test/call-123.mp3",
        file_name="call-123.mp3",
    )

    assert handle["job_id"] == api.job_id
    _, headers, body = api.requests[0]
    assert headers["X-Call-Pipeline-Token"] == "secret"
    assert body == {
        "call_id": "call-123",
        "user_id": "user-42",
        "file_url": "https://storage.test/call-123.mp3",
        "file_name": "call-123.mp3",
    }


@pytest.mark.asyncio
async def test_get_job(api):
    """Test fetching a job."""
    client = PipelineHttpClient(api.base_url)

    job = await client.get_job(api.job_id)

    assert job["id"] == api.job_id
    assert "X-Call-Pipeline-Token" not in api.requests[0][1]


@pytest.mark.asyncio
async def test_get_job_not_found(api):
    """404 is raised as RemoteHttpError."""
    client = PipelineHttpClient(api.base_url)

    with pytest.raises(RemoteHttpError) as exc_info:
        await client.get_job(uuid4())

    assert exc_info.value.status_code == 404
    assert "Job not found" in exc_info.value.response_body


@pytest.mark.asyncio
async def test_list_jobs_filters(api):
    """Only the given filters are sent."""
    client = PipelineHttpClient(api.base_url)

    jobs = await client.list_jobs(call_id="call-123", limit=10)

    assert jobs == [{"id": api.job_id}]
    assert api.requests[0][2] == {"call_id": "call-123", "limit": "10"}


@pytest.mark.asyncio
async def test_resubmit_conflict(api):
    """Error statuses carry the response body."""
    client = PipelineHttpClient(api.base_url)

    with pytest.raises(RemoteHttpError) as exc_info:
        await client.resubmit(uuid4())

    assert exc_info.value.status_code == 409


@pytest.mark.asyncio
async def test_requeue_and_stats(api):
    """Test requeue and queue stats."""
    client = PipelineHttpClient(api.base_url)

    assert (await client.requeue(uuid4()))["status"] == "pending"
    assert (await client.get_queue_stats())["health"]["is_healthy"] is True


@pytest.mark.asyncio
async def test_pause_and_resume_queue(api):
    """Pause and resume post to the queue routes with the auth header."""
    client = PipelineHttpClient(api.base_url, auth_token="secret")

    assert await client.pause_queue() == {"is_paused": True}
    assert await client.resume_queue() == {"is_paused": False}

    assert [name for name, _, _ in api.requests] == ["pause", "resume"]
    assert api.requests[0][1]["X-Call-Pipeline-Token"] == "secret"


@pytest.mark.asyncio
async def test_clean_completed_age(api):
    """The age is only sent when given."""
    client = PipelineHttpClient(api.base_url)

    assert (await client.clean_completed())["count"] == 2
    assert (await client.clean_completed(older_than_seconds=60))["count"] == 2

    assert api.requests[0][2] == {}
    assert api.requests[1][2] == {"older_than_seconds": "60"}


@pytest.mark.asyncio
async def test_network_error():
    """Connection failures are reported with status 0."""
    client = PipelineHttpClient("http://127.0.0.1:1", timeout=2)

    with pytest.raises(RemoteHttpError) as exc_info:
        await client.get_job(uuid4())

    assert exc_info.value.status_code == 0
