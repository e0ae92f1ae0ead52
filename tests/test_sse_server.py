"""
SSE Server Tests

Exercises the HTTP surface with aiohttp's test client against in-memory
backends:
1. Stream framing, headers, retry hint and keep-alives
2. Resumption via Last-Event-ID header and query parameter
3. Job submission (demo and external) and the fallback status query
4. Error responses: unknown job, malformed token, bad bodies, duplicates
5. Shutdown delivering cancellations, and one reset client not affecting another

Run with:
    python -m pytest tests/test_sse_server.py -v
"""

import asyncio
import json
import os
import sys

import pytest
from aiohttp.test_utils import TestClient, TestServer

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.config import CleanupConfig, Config, StreamConfig, WorkerConfig
from services.channel import MemoryPublishChannel
from services.event_log import MemoryEventLogStore
from services.events import EventKind, complete_payload, progress_payload
from services.streaming import SSEServer
from services.worker import JobPipeline


def make_config(**stream_overrides) -> Config:
    stream = dict(
        keepalive_interval=5.0,
        retry_ms=1000,
        buffer_size=64,
        backlog_batch_size=100,
        poll_interval=0.05,
        fallback_poll_interval=0.2,
    )
    stream.update(stream_overrides)
    return Config(
        stream=StreamConfig(**stream),
        cleanup=CleanupConfig(sweep_interval=60, grace_period=600, idle_timeout=120, job_stall_timeout=0),
        worker=WorkerConfig(store_retries=1, retry_wait_min=0, retry_wait_max=0),
    )


def parse_frames(text: str) -> list[dict]:
    """Split an SSE body into event frames, ignoring comments and retry hints."""
    frames = []
    for block in text.split("\n\n"):
        fields = {}
        for line in block.splitlines():
            if not line or line.startswith(":"):
                continue
            name, _, value = line.partition(": ")
            fields[name] = value
        if "event" in fields:
            fields["data"] = json.loads(fields["data"])
            fields["id"] = int(fields["id"])
            frames.append(fields)
    return frames


@pytest.fixture
def store():
    return MemoryEventLogStore()


@pytest.fixture
def channel():
    return MemoryPublishChannel()


async def finished_job(store, job_id="job-1"):
    await store.create_job(job_id)
    await store.append(job_id, EventKind.PROGRESS, progress_payload(50, "half"))
    await store.append(job_id, EventKind.LOG, "almost there")
    await store.append(job_id, EventKind.COMPLETE, complete_payload("Success!"))


class TestStreamEndpoint:
    """GET /stream/{job_id}"""

    @pytest.mark.asyncio
    async def test_unknown_job_is_404(self, store, channel):
        server = SSEServer(make_config(), store=store, channel=channel)
        async with TestClient(TestServer(server.build_app())) as client:
            resp = await client.get("/stream/nope")

            assert resp.status == 404
            assert await resp.json() == {"error": "job_not_found", "job_id": "nope"}
            assert server.engine.subscriber_count() == 0

    @pytest.mark.asyncio
    async def test_malformed_last_event_id_is_400(self, store, channel):
        await finished_job(store)
        server = SSEServer(make_config(), store=store, channel=channel)
        async with TestClient(TestServer(server.build_app())) as client:
            resp = await client.get("/stream/job-1", headers={"Last-Event-ID": "abc"})
            assert resp.status == 400
            assert (await resp.json())["error"] == "invalid_last_event_id"

            resp = await client.get("/stream/job-1?last_event_id=-3")
            assert resp.status == 400

    @pytest.mark.asyncio
    async def test_finished_job_stream(self, store, channel):
        await finished_job(store)
        server = SSEServer(make_config(), store=store, channel=channel)
        async with TestClient(TestServer(server.build_app())) as client:
            resp = await client.get("/stream/job-1")
            assert resp.status == 200
            assert resp.headers["Content-Type"].startswith("text/event-stream")
            assert resp.headers["Cache-Control"] == "no-cache"

            text = await resp.text()

        assert text.startswith("retry: 1000\n\n: connected ")
        frames = parse_frames(text)
        assert [f["id"] for f in frames] == [1, 2, 3]
        assert [f["event"] for f in frames] == ["progress", "log", "complete"]
        assert frames[0]["data"]["progress"] == 50
        assert frames[1]["data"] == "almost there"
        assert frames[2]["data"]["result"] == "Success!"

    @pytest.mark.asyncio
    async def test_resume_from_header(self, store, channel):
        await finished_job(store)
        server = SSEServer(make_config(), store=store, channel=channel)
        async with TestClient(TestServer(server.build_app())) as client:
            resp = await client.get("/stream/job-1", headers={"Last-Event-ID": "2"})
            frames = parse_frames(await resp.text())

        assert [f["id"] for f in frames] == [3]

    @pytest.mark.asyncio
    async def test_resume_from_query_parameter(self, store, channel):
        await finished_job(store)
        server = SSEServer(make_config(), store=store, channel=channel)
        async with TestClient(TestServer(server.build_app())) as client:
            resp = await client.get("/jobs/job-1/events?last_event_id=1")
            frames = parse_frames(await resp.text())

        assert [f["id"] for f in frames] == [2, 3]

    @pytest.mark.asyncio
    async def test_header_takes_precedence_over_query(self, store, channel):
        await finished_job(store)
        server = SSEServer(make_config(), store=store, channel=channel)
        async with TestClient(TestServer(server.build_app())) as client:
            resp = await client.get(
                "/stream/job-1?last_event_id=0", headers={"Last-Event-ID": "2"}
            )
            frames = parse_frames(await resp.text())

        assert [f["id"] for f in frames] == [3]

    @pytest.mark.asyncio
    async def test_live_events_over_http(self, store, channel):
        await store.create_job("job-1")
        server = SSEServer(make_config(), store=store, channel=channel)
        pipeline = JobPipeline(
            "job-1", store, channel, config=WorkerConfig(store_retries=1, retry_wait_min=0, retry_wait_max=0)
        )
        async with TestClient(TestServer(server.build_app())) as client:
            resp = await client.get("/stream/job-1")
            assert resp.status == 200

            for _ in range(200):
                if server.engine.registry.attached_for_job("job-1"):
                    break
                await asyncio.sleep(0.01)

            await pipeline.progress(25, "Quarter")
            await pipeline.log("working")
            await pipeline.complete("Success!")

            text = await asyncio.wait_for(resp.text(), timeout=3)

        frames = parse_frames(text)
        assert [(f["id"], f["event"]) for f in frames] == [
            (1, "progress"),
            (2, "log"),
            (3, "complete"),
        ]

    @pytest.mark.asyncio
    async def test_keepalive_comment_on_quiet_stream(self, store, channel):
        await store.create_job("job-1")
        server = SSEServer(make_config(keepalive_interval=0.05), store=store, channel=channel)
        async with TestClient(TestServer(server.build_app())) as client:
            resp = await client.get("/stream/job-1")

            lines = []
            while b": keep-alive\n" not in lines:
                line = await asyncio.wait_for(resp.content.readline(), timeout=2)
                lines.append(line)
            resp.close()

        assert lines[0] == b"retry: 1000\n"


class TestSubmitEndpoint:
    """POST /jobs"""

    @pytest.mark.asyncio
    async def test_demo_job_runs_and_streams(self, store, channel):
        server = SSEServer(make_config(), store=store, channel=channel)
        async with TestClient(TestServer(server.build_app())) as client:
            resp = await client.post("/jobs", json={"demo": True, "steps": 4, "step_delay": 0})
            assert resp.status == 202
            data = await resp.json()
            assert data["status"] == "PENDING"
            assert data["stream_url"] == f"/stream/{data['job_id']}"
            assert data["status_url"] == f"/jobs/{data['job_id']}"

            stream = await client.get(data["stream_url"])
            frames = parse_frames(await asyncio.wait_for(stream.text(), timeout=3))

        assert [f["id"] for f in frames] == list(range(1, len(frames) + 1))
        assert [f["data"]["progress"] for f in frames if f["event"] == "progress"] == [25.0, 50.0, 75.0]
        assert frames[-1]["event"] == "complete"
        assert frames[-1]["data"]["result"] == "Success!"

    @pytest.mark.asyncio
    async def test_demo_job_failure(self, store, channel):
        server = SSEServer(make_config(), store=store, channel=channel)
        async with TestClient(TestServer(server.build_app())) as client:
            resp = await client.post(
                "/jobs", json={"job_id": "fails", "steps": 4, "step_delay": 0, "fail_at": 2}
            )
            assert resp.status == 202

            stream = await client.get("/stream/fails")
            frames = parse_frames(await asyncio.wait_for(stream.text(), timeout=3))

            status = await client.get("/jobs/fails")
            summary = await status.json()

        errors = [f for f in frames if f["event"] == "error"]
        assert len(errors) == 1
        assert frames[-1] is errors[0]
        assert errors[0]["data"]["code"] == "step_failed"
        assert summary["status"] == "FAILED"

    @pytest.mark.asyncio
    async def test_duplicate_job_id_is_409(self, store, channel):
        await store.create_job("taken")
        server = SSEServer(make_config(), store=store, channel=channel)
        async with TestClient(TestServer(server.build_app())) as client:
            resp = await client.post("/jobs", json={"job_id": "taken", "demo": False})

            assert resp.status == 409
            assert (await resp.json())["error"] == "job_exists"

    @pytest.mark.asyncio
    async def test_invalid_body(self, store, channel):
        server = SSEServer(make_config(), store=store, channel=channel)
        async with TestClient(TestServer(server.build_app())) as client:
            resp = await client.post("/jobs", json={"steps": 0})
            assert resp.status == 400
            body = await resp.json()
            assert body["error"] == "invalid_request"
            assert body["details"][0]["loc"] == ["steps"]

            resp = await client.post("/jobs", data="not json", headers={"Content-Type": "application/json"})
            assert resp.status == 400
            assert (await resp.json())["error"] == "Invalid JSON body"

    @pytest.mark.asyncio
    async def test_external_job_stays_pending(self, store, channel):
        server = SSEServer(make_config(), store=store, channel=channel)
        async with TestClient(TestServer(server.build_app())) as client:
            resp = await client.post("/jobs", json={"job_id": "external-1", "demo": False})
            assert resp.status == 202

            status = await client.get("/jobs/external-1")
            summary = await status.json()

        assert summary["status"] == "PENDING"
        assert summary["last_event_id"] == 0
        assert summary["clients"] == 0
        assert server.runner.running_jobs == []


class TestStatusEndpoints:
    """Fallback status query, health and server status."""

    @pytest.mark.asyncio
    async def test_job_summary(self, store, channel):
        await finished_job(store)
        server = SSEServer(make_config(), store=store, channel=channel)
        async with TestClient(TestServer(server.build_app())) as client:
            resp = await client.get("/jobs/job-1")
            assert resp.status == 200
            data = await resp.json()

            missing = await client.get("/jobs/nope")
            assert missing.status == 404

        assert data["status"] == "COMPLETED"
        assert data["percent"] == 100
        assert data["last_event_id"] == 3
        assert data["result"] == "Success!"

    @pytest.mark.asyncio
    async def test_health_and_status(self, store, channel):
        server = SSEServer(make_config(), store=store, channel=channel)
        async with TestClient(TestServer(server.build_app())) as client:
            health = await (await client.get("/health")).json()
            status = await (await client.get("/status")).json()
            index = await client.get("/")
            assert "jobstream" in await index.text()

        assert health == {"status": "healthy", "connected_clients": 0, "running_jobs": 0}
        assert set(status) == {"server", "clients", "feeds", "jobs", "channel", "cleanup"}
        assert status["clients"] == {"total": 0, "by_job": {}}
        assert status["channel"]["state"] == "closed"
        assert status["cleanup"]["sweeps"] == 0


class TestConnectionLifecycle:
    """Shutdown delivery and per-client isolation."""

    @pytest.mark.asyncio
    async def test_shutdown_delivers_cancellation_to_clients(self, store, channel):
        server = SSEServer(make_config(), store=store, channel=channel)
        client = TestClient(TestServer(server.build_app()))
        await client.start_server()
        try:
            resp = await client.post("/jobs", json={"job_id": "j1", "steps": 4, "step_delay": 30})
            assert resp.status == 202

            stream = await client.get("/stream/j1")
            while True:
                line = await asyncio.wait_for(stream.content.readline(), timeout=3)
                if line == b"event: log\n":
                    break

            shutdown = asyncio.create_task(client.server.close())
            rest = await asyncio.wait_for(stream.content.read(), timeout=5)
            await shutdown
        finally:
            await client.close()

        assert b"event: error\n" in rest
        assert b'"cancelled"' in rest
        assert server.engine.subscriber_count() == 0

    @pytest.mark.asyncio
    async def test_reset_connection_leaves_other_clients_intact(self, store, channel):
        await store.create_job("job-1")
        server = SSEServer(make_config(), store=store, channel=channel)
        pipeline = JobPipeline(
            "job-1", store, channel, config=WorkerConfig(store_retries=1, retry_wait_min=0, retry_wait_max=0)
        )
        async with TestClient(TestServer(server.build_app())) as client:
            resp_a = await client.get("/stream/job-1", headers={"User-Agent": "client-a"})
            resp_b = await client.get("/stream/job-1", headers={"User-Agent": "client-b"})

            for _ in range(200):
                if len(server.engine.registry.attached_for_job("job-1")) == 2:
                    break
                await asyncio.sleep(0.01)
            sub_a = next(
                s for s in server.engine.registry.for_job("job-1") if s.user_agent == "client-a"
            )

            await pipeline.log("first")
            while True:
                line = await asyncio.wait_for(resp_a.content.readline(), timeout=3)
                if line.startswith(b"data: "):
                    break
            resp_a.close()

            for n in range(2, 6):
                await pipeline.log(f"line {n}")
            await pipeline.complete("Success!")

            text = await asyncio.wait_for(resp_b.text(), timeout=3)

            for _ in range(200):
                if server.engine.subscriber_count("job-1") == 0:
                    break
                await asyncio.sleep(0.01)

            summary = await (await client.get("/jobs/job-1")).json()

        frames = parse_frames(text)
        assert [f["id"] for f in frames] == [1, 2, 3, 4, 5, 6]
        assert [f["data"] for f in frames[:5]] == ["first", "line 2", "line 3", "line 4", "line 5"]
        assert frames[-1]["event"] == "complete"
        assert sub_a.closed
        assert sub_a not in server.engine.registry
        assert summary["status"] == "COMPLETED"
