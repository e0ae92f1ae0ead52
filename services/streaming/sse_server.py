"""
SSE Server for Job Progress Streaming

Provides real-time job progress via Server-Sent Events.
Designed for browsers (EventSource) and CLI consumption alike.

Features:
- Many concurrent clients per job, each with its own bookmark
- Resumption from Last-Event-ID (header or ?last_event_id=)
- Reconnection hint (retry:) and keep-alive comments
- Fallback JSON status query for clients that cannot stream
- Demo job submission for end-to-end checks

Usage:
    # Start server
    server = SSEServer()
    await server.start()

    # From CLI
    curl -N http://localhost:8765/stream/job-123

    # Resume after a drop
    curl -N -H "Last-Event-ID: 5" http://localhost:8765/stream/job-123
"""

import asyncio
import json
import logging
import time
from typing import Any, Optional
from uuid import uuid4

from aiohttp import web
from pydantic import BaseModel, Field, ValidationError

from core.circuit_breaker import get_channel_breaker
from core.config import Config, get_config
from core.errors import JobAlreadyExists, JobNotFound, StoreUnavailable, TransientDeliveryFailure
from services.backends import Backends, build_backends
from services.channel.base import PublishChannel
from services.cleanup import CleanupSupervisor
from services.event_log.base import EventLogStore
from services.events import KEEPALIVE_FRAME, sse_comment, sse_retry
from services.worker import JobRunner, simulate_job

from .fanout import FanOutEngine

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # Disable nginx buffering
}


class SubmitJobRequest(BaseModel):
    """Body of POST /jobs."""

    job_id: Optional[str] = Field(
        default=None, min_length=1, max_length=128, pattern=r"^[A-Za-z0-9._:\-]+$"
    )
    demo: bool = True
    steps: int = Field(default=4, ge=1, le=1000)
    step_delay: float = Field(default=0.5, ge=0, le=60)
    fail_at: Optional[int] = Field(default=None, ge=1)
    result: Any = "Success!"


def parse_last_event_id(request: web.Request) -> int:
    """
    Resumption token from the Last-Event-ID header or ?last_event_id=.

    Missing or blank means "from the beginning". Raises ValueError for
    anything that is not a non-negative integer.
    """
    raw = request.headers.get("Last-Event-ID")
    if raw is None:
        raw = request.query.get("last_event_id")
    if raw is None or not raw.strip():
        return 0

    try:
        value = int(raw.strip())
    except ValueError:
        raise ValueError(f"Last-Event-ID must be an integer, got {raw!r}")
    if value < 0:
        raise ValueError(f"Last-Event-ID must be >= 0, got {value}")
    return value


class SSEServer:
    """
    Server-Sent Events server for streaming job progress.

    Owns the fan-out engine, the in-process job runner and the cleanup
    supervisor for one process. The store and channel are shared with
    other processes when the postgres backend is used.

    Usage:
        server = SSEServer()
        await server.start()
        ...
        await server.stop()

        # Or for tests
        app = SSEServer(config, store=store, channel=channel).build_app()
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        store: Optional[EventLogStore] = None,
        channel: Optional[PublishChannel] = None,
    ):
        self.config = config or get_config()
        self.host = self.config.server.host
        self.port = self.config.server.port
        self.breaker = get_channel_breaker()

        self.store = store
        self.channel = channel
        self.engine: Optional[FanOutEngine] = None
        self.runner: Optional[JobRunner] = None
        self.supervisor: Optional[CleanupSupervisor] = None
        if store is not None and channel is not None:
            self._init_components()

        # Server state
        self._backends: Optional[Backends] = None
        self._app: Optional[web.Application] = None
        self._app_runner: Optional[web.AppRunner] = None
        self._started_at: Optional[float] = None

    def _init_components(self) -> None:
        self.engine = FanOutEngine(self.store, self.channel, self.config.stream, self.breaker)
        self.runner = JobRunner(self.store, self.channel, self.config.worker, self.breaker)
        self.supervisor = CleanupSupervisor(
            self.store, self.engine, self.channel, self.config.cleanup, self.breaker
        )

    def build_app(self) -> web.Application:
        """Create the aiohttp application with routes and lifecycle hooks."""
        app = web.Application()
        app.router.add_get("/", self._handle_index)
        app.router.add_get("/health", self._handle_health)
        app.router.add_get("/status", self._handle_status)
        app.router.add_post("/jobs", self._handle_submit)
        app.router.add_get("/jobs/{job_id}", self._handle_job_status)
        app.router.add_get("/jobs/{job_id}/events", self._handle_stream)  # Alias for /stream
        app.router.add_get("/stream/{job_id}", self._handle_stream)

        app.on_startup.append(self._on_startup)
        app.on_shutdown.append(self._on_shutdown)
        app.on_cleanup.append(self._on_cleanup)
        self._app = app
        return app

    async def start(self):
        """Start the SSE server."""
        app = self.build_app()
        self._app_runner = web.AppRunner(app)
        await self._app_runner.setup()

        site = web.TCPSite(self._app_runner, self.host, self.port)
        await site.start()

        logger.info(f"SSE server started at http://{self.host}:{self.port}")

    async def stop(self):
        """Stop the SSE server."""
        if self._app_runner:
            await self._app_runner.cleanup()
            self._app_runner = None
        logger.info("SSE server stopped")

    async def _on_startup(self, app: web.Application) -> None:
        if self.engine is None:
            self._backends = await build_backends(self.config)
            self.store = self._backends.store
            self.channel = self._backends.channel
            self._init_components()
        self.supervisor.start()
        self._started_at = time.monotonic()

    async def _on_shutdown(self, app: web.Application) -> None:
        await self.supervisor.stop()
        cancelled = self.runner.running_jobs
        # Cancelled jobs record an error event, which ends their streams
        await self.runner.stop()
        await self._drain(cancelled)
        await self.engine.close()

    async def _drain(self, job_ids: list[str]) -> None:
        """Give clients of cancelled jobs a bounded chance to receive the error event."""
        if not job_ids:
            return
        for job_id in job_ids:
            self.engine.notify(job_id)

        deadline = time.monotonic() + self.config.stream.drain_timeout
        while any(self.engine.subscriber_count(job_id) for job_id in job_ids):
            if time.monotonic() >= deadline:
                logger.warning(
                    f"Shutdown drain timed out with "
                    f"{sum(self.engine.subscriber_count(j) for j in job_ids)} clients still attached"
                )
                return
            await asyncio.sleep(0.05)

    async def _on_cleanup(self, app: web.Application) -> None:
        if self._backends is not None:
            await self._backends.close()
            self._backends = None

    async def _handle_index(self, request: web.Request) -> web.Response:
        """Handle index route - show usage info."""
        return web.Response(
            text="""
jobstream SSE Progress Server

Endpoints:
  POST /jobs                   - Submit a job (demo jobs run in-process)
  GET /jobs/{job_id}           - Job summary (fallback status query)
  GET /stream/{job_id}         - SSE stream of job events
  GET /jobs/{job_id}/events    - Alias for /stream
  GET /status                  - Server status and connected clients
  GET /health                  - Health check

Submit Demo Job:
  curl -X POST http://localhost:8765/jobs \\
    -H "Content-Type: application/json" \\
    -d '{"demo": true, "steps": 4, "step_delay": 0.5}'

  Response (202):
    {"job_id": "uuid", "status": "PENDING", "stream_url": "/stream/uuid", "status_url": "/jobs/uuid"}

Monitor Progress:
  curl -N http://localhost:8765/stream/{job_id}

Resume After a Drop:
  curl -N -H "Last-Event-ID: 5" http://localhost:8765/stream/{job_id}

Events (id is the job's sequence number):
  id: 2
  event: progress
  data: {"progress": 25.0, "status": "RUNNING", "message": "Fetching input (1/4)"}

  event: log       data: "Step 2/4: Validating records"
  event: complete  data: {"result": "Success!", "message": "Job completed"}
  event: error     data: {"error": "Step 3 failed", "code": "step_failed"}
            """,
            content_type="text/plain",
        )

    async def _handle_health(self, request: web.Request) -> web.Response:
        """Health check endpoint."""
        return web.json_response({
            "status": "healthy",
            "connected_clients": self.engine.subscriber_count(),
            "running_jobs": len(self.runner.running_jobs),
        })

    async def _handle_status(self, request: web.Request) -> web.Response:
        """Server status endpoint."""
        uptime = time.monotonic() - self._started_at if self._started_at else 0
        return web.json_response({
            "server": {
                "host": self.host,
                "port": self.port,
                "backend": self.config.store.backend,
                "uptime_seconds": round(uptime, 1),
            },
            "clients": self.engine.registry.stats(),
            "feeds": self.engine.stats()["feeds"],
            "jobs": {
                "running": self.runner.running_jobs,
            },
            "channel": self.breaker.get_status(),
            "cleanup": {
                "sweeps": self.supervisor.sweeps,
                "last_sweep": (
                    self.supervisor.last_report.to_dict() if self.supervisor.last_report else None
                ),
            },
        })

    async def _handle_submit(self, request: web.Request) -> web.Response:
        """Create a job; demo jobs start on the in-process runner."""
        try:
            data = await request.json()
        except ValueError:
            return web.json_response({"error": "Invalid JSON body"}, status=400)

        try:
            body = SubmitJobRequest.model_validate(data)
        except ValidationError as e:
            return web.json_response(
                {"error": "invalid_request", "details": json.loads(e.json(include_url=False))},
                status=400,
            )

        job_id = body.job_id or str(uuid4())
        try:
            if body.demo:
                handler = simulate_job(
                    steps=body.steps,
                    step_delay=body.step_delay,
                    fail_at=body.fail_at,
                    result=body.result,
                )
                await self.runner.submit(handler, job_id=job_id)
            else:
                # An external worker drives it through the shared store
                await self.store.create_job(job_id)
        except JobAlreadyExists:
            return web.json_response({"error": "job_exists", "job_id": job_id}, status=409)
        except StoreUnavailable as e:
            logger.warning(f"Cannot create job {job_id}: {e}")
            return web.json_response({"error": "store_unavailable"}, status=503)

        logger.info(f"Accepted job {job_id} (demo={body.demo})")
        return web.json_response(
            {
                "job_id": job_id,
                "status": "PENDING",
                "stream_url": f"/stream/{job_id}",
                "status_url": f"/jobs/{job_id}",
            },
            status=202,
        )

    async def _handle_job_status(self, request: web.Request) -> web.Response:
        """Fallback status query for clients that cannot hold a stream open."""
        job_id = request.match_info["job_id"]
        try:
            summary = await self.store.read_summary(job_id)
        except StoreUnavailable:
            return web.json_response({"error": "store_unavailable"}, status=503)

        if summary is None:
            return web.json_response({"error": "job_not_found", "job_id": job_id}, status=404)

        data = summary.to_dict()
        data["clients"] = self.engine.subscriber_count(job_id)
        return web.json_response(data)

    async def _handle_stream(self, request: web.Request) -> web.StreamResponse:
        """Handle SSE stream connection."""
        job_id = request.match_info["job_id"]

        try:
            last_seen = parse_last_event_id(request)
        except ValueError as e:
            return web.json_response({"error": "invalid_last_event_id", "detail": str(e)}, status=400)

        try:
            subscription = await self.engine.connect(
                job_id,
                last_seen=last_seen,
                user_agent=request.headers.get("User-Agent", ""),
            )
        except JobNotFound:
            return web.json_response({"error": "job_not_found", "job_id": job_id}, status=404)
        except StoreUnavailable:
            return web.json_response({"error": "store_unavailable"}, status=503)

        response = web.StreamResponse(status=200, reason="OK", headers=SSE_HEADERS)
        events = self.engine.stream(subscription)

        try:
            await response.prepare(request)
            await response.write(sse_retry(self.config.stream.retry_ms).encode())
            await response.write(sse_comment(f"connected {subscription.subscription_id}").encode())

            async for event in events:
                frame = KEEPALIVE_FRAME if event is None else event.to_sse()
                await response.write(frame.encode())

        except ConnectionResetError as e:
            failure = TransientDeliveryFailure(subscription.subscription_id, str(e) or "connection reset")
            logger.info(str(failure))
            self.engine.disconnect(subscription, "transport_error")
        except StoreUnavailable as e:
            # Closing lets the client reconnect with its Last-Event-ID
            logger.warning(f"Stream for job {job_id} closed, store unavailable: {e}")
            self.engine.disconnect(subscription, "store_unavailable")
        except asyncio.CancelledError:
            if not subscription.evicted:
                raise
            # Evicted while blocked on a write
            logger.info(
                f"Stream {subscription.subscription_id} cancelled ({subscription.close_reason})"
            )
        finally:
            await events.aclose()
            self.engine.disconnect(subscription)

        return response
