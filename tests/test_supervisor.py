"""
Cleanup Supervisor Tests

Covers:
1. Idle subscription eviction, including consumers stalled mid-delivery
2. Expiry of terminal job logs after the grace period
3. Timeout error synthesized for stalled jobs, delivered to attached clients
4. Step isolation: one failing step does not stop the others

Run with:
    python -m pytest tests/test_supervisor.py -v
"""

import asyncio
import os
import sys
import time
from datetime import timedelta

import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from core.config import CleanupConfig, StreamConfig, WorkerConfig
from services.channel import MemoryPublishChannel
from services.cleanup import CleanupSupervisor, SweepReport
from services.event_log import MemoryEventLogStore
from services.events import EventKind, JobStatus, complete_payload, utcnow
from services.streaming import FanOutEngine
from services.worker import JobPipeline


def make_cleanup_config(**overrides) -> CleanupConfig:
    values = dict(sweep_interval=0.05, grace_period=60, idle_timeout=30, job_stall_timeout=300)
    values.update(overrides)
    return CleanupConfig(**values)


@pytest.fixture
def store():
    return MemoryEventLogStore()


@pytest.fixture
def channel():
    return MemoryPublishChannel()


@pytest.fixture
def engine(store, channel):
    config = StreamConfig(
        keepalive_interval=5.0,
        retry_ms=1000,
        buffer_size=16,
        backlog_batch_size=100,
        poll_interval=0.05,
        fallback_poll_interval=0.2,
    )
    breaker = CircuitBreaker("publish-channel", CircuitBreakerConfig(failure_threshold=100))
    return FanOutEngine(store, channel, config=config, breaker=breaker)


def make_supervisor(store, engine, channel, **overrides) -> CleanupSupervisor:
    breaker = CircuitBreaker("publish-channel", CircuitBreakerConfig(failure_threshold=100))
    return CleanupSupervisor(
        store, engine, channel, config=make_cleanup_config(**overrides), breaker=breaker
    )


class TestIdleEviction:
    """Subscriptions without activity are reclaimed."""

    @pytest.mark.asyncio
    async def test_idle_subscription_evicted(self, store, channel, engine):
        await store.create_job("job-1")
        idle = await engine.connect("job-1")
        active = await engine.connect("job-1")
        idle.last_activity = time.monotonic() - 1000

        supervisor = make_supervisor(store, engine, channel)
        report = await supervisor.sweep()

        assert report.evicted_subscriptions == [idle.subscription_id]
        assert idle.closed
        assert idle.close_reason == "idle"
        assert idle not in engine.registry
        assert active in engine.registry

    @pytest.mark.asyncio
    async def test_stalled_consumer_cancelled_sibling_unaffected(self, store, channel, engine):
        await store.create_job("job-1")
        pipeline = JobPipeline(
            "job-1", store, channel, config=WorkerConfig(store_retries=1, retry_wait_min=0, retry_wait_max=0)
        )
        stalled = await engine.connect("job-1")
        sibling = await engine.connect("job-1")
        got_first = asyncio.Event()

        async def stall():
            # Stops reading with the stream suspended mid-delivery
            async for event in engine.stream(stalled):
                if event is not None:
                    got_first.set()
                    await asyncio.sleep(3600)

        async def consume():
            received = []
            async for event in engine.stream(sibling):
                if event is not None:
                    received.append(event)
            return received

        stalled_task = asyncio.create_task(stall())
        sibling_task = asyncio.create_task(consume())
        for _ in range(200):
            if stalled.attached and sibling.attached:
                break
            await asyncio.sleep(0.01)

        await pipeline.log("first")
        await asyncio.wait_for(got_first.wait(), timeout=2)
        assert stalled.delivering

        stalled.last_activity = time.monotonic() - 1000
        report = await make_supervisor(store, engine, channel).sweep()

        assert report.evicted_subscriptions == [stalled.subscription_id]
        with pytest.raises(asyncio.CancelledError):
            await stalled_task
        assert stalled.evicted
        assert stalled.close_reason == "idle"
        assert stalled not in engine.registry

        await pipeline.log("second")
        await pipeline.progress(80, "nearly")
        await pipeline.complete("ok")

        received = await asyncio.wait_for(sibling_task, timeout=2)
        assert [e.seq for e in received] == [1, 2, 3, 4]
        assert received[-1].kind == EventKind.COMPLETE
        assert sibling.close_reason == "completed"


class TestExpiry:
    """Terminal logs are removed only after the grace period."""

    @pytest.mark.asyncio
    async def test_terminal_job_kept_within_grace(self, store, channel, engine):
        await store.create_job("job-1")
        await store.append("job-1", EventKind.COMPLETE, complete_payload("ok"))

        supervisor = make_supervisor(store, engine, channel, grace_period=60)
        report = await supervisor.sweep()

        assert report.expired_jobs == []
        assert await store.read_summary("job-1") is not None

    @pytest.mark.asyncio
    async def test_terminal_job_expired_after_grace(self, store, channel, engine):
        await store.create_job("done")
        await store.append("done", EventKind.COMPLETE, complete_payload("ok"))
        await store.create_job("running")
        await store.append("running", EventKind.LOG, "still busy")

        supervisor = make_supervisor(store, engine, channel, grace_period=60, job_stall_timeout=0)
        report = await supervisor.sweep(now=utcnow() + timedelta(seconds=120))

        assert report.expired_jobs == ["done"]
        assert await store.read_summary("done") is None
        assert await store.read_from("done") == []
        assert await store.read_summary("running") is not None


class TestStalledJobs:
    """Jobs whose worker vanished get a timeout error."""

    @pytest.mark.asyncio
    async def test_stalled_job_failed_and_clients_notified(self, store, channel, engine):
        await store.create_job("job-1")
        await store.append("job-1", EventKind.LOG, "started")

        subscription = await engine.connect("job-1")
        received = []

        async def consume():
            async for event in engine.stream(subscription):
                if event is not None:
                    received.append(event)

        task = asyncio.create_task(consume())
        for _ in range(200):
            if subscription.attached:
                break
            await asyncio.sleep(0.01)

        supervisor = make_supervisor(store, engine, channel, job_stall_timeout=300)
        report = await supervisor.sweep(now=utcnow() + timedelta(seconds=600))

        assert report.timed_out_jobs == ["job-1"]
        summary = await store.read_summary("job-1")
        assert summary.status == JobStatus.FAILED

        await asyncio.wait_for(task, timeout=2)
        assert [e.seq for e in received] == [1, 2]
        assert received[-1].kind == EventKind.ERROR
        assert received[-1].payload["code"] == "timeout"
        assert subscription.close_reason == "completed"
        assert channel.published == 1

    @pytest.mark.asyncio
    async def test_recent_activity_is_not_a_stall(self, store, channel, engine):
        await store.create_job("job-1")

        supervisor = make_supervisor(store, engine, channel, job_stall_timeout=300)
        report = await supervisor.sweep()

        assert report.timed_out_jobs == []
        assert (await store.read_summary("job-1")).status == JobStatus.PENDING

    @pytest.mark.asyncio
    async def test_zero_timeout_disables_stall_detection(self, store, channel, engine):
        await store.create_job("job-1")

        supervisor = make_supervisor(store, engine, channel, job_stall_timeout=0)
        report = await supervisor.sweep(now=utcnow() + timedelta(days=30))

        assert report.timed_out_jobs == []
        assert await store.read_from("job-1") == []

    @pytest.mark.asyncio
    async def test_channel_outage_does_not_block_timeout(self, store, channel):
        channel.available = False
        await store.create_job("job-1")

        supervisor = make_supervisor(store, None, channel, job_stall_timeout=300)
        report = await supervisor.sweep(now=utcnow() + timedelta(seconds=600))

        assert report.timed_out_jobs == ["job-1"]
        assert (await store.read_summary("job-1")).status == JobStatus.FAILED


class TestSweepLoop:
    """Loop lifecycle and step isolation."""

    @pytest.mark.asyncio
    async def test_failing_step_does_not_stop_others(self, store, channel, engine):
        await store.create_job("done")
        await store.append("done", EventKind.COMPLETE, complete_payload("ok"))

        async def broken(now, before):
            raise RuntimeError("index scan failed")

        supervisor = make_supervisor(store, engine, channel, grace_period=0)
        supervisor.evict_idle_subscriptions = broken

        report = await supervisor.sweep(now=utcnow() + timedelta(seconds=1))

        assert report.failed_steps == ["idle_subscriptions"]
        assert report.expired_jobs == ["done"]
        assert supervisor.sweeps == 1

    @pytest.mark.asyncio
    async def test_start_and_stop(self, store, channel, engine):
        supervisor = make_supervisor(store, engine, channel, sweep_interval=0.02)

        supervisor.start()
        assert supervisor.running
        for _ in range(100):
            if supervisor.sweeps >= 2:
                break
            await asyncio.sleep(0.02)
        await supervisor.stop()

        assert supervisor.sweeps >= 2
        assert not supervisor.running
        assert isinstance(supervisor.last_report, SweepReport)
        assert supervisor.last_report.empty
