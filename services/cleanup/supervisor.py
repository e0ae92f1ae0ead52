"""
Cleanup Supervisor

Background sweep reclaiming what the other components do not reclaim
themselves:

- subscriptions with no delivery or keep-alive for `idle_timeout`
- job logs whose terminal event is older than `grace_period`
- jobs stuck in PENDING/RUNNING for `job_stall_timeout` (a worker died
  without reporting); they get a synthesized `error` event so attached
  clients are not left waiting

Each step is best-effort. A failed or missed sweep delays reclamation
and never corrupts state.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Optional

from core.circuit_breaker import CircuitBreaker, CircuitBreakerOpen, get_channel_breaker
from core.config import CleanupConfig
from core.errors import ChannelUnavailable, JobAlreadyTerminal, JobNotFound
from services.channel.base import PublishChannel
from services.event_log.base import EventLogStore
from services.events import EventKind, error_payload, utcnow

if TYPE_CHECKING:
    from services.streaming.fanout import FanOutEngine

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    """What one sweep reclaimed."""

    evicted_subscriptions: list[str] = field(default_factory=list)
    expired_jobs: list[str] = field(default_factory=list)
    timed_out_jobs: list[str] = field(default_factory=list)
    failed_steps: list[str] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not (self.evicted_subscriptions or self.expired_jobs or self.timed_out_jobs)

    def to_dict(self) -> dict:
        return {
            "evicted_subscriptions": len(self.evicted_subscriptions),
            "expired_jobs": len(self.expired_jobs),
            "timed_out_jobs": len(self.timed_out_jobs),
            "failed_steps": self.failed_steps,
        }


class CleanupSupervisor:
    """
    Periodic reclamation loop.

    Usage:
        supervisor = CleanupSupervisor(store, engine, channel)
        supervisor.start()
        ...
        await supervisor.stop()
    """

    def __init__(
        self,
        store: EventLogStore,
        engine: Optional["FanOutEngine"] = None,
        channel: Optional[PublishChannel] = None,
        config: Optional[CleanupConfig] = None,
        breaker: Optional[CircuitBreaker] = None,
    ):
        self.store = store
        self.engine = engine
        self.channel = channel
        self.config = config or CleanupConfig()
        self.breaker = breaker or get_channel_breaker()

        self._task: Optional[asyncio.Task] = None
        self.sweeps = 0
        self.last_report: Optional[SweepReport] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._sweep_loop(), name="cleanup-supervisor")
        logger.info(f"Cleanup supervisor started (every {self.config.sweep_interval}s)")

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Cleanup supervisor stopped")

    async def _sweep_loop(self):
        while True:
            await asyncio.sleep(self.config.sweep_interval)
            try:
                await self.sweep()
            except Exception as e:
                logger.exception(f"Cleanup sweep failed: {e}")

    async def sweep(self, now: Optional[datetime] = None) -> SweepReport:
        """Run one reclamation pass. `now` is overridable for tests."""
        now = now or utcnow()
        report = SweepReport()

        steps = [
            ("idle_subscriptions", self.evict_idle_subscriptions),
            ("expired_jobs", self.expire_terminal_jobs),
            ("stalled_jobs", self.fail_stalled_jobs),
        ]
        for name, step in steps:
            try:
                await step(now, report)
            except Exception as e:
                # Next sweep retries
                logger.exception(f"Cleanup step {name} failed: {e}")
                report.failed_steps.append(name)

        self.sweeps += 1
        self.last_report = report
        if not report.empty:
            logger.info(
                f"Sweep reclaimed {len(report.evicted_subscriptions)} subscriptions, "
                f"{len(report.expired_jobs)} job logs, timed out {len(report.timed_out_jobs)} jobs"
            )
        return report

    async def evict_idle_subscriptions(self, now: datetime, report: SweepReport) -> None:
        if self.engine is None:
            return
        for subscription in self.engine.registry.idle(self.config.idle_timeout, now=time.monotonic()):
            self.engine.evict(subscription, "idle")
            report.evicted_subscriptions.append(subscription.subscription_id)

    async def expire_terminal_jobs(self, now: datetime, report: SweepReport) -> None:
        cutoff = now - timedelta(seconds=self.config.grace_period)
        for job_id in await self.store.expired_jobs(cutoff):
            if await self.store.remove(job_id):
                logger.info(f"Expired log for job {job_id}")
                report.expired_jobs.append(job_id)

    async def fail_stalled_jobs(self, now: datetime, report: SweepReport) -> None:
        timeout = self.config.job_stall_timeout
        if not timeout:
            return

        cutoff = now - timedelta(seconds=timeout)
        for job_id in await self.store.stalled_jobs(cutoff):
            try:
                event = await self.store.append(
                    job_id,
                    EventKind.ERROR,
                    error_payload(f"Job timed out after {timeout:.0f}s without progress", code="timeout"),
                )
            except (JobAlreadyTerminal, JobNotFound):
                # Finished or expired since the query
                continue

            logger.warning(f"Job {job_id} stalled; recorded timeout error as event {event.seq}")
            report.timed_out_jobs.append(job_id)
            await self._publish(job_id, event.seq)

    async def _publish(self, job_id: str, seq: int) -> None:
        if self.engine is not None:
            self.engine.notify(job_id)
        if self.channel is None:
            return
        try:
            await self.breaker.call(self.channel.publish, job_id, seq)
        except (ChannelUnavailable, CircuitBreakerOpen, asyncio.TimeoutError) as e:
            logger.debug(f"Timeout notification for job {job_id} not published: {e!r}")
