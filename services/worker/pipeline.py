"""
Worker Update Pipeline

Owns one job's writes: every step appends an event to the event log
store, then notifies the publish channel. Execution is a single-writer
state machine PENDING -> RUNNING -> {COMPLETED | FAILED}; terminal states
absorb every later call.
"""

import asyncio
import logging
from typing import Any, Optional

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from core.circuit_breaker import CircuitBreaker, CircuitBreakerOpen, get_channel_breaker
from core.config import WorkerConfig
from core.errors import ChannelUnavailable, JobAlreadyTerminal, StoreUnavailable
from services.channel.base import PublishChannel
from services.event_log.base import EventLogStore
from services.events import (
    EventKind,
    JobEvent,
    JobStatus,
    complete_payload,
    error_payload,
    progress_payload,
)

logger = logging.getLogger(__name__)

_STATUS_AFTER = {
    EventKind.PROGRESS: JobStatus.RUNNING,
    EventKind.LOG: JobStatus.RUNNING,
    EventKind.COMPLETE: JobStatus.COMPLETED,
    EventKind.ERROR: JobStatus.FAILED,
}


class JobPipeline:
    """
    Appends a job's progress, log lines and outcome, and broadcasts them.

    Usage:
        pipeline = JobPipeline(job_id, store, channel)

        await pipeline.start()
        await pipeline.progress(25, "Parsing input")
        await pipeline.log("Parsed 1,204 rows")
        await pipeline.complete({"rows": 1204})

    After complete() or fail() every further call is a no-op that
    returns None.
    """

    def __init__(
        self,
        job_id: str,
        store: EventLogStore,
        channel: PublishChannel,
        config: Optional[WorkerConfig] = None,
        breaker: Optional[CircuitBreaker] = None,
    ):
        self.job_id = job_id
        self.store = store
        self.channel = channel
        self.config = config or WorkerConfig()
        self.breaker = breaker or get_channel_breaker()

        self._status = JobStatus.PENDING
        self._percent = 0.0
        self._lock = asyncio.Lock()
        self.last_event: Optional[JobEvent] = None

    @property
    def status(self) -> JobStatus:
        return self._status

    @property
    def is_terminal(self) -> bool:
        return self._status.is_terminal

    @property
    def percent(self) -> float:
        return self._percent

    async def start(self) -> None:
        """Move the job from PENDING to RUNNING."""
        if self._status != JobStatus.PENDING:
            return

        try:
            summary = await self.store.mark_running(self.job_id)
        except JobAlreadyTerminal as e:
            self._status = JobStatus(e.status)
            logger.warning(f"Job {self.job_id} was already {e.status} before it started")
            return

        self._status = JobStatus.RUNNING
        self._percent = summary.percent
        logger.info(f"Job {self.job_id} running")

    async def progress(self, percent: float, message: str = "") -> Optional[JobEvent]:
        """Record a progress increment. Percent never decreases."""
        if not 0 <= percent <= 100:
            raise ValueError(f"percent must be between 0 and 100, got {percent}")

        if percent < self._percent:
            logger.debug(
                f"Job {self.job_id}: progress {percent} below {self._percent}, clamping"
            )
            percent = self._percent

        event = await self._emit(EventKind.PROGRESS, progress_payload(percent, message))
        if event is not None:
            self._percent = percent
        return event

    async def log(self, line: str) -> Optional[JobEvent]:
        """Record one human-readable log line."""
        return await self._emit(EventKind.LOG, str(line))

    async def complete(self, result: Any = None, message: str = "Job completed") -> Optional[JobEvent]:
        """Record the job's single terminal success event."""
        return await self._emit(EventKind.COMPLETE, complete_payload(result, message))

    async def fail(self, reason: str, code: Optional[str] = None) -> Optional[JobEvent]:
        """Record the job's single terminal failure event."""
        return await self._emit(EventKind.ERROR, error_payload(reason, code))

    async def _emit(self, kind: EventKind, payload: Any) -> Optional[JobEvent]:
        async with self._lock:
            if self._status == JobStatus.PENDING:
                await self.start()

            if self._status.is_terminal:
                logger.debug(
                    f"Job {self.job_id} already {self._status.value}; dropping {kind.value} event"
                )
                return None

            try:
                event = await self._append(kind, payload)
            except JobAlreadyTerminal as e:
                # Someone else closed the log, e.g. the supervisor timed the job out
                self._status = JobStatus(e.status)
                logger.warning(f"Job {self.job_id} was closed externally as {e.status}")
                return None
            except StoreUnavailable as e:
                await self._abort(kind, e)
                raise

            self._status = _STATUS_AFTER[kind]
            self.last_event = event

        await self._publish(event)

        if event.is_terminal:
            logger.info(f"Job {self.job_id} {self._status.value} after {event.seq} events")
        return event

    async def _append(self, kind: EventKind, payload: Any) -> JobEvent:
        """Append with exponential backoff while the store is unavailable."""
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.config.store_retries),
            wait=wait_exponential(
                multiplier=self.config.retry_wait_min,
                max=self.config.retry_wait_max,
            ),
            retry=retry_if_exception_type(StoreUnavailable),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.warning(
                        f"Job {self.job_id}: retrying {kind.value} append "
                        f"(attempt {attempt.retry_state.attempt_number}/{self.config.store_retries})"
                    )
                return await self.store.append(self.job_id, kind, payload)

    async def _abort(self, kind: EventKind, error: StoreUnavailable) -> None:
        """Retries exhausted: fail the job, recording why if the store allows it."""
        self._status = JobStatus.FAILED
        logger.error(f"Job {self.job_id}: event log unavailable while appending {kind.value}: {error}")

        if kind == EventKind.ERROR:
            return

        try:
            event = await self.store.append(
                self.job_id,
                EventKind.ERROR,
                error_payload(f"Event log unavailable: {error}", code="store_unavailable"),
            )
        except (StoreUnavailable, JobAlreadyTerminal) as e:
            logger.error(f"Job {self.job_id}: could not record store failure: {e}")
            return

        self.last_event = event
        await self._publish(event)

    async def _publish(self, event: JobEvent) -> None:
        """Notify fan-out engines. Failures only cost latency, never events."""
        try:
            await self.breaker.call(self.channel.publish, self.job_id, event.seq)
        except CircuitBreakerOpen:
            logger.debug(f"Job {self.job_id}: channel breaker open, skipping notify for {event.seq}")
        except (ChannelUnavailable, asyncio.TimeoutError) as e:
            logger.warning(f"Job {self.job_id}: publish of event {event.seq} failed: {e!r}")
