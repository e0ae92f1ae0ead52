"""
Job runner: executes job handlers in the background and guarantees that
every job it starts ends with exactly one terminal event.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional
from uuid import uuid4

from core.circuit_breaker import CircuitBreaker, get_channel_breaker
from core.config import WorkerConfig
from core.errors import JobExecutionFailure, StoreUnavailable
from services.channel.base import PublishChannel
from services.event_log.base import EventLogStore
from services.events import JobStatus

from .pipeline import JobPipeline

logger = logging.getLogger(__name__)

# A handler receives its pipeline, reports progress through it and
# returns the job's result.
JobHandler = Callable[[JobPipeline], Awaitable[Any]]


async def run_job(pipeline: JobPipeline, handler: JobHandler) -> JobStatus:
    """
    Run a handler to completion and record its outcome.

    A returned value becomes the `complete` event's result. A raised
    JobExecutionFailure becomes the `error` event, as does any other
    exception (logged with traceback first).
    """
    try:
        await pipeline.start()
        result = await handler(pipeline)
    except JobExecutionFailure as e:
        logger.warning(f"Job {pipeline.job_id} failed: {e.reason}")
        await _record_failure(pipeline, e.reason, e.code)
    except StoreUnavailable as e:
        logger.error(f"Job {pipeline.job_id} aborted: event log unavailable")
        if not pipeline.is_terminal:
            await _record_failure(pipeline, f"Event log unavailable: {e}", "store_unavailable")
    except asyncio.CancelledError:
        logger.warning(f"Job {pipeline.job_id} cancelled")
        await _record_failure(pipeline, "Job cancelled", "cancelled")
        raise
    except Exception as e:
        logger.exception(f"Job {pipeline.job_id} crashed: {e}")
        await _record_failure(pipeline, f"Job crashed: {e}", "internal_error")
    else:
        if not pipeline.is_terminal:
            await pipeline.complete(result)

    return pipeline.status


async def _record_failure(pipeline: JobPipeline, reason: str, code: Optional[str]) -> None:
    try:
        await pipeline.fail(reason, code)
    except StoreUnavailable as e:
        logger.error(f"Job {pipeline.job_id}: failure could not be recorded: {e}")


class JobRunner:
    """
    Background executor for submitted jobs.

    Usage:
        runner = JobRunner(store, channel)
        job_id = await runner.submit(handler)
        ...
        await runner.stop()
    """

    def __init__(
        self,
        store: EventLogStore,
        channel: PublishChannel,
        config: Optional[WorkerConfig] = None,
        breaker: Optional[CircuitBreaker] = None,
    ):
        self.store = store
        self.channel = channel
        self.config = config or WorkerConfig()
        self.breaker = breaker or get_channel_breaker()

        self._running_tasks: dict[str, asyncio.Task] = {}  # job_id -> task

    @property
    def running_jobs(self) -> list[str]:
        return list(self._running_tasks)

    async def submit(self, handler: JobHandler, job_id: Optional[str] = None) -> str:
        """
        Create the job's log and start its handler.

        Raises JobAlreadyExists for a duplicate job_id and StoreUnavailable
        when the log cannot be created; in both cases nothing runs.
        """
        job_id = job_id or str(uuid4())
        await self.store.create_job(job_id)

        pipeline = JobPipeline(
            job_id,
            self.store,
            self.channel,
            config=self.config,
            breaker=self.breaker,
        )
        task = asyncio.create_task(self._run(pipeline, handler), name=f"job-{job_id}")
        self._running_tasks[job_id] = task

        logger.info(f"Submitted job {job_id}")
        return job_id

    async def _run(self, pipeline: JobPipeline, handler: JobHandler) -> JobStatus:
        try:
            return await run_job(pipeline, handler)
        finally:
            self._running_tasks.pop(pipeline.job_id, None)

    async def wait(self, job_id: str) -> Optional[JobStatus]:
        """Wait for a running job; None if it is not running here."""
        task = self._running_tasks.get(job_id)
        if task is None:
            return None
        return await task

    async def stop(self) -> None:
        """Cancel running jobs. Each one records a `cancelled` error event."""
        tasks = list(self._running_tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info(f"Cancelled {len(tasks)} running jobs")
        self._running_tasks.clear()
