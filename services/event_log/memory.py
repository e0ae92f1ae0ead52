"""
In-process event log store.

Used by tests and single-process deployments. Not durable across
restarts; use PostgresEventLogStore when broadcaster processes must be
able to restart without losing job logs.
"""

import asyncio
import dataclasses
import logging
from datetime import datetime
from typing import Any, Optional

from core.errors import JobAlreadyExists, JobAlreadyTerminal, JobNotFound
from services.events import EventKind, JobEvent, JobStatus, JobSummary, utcnow

from .base import EventLogStore

logger = logging.getLogger(__name__)


class MemoryEventLogStore(EventLogStore):
    """
    Dictionary-backed event log.

    Usage:
        store = MemoryEventLogStore()
        await store.create_job("job-1")
        event = await store.append("job-1", EventKind.PROGRESS, {...})
        backlog = await store.read_from("job-1", after_seq=0)
    """

    def __init__(self):
        self._events: dict[str, list[JobEvent]] = {}  # job_id -> events, index i holds seq i+1
        self._summaries: dict[str, JobSummary] = {}  # job_id -> summary
        self._lock = asyncio.Lock()

    async def create_job(self, job_id: str) -> JobSummary:
        async with self._lock:
            if job_id in self._summaries:
                raise JobAlreadyExists(job_id)
            summary = JobSummary(job_id=job_id)
            self._summaries[job_id] = summary
            self._events[job_id] = []
            logger.debug(f"Created log for job {job_id}")
            return dataclasses.replace(summary)

    async def append(self, job_id: str, kind: EventKind, payload: Any = None) -> JobEvent:
        async with self._lock:
            summary = self._summaries.get(job_id)
            if summary is None:
                raise JobNotFound(job_id)
            if summary.status.is_terminal:
                raise JobAlreadyTerminal(job_id, summary.status.value)

            event = JobEvent(
                job_id=job_id,
                seq=summary.last_seq + 1,
                kind=kind,
                payload=payload,
            )
            summary.apply(event)
            self._events[job_id].append(event)
            return event

    async def mark_running(self, job_id: str) -> JobSummary:
        async with self._lock:
            summary = self._summaries.get(job_id)
            if summary is None:
                raise JobNotFound(job_id)
            if summary.status.is_terminal:
                raise JobAlreadyTerminal(job_id, summary.status.value)
            if summary.status == JobStatus.PENDING:
                summary.status = JobStatus.RUNNING
                summary.updated_at = utcnow()
            return dataclasses.replace(summary)

    async def read_from(
        self,
        job_id: str,
        after_seq: int = 0,
        limit: Optional[int] = None,
    ) -> list[JobEvent]:
        events = self._events.get(job_id, [])
        start = max(after_seq, 0)
        end = len(events) if limit is None else start + limit
        return events[start:end]

    async def read_summary(self, job_id: str) -> Optional[JobSummary]:
        summary = self._summaries.get(job_id)
        return dataclasses.replace(summary) if summary else None

    async def remove(self, job_id: str) -> bool:
        async with self._lock:
            self._events.pop(job_id, None)
            removed = self._summaries.pop(job_id, None) is not None
        if removed:
            logger.debug(f"Removed log for job {job_id}")
        return removed

    async def expired_jobs(self, terminal_before: datetime) -> list[str]:
        return [
            job_id
            for job_id, summary in self._summaries.items()
            if summary.terminal_at is not None and summary.terminal_at < terminal_before
        ]

    async def stalled_jobs(self, active_before: datetime) -> list[str]:
        return [
            job_id
            for job_id, summary in self._summaries.items()
            if not summary.status.is_terminal and summary.updated_at < active_before
        ]

    def job_count(self) -> int:
        return len(self._summaries)
