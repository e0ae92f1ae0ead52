"""
Event Log Store interface.

One append-only log per job plus the job's summary projection. The
store is the only durable, cross-process state: ordering, resumption
and the fallback status query all read from it.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

from services.events import EventKind, JobEvent, JobSummary


class EventLogStore(ABC):
    """
    Contract shared by every log backend.

    append() must assign sequence numbers atomically per job even under
    concurrent callers, and must reject appends after a terminal event.
    Readers never observe a partially written event.
    """

    @abstractmethod
    async def create_job(self, job_id: str) -> JobSummary:
        """Create an empty log with a PENDING summary. Raises JobAlreadyExists."""

    @abstractmethod
    async def append(self, job_id: str, kind: EventKind, payload: Any = None) -> JobEvent:
        """
        Append one event and fold it into the summary.

        Raises:
            JobNotFound: the job does not exist
            JobAlreadyTerminal: a complete/error event was already appended
            StoreUnavailable: the backend could not be reached
        """

    @abstractmethod
    async def mark_running(self, job_id: str) -> JobSummary:
        """Move a PENDING job to RUNNING without appending an event."""

    @abstractmethod
    async def read_from(
        self,
        job_id: str,
        after_seq: int = 0,
        limit: Optional[int] = None,
    ) -> list[JobEvent]:
        """Events with seq > after_seq in ascending order. Unknown job -> []."""

    @abstractmethod
    async def read_summary(self, job_id: str) -> Optional[JobSummary]:
        """Current summary, or None when the job is unknown or expired."""

    @abstractmethod
    async def remove(self, job_id: str) -> bool:
        """Delete all events and the summary. Unknown job is a no-op returning False."""

    @abstractmethod
    async def expired_jobs(self, terminal_before: datetime) -> list[str]:
        """Ids of terminal jobs whose terminal event is older than the cutoff."""

    @abstractmethod
    async def stalled_jobs(self, active_before: datetime) -> list[str]:
        """Ids of PENDING/RUNNING jobs whose summary was last updated before the cutoff."""

    async def close(self) -> None:
        """Release backend resources."""
