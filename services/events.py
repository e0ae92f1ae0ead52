"""
Job Events and Summary Projection

Defines the immutable, sequence-numbered events that make up a job's log,
the summary projection derived from them, and their Server-Sent Events
wire format.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

logger = logging.getLogger(__name__)

KEEPALIVE_FRAME = ": keep-alive\n\n"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EventKind(str, Enum):
    """Types of job events."""

    PROGRESS = "progress"
    LOG = "log"

    # Terminal events
    COMPLETE = "complete"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (EventKind.COMPLETE, EventKind.ERROR)


class JobStatus(str, Enum):
    """Job lifecycle: PENDING -> RUNNING -> {COMPLETED | FAILED}."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


def progress_payload(
    percent: float,
    message: str = "",
    status: JobStatus = JobStatus.RUNNING,
) -> dict[str, Any]:
    return {"progress": percent, "status": status.value, "message": message}


def complete_payload(result: Any = None, message: str = "Job completed") -> dict[str, Any]:
    return {"result": result, "message": message}


def error_payload(reason: str, code: Optional[str] = None) -> dict[str, Any]:
    payload: dict[str, Any] = {"error": reason}
    if code:
        payload["code"] = code
    return payload


@dataclass(frozen=True)
class JobEvent:
    """One immutable entry of a job's event log."""

    job_id: str
    seq: int
    kind: EventKind
    payload: Any = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.kind.is_terminal

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "seq": self.seq,
            "kind": self.kind.value,
            "payload": self.payload,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "JobEvent":
        created_at = data.get("created_at")
        if isinstance(created_at, str):
            created_at = datetime.fromisoformat(created_at)
        return cls(
            job_id=data["job_id"],
            seq=int(data["seq"]),
            kind=EventKind(data["kind"]),
            payload=data.get("payload"),
            created_at=created_at or utcnow(),
        )

    def to_sse(self) -> str:
        """Format as SSE message. The sequence number is the event id."""
        json_data = json.dumps(self.payload)
        return f"id: {self.seq}\nevent: {self.kind.value}\ndata: {json_data}\n\n"


def sse_retry(retry_ms: int) -> str:
    """Reconnection hint telling clients how long to wait before retrying."""
    return f"retry: {retry_ms}\n\n"


def sse_comment(text: str) -> str:
    return f": {text}\n\n"


@dataclass
class JobSummary:
    """
    Current state of a job, derived from its event log.

    Every field except the creation timestamp is recomputable by
    applying the log's events in order; stores persist it only so the
    fallback status query and connect validation are a single read.
    """

    job_id: str
    status: JobStatus = JobStatus.PENDING
    percent: float = 0.0
    message: str = ""
    last_seq: int = 0
    result: Any = None
    error: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    terminal_at: Optional[datetime] = None

    def apply(self, event: JobEvent) -> None:
        """Fold one event into the summary."""
        if event.seq != self.last_seq + 1:
            raise ValueError(
                f"Event {event.seq} does not follow seq {self.last_seq} for job {self.job_id}"
            )

        if event.kind == EventKind.PROGRESS:
            payload = event.payload or {}
            self.status = JobStatus.RUNNING
            self.percent = max(self.percent, float(payload.get("progress", self.percent)))
            self.message = payload.get("message", self.message)

        elif event.kind == EventKind.LOG:
            if self.status == JobStatus.PENDING:
                self.status = JobStatus.RUNNING

        elif event.kind == EventKind.COMPLETE:
            payload = event.payload or {}
            self.status = JobStatus.COMPLETED
            self.percent = 100.0
            self.result = payload.get("result")
            self.message = payload.get("message") or "Job completed"
            self.terminal_at = event.created_at

        elif event.kind == EventKind.ERROR:
            payload = event.payload or {}
            self.status = JobStatus.FAILED
            self.error = payload.get("error", "Job failed")
            self.message = self.error
            self.terminal_at = event.created_at

        self.last_seq = event.seq
        self.updated_at = event.created_at

    @classmethod
    def replay(cls, job_id: str, events: list[JobEvent]) -> "JobSummary":
        """Recompute a summary from scratch."""
        summary = cls(job_id=job_id)
        for event in events:
            summary.apply(event)
        return summary

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "status": self.status.value,
            "percent": round(self.percent, 1),
            "message": self.message,
            "last_event_id": self.last_seq,
            "result": self.result,
            "error": self.error,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "terminal_at": self.terminal_at.isoformat() if self.terminal_at else None,
        }
