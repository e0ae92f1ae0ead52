"""
Event Log Store

Append-only per-job event logs plus the derived job summary.

Usage:
    from services.event_log import MemoryEventLogStore

    store = MemoryEventLogStore()
    await store.create_job(job_id)
    event = await store.append(job_id, EventKind.PROGRESS, progress_payload(25, "Parsing"))
    backlog = await store.read_from(job_id, after_seq=last_event_id)
"""

from .base import EventLogStore
from .memory import MemoryEventLogStore
from .postgres import PostgresEventLogStore

__all__ = [
    "EventLogStore",
    "MemoryEventLogStore",
    "PostgresEventLogStore",
]
