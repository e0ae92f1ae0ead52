"""
PostgreSQL event log store (asyncpg).

Durable across broadcaster restarts and shared by every worker and
fan-out process. Sequence numbers are assigned inside one transaction
that locks the job's summary row, so concurrent appenders for the same
job serialize while different jobs never contend.

Usage:
    store = await PostgresEventLogStore.create(config.store.database_url)
    event = await store.append(job_id, EventKind.LOG, "Downloading inputs")
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Optional

import asyncpg

from core.errors import JobAlreadyExists, JobAlreadyTerminal, JobNotFound, StoreUnavailable
from services.events import EventKind, JobEvent, JobStatus, JobSummary

from .base import EventLogStore

logger = logging.getLogger(__name__)


SCHEMA = """
CREATE TABLE IF NOT EXISTS job_streams (
    job_id TEXT PRIMARY KEY,
    status TEXT NOT NULL DEFAULT 'PENDING',
    percent DOUBLE PRECISION NOT NULL DEFAULT 0,
    message TEXT NOT NULL DEFAULT '',
    last_seq INTEGER NOT NULL DEFAULT 0,
    result JSONB,
    error TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    terminal_at TIMESTAMPTZ
);

CREATE TABLE IF NOT EXISTS job_stream_events (
    job_id TEXT NOT NULL REFERENCES job_streams (job_id) ON DELETE CASCADE,
    seq INTEGER NOT NULL,
    kind TEXT NOT NULL,
    payload JSONB,
    created_at TIMESTAMPTZ NOT NULL,
    PRIMARY KEY (job_id, seq)
);

CREATE INDEX IF NOT EXISTS idx_job_streams_terminal_at
    ON job_streams (terminal_at) WHERE terminal_at IS NOT NULL;

CREATE INDEX IF NOT EXISTS idx_job_streams_active
    ON job_streams (updated_at) WHERE terminal_at IS NULL;
"""

# Connection-level failures; constraint violations are mapped explicitly
_UNAVAILABLE_ERRORS = (
    asyncpg.InterfaceError,
    asyncpg.PostgresError,
    OSError,
    asyncio.TimeoutError,
)


def _summary_from_row(row: Any) -> JobSummary:
    result = row["result"]
    return JobSummary(
        job_id=row["job_id"],
        status=JobStatus(row["status"]),
        percent=float(row["percent"]),
        message=row["message"],
        last_seq=row["last_seq"],
        result=json.loads(result) if result is not None else None,
        error=row["error"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        terminal_at=row["terminal_at"],
    )


def _event_from_row(row: Any) -> JobEvent:
    payload = row["payload"]
    return JobEvent(
        job_id=row["job_id"],
        seq=row["seq"],
        kind=EventKind(row["kind"]),
        payload=json.loads(payload) if payload is not None else None,
        created_at=row["created_at"],
    )


class PostgresEventLogStore(EventLogStore):
    """Event log persisted in two tables: job_streams and job_stream_events."""

    def __init__(self, db_pool: asyncpg.Pool):
        self.db_pool = db_pool

    @classmethod
    async def create(
        cls,
        database_url: str,
        min_size: int = 2,
        max_size: int = 10,
    ) -> "PostgresEventLogStore":
        """Open a pool and make sure the schema exists."""
        try:
            db_pool = await asyncpg.create_pool(database_url, min_size=min_size, max_size=max_size)
        except _UNAVAILABLE_ERRORS as e:
            raise StoreUnavailable(f"Cannot connect to event log database: {e}") from e
        store = cls(db_pool)
        await store.ensure_schema()
        return store

    @asynccontextmanager
    async def _connection(self):
        """Acquire a connection, translating driver failures to StoreUnavailable."""
        try:
            async with self.db_pool.acquire() as conn:
                yield conn
        except (JobNotFound, JobAlreadyExists, JobAlreadyTerminal):
            raise
        except _UNAVAILABLE_ERRORS as e:
            logger.warning(f"Event log store unavailable: {e!r}")
            raise StoreUnavailable(str(e)) from e

    async def ensure_schema(self) -> None:
        async with self._connection() as conn:
            await conn.execute(SCHEMA)

    async def create_job(self, job_id: str) -> JobSummary:
        async with self._connection() as conn:
            try:
                row = await conn.fetchrow(
                    """
                    INSERT INTO job_streams (job_id) VALUES ($1)
                    RETURNING *
                    """,
                    job_id,
                )
            except asyncpg.UniqueViolationError:
                raise JobAlreadyExists(job_id)

        logger.debug(f"Created log for job {job_id}")
        return _summary_from_row(row)

    async def append(self, job_id: str, kind: EventKind, payload: Any = None) -> JobEvent:
        async with self._connection() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    "SELECT * FROM job_streams WHERE job_id = $1 FOR UPDATE",
                    job_id,
                )
                if row is None:
                    raise JobNotFound(job_id)

                summary = _summary_from_row(row)
                if summary.status.is_terminal:
                    raise JobAlreadyTerminal(job_id, summary.status.value)

                event = JobEvent(
                    job_id=job_id,
                    seq=summary.last_seq + 1,
                    kind=kind,
                    payload=payload,
                )
                summary.apply(event)

                await conn.execute(
                    """
                    INSERT INTO job_stream_events (job_id, seq, kind, payload, created_at)
                    VALUES ($1, $2, $3, $4::jsonb, $5)
                    """,
                    job_id,
                    event.seq,
                    event.kind.value,
                    json.dumps(event.payload),
                    event.created_at,
                )
                await conn.execute(
                    """
                    UPDATE job_streams SET
                        status = $2,
                        percent = $3,
                        message = $4,
                        last_seq = $5,
                        result = $6::jsonb,
                        error = $7,
                        updated_at = $8,
                        terminal_at = $9
                    WHERE job_id = $1
                    """,
                    job_id,
                    summary.status.value,
                    summary.percent,
                    summary.message,
                    summary.last_seq,
                    json.dumps(summary.result) if summary.result is not None else None,
                    summary.error,
                    summary.updated_at,
                    summary.terminal_at,
                )

        return event

    async def mark_running(self, job_id: str) -> JobSummary:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                """
                UPDATE job_streams
                SET status = 'RUNNING', updated_at = NOW()
                WHERE job_id = $1 AND status = 'PENDING'
                RETURNING *
                """,
                job_id,
            )
            if row is None:
                row = await conn.fetchrow("SELECT * FROM job_streams WHERE job_id = $1", job_id)

        if row is None:
            raise JobNotFound(job_id)
        summary = _summary_from_row(row)
        if summary.status.is_terminal:
            raise JobAlreadyTerminal(job_id, summary.status.value)
        return summary

    async def read_from(
        self,
        job_id: str,
        after_seq: int = 0,
        limit: Optional[int] = None,
    ) -> list[JobEvent]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                """
                SELECT job_id, seq, kind, payload, created_at
                FROM job_stream_events
                WHERE job_id = $1 AND seq > $2
                ORDER BY seq ASC
                LIMIT $3
                """,
                job_id,
                after_seq,
                limit,
            )
        return [_event_from_row(row) for row in rows]

    async def read_summary(self, job_id: str) -> Optional[JobSummary]:
        async with self._connection() as conn:
            row = await conn.fetchrow("SELECT * FROM job_streams WHERE job_id = $1", job_id)
        return _summary_from_row(row) if row else None

    async def remove(self, job_id: str) -> bool:
        async with self._connection() as conn:
            # Events go with the summary row via ON DELETE CASCADE
            deleted = await conn.fetchval(
                "DELETE FROM job_streams WHERE job_id = $1 RETURNING job_id",
                job_id,
            )
        if deleted:
            logger.debug(f"Removed log for job {job_id}")
        return deleted is not None

    async def expired_jobs(self, terminal_before: datetime) -> list[str]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                """
                SELECT job_id FROM job_streams
                WHERE terminal_at IS NOT NULL AND terminal_at < $1
                ORDER BY terminal_at ASC
                """,
                terminal_before,
            )
        return [row["job_id"] for row in rows]

    async def stalled_jobs(self, active_before: datetime) -> list[str]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                """
                SELECT job_id FROM job_streams
                WHERE terminal_at IS NULL AND updated_at < $1
                ORDER BY updated_at ASC
                """,
                active_before,
            )
        return [row["job_id"] for row in rows]

    async def close(self) -> None:
        await self.db_pool.close()
