"""
PostgreSQL LISTEN/NOTIFY publish channel (asyncpg).

Workers call pg_notify on a single channel with a "job_id:seq" payload.
Each fan-out process holds one LISTEN connection and dispatches to its
local per-job subscriptions. NOTIFY is fire-and-forget, which matches the
at-most-once contract of the channel.

Usage:
    channel = PostgresPublishChannel(db_pool)
    await channel.publish(job_id, event.seq)
    subscription = await channel.subscribe(job_id)
"""

import asyncio
import logging
from typing import Optional

import asyncpg

from core.errors import ChannelUnavailable

from .base import ChannelSubscription, PublishChannel

logger = logging.getLogger(__name__)

CHANNEL_NAME = "job_stream_events"


def encode_notification(job_id: str, seq: int) -> str:
    return f"{job_id}:{seq}"


def decode_notification(payload: str) -> tuple[str, int]:
    """Split "job_id:seq"; job ids may themselves contain colons."""
    job_id, _, seq = payload.rpartition(":")
    if not job_id:
        raise ValueError(f"Malformed notification payload: {payload!r}")
    return job_id, int(seq)


class PostgresPublishChannel(PublishChannel):
    """Publish channel over LISTEN/NOTIFY on a shared asyncpg pool."""

    def __init__(
        self,
        db_pool: asyncpg.Pool,
        channel_name: str = CHANNEL_NAME,
        queue_size: int = 64,
    ):
        super().__init__(queue_size=queue_size)
        self.db_pool = db_pool
        self.channel_name = channel_name
        self._listener: Optional[asyncpg.Connection] = None
        self._listener_lock = asyncio.Lock()

    async def publish(self, job_id: str, seq: int) -> None:
        try:
            await self.db_pool.execute(
                "SELECT pg_notify($1, $2)",
                self.channel_name,
                encode_notification(job_id, seq),
            )
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            raise ChannelUnavailable(f"pg_notify failed: {e}") from e

    async def subscribe(self, job_id: str) -> ChannelSubscription:
        await self._ensure_listener()
        return await super().subscribe(job_id)

    async def _ensure_listener(self) -> None:
        async with self._listener_lock:
            if self._listener is not None and not self._listener.is_closed():
                return
            try:
                conn = await self.db_pool.acquire()
            except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
                raise ChannelUnavailable(f"Cannot acquire listener connection: {e}") from e
            try:
                await conn.add_listener(self.channel_name, self._on_notify)
            except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
                await self.db_pool.release(conn)
                raise ChannelUnavailable(f"LISTEN {self.channel_name} failed: {e}") from e
            conn.add_termination_listener(self._on_terminated)
            self._listener = conn
            logger.info(f"Listening for job notifications on '{self.channel_name}'")

    def _on_notify(self, connection, pid: int, channel: str, payload: str) -> None:
        try:
            job_id, seq = decode_notification(payload)
        except ValueError as e:
            logger.warning(str(e))
            return
        self._dispatch(job_id, seq)

    def _on_terminated(self, connection) -> None:
        # Subscribers see their subscription close and fall back to polling
        logger.warning("Notification listener connection lost; closing local subscriptions")
        self._listener = None
        self._close_all()

    async def close(self) -> None:
        self._close_all()
        if self._listener is not None:
            listener, self._listener = self._listener, None
            try:
                await listener.remove_listener(self.channel_name, self._on_notify)
            except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
                logger.debug(f"Ignoring error while removing listener: {e!r}")
            await self.db_pool.release(listener)
