"""
Backend construction for the configured store/channel pair.

The Postgres backend shares one asyncpg pool between the event log store
and the LISTEN/NOTIFY channel.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import asyncpg

from core.config import Config
from services.channel import MemoryPublishChannel, PostgresPublishChannel, PublishChannel
from services.event_log import EventLogStore, MemoryEventLogStore, PostgresEventLogStore

logger = logging.getLogger(__name__)


@dataclass
class Backends:
    store: EventLogStore
    channel: PublishChannel
    db_pool: Optional[asyncpg.Pool] = None

    async def close(self) -> None:
        await self.channel.close()
        # Closes the shared pool last, after the listener connection is released
        await self.store.close()


async def build_backends(config: Config) -> Backends:
    """Create the store and channel selected by JOBSTREAM_BACKEND."""
    queue_size = config.stream.channel_queue_size

    if config.store.backend == "memory":
        logger.info("Using in-memory event log and publish channel")
        return Backends(
            store=MemoryEventLogStore(),
            channel=MemoryPublishChannel(queue_size=queue_size),
        )

    if config.store.backend == "postgres":
        store = await PostgresEventLogStore.create(
            config.store.database_url,
            min_size=config.store.pool_min_size,
            max_size=config.store.pool_max_size,
        )
        channel = PostgresPublishChannel(store.db_pool, queue_size=queue_size)
        logger.info("Using PostgreSQL event log and LISTEN/NOTIFY channel")
        return Backends(store=store, channel=channel, db_pool=store.db_pool)

    raise ValueError(f"Unknown backend: {config.store.backend}")
