"""
In-process publish channel for tests and single-process deployments.
"""

import logging

from core.errors import ChannelUnavailable

from .base import PublishChannel

logger = logging.getLogger(__name__)


class MemoryPublishChannel(PublishChannel):
    """
    Local pub/sub where publish dispatches synchronously to subscribers.

    Setting `available = False` simulates an outage: publish and
    subscribe raise ChannelUnavailable and existing subscriptions close.
    """

    def __init__(self, queue_size: int = 64):
        super().__init__(queue_size=queue_size)
        self._available = True
        self.published = 0

    @property
    def available(self) -> bool:
        return self._available

    @available.setter
    def available(self, value: bool) -> None:
        self._available = value
        if not value:
            logger.warning("Memory publish channel marked unavailable")
            self._close_all()

    async def publish(self, job_id: str, seq: int) -> None:
        if not self._available:
            raise ChannelUnavailable("memory channel unavailable")
        self.published += 1
        self._dispatch(job_id, seq)

    async def subscribe(self, job_id: str):
        if not self._available:
            raise ChannelUnavailable("memory channel unavailable")
        return await super().subscribe(job_id)
