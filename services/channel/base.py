"""
Publish Channel interface.

A per-job "something new was appended" signal from workers to fan-out
engines. Delivery is at-most-once and may be dropped or coalesced under
load, so consumers always re-read the event log instead of trusting a
notification's payload.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Notification:
    """A new event exists for job_id at (or after) seq."""

    job_id: str
    seq: int


class ChannelSubscription:
    """
    One consumer's view of a job's notifications.

    Backed by a bounded local queue: when the consumer falls behind,
    further notifications are dropped since a single pending one is
    enough to trigger a log re-read.

    Usage:
        subscription = await channel.subscribe(job_id)
        async with subscription:
            async for notification in subscription:
                ...
    """

    def __init__(self, channel: "PublishChannel", job_id: str, maxsize: int = 64):
        self.channel = channel
        self.job_id = job_id
        self._queue: asyncio.Queue[Optional[Notification]] = asyncio.Queue(maxsize=maxsize)
        self.closed = False
        self.dropped = 0

    def deliver(self, notification: Notification) -> bool:
        if self.closed:
            return False
        try:
            self._queue.put_nowait(notification)
            return True
        except asyncio.QueueFull:
            self.dropped += 1
            return False

    async def get(self, timeout: Optional[float] = None) -> Optional[Notification]:
        """Next notification; None on timeout or once the subscription is closed."""
        if self.closed and self._queue.empty():
            return None
        try:
            return await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    def close(self) -> None:
        """Unsubscribe. Wakes a consumer blocked in get()."""
        if self.closed:
            return
        self.closed = True
        self.channel._discard(self)
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self) -> Notification:
        notification = await self.get()
        if notification is None:
            raise StopAsyncIteration
        return notification

    async def __aenter__(self) -> "ChannelSubscription":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


class PublishChannel(ABC):
    """
    Broadcast primitive with one logical channel per job.

    Subclasses deliver remote notifications to local subscribers through
    _dispatch(); subscriber bookkeeping is shared.
    """

    def __init__(self, queue_size: int = 64):
        self.queue_size = queue_size
        self._subscriptions: dict[str, set[ChannelSubscription]] = {}  # job_id -> subscriptions

    @abstractmethod
    async def publish(self, job_id: str, seq: int) -> None:
        """Notify subscribers of job_id that event seq exists. Raises ChannelUnavailable."""

    async def subscribe(self, job_id: str) -> ChannelSubscription:
        """Start receiving notifications for job_id. Raises ChannelUnavailable."""
        subscription = ChannelSubscription(self, job_id, maxsize=self.queue_size)
        self._subscriptions.setdefault(job_id, set()).add(subscription)
        return subscription

    def _dispatch(self, job_id: str, seq: int) -> int:
        """Hand a notification to every local subscriber of job_id."""
        notification = Notification(job_id=job_id, seq=seq)
        delivered = 0
        for subscription in list(self._subscriptions.get(job_id, ())):
            if subscription.deliver(notification):
                delivered += 1
        return delivered

    def _discard(self, subscription: ChannelSubscription) -> None:
        subscriptions = self._subscriptions.get(subscription.job_id)
        if subscriptions is None:
            return
        subscriptions.discard(subscription)
        if not subscriptions:
            del self._subscriptions[subscription.job_id]

    def _close_all(self) -> None:
        for subscriptions in list(self._subscriptions.values()):
            for subscription in list(subscriptions):
                subscription.close()

    def subscriber_count(self, job_id: Optional[str] = None) -> int:
        if job_id:
            return len(self._subscriptions.get(job_id, ()))
        return sum(len(s) for s in self._subscriptions.values())

    async def close(self) -> None:
        self._close_all()
