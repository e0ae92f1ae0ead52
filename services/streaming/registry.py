"""
Connection Registry

Process-local record of which clients are attached to which jobs. Purely
a cache of "who is connected here": all ordering and durable state live
in the event log store.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional, Union
from uuid import uuid4

from services.events import JobEvent, utcnow

logger = logging.getLogger(__name__)


class _KeepAlive:
    def __repr__(self) -> str:
        return "KEEPALIVE"


# Returned by Subscription.next() when nothing arrived within the timeout
KEEPALIVE = _KeepAlive()


@dataclass(eq=False)
class Subscription:
    """
    One client's attachment to a job's event stream.

    `last_seq` is the bookmark of the last event written to the client;
    `queued_seq` is the last event handed to the outbound buffer. Both
    only ever move forward.
    """

    job_id: str
    last_seq: int = 0
    buffer_size: int = 256
    user_agent: str = ""

    subscription_id: str = field(default_factory=lambda: uuid4().hex)
    registered_at: datetime = field(default_factory=utcnow)
    last_activity: float = field(default_factory=time.monotonic)

    queued_seq: int = 0
    attached: bool = False
    closed: bool = False
    close_reason: Optional[str] = None
    delivering: bool = False
    evicted: bool = False
    task: Optional[asyncio.Task] = field(default=None, repr=False)
    queue: asyncio.Queue = field(init=False, repr=False)

    def __post_init__(self):
        self.queue = asyncio.Queue(maxsize=self.buffer_size)
        self.queued_seq = self.last_seq

    def offer(self, events: Iterable[JobEvent]) -> bool:
        """
        Buffer the events this subscription has not seen yet.

        Returns False if the outbound buffer overflowed; the caller must
        drop the subscription.
        """
        if self.closed:
            return True
        for event in events:
            if event.seq <= self.queued_seq:
                continue
            if event.seq != self.queued_seq + 1:
                break
            try:
                self.queue.put_nowait(event)
            except asyncio.QueueFull:
                return False
            self.queued_seq = event.seq
        return True

    async def next(self, timeout: Optional[float] = None) -> Union[JobEvent, _KeepAlive, None]:
        """Next buffered event, KEEPALIVE on timeout, None once closed."""
        if self.closed and self.queue.empty():
            return None
        try:
            return await asyncio.wait_for(self.queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return KEEPALIVE

    def mark_delivered(self, seq: int) -> None:
        self.last_seq = max(self.last_seq, seq)
        self.queued_seq = max(self.queued_seq, self.last_seq)
        self.touch()

    def touch(self) -> None:
        self.last_activity = time.monotonic()

    def idle_for(self, now: Optional[float] = None) -> float:
        return (now if now is not None else time.monotonic()) - self.last_activity

    def close(self, reason: str) -> None:
        """Release the buffer and wake the delivery loop. Idempotent."""
        if self.closed:
            return
        self.closed = True
        self.close_reason = reason
        self.attached = False
        while not self.queue.empty():
            self.queue.get_nowait()
        self.queue.put_nowait(None)


class ConnectionRegistry:
    """Subscriptions indexed by id and by job."""

    def __init__(self):
        self._subscriptions: dict[str, Subscription] = {}  # subscription_id -> subscription
        self._job_subscriptions: dict[str, set[str]] = {}  # job_id -> subscription_ids

    def register(self, subscription: Subscription) -> None:
        self._subscriptions[subscription.subscription_id] = subscription
        self._job_subscriptions.setdefault(subscription.job_id, set()).add(
            subscription.subscription_id
        )

    def unregister(self, subscription: Subscription) -> bool:
        if self._subscriptions.pop(subscription.subscription_id, None) is None:
            return False
        ids = self._job_subscriptions.get(subscription.job_id)
        if ids is not None:
            ids.discard(subscription.subscription_id)
            if not ids:
                del self._job_subscriptions[subscription.job_id]
        return True

    def get(self, subscription_id: str) -> Optional[Subscription]:
        return self._subscriptions.get(subscription_id)

    def for_job(self, job_id: str) -> list[Subscription]:
        return [
            self._subscriptions[sid]
            for sid in self._job_subscriptions.get(job_id, ())
            if sid in self._subscriptions
        ]

    def attached_for_job(self, job_id: str) -> list[Subscription]:
        return [s for s in self.for_job(job_id) if s.attached and not s.closed]

    def idle(self, timeout: float, now: Optional[float] = None) -> list[Subscription]:
        """Subscriptions with no delivery or keep-alive for `timeout` seconds."""
        now = now if now is not None else time.monotonic()
        return [s for s in self._subscriptions.values() if s.idle_for(now) > timeout]

    def job_ids(self) -> list[str]:
        return list(self._job_subscriptions)

    def stats(self) -> dict:
        return {
            "total": len(self._subscriptions),
            "by_job": {
                job_id: len(ids) for job_id, ids in self._job_subscriptions.items()
            },
        }

    def __len__(self) -> int:
        return len(self._subscriptions)

    def __contains__(self, subscription: Subscription) -> bool:
        return subscription.subscription_id in self._subscriptions
