"""
Fan-Out Engine

Delivers one job's ordered event log to any number of independently
paced clients. Each client first drains its backlog straight from the
event log store, then attaches to a per-job feed that re-reads the store
whenever the publish channel signals activity (or on a poll timer while
the channel is down) and fans new events into every attached
subscription's bounded buffer.

A subscription whose buffer would overflow is evicted; its siblings are
never blocked by it.

Usage:
    engine = FanOutEngine(store, channel)
    subscription = await engine.connect(job_id, last_seen=5)
    async for event in engine.stream(subscription):
        if event is None:
            ...  # keep-alive
        else:
            ...  # write event.to_sse()
"""

import asyncio
import logging
from typing import AsyncIterator, Optional

from core.circuit_breaker import CircuitBreaker, CircuitBreakerOpen, get_channel_breaker
from core.config import StreamConfig
from core.errors import ChannelUnavailable, JobNotFound, StoreUnavailable
from services.channel.base import ChannelSubscription, PublishChannel
from services.event_log.base import EventLogStore
from services.events import JobEvent

from .registry import KEEPALIVE, ConnectionRegistry, Subscription

logger = logging.getLogger(__name__)


class JobFeed:
    """
    Live delivery for one job within this engine.

    Exists while at least one subscription for the job is attached. Reads
    the store once per wake-up for all attached subscriptions, starting
    after the least advanced bookmark.
    """

    def __init__(self, engine: "FanOutEngine", job_id: str):
        self.engine = engine
        self.job_id = job_id
        self.degraded = False
        self.reads = 0

        self._wake = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._listener: Optional[asyncio.Task] = None
        self._channel_subscription: Optional[ChannelSubscription] = None

    def start(self) -> None:
        self._task = asyncio.create_task(self._run(), name=f"feed-{self.job_id}")

    def wake(self) -> None:
        self._wake.set()

    @property
    def done(self) -> bool:
        return self._task is not None and self._task.done()

    async def _run(self) -> None:
        config = self.engine.config
        self._listener = asyncio.create_task(self._listen(), name=f"feed-listen-{self.job_id}")
        try:
            while True:
                if not self.engine.registry.attached_for_job(self.job_id):
                    self.engine._drop_feed(self)
                    break

                await self._deliver()

                interval = config.poll_interval if self.degraded else config.fallback_poll_interval
                try:
                    await asyncio.wait_for(self._wake.wait(), timeout=interval)
                except asyncio.TimeoutError:
                    pass
                self._wake.clear()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"Feed for job {self.job_id} crashed: {e}")
            self.engine._drop_feed(self)
            for subscription in self.engine.registry.attached_for_job(self.job_id):
                self.engine.evict(subscription, "feed_error")
        finally:
            await self._stop_listener()
            logger.debug(f"Feed for job {self.job_id} stopped after {self.reads} reads")

    async def _deliver(self) -> None:
        batch_size = self.engine.config.backlog_batch_size
        while True:
            subscriptions = self.engine.registry.attached_for_job(self.job_id)
            if not subscriptions:
                return

            after_seq = min(s.queued_seq for s in subscriptions)
            try:
                events = await self.engine.store.read_from(
                    self.job_id, after_seq=after_seq, limit=batch_size
                )
            except StoreUnavailable as e:
                # Retried on the next wake-up or poll
                logger.warning(f"Feed for job {self.job_id}: store read failed: {e}")
                return
            self.reads += 1

            if not events:
                return

            for subscription in subscriptions:
                if not subscription.offer(events):
                    self.engine.evict(subscription, "overflow")

            if len(events) < batch_size:
                return

    async def _listen(self) -> None:
        """Turn channel notifications into wake-ups; degrade to polling on outage."""
        config = self.engine.config
        while True:
            try:
                subscription = await self.engine.breaker.call(
                    self.engine.channel.subscribe, self.job_id
                )
            except (ChannelUnavailable, CircuitBreakerOpen, asyncio.TimeoutError) as e:
                if not self.degraded:
                    logger.warning(
                        f"Feed for job {self.job_id}: channel unavailable ({e}), polling store"
                    )
                self.degraded = True
                await asyncio.sleep(config.fallback_poll_interval)
                continue
            except Exception as e:
                logger.exception(f"Feed for job {self.job_id}: channel subscribe failed: {e}")
                self.degraded = True
                self.wake()
                await asyncio.sleep(config.fallback_poll_interval)
                continue

            if self.degraded:
                logger.info(f"Feed for job {self.job_id}: channel restored")
            self.degraded = False
            self._channel_subscription = subscription
            # Catch anything appended before the subscription existed
            self.wake()

            async with subscription:
                async for _ in subscription:
                    self.wake()

            # Closed under us: the channel went away
            self._channel_subscription = None
            self.degraded = True
            self.wake()
            await asyncio.sleep(config.poll_interval)

    async def _stop_listener(self) -> None:
        if self._channel_subscription is not None:
            self._channel_subscription.close()
            self._channel_subscription = None
        if self._listener is not None:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.error(f"Listener for job {self.job_id} failed: {e!r}")
            self._listener = None

    async def stop(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass


class FanOutEngine:
    """
    Connection registry plus per-job feeds.

    Many engine instances may serve the same job: nothing here is shared
    across processes except through the store and the channel.
    """

    def __init__(
        self,
        store: EventLogStore,
        channel: PublishChannel,
        config: Optional[StreamConfig] = None,
        breaker: Optional[CircuitBreaker] = None,
    ):
        self.store = store
        self.channel = channel
        self.config = config or StreamConfig()
        self.breaker = breaker or get_channel_breaker()
        self.registry = ConnectionRegistry()

        self._feeds: dict[str, JobFeed] = {}  # job_id -> live feed

    async def connect(self, job_id: str, last_seen: int = 0, user_agent: str = "") -> Subscription:
        """
        Validate the job and register a subscription for it.

        Raises:
            JobNotFound: Unknown or expired job; nothing is registered
            StoreUnavailable: The summary could not be read
        """
        if last_seen < 0:
            raise ValueError(f"last_seen must be >= 0, got {last_seen}")

        summary = await self.store.read_summary(job_id)
        if summary is None:
            raise JobNotFound(job_id)

        if last_seen > summary.last_seq:
            logger.warning(
                f"Client for job {job_id} resumed from {last_seen}, "
                f"beyond last event {summary.last_seq}"
            )

        subscription = Subscription(
            job_id=job_id,
            last_seq=last_seen,
            buffer_size=self.config.buffer_size,
            user_agent=user_agent,
        )
        self.registry.register(subscription)
        logger.info(
            f"Subscription {subscription.subscription_id} connected to job {job_id} "
            f"(last seen {last_seen})"
        )
        return subscription

    async def stream(self, subscription: Subscription) -> AsyncIterator[Optional[JobEvent]]:
        """
        Yield the subscription's events in order: backlog first, then live.

        Yields None when a keep-alive is due. Ends after the terminal
        event, on eviction, or if the job's log disappears. The
        subscription is removed on every exit path.
        """
        subscription.task = asyncio.current_task()
        batch_size = self.config.backlog_batch_size

        try:
            # Backlog straight from the store, paced by the client
            while not subscription.closed:
                events = await self.store.read_from(
                    subscription.job_id,
                    after_seq=subscription.last_seq,
                    limit=batch_size,
                )
                for event in events:
                    if subscription.closed:
                        # Evicted while the page was being read
                        return
                    subscription.delivering = True
                    try:
                        yield event
                    finally:
                        subscription.delivering = False
                    subscription.mark_delivered(event.seq)
                    if event.is_terminal:
                        subscription.close("completed")
                        return
                if len(events) == batch_size:
                    continue

                summary = await self.store.read_summary(subscription.job_id)
                if summary is None:
                    subscription.close("expired")
                    return
                if summary.last_seq > subscription.last_seq:
                    # Appended between the two reads
                    continue
                if summary.status.is_terminal:
                    subscription.close("completed")
                    return
                break

            if subscription.closed:
                return

            self._attach(subscription)

            while True:
                item = await subscription.next(timeout=self.config.keepalive_interval)
                if item is None:
                    return
                subscription.delivering = True
                try:
                    yield None if item is KEEPALIVE else item
                finally:
                    subscription.delivering = False
                if item is KEEPALIVE:
                    subscription.touch()
                    continue
                subscription.mark_delivered(item.seq)
                if item.is_terminal:
                    subscription.close("completed")
                    return
        finally:
            self.disconnect(subscription, subscription.close_reason or "client_disconnected")

    def _attach(self, subscription: Subscription) -> None:
        subscription.queued_seq = subscription.last_seq
        subscription.attached = True
        feed = self._feeds.get(subscription.job_id)
        if feed is None or feed.done:
            feed = JobFeed(self, subscription.job_id)
            self._feeds[subscription.job_id] = feed
            feed.start()
        feed.wake()

    def notify(self, job_id: str) -> None:
        """Local shortcut for a channel notification: re-read the job's log now."""
        feed = self._feeds.get(job_id)
        if feed is not None:
            feed.wake()

    def _drop_feed(self, feed: JobFeed) -> None:
        if self._feeds.get(feed.job_id) is feed:
            del self._feeds[feed.job_id]

    def disconnect(self, subscription: Subscription, reason: str = "client_disconnected") -> None:
        """Close and unregister a subscription. Idempotent."""
        was_attached = subscription.attached
        subscription.close(reason)
        if not self.registry.unregister(subscription):
            return

        logger.info(
            f"Subscription {subscription.subscription_id} for job {subscription.job_id} "
            f"closed ({subscription.close_reason}) at seq {subscription.last_seq}"
        )

        feed = self._feeds.get(subscription.job_id)
        if feed is not None and was_attached:
            # Lets the feed notice it has no one left to serve
            feed.wake()

    def evict(self, subscription: Subscription, reason: str) -> None:
        """
        Forcibly drop a subscription, e.g. on buffer overflow or idleness.

        A delivery loop blocked writing to its transport is cancelled.
        """
        delivering = subscription.delivering
        task = subscription.task
        if subscription.closed and subscription not in self.registry:
            return

        logger.warning(
            f"Evicting subscription {subscription.subscription_id} "
            f"for job {subscription.job_id}: {reason}"
        )
        subscription.evicted = True
        self.disconnect(subscription, reason)

        if delivering and task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def subscriber_count(self, job_id: Optional[str] = None) -> int:
        if job_id:
            return len(self.registry.for_job(job_id))
        return len(self.registry)

    def stats(self) -> dict:
        return {
            "subscriptions": self.registry.stats(),
            "feeds": {
                job_id: {
                    "attached": len(self.registry.attached_for_job(job_id)),
                    "degraded": feed.degraded,
                    "reads": feed.reads,
                }
                for job_id, feed in self._feeds.items()
            },
        }

    async def close(self) -> None:
        """Evict every subscription and stop all feeds."""
        for job_id in self.registry.job_ids():
            for subscription in self.registry.for_job(job_id):
                self.evict(subscription, "shutdown")
        feeds = list(self._feeds.values())
        self._feeds.clear()
        for feed in feeds:
            await feed.stop()
