"""
Publish Channel

Best-effort per-job notifications from workers to fan-out engines.

Usage:
    from services.channel import MemoryPublishChannel

    channel = MemoryPublishChannel()
    subscription = await channel.subscribe(job_id)
    await channel.publish(job_id, seq)
    notification = await subscription.get(timeout=5)
"""

from .base import ChannelSubscription, Notification, PublishChannel
from .memory import MemoryPublishChannel
from .postgres import PostgresPublishChannel

__all__ = [
    "ChannelSubscription",
    "Notification",
    "PublishChannel",
    "MemoryPublishChannel",
    "PostgresPublishChannel",
]
