"""
SSE Progress Streaming Service

Provides real-time visibility into job progress via Server-Sent Events
(SSE), with resumption from the last event a client saw.

Usage:
    # Start server
    from services.streaming import SSEServer
    server = SSEServer()
    await server.start()

    # In CLI
    curl -N http://localhost:8765/stream/job-123
"""

from .fanout import FanOutEngine, JobFeed
from .registry import KEEPALIVE, ConnectionRegistry, Subscription
from .sse_server import SSEServer, SubmitJobRequest, parse_last_event_id

__all__ = [
    "SSEServer",
    "SubmitJobRequest",
    "parse_last_event_id",
    "FanOutEngine",
    "JobFeed",
    "ConnectionRegistry",
    "Subscription",
    "KEEPALIVE",
]
