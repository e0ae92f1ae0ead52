"""
jobstream CLI Tools

Command-line tools for interacting with the job streaming server.

Tools:
- progress_monitor: Real-time progress visualization with resumption
"""

from .progress_monitor import ProgressMonitor, SSEMessage, SSEParser

__all__ = ["ProgressMonitor", "SSEMessage", "SSEParser"]
