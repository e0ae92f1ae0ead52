#!/usr/bin/env python3
"""
CLI Progress Monitor for Jobs

Connects to the SSE server and displays real-time progress with visual
formatting. Reconnects after a dropped connection, resuming from the last
event id it received, after the delay the server suggested.

Usage:
    python -m cli.progress_monitor job-123
    python -m cli.progress_monitor --server http://localhost:8765 job-123
    python -m cli.progress_monitor --last-event-id 5 job-123
"""

import argparse
import asyncio
import json
from dataclasses import dataclass
from typing import Any, Optional

import aiohttp


# ANSI color codes
class Colors:
    RESET = "\033[0m"
    BOLD = "\033[1m"
    DIM = "\033[2m"

    RED = "\033[31m"
    GREEN = "\033[32m"
    YELLOW = "\033[33m"
    BLUE = "\033[34m"
    CYAN = "\033[36m"
    WHITE = "\033[37m"

    # Clear line
    CLEAR_LINE = "\033[2K\r"


def colored(text: str, color: str) -> str:
    """Apply color to text."""
    return f"{color}{text}{Colors.RESET}"


def progress_bar(percent: float, width: int = 30) -> str:
    """Create a visual progress bar."""
    percent = max(0.0, min(100.0, percent))
    filled = int(percent / 100 * width)
    bar = "█" * filled + "░" * (width - filled)

    # Color based on progress
    if percent >= 100:
        color = Colors.GREEN
    elif percent >= 50:
        color = Colors.CYAN
    elif percent >= 25:
        color = Colors.YELLOW
    else:
        color = Colors.WHITE

    return colored(f"[{bar}]", color) + f" {percent:5.1f}%"


@dataclass
class SSEMessage:
    """One dispatched Server-Sent Event."""

    event: str = "message"
    data: str = ""
    id: Optional[str] = None

    def json(self) -> Any:
        return json.loads(self.data) if self.data else None


class SSEParser:
    """
    Line-by-line parser for the text/event-stream format.

    Feed it one line at a time; a blank line dispatches the buffered
    event. Tracks the last event id and the server's retry hint across
    events, as an EventSource does.
    """

    def __init__(self):
        self.last_event_id: Optional[str] = None
        self.retry_ms: Optional[int] = None
        self.comments = 0
        self._reset()

    def _reset(self):
        self._event = ""
        self._data: list[str] = []

    def feed(self, line: str) -> Optional[SSEMessage]:
        line = line.rstrip("\r\n")

        if not line:
            return self._dispatch()

        if line.startswith(":"):
            self.comments += 1
            return None

        name, sep, value = line.partition(":")
        if sep and value.startswith(" "):
            value = value[1:]

        if name == "event":
            self._event = value
        elif name == "data":
            self._data.append(value)
        elif name == "id":
            if "\0" not in value:
                self.last_event_id = value
        elif name == "retry":
            if value.isdigit():
                self.retry_ms = int(value)
        # Unknown fields are ignored
        return None

    def _dispatch(self) -> Optional[SSEMessage]:
        if not self._data:
            self._reset()
            return None
        message = SSEMessage(
            event=self._event or "message",
            data="\n".join(self._data),
            id=self.last_event_id,
        )
        self._reset()
        return message


def format_event(message: SSEMessage) -> str:
    """Format event for display."""
    try:
        payload = message.json()
    except json.JSONDecodeError:
        payload = message.data

    seq = colored(f"#{message.id}", Colors.DIM) if message.id else ""

    if message.event == "progress" and isinstance(payload, dict):
        percent = float(payload.get("progress", 0))
        text = str(payload.get("message", ""))
        return (
            f"{Colors.CLEAR_LINE}⏳ {progress_bar(percent)} "
            f"{colored(text[:40], Colors.WHITE)} {seq}"
        )

    if message.event == "log":
        return f"{Colors.CLEAR_LINE}• {payload} {seq}"

    if message.event == "complete":
        lines = [f"{Colors.CLEAR_LINE}{progress_bar(100)}"]
        result = payload.get("result") if isinstance(payload, dict) else payload
        text = payload.get("message", "Job completed") if isinstance(payload, dict) else "Job completed"
        lines.append(f"✅ {colored(text, Colors.GREEN)} {seq}")
        if result is not None:
            lines.append(colored(f"    Result: {json.dumps(result)}", Colors.DIM))
        return "\n".join(lines)

    if message.event == "error":
        reason = payload.get("error", "Job failed") if isinstance(payload, dict) else str(payload)
        lines = [f"{Colors.CLEAR_LINE}❌ {colored(reason, Colors.RED)} {seq}"]
        if isinstance(payload, dict) and payload.get("code"):
            lines.append(colored(f"    Code: {payload['code']}", Colors.DIM))
        return "\n".join(lines)

    return f"ℹ️ {colored(message.data, Colors.BLUE)} {seq}"


class ProgressMonitor:
    """CLI progress monitor for one job's event stream."""

    def __init__(
        self,
        job_id: str,
        server_url: str = "http://localhost:8765",
        max_retries: int = 5,
        last_event_id: Optional[str] = None,
    ):
        self.job_id = job_id
        self.server_url = server_url.rstrip("/")
        self.stream_url = f"{self.server_url}/stream/{job_id}"
        self.max_retries = max_retries

        self.parser = SSEParser()
        self.parser.last_event_id = last_event_id
        self.outcome: Optional[str] = None  # complete | error | not_found | gave_up
        self.events_received = 0

        self._running = False

    @property
    def last_event_id(self) -> Optional[str]:
        return self.parser.last_event_id

    def _retry_delay(self, failures: int) -> float:
        if self.parser.retry_ms is not None:
            return self.parser.retry_ms / 1000
        return float(2 ** failures)

    async def start(self) -> Optional[str]:
        """Monitor until the job ends. Returns the outcome."""
        self._running = True

        print(colored("\n╔═══════════════════════════════════════════╗", Colors.CYAN))
        print(colored("║  jobstream Progress Monitor               ║", Colors.CYAN))
        print(colored("╚═══════════════════════════════════════════╝", Colors.CYAN))
        print(f"Job:    {colored(self.job_id, Colors.BOLD)}")
        print(f"Server: {colored(self.stream_url, Colors.DIM)}")
        print(colored("─" * 45, Colors.DIM))
        print()

        failures = 0
        timeout = aiohttp.ClientTimeout(total=None, sock_read=None)

        async with aiohttp.ClientSession(timeout=timeout) as session:
            while self._running:
                received_before = self.events_received
                try:
                    await self._stream_events(session)
                    if not self._running:
                        break
                    problem = "Stream closed before the job finished"
                except aiohttp.ClientError as e:
                    problem = f"Connection lost ({e})"
                except asyncio.CancelledError:
                    break

                failures = 0 if self.events_received > received_before else failures + 1
                if failures >= self.max_retries:
                    print(colored(f"\n❌ Giving up after {failures} attempts", Colors.RED))
                    self.outcome = "gave_up"
                    break

                wait = self._retry_delay(failures)
                resume = f" from event {self.last_event_id}" if self.last_event_id else ""
                print(colored(f"\n⚠️ {problem}. Resuming{resume} in {wait:.1f}s...", Colors.YELLOW))
                await asyncio.sleep(wait)

        print(colored("\n" + "─" * 45, Colors.DIM))
        print(colored("Monitor stopped.", Colors.DIM))
        return self.outcome

    async def _stream_events(self, session: aiohttp.ClientSession):
        """Stream and display events for one connection."""
        headers = {"Accept": "text/event-stream"}
        if self.last_event_id:
            headers["Last-Event-ID"] = self.last_event_id

        async with session.get(self.stream_url, headers=headers) as response:
            if response.status == 404:
                print(colored(f"❌ Job {self.job_id} not found (unknown or expired)", Colors.RED))
                self.outcome = "not_found"
                self._running = False
                return
            if response.status != 200:
                raise aiohttp.ClientError(f"Server returned {response.status}")

            async for line in response.content:
                if not self._running:
                    break
                message = self.parser.feed(line.decode("utf-8"))
                if message is not None:
                    self._handle_message(message)

    def _handle_message(self, message: SSEMessage):
        """Handle incoming event."""
        self.events_received += 1

        # Progress updates in place; everything else on its own line
        if message.event == "progress":
            print(format_event(message), end="", flush=True)
        else:
            print(format_event(message))

        if message.event in ("complete", "error"):
            self.outcome = message.event
            self._running = False

    def stop(self):
        """Stop monitoring."""
        self._running = False


async def main():
    parser = argparse.ArgumentParser(
        description="Monitor job progress",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    %(prog)s job-123
    %(prog)s --server http://remote:8765 job-456
    %(prog)s --last-event-id 5 job-123
        """,
    )
    parser.add_argument("job_id", help="Job ID to monitor")
    parser.add_argument(
        "--server",
        default="http://localhost:8765",
        help="SSE server URL (default: http://localhost:8765)",
    )
    parser.add_argument("--last-event-id", help="Resume after this event id")
    parser.add_argument("--max-retries", type=int, default=5, help="Consecutive failed reconnects")

    args = parser.parse_args()

    monitor = ProgressMonitor(
        job_id=args.job_id,
        server_url=args.server,
        max_retries=args.max_retries,
        last_event_id=args.last_event_id,
    )

    try:
        await monitor.start()
    except KeyboardInterrupt:
        print(colored("\n\nInterrupted by user.", Colors.YELLOW))
        monitor.stop()


if __name__ == "__main__":
    asyncio.run(main())
