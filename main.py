#!/usr/bin/env python3
"""
jobstream - Main Entry Point

Starts the job progress streaming server, submits demo jobs and monitors
them.

Usage:
    # Start server mode (SSE + API)
    python main.py server

    # Submit a demo job and watch it
    python main.py submit --steps 6 --monitor

    # Monitor an existing job, resuming after event 5
    python main.py monitor job-123 --last-event-id 5
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import Optional

import aiohttp

from core.config import Config, get_config

logger = logging.getLogger("jobstream")


def configure_logging(level: str = "INFO"):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%H:%M:%S",
    )


async def start_server(config: Config):
    """Start the SSE server for progress streaming."""
    from services.streaming import SSEServer

    for issue in config.validate():
        logger.warning(f"Config: {issue}")

    server = SSEServer(config=config)
    await server.start()

    logger.info(f"jobstream server running at http://{config.server.host}:{config.server.port}")
    logger.info("Press Ctrl+C to stop")

    # Keep running until interrupted
    stop_event = asyncio.Event()

    def handle_signal():
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal)

    await stop_event.wait()
    await server.stop()

    logger.info("Server stopped")


async def submit_job(
    server_url: str,
    steps: int = 4,
    step_delay: float = 0.5,
    fail_at: Optional[int] = None,
    job_id: Optional[str] = None,
    monitor: bool = False,
) -> Optional[str]:
    """POST a demo job; optionally follow its stream until it ends."""
    body = {"demo": True, "steps": steps, "step_delay": step_delay}
    if fail_at is not None:
        body["fail_at"] = fail_at
    if job_id:
        body["job_id"] = job_id

    async with aiohttp.ClientSession() as session:
        async with session.post(f"{server_url}/jobs", json=body) as resp:
            data = await resp.json()
            if resp.status != 202:
                print(f"Server returned {resp.status}: {data.get('error')}")
                return None

    job_id = data["job_id"]
    print(f"Submitted job {job_id}")
    print(f"  Stream: {server_url}{data['stream_url']}")
    print(f"  Status: {server_url}{data['status_url']}")

    if monitor:
        outcome = await monitor_job(job_id, server_url)
        return job_id if outcome == "complete" else None
    return job_id


async def monitor_job(
    job_id: str,
    server_url: str = "http://localhost:8765",
    last_event_id: Optional[str] = None,
) -> Optional[str]:
    """Monitor an existing job's progress."""
    from cli.progress_monitor import ProgressMonitor

    monitor = ProgressMonitor(job_id=job_id, server_url=server_url, last_event_id=last_event_id)
    return await monitor.start()


async def check_status(server_url: str, job_id: Optional[str] = None) -> bool:
    """Print server status, or one job's summary."""
    url = f"{server_url}/jobs/{job_id}" if job_id else f"{server_url}/status"
    async with aiohttp.ClientSession() as session:
        try:
            async with session.get(url) as resp:
                data = await resp.json()
                if resp.status != 200:
                    print(f"Server returned status {resp.status}: {data.get('error')}")
                    return False
        except aiohttp.ClientError as e:
            print(f"Cannot connect to server: {e}")
            return False

    if job_id:
        print(f"Job:      {data['job_id']}")
        print(f"Status:   {data['status']}")
        print(f"Progress: {data['percent']}%")
        print(f"Message:  {data['message']}")
        print(f"Last event id: {data['last_event_id']}")
        if data.get("error"):
            print(f"Error:    {data['error']}")
        return True

    print(f"Server: {server_url}")
    print("Status: Online")
    print(f"Backend: {data['server']['backend']}")
    print(f"Connected clients: {data['clients']['total']}")
    for jid, count in data["clients"]["by_job"].items():
        print(f"  - {jid}: {count} clients")
    print(f"Running jobs: {len(data['jobs']['running'])}")
    print(f"Publish channel: {data['channel']['state']}")
    return True


def main():
    parser = argparse.ArgumentParser(
        description="jobstream - job progress streaming over Server-Sent Events",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Start SSE server
    python main.py server

    # Start against PostgreSQL
    JOBSTREAM_BACKEND=postgres DATABASE_URL=postgresql://... python main.py server

    # Submit a demo job that fails at step 3, and watch it
    python main.py submit --steps 5 --fail-at 3 --monitor

    # Monitor job progress
    python main.py monitor job-abc123

    # Fallback status query
    python main.py status --job job-abc123
        """,
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # Server command
    server_parser = subparsers.add_parser("server", help="Start SSE server")
    server_parser.add_argument("--host", help="Host to bind (default: JOBSTREAM_HOST)")
    server_parser.add_argument("--port", type=int, help="Port to bind (default: JOBSTREAM_PORT)")
    server_parser.add_argument(
        "--backend",
        choices=["memory", "postgres"],
        help="Event log backend (default: JOBSTREAM_BACKEND)",
    )

    # Submit command
    submit_parser = subparsers.add_parser("submit", help="Submit a demo job")
    submit_parser.add_argument("--server", default="http://localhost:8765", help="SSE server URL")
    submit_parser.add_argument("--job-id", help="Job id (default: generated)")
    submit_parser.add_argument("--steps", type=int, default=4, help="Number of steps")
    submit_parser.add_argument("--step-delay", type=float, default=0.5, help="Seconds per step")
    submit_parser.add_argument("--fail-at", type=int, help="Fail at this step")
    submit_parser.add_argument("--monitor", "-m", action="store_true", help="Follow the stream")

    # Monitor command
    mon_parser = subparsers.add_parser("monitor", help="Monitor job progress")
    mon_parser.add_argument("job_id", help="Job ID to monitor")
    mon_parser.add_argument("--server", default="http://localhost:8765", help="SSE server URL")
    mon_parser.add_argument("--last-event-id", help="Resume after this event id")

    # Status command
    status_parser = subparsers.add_parser("status", help="Check server or job status")
    status_parser.add_argument("--server", default="http://localhost:8765", help="SSE server URL")
    status_parser.add_argument("--job", help="Show one job's summary")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    config = get_config()
    configure_logging(config.log_level)

    # Run appropriate command
    if args.command == "server":
        if args.host:
            config.server.host = args.host
        if args.port:
            config.server.port = args.port
        if args.backend:
            config.store.backend = args.backend
        asyncio.run(start_server(config))

    elif args.command == "submit":
        result = asyncio.run(
            submit_job(
                server_url=args.server.rstrip("/"),
                steps=args.steps,
                step_delay=args.step_delay,
                fail_at=args.fail_at,
                job_id=args.job_id,
                monitor=args.monitor,
            )
        )
        sys.exit(0 if result else 1)

    elif args.command == "monitor":
        outcome = asyncio.run(monitor_job(args.job_id, args.server.rstrip("/"), args.last_event_id))
        sys.exit(0 if outcome == "complete" else 1)

    elif args.command == "status":
        ok = asyncio.run(check_status(args.server.rstrip("/"), args.job))
        sys.exit(0 if ok else 1)


if __name__ == "__main__":
    main()
