"""
Configuration management for jobstream.

Centralizes all configuration including:
- HTTP server binding
- Event log store backend and database pool
- Stream delivery tuning (keep-alive, buffers, polling)
- Cleanup supervisor timers
- Worker retry policy
"""

import os
from dataclasses import dataclass, field
from typing import Literal, Optional


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


@dataclass
class ServerConfig:
    """HTTP server binding."""
    host: str = field(default_factory=lambda: os.getenv("JOBSTREAM_HOST", "0.0.0.0"))
    port: int = field(default_factory=lambda: _env_int("JOBSTREAM_PORT", 8765))


@dataclass
class StoreConfig:
    """Event log store and publish channel backend."""
    backend: Literal["memory", "postgres"] = field(
        default_factory=lambda: os.getenv("JOBSTREAM_BACKEND", "memory").lower()
    )
    database_url: str = field(default_factory=lambda: os.getenv("DATABASE_URL", ""))
    pool_min_size: int = field(default_factory=lambda: _env_int("DATABASE_POOL_MIN", 2))
    pool_max_size: int = field(default_factory=lambda: _env_int("DATABASE_POOL_MAX", 10))


@dataclass
class StreamConfig:
    """Fan-out delivery tuning."""
    keepalive_interval: float = field(
        default_factory=lambda: _env_float("STREAM_KEEPALIVE_SECONDS", 15.0)
    )
    retry_ms: int = field(default_factory=lambda: _env_int("STREAM_RETRY_MS", 3000))
    buffer_size: int = field(default_factory=lambda: _env_int("STREAM_BUFFER_SIZE", 256))
    backlog_batch_size: int = field(
        default_factory=lambda: _env_int("STREAM_BACKLOG_BATCH", 100)
    )
    # Store poll period while the publish channel is unavailable
    poll_interval: float = field(default_factory=lambda: _env_float("STREAM_POLL_SECONDS", 1.0))
    # Safety re-read while the channel is healthy (notifications may be dropped)
    fallback_poll_interval: float = field(
        default_factory=lambda: _env_float("STREAM_FALLBACK_POLL_SECONDS", 10.0)
    )
    channel_queue_size: int = 64
    # How long shutdown waits for cancelled jobs' error events to reach clients
    drain_timeout: float = field(default_factory=lambda: _env_float("STREAM_DRAIN_SECONDS", 5.0))


@dataclass
class CleanupConfig:
    """Cleanup supervisor timers, in seconds."""
    sweep_interval: float = field(default_factory=lambda: _env_float("CLEANUP_SWEEP_SECONDS", 30.0))
    grace_period: float = field(default_factory=lambda: _env_float("CLEANUP_GRACE_SECONDS", 600.0))
    idle_timeout: float = field(default_factory=lambda: _env_float("CLEANUP_IDLE_SECONDS", 120.0))
    # 0 disables synthesizing timeout errors for stalled jobs
    job_stall_timeout: float = field(default_factory=lambda: _env_float("JOB_STALL_SECONDS", 900.0))


@dataclass
class WorkerConfig:
    """Worker pipeline retry policy for store appends."""
    store_retries: int = field(default_factory=lambda: _env_int("WORKER_STORE_RETRIES", 3))
    retry_wait_min: float = 0.2
    retry_wait_max: float = 5.0


@dataclass
class Config:
    """Main configuration class."""

    server: ServerConfig = field(default_factory=ServerConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    stream: StreamConfig = field(default_factory=StreamConfig)
    cleanup: CleanupConfig = field(default_factory=CleanupConfig)
    worker: WorkerConfig = field(default_factory=WorkerConfig)

    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO").upper())

    @classmethod
    def from_env(cls) -> "Config":
        """Load configuration from environment variables."""
        return cls()

    def validate(self) -> list[str]:
        """Validate configuration and return list of issues."""
        issues = []

        if self.store.backend not in ("memory", "postgres"):
            issues.append(f"Unknown JOBSTREAM_BACKEND '{self.store.backend}' (memory or postgres)")

        if self.store.backend == "postgres" and not self.store.database_url:
            issues.append("DATABASE_URL not configured (needed for the postgres backend)")

        if self.stream.buffer_size < 1:
            issues.append("STREAM_BUFFER_SIZE must be at least 1")

        if self.stream.backlog_batch_size < 1:
            issues.append("STREAM_BACKLOG_BATCH must be at least 1")

        if self.stream.keepalive_interval <= 0:
            issues.append("STREAM_KEEPALIVE_SECONDS must be positive")

        if self.cleanup.idle_timeout <= self.stream.keepalive_interval:
            issues.append(
                "CLEANUP_IDLE_SECONDS should exceed STREAM_KEEPALIVE_SECONDS "
                "or quiet streams will be evicted"
            )

        return issues


# Global config instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config.from_env()
    return _config


def reload_config():
    """Reload configuration from environment."""
    global _config
    _config = Config.from_env()
