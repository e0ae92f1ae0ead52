"""
Circuit Breaker for the Publish Channel

The publish channel is an optimization: when it is down, workers keep
appending to the log and the fan-out engine polls the store instead.
The breaker stops every worker step and every live feed from paying a
connection timeout while the channel is known to be down.

States:
- CLOSED: Normal operation, calls pass through
- OPEN: Failing, calls are rejected immediately
- HALF_OPEN: Testing recovery, limited calls allowed
"""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar
import logging

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker behavior."""
    failure_threshold: int = 3  # Failures before opening
    recovery_timeout: float = 15.0  # Seconds before trying half-open
    half_open_max_calls: int = 1  # Max calls in half-open state
    success_threshold: int = 1  # Successes in half-open to close
    timeout: float = 5.0  # Call timeout in seconds
    excluded_exceptions: tuple = ()  # Exceptions that don't trigger the breaker


@dataclass
class CircuitBreakerStats:
    """Runtime statistics for the circuit breaker."""
    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    success_count: int = 0
    half_open_calls: int = 0
    last_failure_time: float = 0
    last_success_time: float = 0
    state_changed_at: float = field(default_factory=time.monotonic)
    total_calls: int = 0
    total_failures: int = 0
    total_rejections: int = 0


class CircuitBreakerOpen(Exception):
    """Raised when circuit breaker is open and the call is rejected."""

    def __init__(self, service_name: str, retry_after: float):
        self.service_name = service_name
        self.retry_after = retry_after
        super().__init__(
            f"Circuit breaker is OPEN for {service_name}. "
            f"Retry after {retry_after:.1f} seconds."
        )


class CircuitBreaker:
    """
    Circuit breaker guarding calls to a shared collaborator.

    Usage:
        breaker = CircuitBreaker("publish-channel")
        await breaker.call(channel.publish, job_id, seq)
    """

    def __init__(
        self,
        service_name: str,
        config: Optional[CircuitBreakerConfig] = None,
    ):
        self.service_name = service_name
        self.config = config or CircuitBreakerConfig()
        self.stats = CircuitBreakerStats()
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        return self.stats.state

    @property
    def is_open(self) -> bool:
        return self.stats.state == CircuitState.OPEN

    def _should_try_reset(self) -> bool:
        if self.stats.state != CircuitState.OPEN:
            return False
        elapsed = time.monotonic() - self.stats.state_changed_at
        return elapsed >= self.config.recovery_timeout

    def _transition_to(self, new_state: CircuitState):
        old_state = self.stats.state
        self.stats.state = new_state
        self.stats.state_changed_at = time.monotonic()

        if new_state == CircuitState.HALF_OPEN:
            self.stats.half_open_calls = 0
            self.stats.success_count = 0

        logger.info(
            f"Circuit breaker [{self.service_name}]: {old_state.value} -> {new_state.value}"
        )

    async def _before_call(self):
        """Called before each call. May raise CircuitBreakerOpen."""
        async with self._lock:
            self.stats.total_calls += 1

            if self.stats.state == CircuitState.OPEN:
                if self._should_try_reset():
                    self._transition_to(CircuitState.HALF_OPEN)
                else:
                    self.stats.total_rejections += 1
                    retry_after = (
                        self.config.recovery_timeout
                        - (time.monotonic() - self.stats.state_changed_at)
                    )
                    raise CircuitBreakerOpen(self.service_name, retry_after)

            if self.stats.state == CircuitState.HALF_OPEN:
                if self.stats.half_open_calls >= self.config.half_open_max_calls:
                    self.stats.total_rejections += 1
                    raise CircuitBreakerOpen(
                        self.service_name,
                        self.config.recovery_timeout,
                    )
                self.stats.half_open_calls += 1

    async def _on_success(self):
        async with self._lock:
            self.stats.success_count += 1
            self.stats.last_success_time = time.monotonic()
            self.stats.failure_count = 0

            if self.stats.state == CircuitState.HALF_OPEN:
                if self.stats.success_count >= self.config.success_threshold:
                    self._transition_to(CircuitState.CLOSED)

    async def _on_failure(self, error: BaseException):
        if isinstance(error, self.config.excluded_exceptions):
            return

        async with self._lock:
            self.stats.failure_count += 1
            self.stats.total_failures += 1
            self.stats.last_failure_time = time.monotonic()

            if self.stats.state == CircuitState.HALF_OPEN:
                self._transition_to(CircuitState.OPEN)
            elif self.stats.state == CircuitState.CLOSED:
                if self.stats.failure_count >= self.config.failure_threshold:
                    self._transition_to(CircuitState.OPEN)

            logger.warning(
                f"Circuit breaker [{self.service_name}] failure: {error!r}. "
                f"Failure count: {self.stats.failure_count}/{self.config.failure_threshold}"
            )

    async def call(
        self,
        func: Callable[..., Awaitable[T]],
        *args: Any,
        **kwargs: Any,
    ) -> T:
        """
        Execute an async function with circuit breaker protection.

        Raises:
            CircuitBreakerOpen: If the circuit is open
            asyncio.TimeoutError: If the call exceeds config.timeout
            Exception: Any exception from the function
        """
        await self._before_call()

        try:
            result = await asyncio.wait_for(
                func(*args, **kwargs),
                timeout=self.config.timeout,
            )
        except Exception as e:
            await self._on_failure(e)
            raise
        await self._on_success()
        return result

    def reset(self):
        """Manually reset the circuit breaker to closed state."""
        self.stats = CircuitBreakerStats()
        logger.info(f"Circuit breaker [{self.service_name}] manually reset")

    def get_status(self) -> dict:
        """Get current status as a dictionary."""
        return {
            "service": self.service_name,
            "state": self.stats.state.value,
            "failure_count": self.stats.failure_count,
            "total_calls": self.stats.total_calls,
            "total_failures": self.stats.total_failures,
            "total_rejections": self.stats.total_rejections,
        }


def get_channel_breaker(config: Optional[CircuitBreakerConfig] = None) -> CircuitBreaker:
    """Breaker shared by workers and live feeds for publish channel calls."""
    return CircuitBreaker("publish-channel", config)
