"""
Circuit Breaker Tests

Run with:
    python -m pytest tests/test_circuit_breaker.py -v
"""

import asyncio
import os
import sys

import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerOpen,
    CircuitState,
    get_channel_breaker,
)
from core.errors import ChannelUnavailable


async def failing():
    raise ChannelUnavailable("down")


async def succeeding():
    return "ok"


class TestCircuitBreaker:
    """State transitions CLOSED -> OPEN -> HALF_OPEN -> CLOSED."""

    @pytest.mark.asyncio
    async def test_opens_after_threshold(self):
        breaker = CircuitBreaker("test", CircuitBreakerConfig(failure_threshold=2, recovery_timeout=60))

        for _ in range(2):
            with pytest.raises(ChannelUnavailable):
                await breaker.call(failing)

        assert breaker.state == CircuitState.OPEN
        with pytest.raises(CircuitBreakerOpen) as exc_info:
            await breaker.call(succeeding)
        assert exc_info.value.service_name == "test"
        assert breaker.get_status()["total_rejections"] == 1

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self):
        breaker = CircuitBreaker("test", CircuitBreakerConfig(failure_threshold=2))

        with pytest.raises(ChannelUnavailable):
            await breaker.call(failing)
        assert await breaker.call(succeeding) == "ok"
        with pytest.raises(ChannelUnavailable):
            await breaker.call(failing)

        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_half_open_recovery(self):
        breaker = CircuitBreaker("test", CircuitBreakerConfig(failure_threshold=1, recovery_timeout=0.05))
        with pytest.raises(ChannelUnavailable):
            await breaker.call(failing)
        assert breaker.is_open

        await asyncio.sleep(0.06)
        assert await breaker.call(succeeding) == "ok"

        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_half_open_failure_reopens(self):
        breaker = CircuitBreaker("test", CircuitBreakerConfig(failure_threshold=1, recovery_timeout=0.05))
        with pytest.raises(ChannelUnavailable):
            await breaker.call(failing)

        await asyncio.sleep(0.06)
        with pytest.raises(ChannelUnavailable):
            await breaker.call(failing)

        assert breaker.is_open

    @pytest.mark.asyncio
    async def test_slow_call_times_out(self):
        breaker = CircuitBreaker("test", CircuitBreakerConfig(timeout=0.01))

        async def slow():
            await asyncio.sleep(1)

        with pytest.raises(asyncio.TimeoutError):
            await breaker.call(slow)
        assert breaker.stats.failure_count == 1

    @pytest.mark.asyncio
    async def test_excluded_exceptions_do_not_count(self):
        breaker = CircuitBreaker(
            "test", CircuitBreakerConfig(failure_threshold=1, excluded_exceptions=(ValueError,))
        )

        async def bad_input():
            raise ValueError("bad")

        with pytest.raises(ValueError):
            await breaker.call(bad_input)
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_reset(self):
        breaker = CircuitBreaker("test", CircuitBreakerConfig(failure_threshold=1))
        with pytest.raises(ChannelUnavailable):
            await breaker.call(failing)

        breaker.reset()

        assert breaker.state == CircuitState.CLOSED
        assert breaker.get_status()["total_failures"] == 0

    def test_channel_breaker_name(self):
        assert get_channel_breaker().service_name == "publish-channel"
