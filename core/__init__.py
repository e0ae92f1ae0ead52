"""
jobstream Core Components

Provides foundational infrastructure for job progress streaming:
- Configuration loaded from the environment
- Error taxonomy shared by store, channel, worker and fan-out
- Circuit breaker for the publish channel
"""

from .circuit_breaker import CircuitBreaker, CircuitBreakerOpen, CircuitState
from .config import Config, get_config
from .errors import (
    ChannelUnavailable,
    JobAlreadyExists,
    JobAlreadyTerminal,
    JobExecutionFailure,
    JobNotFound,
    JobStreamError,
    StoreUnavailable,
    TransientDeliveryFailure,
)

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerOpen",
    "CircuitState",
    "Config",
    "get_config",
    "ChannelUnavailable",
    "JobAlreadyExists",
    "JobAlreadyTerminal",
    "JobExecutionFailure",
    "JobNotFound",
    "JobStreamError",
    "StoreUnavailable",
    "TransientDeliveryFailure",
]
