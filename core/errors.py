"""
Error taxonomy for job progress streaming.

Every error raised by the store, channel, worker pipeline and fan-out
engine derives from JobStreamError so the HTTP layer can map them in
one place.
"""

from typing import Optional


class JobStreamError(Exception):
    """Base class for all job streaming errors."""


class JobNotFound(JobStreamError):
    """Raised when a job id is unknown or its log has already expired."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job {job_id} not found")


class JobAlreadyExists(JobStreamError):
    """Raised by intake when a job id is submitted twice."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job {job_id} already exists")


class JobAlreadyTerminal(JobStreamError):
    """Raised when appending to a job whose terminal event is already logged."""

    def __init__(self, job_id: str, status: str):
        self.job_id = job_id
        self.status = status
        super().__init__(f"Job {job_id} is already {status}; no further events accepted")


class JobExecutionFailure(JobStreamError):
    """
    Raised by job handlers to report an unrecoverable step failure.

    Not a system error: the runner turns it into the job's terminal
    `error` event.
    """

    def __init__(self, reason: str, code: Optional[str] = None):
        self.reason = reason
        self.code = code
        super().__init__(reason)


class StoreUnavailable(JobStreamError):
    """The event log store could not be reached or rejected the operation."""


class ChannelUnavailable(JobStreamError):
    """The publish channel could not be reached. Degraded, never fatal."""


class TransientDeliveryFailure(JobStreamError):
    """A transport write to one client failed; only that subscription is dropped."""

    def __init__(self, subscription_id: str, reason: str):
        self.subscription_id = subscription_id
        self.reason = reason
        super().__init__(f"Delivery to subscription {subscription_id} failed: {reason}")
