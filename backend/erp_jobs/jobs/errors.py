from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    RETRYABLE = "retryable"
    NON_RETRYABLE = "non_retryable"
    TIMEOUT = "timeout"
    LEASE_LOST = "lease_lost"
    CANCELLED = "cancelled"


class JobError(RuntimeError):
    pass


class JobPermanentError(JobError):
    """Raised by a handler for a failure that no retry can fix."""


class JobRetryableError(JobError):
    pass


class JobDeferError(JobError):
    """Reschedules the job at ``run_after`` without consuming a retry."""

    def __init__(self, message: str, *, run_after: str) -> None:
        super().__init__(message)
        self.run_after = run_after


class JobTimeoutError(JobError):
    pass


class LeaseLostError(JobError):
    pass


class StoreUnavailableError(JobError):
    pass


class InvalidExpression(JobError, ValueError):
    pass


class Unbounded(JobError):
    pass


class DependencyCycleError(JobError):
    pass


class JobNotFoundError(JobError, LookupError):
    pass


class InvalidJobStateError(JobError):
    pass


class QueueStoppedError(JobError):
    pass
