"""Exceptions raised by queues, workers and the polling client."""
from __future__ import annotations

from typing import Optional


class QueueError(Exception):
    """Base class for job orchestration errors."""


class UnknownQueueError(QueueError):
    def __init__(self, queue_name: str) -> None:
        super().__init__(f"queue not found: {queue_name}")
        self.queue_name = queue_name


class UnknownJobTypeError(QueueError, ValueError):
    def __init__(self, queue_name: str, job_type: str) -> None:
        super().__init__(f"no processor registered for {queue_name}:{job_type}")
        self.queue_name = queue_name
        self.job_type = job_type


class QueueNotReadyError(QueueError):
    """The queue manager has not been initialized (or was shut down)."""


class QueueClosingError(QueueNotReadyError):
    """The queue is shutting down; an awaited job will not settle in this process."""


class BrokerUnavailableError(QueueError):
    """The backing broker could not be reached."""


class JobValidationError(QueueError, ValueError):
    """Malformed payload; retrying cannot help, so the job fails at once."""


class JobTimeoutError(QueueError):
    """A processor ran past its job's hard timeout."""


class LockLostError(QueueError):
    """The reporting worker no longer owns the job (it stalled and was re-delivered)."""


class JobStalledError(QueueError):
    """A job lost its worker more often than the stall limit allows."""


class JobFailedError(QueueError):
    """An awaited job ended in the ``failed`` state."""

    def __init__(self, reason: str, attempts_made: Optional[int] = None, job_id: Optional[str] = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.attempts_made = attempts_made
        self.job_id = job_id


class PollTimeoutError(QueueError):
    """The polling client gave up; the job itself keeps running."""


class JobStatusError(QueueError):
    """The status endpoint answered ``success: false``."""


class TransportError(QueueError):
    """Transient failure talking to the status endpoint."""
