"""Job queues, brokers and workers for the media service."""

from taskqueue.errors import (
    BrokerUnavailableError,
    JobFailedError,
    JobValidationError,
    QueueNotReadyError,
    UnknownQueueError,
)
from taskqueue.manager import QueueManager
from taskqueue.memory import InMemoryBroker
from taskqueue.types import Job, JobBroker, JobOptions, JobState

__all__ = [
    "BrokerUnavailableError",
    "InMemoryBroker",
    "Job",
    "JobBroker",
    "JobFailedError",
    "JobOptions",
    "JobState",
    "JobValidationError",
    "QueueManager",
    "QueueNotReadyError",
    "UnknownQueueError",
]
