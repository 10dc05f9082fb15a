from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Dict, List, Mapping, Optional

from taskqueue.errors import (
    JobFailedError,
    JobStalledError,
    JobTimeoutError,
    LockLostError,
    QueueClosingError,
    UnknownJobTypeError,
)
from taskqueue.types import Job, JobBroker, JobOptions, JobState

logger = logging.getLogger(__name__)

EVENTS = ("active", "progress", "completed", "failed", "stalled")
WAIT_SLICE_SECONDS = 0.5

Processor = Callable[["JobContext"], Any]
Observer = Callable[..., None]


class JobContext:
    """Handle given to a processor for the job it is running."""

    def __init__(self, queue: "Queue", job: Job) -> None:
        self.queue = queue
        self.job = job
        self._token = job.lock_token or ""
        self._lock = threading.Lock()

    @property
    def id(self) -> str:
        return self.job.id

    @property
    def data(self) -> Dict[str, Any]:
        return self.job.payload

    @property
    def attempts_made(self) -> int:
        return self.job.attempts_made

    @property
    def token(self) -> str:
        return self._token

    def progress(self, value: int) -> int:
        """Report progress; values below the current one are ignored."""
        with self._lock:
            current = self.queue.broker.update_progress(self.queue.name, self.job.id, self._token, value)
            self.job.progress = current
        self.queue.emit("progress", self.job, current)
        return current

    def heartbeat(self) -> None:
        self.queue.broker.heartbeat(self.queue.name, self.job.id, self._token)


class Queue:
    """A named channel of jobs with its own defaults, processors and observers."""

    def __init__(self, name: str, broker: JobBroker, default_options: Optional[JobOptions] = None) -> None:
        self.name = name
        self.broker = broker
        self.default_options = default_options or JobOptions()
        self.processors: Dict[str, Processor] = {}
        self.concurrency: Dict[str, int] = {}
        # types whose processors wait on child jobs of this manager
        self.parent_types: set[str] = set()
        self._closing = threading.Event()
        self._observers: Dict[str, List[Observer]] = {event: [] for event in EVENTS}

    def process(self, job_type: str, concurrency: int, fn: Processor, parent: bool = False) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.processors[job_type] = fn
        self.concurrency[job_type] = concurrency
        if parent:
            self.parent_types.add(job_type)

    @property
    def closing(self) -> bool:
        return self._closing.is_set()

    def close(self) -> None:
        """Wake every ``wait_for`` caller with ``QueueClosingError``."""
        self._closing.set()

    def on(self, event: str, fn: Observer) -> None:
        if event not in self._observers:
            raise ValueError(f"unknown event '{event}'. Allowed: {EVENTS}")
        self._observers[event].append(fn)

    def emit(self, event: str, *args: Any) -> None:
        for fn in list(self._observers.get(event, [])):
            try:
                fn(*args)
            except Exception:
                logger.exception("[%s] %s observer failed", self.name, event)

    def add(self, job_type: str, payload: Dict[str, Any], options: Optional[Mapping[str, Any]] = None) -> Job:
        if job_type not in self.processors:
            raise UnknownJobTypeError(self.name, job_type)
        job = Job.create(self.name, job_type, payload, self.default_options.merged(options))
        self.broker.add(job)
        return job

    def get_job(self, job_id: str) -> Optional[Job]:
        return self.broker.get(self.name, job_id)

    def counts(self) -> Dict[str, int]:
        counts = self.broker.counts(self.name)
        counts["total"] = sum(counts[k] for k in ("waiting", "active", "completed", "failed", "delayed"))
        return counts

    def clean(self, grace_ms: int = 0, state: str = "completed") -> int:
        return self.broker.clean(self.name, grace_ms, JobState(state))

    def wait_for(self, job_id: str, timeout: Optional[float] = None) -> Any:
        """Block until the job settles; return its result or raise ``JobFailedError``.

        Raises ``QueueClosingError`` as soon as the queue starts shutting down
        and ``JobTimeoutError`` once ``timeout`` seconds pass.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            if self.closing:
                raise QueueClosingError(f"queue {self.name} is shutting down; job {job_id} did not settle")
            remaining = None if deadline is None else deadline - time.monotonic()
            if remaining is not None and remaining <= 0:
                raise JobTimeoutError(f"job {job_id} did not settle within {timeout}s")
            slice_s = WAIT_SLICE_SECONDS if remaining is None else min(remaining, WAIT_SLICE_SECONDS)
            job = self.broker.wait(self.name, job_id, slice_s)
            if job is None:
                raise JobFailedError(f"job {job_id} no longer exists", job_id=job_id)
            if job.state == JobState.FAILED:
                raise JobFailedError(job.failure_reason or "job failed", job.attempts_made, job.id)
            if job.state == JobState.COMPLETED:
                return job.result

    def requeue_stalled(self, visibility_window: float, max_stalled: int = 1) -> List[Job]:
        stalled = self.broker.requeue_stalled(self.name, visibility_window, max_stalled)
        for job in stalled:
            self.emit("stalled", job)
            if job.state == JobState.FAILED:
                self.emit("failed", job, JobStalledError(job.failure_reason or "job stalled"))
        return stalled

    def report(self, fn: Callable[[], Job]) -> Optional[Job]:
        """Run a broker report for a claimed job; a lost lock is logged and dropped."""
        try:
            return fn()
        except LockLostError as exc:
            logger.warning("[%s] dropping report: %s", self.name, exc)
            return None
