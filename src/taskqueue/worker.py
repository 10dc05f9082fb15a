"""Worker threads that claim and run jobs for one (queue, job type) pair."""
from __future__ import annotations

import contextvars
import logging
import threading
import time
from typing import Any, List, Optional, Tuple

from taskqueue.errors import JobTimeoutError, JobValidationError, LockLostError, QueueClosingError
from taskqueue.logs import JOB_CTX, WORKER_CTX
from taskqueue.queue import JobContext, Processor, Queue
from taskqueue.types import Job

logger = logging.getLogger(__name__)


def failure_message(exc: BaseException) -> str:
    """Opaque, user-visible reason for a failed attempt (never a traceback)."""
    return str(exc) or exc.__class__.__name__


class Worker:
    """
    Runs ``concurrency`` threads, each looping claim -> run -> report.

    Args:
        queue: Queue the jobs are claimed from.
        job_type: Only jobs with this type tag are claimed.
        processor: Function that handles a single job.
        concurrency: Number of jobs of this type run in parallel per process.
        poll_seconds: Delay between claims when the queue is idle.
        heartbeat_seconds: How often a running job proves it is alive.
    """

    def __init__(
        self,
        queue: Queue,
        job_type: str,
        processor: Processor,
        concurrency: int = 1,
        poll_seconds: float = 1.0,
        heartbeat_seconds: float = 5.0,
    ) -> None:
        self.queue = queue
        self.job_type = job_type
        self.processor = processor
        self.concurrency = concurrency
        self.poll_seconds = poll_seconds
        self.heartbeat_seconds = heartbeat_seconds
        self._stop_event = threading.Event()
        self._threads: List[threading.Thread] = []
        self._busy = 0
        self._busy_lock = threading.Lock()

    @property
    def label(self) -> str:
        return f"{self.queue.name}:{self.job_type}"

    @property
    def busy(self) -> int:
        with self._busy_lock:
            return self._busy

    def start(self) -> None:
        if self._threads:
            return
        self._stop_event.clear()
        for idx in range(self.concurrency):
            t = threading.Thread(
                target=self._loop,
                args=(idx,),
                name=f"worker-{self.label}#{idx}",
                daemon=True,
            )
            t.start()
            self._threads.append(t)
        logger.info("[%s] started %s worker thread(s)", self.label, self.concurrency)

    def stop(self) -> None:
        """Stop claiming new jobs; running jobs are left to finish."""
        self._stop_event.set()

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for worker threads; returns True when all have exited."""
        deadline = None if timeout is None else time.monotonic() + timeout
        for t in self._threads:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            t.join(timeout=remaining)
        alive = [t for t in self._threads if t.is_alive()]
        if not alive:
            self._threads = []
        return not alive

    def _loop(self, idx: int) -> None:
        WORKER_CTX.set(f"{self.label}#{idx}")
        while not self._stop_event.is_set():
            try:
                job = self.queue.broker.claim(self.queue.name, [self.job_type])
            except Exception:
                logger.exception("[%s] claim failed", self.label)
                self._stop_event.wait(self.poll_seconds)
                continue
            if job is None:
                self._stop_event.wait(self.poll_seconds)
                continue
            with self._busy_lock:
                self._busy += 1
            token = JOB_CTX.set((self.queue.name, job.id))
            try:
                self.run_job(job)
            except Exception:  # pragma: no cover - runtime safety
                logger.exception("[%s] unexpected error handling job %s", self.label, job.id)
            finally:
                JOB_CTX.reset(token)
                with self._busy_lock:
                    self._busy -= 1

    def run_job(self, job: Job) -> None:
        ctx = JobContext(self.queue, job)
        self.queue.emit("active", job)
        logger.info("[%s] picked job %s (attempt %s/%s)", self.label, job.id, job.attempts_made + 1, job.max_attempts)

        try:
            result = self._execute(ctx)
        except LockLostError as exc:
            logger.warning("[%s] job %s abandoned: %s", self.label, job.id, exc)
            return
        except QueueClosingError as exc:
            released = self.queue.report(lambda: self.queue.broker.release(self.queue.name, job.id, ctx.token))
            if released is not None:
                logger.warning("[%s] job %s handed back for re-delivery: %s", self.label, job.id, exc)
            return
        except Exception as exc:
            self._handle_failure(ctx, exc)
            return

        done = self.queue.report(lambda: self.queue.broker.complete(self.queue.name, job.id, ctx.token, result))
        if done is not None:
            self.queue.emit("completed", done, result)

    def _execute(self, ctx: JobContext) -> Any:
        """Run the processor on a helper thread, heartbeating and enforcing the timeout."""
        outcome: List[Tuple[bool, Any]] = []

        def target() -> None:
            try:
                outcome.append((True, self.processor(ctx)))
            except BaseException as exc:
                outcome.append((False, exc))

        runner = threading.Thread(
            target=contextvars.copy_context().run,
            args=(target,),
            name=f"job-{ctx.id}",
            daemon=True,
        )
        started = time.monotonic()
        runner.start()
        timeout_s = ctx.job.timeout_ms / 1000.0 if ctx.job.timeout_ms else None
        while True:
            wait_s = self.heartbeat_seconds
            if timeout_s is not None:
                wait_s = min(wait_s, max(0.0, timeout_s - (time.monotonic() - started)))
            runner.join(timeout=wait_s)
            if not runner.is_alive():
                break
            if timeout_s is not None and time.monotonic() - started >= timeout_s:
                # the helper keeps running; its later reports fail on the stale lock
                raise JobTimeoutError(f"job timed out after {ctx.job.timeout_ms} ms")
            ctx.heartbeat()

        ok, value = outcome[0]
        if not ok:
            raise value
        return value

    def _handle_failure(self, ctx: JobContext, exc: BaseException) -> None:
        job = ctx.job
        reason = failure_message(exc)
        attempts = job.attempts_made + 1
        final = isinstance(exc, JobValidationError) or attempts >= job.max_attempts
        broker = self.queue.broker

        if final:
            done = self.queue.report(lambda: broker.fail(self.queue.name, job.id, ctx.token, reason))
        else:
            delay_ms = job.backoff.delay_for(attempts) if job.backoff else 0
            done = self.queue.report(lambda: broker.retry_later(self.queue.name, job.id, ctx.token, reason, delay_ms))
            if done is not None:
                logger.info("[%s] job %s retry %s/%s in %sms", self.label, job.id, attempts, job.max_attempts, delay_ms)
        if done is not None:
            self.queue.emit("failed", done, exc)


class StallMonitor:
    """Periodically returns jobs whose worker stopped heartbeating to ``waiting``.

    A job found stalled more than ``max_stalled`` times is failed instead, so
    a payload that keeps killing its worker is not re-delivered forever.
    """

    def __init__(
        self,
        queues: List[Queue],
        visibility_window: float,
        interval: Optional[float] = None,
        max_stalled: int = 1,
    ) -> None:
        self.queues = queues
        self.visibility_window = visibility_window
        self.max_stalled = max_stalled
        self.interval = interval if interval is not None else visibility_window
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def check(self) -> int:
        found = 0
        for queue in self.queues:
            try:
                found += len(queue.requeue_stalled(self.visibility_window, self.max_stalled))
            except Exception:
                logger.exception("[%s] stall check failed", queue.name)
        return found

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="stall-monitor", daemon=True)
        self._thread.start()

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval):
            self.check()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=2.0)
