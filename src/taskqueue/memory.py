from __future__ import annotations

import threading
import time
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple
from uuid import uuid4

from taskqueue.errors import LockLostError
from taskqueue.types import Job, JobState, TERMINAL_STATES, clamp_progress, stalled_reason, utcnow


class InMemoryBroker:
    """
    A thread-safe in-memory broker.

    Jobs live only as long as the process; used by tests and single-process
    development. Callers always receive copies, never the stored job.
    """

    def __init__(self) -> None:
        self._jobs: Dict[Tuple[str, str], Job] = {}
        self._cond = threading.Condition()
        self._closed = False

    def ping(self) -> None:
        return None

    def add(self, job: Job) -> str:
        with self._cond:
            self._jobs[(job.queue, job.id)] = job.snapshot()
            self._cond.notify_all()
            return job.id

    def get(self, queue: str, job_id: str) -> Optional[Job]:
        with self._cond:
            job = self._jobs.get((queue, job_id))
            return job.snapshot() if job else None

    def claim(self, queue: str, names: Iterable[str]) -> Optional[Job]:
        wanted = set(names)
        now = utcnow()
        with self._cond:
            candidates = [
                j for (q, _), j in self._jobs.items()
                if q == queue and j.state == JobState.WAITING and j.name in wanted and j.available_at <= now
            ]
            if not candidates:
                return None
            job = min(candidates, key=lambda j: (j.priority, j.created_at))
            job.state = JobState.ACTIVE
            job.lock_token = uuid4().hex
            job.progress = 0
            job.started_at = now
            job.heartbeat_at = now
            self._cond.notify_all()
            return job.snapshot()

    def _owned(self, queue: str, job_id: str, token: str) -> Job:
        job = self._jobs.get((queue, job_id))
        if job is None or job.state != JobState.ACTIVE or job.lock_token != token:
            raise LockLostError(f"lock lost for {queue}:{job_id}")
        return job

    def heartbeat(self, queue: str, job_id: str, token: str) -> None:
        with self._cond:
            self._owned(queue, job_id, token).heartbeat_at = utcnow()

    def update_progress(self, queue: str, job_id: str, token: str, progress: int) -> int:
        with self._cond:
            job = self._owned(queue, job_id, token)
            job.progress = max(job.progress, clamp_progress(progress))
            job.heartbeat_at = utcnow()
            self._cond.notify_all()
            return job.progress

    def complete(self, queue: str, job_id: str, token: str, result: Any) -> Job:
        with self._cond:
            job = self._owned(queue, job_id, token)
            job.state = JobState.COMPLETED
            job.result = result
            job.progress = 100
            job.attempts_made += 1
            job.lock_token = None
            job.finished_at = utcnow()
            snap = job.snapshot()
            if job.remove_on_complete is not None:
                self._trim_locked(queue, JobState.COMPLETED, job.remove_on_complete)
            self._cond.notify_all()
            return snap

    def fail(self, queue: str, job_id: str, token: str, reason: str) -> Job:
        with self._cond:
            job = self._owned(queue, job_id, token)
            job.state = JobState.FAILED
            job.failure_reason = reason
            job.attempts_made += 1
            job.lock_token = None
            job.finished_at = utcnow()
            snap = job.snapshot()
            if job.remove_on_fail is not None:
                self._trim_locked(queue, JobState.FAILED, job.remove_on_fail)
            self._cond.notify_all()
            return snap

    def retry_later(self, queue: str, job_id: str, token: str, reason: str, delay_ms: int) -> Job:
        with self._cond:
            job = self._owned(queue, job_id, token)
            job.state = JobState.WAITING
            job.failure_reason = reason
            job.attempts_made += 1
            job.lock_token = None
            job.available_at = utcnow() + timedelta(milliseconds=delay_ms)
            self._cond.notify_all()
            return job.snapshot()

    def release(self, queue: str, job_id: str, token: str) -> Job:
        with self._cond:
            job = self._owned(queue, job_id, token)
            job.state = JobState.WAITING
            job.lock_token = None
            job.progress = 0
            job.available_at = utcnow()
            self._cond.notify_all()
            return job.snapshot()

    def requeue_stalled(self, queue: str, visibility_window: float, max_stalled: int = 1) -> List[Job]:
        now = utcnow()
        cutoff = now - timedelta(seconds=visibility_window)
        stalled: List[Job] = []
        gave_up = False
        with self._cond:
            for (q, _), job in self._jobs.items():
                if q != queue or job.state != JobState.ACTIVE:
                    continue
                if job.heartbeat_at is None or job.heartbeat_at < cutoff:
                    job.stalled_count += 1
                    job.lock_token = None
                    if job.stalled_count > max_stalled:
                        job.state = JobState.FAILED
                        job.failure_reason = stalled_reason(max_stalled)
                        job.attempts_made += 1
                        job.finished_at = now
                        gave_up = True
                    else:
                        job.state = JobState.WAITING
                        job.available_at = now
                    stalled.append(job.snapshot())
            if gave_up:
                for job in stalled:
                    if job.state == JobState.FAILED and job.remove_on_fail is not None:
                        self._trim_locked(queue, JobState.FAILED, job.remove_on_fail)
                        break
            if stalled:
                self._cond.notify_all()
        return stalled

    def counts(self, queue: str) -> Dict[str, int]:
        now = utcnow()
        out = {"waiting": 0, "active": 0, "completed": 0, "failed": 0, "delayed": 0}
        with self._cond:
            for (q, _), job in self._jobs.items():
                if q != queue:
                    continue
                key = "delayed" if job.is_delayed(now) else job.state.value
                out[key] += 1
        return out

    def _trim_locked(self, queue: str, state: JobState, keep: int) -> int:
        done = sorted(
            (j for (q, _), j in self._jobs.items() if q == queue and j.state == state),
            key=lambda j: j.finished_at or j.created_at,
            reverse=True,
        )
        evicted = done[keep:]
        for job in evicted:
            del self._jobs[(queue, job.id)]
        return len(evicted)

    def trim(self, queue: str, state: JobState, keep: int) -> int:
        with self._cond:
            return self._trim_locked(queue, state, keep)

    def clean(self, queue: str, grace_ms: int, state: JobState) -> int:
        if state not in TERMINAL_STATES:
            raise ValueError(f"only terminal jobs can be cleaned, got {state.value}")
        cutoff = utcnow() - timedelta(milliseconds=grace_ms)
        with self._cond:
            victims = [
                key for key, j in self._jobs.items()
                if key[0] == queue and j.state == state and (j.finished_at or j.created_at) <= cutoff
            ]
            for key in victims:
                del self._jobs[key]
            return len(victims)

    def wait(self, queue: str, job_id: str, timeout: Optional[float] = None) -> Optional[Job]:
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                job = self._jobs.get((queue, job_id))
                if job is None or job.is_terminal or self._closed:
                    return job.snapshot() if job else None
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return job.snapshot()
                # bounded wait so delayed retries and closes are re-checked
                self._cond.wait(timeout=0.5 if remaining is None else min(remaining, 0.5))

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()
