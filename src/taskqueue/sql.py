"""Relational job broker.

Jobs are rows in the ``jobs`` table, so they survive restarts and can be
claimed by workers in several processes. Claims use ``FOR UPDATE SKIP
LOCKED`` where the dialect supports it and a conditional state update
everywhere, so two workers never hold the same job.
"""
from __future__ import annotations

import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional
from uuid import uuid4

from sqlalchemy import and_, delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from db.db_conn import DbConn
from db.poco.job import JobRow
from taskqueue.errors import BrokerUnavailableError, LockLostError
from taskqueue.types import BackoffPolicy, Job, JobState, TERMINAL_STATES, clamp_progress, stalled_reason, utcnow

CLAIM_RETRIES = 3


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands timestamps back without tzinfo
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_job(row: JobRow) -> Job:
    return Job(
        queue=row.queue,
        name=row.name,
        payload=dict(row.payload or {}),
        id=row.id,
        state=JobState(row.state),
        progress=row.progress or 0,
        priority=row.priority or 0,
        attempts_made=row.attempts_made or 0,
        max_attempts=row.max_attempts or 1,
        stalled_count=row.stalled_count or 0,
        backoff=BackoffPolicy.coerce(row.backoff),
        timeout_ms=row.timeout_ms,
        remove_on_complete=row.remove_on_complete,
        remove_on_fail=row.remove_on_fail,
        result=row.result,
        failure_reason=row.failure_reason,
        lock_token=row.lock_token,
        created_at=_aware(row.created_at),
        available_at=_aware(row.available_at),
        started_at=_aware(row.started_at),
        heartbeat_at=_aware(row.heartbeat_at),
        finished_at=_aware(row.finished_at),
    )


class SqlBroker:
    """Persistent broker backed by SQLAlchemy."""

    def __init__(self, db: DbConn, wait_poll_seconds: float = 0.25) -> None:
        self.db = db
        self.wait_poll_seconds = wait_poll_seconds

    def ping(self) -> None:
        if not self.db.test_connection():
            raise BrokerUnavailableError("job store is unreachable")

    def add(self, job: Job) -> str:
        row = JobRow(
            id=job.id,
            queue=job.queue,
            name=job.name,
            payload=job.payload,
            state=job.state.value,
            progress=job.progress,
            priority=job.priority,
            attempts_made=job.attempts_made,
            max_attempts=job.max_attempts,
            stalled_count=job.stalled_count,
            backoff=job.backoff.to_dict() if job.backoff else None,
            timeout_ms=job.timeout_ms,
            remove_on_complete=job.remove_on_complete,
            remove_on_fail=job.remove_on_fail,
            created_at=job.created_at,
            available_at=job.available_at,
        )
        try:
            with self.db.session_scope() as session:
                session.add(row)
        except SQLAlchemyError as exc:
            raise BrokerUnavailableError(f"failed to enqueue job: {exc}") from exc
        return job.id

    def get(self, queue: str, job_id: str) -> Optional[Job]:
        with self.db.session_scope() as session:
            row = session.get(JobRow, {"id": job_id, "queue": queue})
            return _to_job(row) if row else None

    def claim(self, queue: str, names: Iterable[str]) -> Optional[Job]:
        names = list(names)
        for _ in range(CLAIM_RETRIES):
            now = utcnow()
            with self.db.session_scope() as session:
                stmt = (
                    select(JobRow)
                    .where(
                        JobRow.queue == queue,
                        JobRow.state == JobState.WAITING.value,
                        JobRow.name.in_(names),
                        JobRow.available_at <= now,
                    )
                    .order_by(JobRow.priority.asc(), JobRow.created_at.asc())
                    .limit(1)
                )
                if self.db.dialect == "postgresql":
                    stmt = stmt.with_for_update(skip_locked=True)
                row = session.scalars(stmt).first()
                if row is None:
                    return None
                token = uuid4().hex
                claimed = session.execute(
                    update(JobRow)
                    .where(
                        JobRow.queue == queue,
                        JobRow.id == row.id,
                        JobRow.state == JobState.WAITING.value,
                    )
                    .values(
                        state=JobState.ACTIVE.value,
                        lock_token=token,
                        progress=0,
                        started_at=now,
                        heartbeat_at=now,
                    )
                    .execution_options(synchronize_session=False)
                ).rowcount
                if claimed != 1:
                    # another worker won the race, look again
                    continue
                session.flush()
                session.refresh(row)
                return _to_job(row)
        return None

    def _owned(self, session: Session, queue: str, job_id: str, token: str) -> JobRow:
        row = session.get(JobRow, {"id": job_id, "queue": queue}, with_for_update=self.db.dialect == "postgresql")
        if row is None or row.state != JobState.ACTIVE.value or row.lock_token != token:
            raise LockLostError(f"lock lost for {queue}:{job_id}")
        return row

    def heartbeat(self, queue: str, job_id: str, token: str) -> None:
        with self.db.session_scope() as session:
            self._owned(session, queue, job_id, token).heartbeat_at = utcnow()

    def update_progress(self, queue: str, job_id: str, token: str, progress: int) -> int:
        with self.db.session_scope() as session:
            row = self._owned(session, queue, job_id, token)
            row.progress = max(row.progress or 0, clamp_progress(progress))
            row.heartbeat_at = utcnow()
            return row.progress

    def complete(self, queue: str, job_id: str, token: str, result: Any) -> Job:
        with self.db.session_scope() as session:
            row = self._owned(session, queue, job_id, token)
            row.state = JobState.COMPLETED.value
            row.result = result
            row.progress = 100
            row.attempts_made = (row.attempts_made or 0) + 1
            row.lock_token = None
            row.finished_at = utcnow()
            job = _to_job(row)
        if job.remove_on_complete is not None:
            self.trim(queue, JobState.COMPLETED, job.remove_on_complete)
        return job

    def fail(self, queue: str, job_id: str, token: str, reason: str) -> Job:
        with self.db.session_scope() as session:
            row = self._owned(session, queue, job_id, token)
            row.state = JobState.FAILED.value
            row.failure_reason = reason
            row.attempts_made = (row.attempts_made or 0) + 1
            row.lock_token = None
            row.finished_at = utcnow()
            job = _to_job(row)
        if job.remove_on_fail is not None:
            self.trim(queue, JobState.FAILED, job.remove_on_fail)
        return job

    def retry_later(self, queue: str, job_id: str, token: str, reason: str, delay_ms: int) -> Job:
        with self.db.session_scope() as session:
            row = self._owned(session, queue, job_id, token)
            row.state = JobState.WAITING.value
            row.failure_reason = reason
            row.attempts_made = (row.attempts_made or 0) + 1
            row.lock_token = None
            row.available_at = utcnow() + timedelta(milliseconds=delay_ms)
            return _to_job(row)

    def release(self, queue: str, job_id: str, token: str) -> Job:
        with self.db.session_scope() as session:
            row = self._owned(session, queue, job_id, token)
            row.state = JobState.WAITING.value
            row.lock_token = None
            row.progress = 0
            row.available_at = utcnow()
            return _to_job(row)

    def requeue_stalled(self, queue: str, visibility_window: float, max_stalled: int = 1) -> List[Job]:
        now = utcnow()
        cutoff = now - timedelta(seconds=visibility_window)
        with self.db.session_scope() as session:
            stmt = select(JobRow).where(
                JobRow.queue == queue,
                JobRow.state == JobState.ACTIVE.value,
                JobRow.heartbeat_at < cutoff,
            )
            if self.db.dialect == "postgresql":
                stmt = stmt.with_for_update(skip_locked=True)
            rows = list(session.scalars(stmt).all())
            for row in rows:
                row.stalled_count = (row.stalled_count or 0) + 1
                row.lock_token = None
                if row.stalled_count > max_stalled:
                    row.state = JobState.FAILED.value
                    row.failure_reason = stalled_reason(max_stalled)
                    row.attempts_made = (row.attempts_made or 0) + 1
                    row.finished_at = now
                else:
                    row.state = JobState.WAITING.value
                    row.available_at = now
            jobs = [_to_job(r) for r in rows]
        keep = next((j.remove_on_fail for j in jobs if j.state == JobState.FAILED and j.remove_on_fail is not None), None)
        if keep is not None:
            self.trim(queue, JobState.FAILED, keep)
        return jobs

    def counts(self, queue: str) -> Dict[str, int]:
        now = utcnow()
        out = {"waiting": 0, "active": 0, "completed": 0, "failed": 0, "delayed": 0}
        with self.db.session_scope() as session:
            rows = session.execute(
                select(JobRow.state, func.count()).where(JobRow.queue == queue).group_by(JobRow.state)
            ).all()
            delayed = session.execute(
                select(func.count())
                .select_from(JobRow)
                .where(
                    JobRow.queue == queue,
                    JobRow.state == JobState.WAITING.value,
                    JobRow.available_at > now,
                )
            ).scalar_one()
        for state, count in rows:
            out[state] = int(count)
        out["delayed"] = int(delayed)
        out["waiting"] -= out["delayed"]
        return out

    def trim(self, queue: str, state: JobState, keep: int) -> int:
        with self.db.session_scope() as session:
            keep_ids = select(JobRow.id).where(
                JobRow.queue == queue, JobRow.state == state.value
            ).order_by(JobRow.finished_at.desc()).limit(keep)
            result = session.execute(
                delete(JobRow)
                .where(
                    JobRow.queue == queue,
                    JobRow.state == state.value,
                    JobRow.id.not_in(keep_ids.scalar_subquery()),
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount or 0

    def clean(self, queue: str, grace_ms: int, state: JobState) -> int:
        if state not in TERMINAL_STATES:
            raise ValueError(f"only terminal jobs can be cleaned, got {state.value}")
        cutoff = utcnow() - timedelta(milliseconds=grace_ms)
        with self.db.session_scope() as session:
            result = session.execute(
                delete(JobRow)
                .where(and_(JobRow.queue == queue, JobRow.state == state.value, JobRow.finished_at <= cutoff))
                .execution_options(synchronize_session=False)
            )
            return result.rowcount or 0

    def wait(self, queue: str, job_id: str, timeout: Optional[float] = None) -> Optional[Job]:
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            job = self.get(queue, job_id)
            if job is None or job.is_terminal:
                return job
            if deadline is not None and time.monotonic() >= deadline:
                return job
            time.sleep(self.wait_poll_seconds)

    def close(self) -> None:
        self.db.dispose()
