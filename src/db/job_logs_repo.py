from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from db.poco.job_log import JobLog


class JobLogsRepo:
    """Append-only log storage per job."""

    def append(self, session: Session, queue: str, job_id: str, level: str, message: str, ts: Optional[datetime] = None) -> None:
        session.add(JobLog(queue=queue, job_id=job_id, level=level, message=message, ts=ts or datetime.now(tz=timezone.utc)))

    def list_logs(self, session: Session, queue: str, job_id: str, limit: int = 200, offset: int = 0) -> List[JobLog]:
        stmt = (
            select(JobLog)
            .where(JobLog.queue == queue, JobLog.job_id == job_id)
            .order_by(JobLog.ts.desc(), JobLog.id.desc())
            .offset(offset)
            .limit(limit)
        )
        return list(session.scalars(stmt).all())
