from __future__ import annotations

from sqlalchemy import Column, DateTime, Index, Integer, JSON, String, Text

from db.base import Base


class JobRow(Base):
    __tablename__ = "jobs"

    id = Column(String(40), primary_key=True)
    queue = Column(String(50), primary_key=True)
    name = Column(String(50), nullable=False)  # upload | batch-upload | backup | restore | migrate
    payload = Column(JSON, nullable=True)
    state = Column(String(20), nullable=False, default="waiting")
    progress = Column(Integer, nullable=False, default=0)
    priority = Column(Integer, nullable=False, default=0)
    attempts_made = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=1)
    stalled_count = Column(Integer, nullable=False, default=0)
    backoff = Column(JSON, nullable=True)
    timeout_ms = Column(Integer, nullable=True)
    remove_on_complete = Column(Integer, nullable=True)
    remove_on_fail = Column(Integer, nullable=True)
    result = Column(JSON, nullable=True)
    failure_reason = Column(Text, nullable=True)
    lock_token = Column(String(40), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    available_at = Column(DateTime(timezone=True), nullable=False)
    started_at = Column(DateTime(timezone=True), nullable=True)
    heartbeat_at = Column(DateTime(timezone=True), nullable=True)
    finished_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_jobs_claim", "queue", "state", "name", "priority", "created_at"),
        Index("ix_jobs_finished", "queue", "state", "finished_at"),
    )
