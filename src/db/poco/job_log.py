from __future__ import annotations

from sqlalchemy import Column, DateTime, Index, Integer, String, Text

from db.base import Base


class JobLog(Base):
    __tablename__ = "job_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    queue = Column(String(50), nullable=False)
    job_id = Column(String(40), nullable=False)
    ts = Column(DateTime(timezone=True), nullable=False)
    level = Column(String(10), nullable=False)
    message = Column(Text, nullable=False)

    __table_args__ = (
        Index("ix_job_logs_job_ts", "queue", "job_id", "ts"),
    )
