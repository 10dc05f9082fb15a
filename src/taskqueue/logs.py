from __future__ import annotations

import contextvars
import logging
from typing import Optional, Tuple

from db.db_conn import DbConn
from db.job_logs_repo import JobLogsRepo

WORKER_CTX: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("worker_id", default=None)
JOB_CTX: contextvars.ContextVar[Optional[Tuple[str, str]]] = contextvars.ContextVar("job", default=None)
LOG_GUARD: contextvars.ContextVar[bool] = contextvars.ContextVar("log_guard", default=False)

LOGGER_NAME = "worker"


class JobLogHandler(logging.Handler):
    """Logging handler that writes worker logs into job_logs when a job is bound."""

    def __init__(self, db: DbConn) -> None:
        super().__init__()
        self.db = db
        self.repo = JobLogsRepo()

    def emit(self, record: logging.LogRecord) -> None:
        if LOG_GUARD.get():
            return
        bound = JOB_CTX.get()
        if bound is None:
            return
        token = LOG_GUARD.set(True)
        try:
            queue, job_id = bound
            with self.db.session_scope() as session:
                self.repo.append(session, queue, job_id, record.levelname, self.format(record))
        except Exception:
            self.handleError(record)
        finally:
            LOG_GUARD.reset(token)


class _WorkerFormatter(logging.Formatter):
    """Log formatter that includes worker and job ids from context variables."""

    def format(self, record: logging.LogRecord) -> str:
        wid = WORKER_CTX.get()
        job = JOB_CTX.get()
        prefix = f"[worker-{wid}]" if wid is not None else "[main]"
        if job is not None:
            prefix = f"{prefix} [{job[1]}]"
        record.worker_prefix = prefix  # type: ignore[attr-defined]
        return super().format(record)


def get_logger(db: Optional[DbConn] = None, level: int = logging.INFO) -> logging.Logger:
    """Configure the ``worker`` logger once; ``taskqueue`` and ``db`` loggers share its handlers."""
    logger = logging.getLogger(LOGGER_NAME)
    if logger.handlers:
        return logger
    logger.setLevel(level)
    stream = logging.StreamHandler()
    stream.setLevel(level)
    stream.setFormatter(_WorkerFormatter("[%(asctime)s] %(worker_prefix)s %(levelname)s %(name)s: %(message)s"))
    handlers: list[logging.Handler] = [stream]
    if db is not None:
        db_handler = JobLogHandler(db)
        db_handler.setLevel(level)
        db_handler.setFormatter(logging.Formatter("%(message)s"))
        handlers.append(db_handler)
    for name in (LOGGER_NAME, "taskqueue", "db", "media"):
        lg = logging.getLogger(name)
        lg.setLevel(level)
        for h in handlers:
            lg.addHandler(h)
        lg.propagate = False
    return logger
