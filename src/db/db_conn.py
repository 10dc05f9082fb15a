"""Engine and session management shared by the API, workers and CLI.

PostgreSQL engines get the pool settings from ``config.get_pool_config``;
SQLite engines are opened so that worker threads can share them.
"""
from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from config import get_database_url, get_pool_config


def _engine_kwargs(url: str, overrides: Dict[str, Any]) -> Dict[str, Any]:
    kwargs = dict(overrides)
    if url.startswith("sqlite"):
        connect_args = dict(kwargs.pop("connect_args", None) or {})
        connect_args.setdefault("check_same_thread", False)
        connect_args.setdefault("timeout", 30)
        kwargs["connect_args"] = connect_args
    elif "poolclass" not in kwargs:
        for key, value in get_pool_config().items():
            kwargs.setdefault(key, value)
    return kwargs


class DbConn:
    """Owns one engine; ``session_scope`` is the unit of work.

    Each scope checks a connection out of the pool and returns it on every
    exit path, so work dispatched to different threads never shares one.

        db = DbConn()
        with db.session_scope() as s:
            s.execute(text("SELECT 1"))
    """

    def __init__(self, db_url: Optional[str] = None, echo: bool = False, **engine_kwargs: Any) -> None:
        url = db_url or get_database_url()
        if not url:
            raise ValueError("Database URL not configured. Check resources/.env or DATABASE_URL.")
        self._engine: Engine = create_engine(url, echo=echo, pool_pre_ping=True, **_engine_kwargs(url, engine_kwargs))
        self._Session = sessionmaker(bind=self._engine, autoflush=False, expire_on_commit=False, future=True)

    @property
    def engine(self) -> Engine:
        return self._engine

    @property
    def dialect(self) -> str:
        return self._engine.dialect.name

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        session: Session = self._Session()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def create_all(self) -> None:
        """Create images, jobs and job_logs if missing (tests, SQLite bootstrap)."""
        from db.base import Base
        from db.poco import image, job, job_log  # noqa: F401

        Base.metadata.create_all(self._engine)

    def test_connection(self) -> bool:
        try:
            with self._engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError:
            return False

    def get_alembic_revision(self) -> Optional[str]:
        """Current Alembic head, or None before the first ``alembic upgrade``."""
        try:
            with self._engine.connect() as conn:
                return conn.execute(text("SELECT version_num FROM alembic_version LIMIT 1")).scalar()
        except SQLAlchemyError:
            return None

    def dispose(self) -> None:
        self._engine.dispose()
