"""Shared fixtures: src/ on sys.path, SQLite databases and fast queue managers."""
from pathlib import Path
import sys

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[2]
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from sqlalchemy.pool import StaticPool  # noqa: E402

from config import DATABASE_BACKUP, IMAGE_PROCESSING, STORAGE_MIGRATION  # noqa: E402
from db.db_conn import DbConn  # noqa: E402
from taskqueue.manager import QueueManager  # noqa: E402
from taskqueue.memory import InMemoryBroker  # noqa: E402

FAST_QUEUE_CONFIG = {
    IMAGE_PROCESSING: {
        "attempts": 3,
        "backoff": ("exponential", 5),
        "timeout_ms": None,
        "remove_on_complete": 100,
        "remove_on_fail": 200,
    },
    DATABASE_BACKUP: {
        "attempts": 2,
        "backoff": None,
        "timeout_ms": 5_000,
        "remove_on_complete": 50,
        "remove_on_fail": None,
    },
    STORAGE_MIGRATION: {
        "attempts": 1,
        "backoff": None,
        "timeout_ms": 5_000,
        "remove_on_complete": 10,
        "remove_on_fail": None,
    },
}

FAST_WORKER_CONFIG = {
    "poll_seconds": 0.01,
    "stalled_interval": 5.0,
    "shutdown_grace": 2.0,
    "backend": "memory",
    "app_workers": True,
}


@pytest.fixture
def memory_db():
    """Single-connection in-memory SQLite; for tests that touch the DB from one thread."""
    db = DbConn("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    db.create_all()
    yield db
    db.dispose()


@pytest.fixture
def file_db(tmp_path):
    """File-backed SQLite; each worker thread gets its own pooled connection."""
    db = DbConn(f"sqlite:///{tmp_path / 'media.db'}", connect_args={"check_same_thread": False, "timeout": 30})
    db.create_all()
    yield db
    db.dispose()


@pytest.fixture
def make_manager():
    """Build initialized in-memory managers and shut them all down afterwards."""
    created = []

    def factory(services=None, queue_config=None, **worker_overrides):
        manager = QueueManager(
            InMemoryBroker(),
            services=services,
            queue_config=queue_config or FAST_QUEUE_CONFIG,
            worker_config={**FAST_WORKER_CONFIG, **worker_overrides},
        )
        manager.initialize()
        created.append(manager)
        return manager

    yield factory
    for manager in created:
        manager.shutdown(grace=2.0)
