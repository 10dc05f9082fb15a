"""Environment-driven settings for the media job service.

Entry points call ``load_env_file()`` once (``resources/.env``); the
``get_*_config`` helpers then return plain dicts with defaults applied:
database URL and pool, per-queue job options, worker timing and media paths.
"""
from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv


IMAGE_PROCESSING = "image-processing"
DATABASE_BACKUP = "database-backup"
STORAGE_MIGRATION = "storage-migration"


def load_env_file(env_path: Optional[Path] = None) -> None:
    """
    Load environment variables from an .env file.

    Parameters:
        env_path: Optional path to the .env file. Defaults to resources/.env.
    """
    env_file = env_path or "resources/.env"
    if Path(env_file).exists():
        load_dotenv(env_file)


def get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    """Fetch an environment variable with an optional default."""
    return os.getenv(name, default)


def _int_env(name: str, default: int) -> int:
    raw = get_env(name)
    return int(raw) if raw not in (None, "") else default


def _float_env(name: str, default: float) -> float:
    raw = get_env(name)
    return float(raw) if raw not in (None, "") else default


# ----- Database helpers -----

def get_database_url() -> Optional[str]:
    """Return a database URL for PostgreSQL.

    Prefers ``DATABASE_URL`` if present; otherwise constructs a DSN from:
    - DB_HOST, DB_PORT, DB_NAME, DB_USER, DB_PASSWORD
    """
    db_url = get_env("DATABASE_URL")
    if db_url:
        return db_url

    host = get_env("DB_HOST")
    port = get_env("DB_PORT") or "5432"
    name = get_env("DB_NAME")
    user = get_env("DB_USER")
    password = get_env("DB_PASSWORD")

    if not (host and name and user and password):
        return None

    return f"postgresql+psycopg2://{user}:{password}@{host}:{port}/{name}"


def get_pool_config() -> Dict[str, int]:
    """Connection pool bounds for the SQLAlchemy engine."""
    return {
        "pool_size": _int_env("DB_POOL_SIZE", 10),
        "max_overflow": _int_env("DB_MAX_OVERFLOW", 5),
    }


# ----- Queue helpers -----

def get_queue_config() -> Dict[str, Dict[str, Any]]:
    """Return default job options per queue name.

    Keys mirror ``taskqueue.types.JobOptions`` fields. Backoff is expressed as
    ``(type, delay_ms)``; ``None`` means retries are immediate.
    """
    return {
        IMAGE_PROCESSING: {
            "attempts": _int_env("IMAGE_QUEUE_ATTEMPTS", 3),
            "backoff": ("exponential", _int_env("IMAGE_QUEUE_BACKOFF_MS", 2000)),
            "timeout_ms": None,
            "remove_on_complete": 100,
            "remove_on_fail": 200,
        },
        DATABASE_BACKUP: {
            "attempts": _int_env("BACKUP_QUEUE_ATTEMPTS", 2),
            "backoff": None,
            "timeout_ms": _int_env("BACKUP_QUEUE_TIMEOUT_MS", 600_000),
            "remove_on_complete": 50,
            "remove_on_fail": None,
        },
        STORAGE_MIGRATION: {
            # partial migrations already mutate durable state, never retried
            "attempts": 1,
            "backoff": None,
            "timeout_ms": _int_env("MIGRATION_QUEUE_TIMEOUT_MS", 1_800_000),
            "remove_on_complete": 10,
            "remove_on_fail": None,
        },
    }


def get_worker_config() -> Dict[str, Any]:
    """Worker loop tunables.

    Keys:
    - poll_seconds: idle sleep between claims (WORKER_POLL_SECONDS)
    - stalled_interval: visibility window for heartbeats (STALLED_INTERVAL_SECONDS)
    - max_stalled: stalls tolerated before a job fails (MAX_STALLED_COUNT)
    - shutdown_grace: seconds to wait for in-flight jobs (SHUTDOWN_GRACE_SECONDS)
    - backend: ``sql`` or ``memory`` (QUEUE_BACKEND)
    - app_workers: run workers inside the web process too (APP_RUN_WORKERS)
    """
    return {
        "poll_seconds": _float_env("WORKER_POLL_SECONDS", 1.0),
        "stalled_interval": _float_env("STALLED_INTERVAL_SECONDS", 30.0),
        "max_stalled": _int_env("MAX_STALLED_COUNT", 1),
        "shutdown_grace": _float_env("SHUTDOWN_GRACE_SECONDS", 30.0),
        "backend": (get_env("QUEUE_BACKEND", "sql") or "sql").lower(),
        "app_workers": (get_env("APP_RUN_WORKERS", "true") or "true").lower() in ("1", "true", "yes"),
    }


# ----- Media helpers -----

def parse_storage_backends(raw: Optional[str]) -> Dict[str, Dict[str, str]]:
    """Parse ``name=root[|base_url]`` entries separated by commas.

    ``STORAGE_BACKENDS=archive=/srv/archive|https://archive.example.com,nas=/mnt/nas``
    gives two extra filesystem backends next to ``local``.
    """
    backends: Dict[str, Dict[str, str]] = {}
    for entry in (raw or "").split(","):
        entry = entry.strip()
        if not entry:
            continue
        name, sep, target = entry.partition("=")
        root, _, base_url = target.partition("|")
        name, root = name.strip(), root.strip()
        if not sep or not name or not root:
            raise ValueError(f"invalid STORAGE_BACKENDS entry: {entry!r} (expected name=root[|base_url])")
        backends[name] = {"root": root, "base_url": base_url.strip()}
    return backends


def get_media_config() -> Dict[str, Any]:
    return {
        "upload_dir": get_env("UPLOAD_DIR", "uploads"),
        "backup_dir": get_env("BACKUP_DIR", "backups"),
        "image_domain": get_env("IMAGE_DOMAIN"),
        "quality": _int_env("IMAGE_QUALITY_WEBP", 80),
        "storages": parse_storage_backends(get_env("STORAGE_BACKENDS")),
    }
