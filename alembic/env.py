from __future__ import annotations

import sys
from logging.config import fileConfig
from pathlib import Path

from alembic import context
from sqlalchemy import engine_from_config, pool

SRC = Path(__file__).resolve().parents[1] / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from config import get_database_url, load_env_file  # type: ignore  # noqa: E402
from db.base import Base  # type: ignore  # noqa: E402
from db.poco import image, job, job_log  # noqa: E402,F401  # registers images, jobs, job_logs

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def resolve_url() -> str:
    """``alembic -x db_url=...`` wins over resources/.env and DATABASE_URL."""
    override = context.get_x_argument(as_dictionary=True).get("db_url")
    if override:
        return override
    load_env_file()
    url = get_database_url()
    if not url:
        raise RuntimeError("Database URL not configured. Set DATABASE_URL, DB_* in resources/.env, or -x db_url=...")
    return url


def _configure(url: str, **kwargs) -> None:
    # SQLite cannot ALTER most columns in place; batch mode rebuilds the table
    context.configure(
        target_metadata=target_metadata,
        compare_type=True,
        render_as_batch=url.startswith("sqlite"),
        **kwargs,
    )


def run_offline(url: str) -> None:
    _configure(url, url=url, literal_binds=True, dialect_opts={"paramstyle": "named"})
    with context.begin_transaction():
        context.run_migrations()


def run_online(url: str) -> None:
    section = config.get_section(config.config_ini_section) or {}
    section["sqlalchemy.url"] = url
    engine = engine_from_config(section, prefix="sqlalchemy.", poolclass=pool.NullPool)
    with engine.connect() as connection:
        _configure(url, connection=connection)
        with context.begin_transaction():
            context.run_migrations()


_url = resolve_url()
if context.is_offline_mode():
    run_offline(_url)
else:
    run_online(_url)
