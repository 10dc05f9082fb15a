"""CLI: check the media database and optionally bootstrap it.

Connects with the URL from ``--url`` or resources/.env, reports the Alembic
revision, and can create the images/jobs/job_logs tables without Alembic
(local SQLite setups) or print image statistics.
"""
from __future__ import annotations

import argparse
from typing import Optional, Sequence

from config import get_database_url, load_env_file
from db.batch_store import BatchImageStore
from db.db_conn import DbConn


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Media database maintenance")
    parser.add_argument("--url", help="Database URL (defaults to DATABASE_URL / DB_* settings)")
    parser.add_argument("--echo", action="store_true", help="Enable SQLAlchemy engine echo")
    parser.add_argument("--create-schema", action="store_true", help="Create missing tables without Alembic")
    parser.add_argument("--stats", action="store_true", help="Print image table statistics")
    return parser.parse_args(argv)


def print_stats(store: BatchImageStore) -> None:
    stats = store.get_stats()
    width = max(len(k) for k in stats)
    for key, value in stats.items():
        print(f"  {key:<{width}}  {value}")
    for storage, count in sorted(store.count_by_storage().items()):
        print(f"  storage[{storage}]  {count}")


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    load_env_file()
    url = args.url or get_database_url()
    if not url:
        print("No database URL: pass --url or set DATABASE_URL / DB_* in resources/.env.")
        return 2

    db = DbConn(db_url=url, echo=args.echo)
    try:
        if not db.test_connection():
            print(f"Cannot connect ({db.dialect})")
            return 1
        print(f"Connected ({db.dialect}); alembic revision: {db.get_alembic_revision() or 'none'}")

        if args.create_schema:
            db.create_all()
            print("Tables images, jobs, job_logs are present")
        if args.stats:
            print("Image statistics:")
            print_stats(BatchImageStore(db))
    finally:
        db.dispose()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
