"""Shared FastAPI dependencies (queue manager, image store)."""
from __future__ import annotations

from fastapi import Request

from db.batch_store import BatchImageStore
from db.db_conn import DbConn
from taskqueue.errors import QueueNotReadyError
from taskqueue.manager import QueueManager


def get_queue_manager(request: Request) -> QueueManager:
    """Return the manager built at startup; 503 until it is initialized."""
    manager = getattr(request.app.state, "queue_manager", None)
    if manager is None or not manager.initialized:
        raise QueueNotReadyError("queue system is not initialized")
    return manager


def status_url(queue: str, job_id: str) -> str:
    return f"/api/jobs/{queue}/{job_id}/status"


def get_image_store(request: Request) -> BatchImageStore:
    store = getattr(request.app.state, "image_store", None)
    if store is None:
        raise QueueNotReadyError("database is not configured")
    return store


def get_db_conn(request: Request) -> DbConn:
    db = getattr(request.app.state, "db", None)
    if db is None:
        raise QueueNotReadyError("database is not configured")
    return db
