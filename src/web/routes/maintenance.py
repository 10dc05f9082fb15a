from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from taskqueue.manager import QueueManager
from web.deps import get_queue_manager, status_url

router = APIRouter(prefix="/api", tags=["maintenance"])


class BackupRequest(BaseModel):
    format: str = "sql"


class RestoreRequest(BaseModel):
    file_path: str = Field(alias="filePath")
    format: str = "sql"


class MigrationRequest(BaseModel):
    from_storage: str = Field(alias="fromStorage")
    to_storage: str = Field(alias="toStorage")
    options: Optional[Dict[str, Any]] = None


def _accepted(handle: Dict[str, str], message: str) -> Dict[str, Any]:
    return {
        "success": True,
        "async": True,
        "jobId": handle["jobId"],
        "queue": handle["queue"],
        "message": message,
        "statusUrl": status_url(handle["queue"], handle["jobId"]),
    }


@router.post("/backup-database", status_code=status.HTTP_202_ACCEPTED)
def backup_database(payload: Optional[BackupRequest] = None, manager: QueueManager = Depends(get_queue_manager)) -> Dict[str, Any]:
    payload = payload or BackupRequest()
    return _accepted(manager.add_backup_job(payload.format), "backup queued")


@router.post("/restore-database", status_code=status.HTTP_202_ACCEPTED)
def restore_database(payload: RestoreRequest, manager: QueueManager = Depends(get_queue_manager)) -> Dict[str, Any]:
    return _accepted(manager.add_restore_job(payload.file_path, payload.format), "restore queued")


@router.post("/migrate-storage", status_code=status.HTTP_202_ACCEPTED)
def migrate_storage(payload: MigrationRequest, manager: QueueManager = Depends(get_queue_manager)) -> Dict[str, Any]:
    """
    Queue a move of every image from one storage backend to another.
    """
    if payload.from_storage == payload.to_storage:
        raise ValueError("source and target storage are the same")
    handle = manager.add_migration_job(payload.from_storage, payload.to_storage, payload.options)
    return _accepted(handle, f"migration {payload.from_storage} -> {payload.to_storage} queued")
