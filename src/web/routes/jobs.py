from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from db.db_conn import DbConn
from db.job_logs_repo import JobLogsRepo
from taskqueue.errors import QueueError
from taskqueue.manager import QueueManager
from web.deps import get_db_conn, get_queue_manager

router = APIRouter(prefix="/api", tags=["jobs"])
logs_repo = JobLogsRepo()


class JobRef(BaseModel):
    queue: str
    job_id: str = Field(alias="jobId")


class BatchStatusRequest(BaseModel):
    jobs: List[JobRef]


class CleanRequest(BaseModel):
    grace_ms: int = Field(default=0, alias="graceMs", ge=0)
    state: str = "completed"


def _status_body(manager: QueueManager, queue: str, job_id: str) -> Dict[str, Any]:
    body = manager.get_status(queue, job_id)
    if not body.get("exists"):
        return {"success": False, "exists": False, "jobId": job_id, "queue": queue, "error": "job not found"}
    if "failedReason" in body:
        body["error"] = body["failedReason"]
    return {"success": True, **body}


@router.get("/jobs/{queue}/{job_id}/status")
def get_job_status(queue: str, job_id: str, manager: QueueManager = Depends(get_queue_manager)) -> Any:
    """
    Current state of one job; unknown or evicted jobs answer 404.
    """
    body = _status_body(manager, queue, job_id)
    if not body["exists"]:
        return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content=body)
    return body


@router.post("/jobs/batch-status")
def get_batch_status(payload: BatchStatusRequest, manager: QueueManager = Depends(get_queue_manager)) -> Dict[str, Any]:
    """
    Status for several jobs at once; a bad entry gets its own error instead of failing the request.
    """
    statuses: List[Dict[str, Any]] = []
    for ref in payload.jobs:
        try:
            statuses.append(_status_body(manager, ref.queue, ref.job_id))
        except QueueError as exc:
            statuses.append({"success": False, "jobId": ref.job_id, "queue": ref.queue, "error": str(exc)})
    return {"success": True, "statuses": statuses}


@router.get("/queues/stats")
def get_queue_stats(queue: Optional[str] = None, manager: QueueManager = Depends(get_queue_manager)) -> Dict[str, Any]:
    names = [queue] if queue else list(manager.queues)
    return {"success": True, "stats": {name: manager.get_queue_stats(name) for name in names}}


@router.post("/queues/{queue}/clean")
def clean_queue(
    queue: str,
    payload: Optional[CleanRequest] = None,
    manager: QueueManager = Depends(get_queue_manager),
) -> Dict[str, Any]:
    payload = payload or CleanRequest()
    return manager.clean_queue(queue, payload.grace_ms, payload.state)


@router.get("/jobs/{queue}/{job_id}/logs")
def get_job_logs(
    queue: str,
    job_id: str,
    limit: int = Query(200, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    manager: QueueManager = Depends(get_queue_manager),
    db: DbConn = Depends(get_db_conn),
) -> Dict[str, Any]:
    """
    Worker log lines recorded while the job ran, newest first.
    """
    name = manager.queue(queue).name
    with db.session_scope() as session:
        rows = logs_repo.list_logs(session, name, job_id, limit=limit, offset=offset)
        logs = [{"ts": r.ts, "level": r.level, "message": r.message} for r in rows]
    return {"success": True, "jobId": job_id, "queue": name, "logs": logs}
