from __future__ import annotations

import base64
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, File, Form, Request, UploadFile, status
from fastapi.responses import JSONResponse

from taskqueue.manager import QueueManager
from web.deps import get_queue_manager, status_url

router = APIRouter(tags=["uploads"])


def _file_data(upload: UploadFile) -> Dict[str, Any]:
    raw = upload.file.read()
    return {
        "buffer": base64.b64encode(raw).decode("ascii"),
        "originalname": upload.filename or "image",
        "mimetype": upload.content_type,
        "size": len(raw),
    }


@router.post("/upload", status_code=status.HTTP_202_ACCEPTED)
def upload_images(
    request: Request,
    images: List[UploadFile] = File(...),
    format: str = Form("webp"),
    quality: Optional[int] = Form(None),
    category_id: Optional[int] = Form(None, alias="categoryId"),
    storage_type: str = Form("local", alias="storageType"),
    manager: QueueManager = Depends(get_queue_manager),
) -> Any:
    """
    Queue uploaded images: one file becomes an ``upload`` job, several a ``batch-upload`` job.
    """
    if not images:
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"success": False, "error": "no files uploaded"})

    options = {
        "format": format,
        "quality": quality,
        "categoryId": category_id,
        "storageType": storage_type,
        "currentDomain": str(request.base_url).rstrip("/"),
    }
    files = [_file_data(upload) for upload in images]
    if len(files) == 1:
        handle = manager.add_image_upload_job(files[0], options)
        message = "image queued for processing"
    else:
        handle = manager.add_batch_image_upload_job(files, options)
        message = f"{len(files)} images queued for processing"

    return {
        "success": True,
        "async": True,
        "jobId": handle["jobId"],
        "queue": handle["queue"],
        "totalFiles": len(files),
        "message": message,
        "statusUrl": status_url(handle["queue"], handle["jobId"]),
    }
