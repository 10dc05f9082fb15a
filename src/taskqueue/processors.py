"""Job processors for the image, backup and migration queues."""
from __future__ import annotations

import base64
import binascii
import logging
import math
import mimetypes
import secrets
import threading
import time
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from config import DATABASE_BACKUP, IMAGE_PROCESSING, STORAGE_MIGRATION, get_media_config
from db.backup import BackupService
from db.batch_store import BatchImageStore
from media.storage import LocalStorage, StorageRegistry
from media.transform import Transformer, TransformOptions
from taskqueue.errors import JobValidationError, QueueClosingError
from taskqueue.limiter import Settled, settle_all
from taskqueue.queue import JobContext

if TYPE_CHECKING:
    from taskqueue.manager import QueueManager

logger = logging.getLogger(__name__)

UPLOAD_CONCURRENCY = 5
BATCH_UPLOAD_CONCURRENCY = 5
MIGRATION_CONCURRENCY = 3
CHILD_WAIT_SECONDS = 600.0
BACKUP_FORMATS = ("sql", "json")


@dataclass
class ProcessorServices:
    """Collaborators the processors need; built once per process."""

    store: BatchImageStore
    storages: StorageRegistry
    transformer: Transformer = field(default_factory=Transformer)
    backups: Optional[BackupService] = None
    default_quality: int = 80
    image_domain: Optional[str] = None

    @classmethod
    def from_env(cls, db: Any) -> "ProcessorServices":
        media = get_media_config()
        store = BatchImageStore(db)
        storages = StorageRegistry({"local": LocalStorage(media["upload_dir"], media["image_domain"] or "")})
        for name, backend in media["storages"].items():
            storages.register(name, LocalStorage(backend["root"], backend["base_url"]))
        logger.info("storage backends: %s", ", ".join(storages.names()))
        return cls(
            store=store,
            storages=storages,
            backups=BackupService(store, media["backup_dir"]),
            default_quality=media["quality"],
            image_domain=media["image_domain"],
        )


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _embed_codes(name: str, url: str) -> Dict[str, str]:
    return {
        "markdown_code": f"![{name}]({url})",
        "html_code": f'<img src="{url}" alt="{name}" />',
    }


def _decode_buffer(file_data: Any) -> bytes:
    if not isinstance(file_data, dict) or not file_data.get("buffer"):
        raise JobValidationError("fileData.buffer is required")
    try:
        return base64.b64decode(file_data["buffer"], validate=True)
    except (binascii.Error, ValueError, TypeError) as exc:
        raise JobValidationError("fileData.buffer is not valid base64") from exc


def _public_url(url: str, key: str, domain: Optional[str]) -> str:
    if domain:
        return f"{domain.rstrip('/')}/i/{key}"
    return url


def process_image_upload(job: JobContext, services: ProcessorServices) -> Dict[str, Any]:
    data = job.data
    options = data.get("options") or {}
    started = time.monotonic()

    job.progress(10)
    file_data = data.get("fileData")
    raw = _decode_buffer(file_data)
    original_name = file_data.get("originalname") or "image"

    job.progress(30)
    fmt_option = TransformOptions(
        format=options.get("format") or "webp",
        quality=int(options.get("quality") or services.default_quality),
    )
    target = services.transformer.resolve_format(raw, fmt_option)
    output = services.transformer.transform(raw, fmt_option)
    ext = services.transformer.extension(target)
    filename = f"{int(time.time() * 1000)}-{secrets.token_hex(3)}.{ext}"

    job.progress(60)
    storage_type = options.get("storageType") or "local"
    backend = services.storages.get(storage_type)
    url = backend.put(filename, output, services.transformer.content_type(target))
    if storage_type == "local":
        url = _public_url(url, filename, options.get("imageDomain") or options.get("currentDomain") or services.image_domain)

    job.progress(80)
    codes = _embed_codes(original_name, url)
    services.store.batch_insert(
        [
            {
                "filename": filename,
                "path": filename,
                "file_size": len(output),
                "storage": storage_type,
                "format": ext,
                "url": url,
                "category_id": options.get("categoryId"),
                **codes,
            }
        ]
    )

    job.progress(100)
    logger.info("image %s stored as %s (%s bytes)", original_name, filename, len(output))
    return {
        "success": True,
        "filename": filename,
        "url": url,
        "markdown": codes["markdown_code"],
        "html": codes["html_code"],
        "size": len(output),
        "duration": _elapsed_ms(started),
    }


def process_batch_image_upload(job: JobContext, manager: "QueueManager") -> Dict[str, Any]:
    """Fan the files out as child ``upload`` jobs and collect every outcome.

    Child failures end up in ``errors``; the batch job itself still completes.
    If the queues close before every child settles the job is handed back.
    """
    data = job.data
    files: List[Dict[str, Any]] = data.get("files") or []
    if not files:
        raise JobValidationError("files must be a non-empty list")
    options = data.get("options") or {}
    started = time.monotonic()
    total = len(files)
    settled = 0
    lock = threading.Lock()

    def upload_one(file_data: Dict[str, Any]):
        def run() -> Any:
            handle = manager.submit(
                IMAGE_PROCESSING,
                "upload",
                {"fileData": file_data, "options": options, "userId": data.get("userId")},
                {"priority": 1},
            )
            return manager.wait_for(handle["queue"], handle["jobId"], timeout=CHILD_WAIT_SECONDS)

        return run

    def on_settled(_: Settled) -> None:
        nonlocal settled
        with lock:
            settled += 1
            done = settled
        job.progress(math.ceil(done / total * 100))

    outcomes = settle_all([upload_one(f) for f in files], BATCH_UPLOAD_CONCURRENCY, on_settled)

    closed = next((o.error for o in outcomes if isinstance(o.error, QueueClosingError)), None)
    if closed is not None:
        # unsettled children are not failures; the batch runs again after restart
        raise closed

    results: List[Any] = []
    errors: List[Dict[str, Any]] = []
    for outcome in outcomes:
        if outcome.ok:
            results.append(outcome.value)
        else:
            errors.append(
                {
                    "index": outcome.index,
                    "filename": files[outcome.index].get("originalname"),
                    "error": str(outcome.error),
                    "attemptsMade": getattr(outcome.error, "attempts_made", None),
                }
            )
    logger.info("batch upload finished: %s ok, %s failed", len(results), len(errors))
    return {
        "success": True,
        "total": total,
        "successCount": len(results),
        "failCount": len(errors),
        "results": results,
        "errors": errors,
        "duration": _elapsed_ms(started),
    }


def _backup_format(data: Dict[str, Any]) -> str:
    fmt = (data.get("format") or "sql").lower()
    if fmt not in BACKUP_FORMATS:
        raise JobValidationError(f"unsupported backup format: {fmt}")
    return fmt


def _require_backups(services: ProcessorServices) -> BackupService:
    if services.backups is None:
        raise JobValidationError("backups are not configured")
    return services.backups


def process_backup(job: JobContext, services: ProcessorServices) -> Dict[str, Any]:
    job.progress(10)
    fmt = _backup_format(job.data)
    backups = _require_backups(services)
    job.progress(30)
    outcome = backups.export_json() if fmt == "json" else backups.export_sql()
    job.progress(100)
    return {"success": True, "format": fmt, **outcome}


def process_restore(job: JobContext, services: ProcessorServices) -> Dict[str, Any]:
    job.progress(10)
    fmt = _backup_format(job.data)
    backups = _require_backups(services)
    file_path = job.data.get("filePath")
    if not file_path:
        raise JobValidationError("filePath is required")
    try:
        source = backups.locate(file_path)
    except (ValueError, FileNotFoundError) as exc:
        raise JobValidationError(str(exc)) from exc
    job.progress(30)
    outcome = backups.import_json(source) if fmt == "json" else backups.import_sql(source)
    job.progress(100)
    return {"success": True, "format": fmt, "message": outcome["message"], "imported": outcome["imported"]}


def process_storage_migration(job: JobContext, services: ProcessorServices) -> Dict[str, Any]:
    data = job.data
    from_storage = data.get("fromStorage")
    to_storage = data.get("toStorage")
    options = data.get("options") or {}
    if not from_storage or not to_storage:
        raise JobValidationError("fromStorage and toStorage are required")
    if from_storage == to_storage:
        raise JobValidationError("source and target storage are the same")
    source = services.storages.get(from_storage)
    target = services.storages.get(to_storage)

    job.progress(5)
    images = services.store.list_by_storage(from_storage)
    total = len(images)
    job.progress(10)

    lock = threading.Lock()
    counters = {"done": 0}
    domain = options.get("imageDomain") or options.get("currentDomain") or services.image_domain

    def migrate_one(image: Dict[str, Any]):
        def run() -> None:
            key = PurePosixPath(image["path"]).name
            payload = source.get(image["path"])
            content_type = mimetypes.guess_type(key)[0] or "application/octet-stream"
            url = target.put(key, payload, content_type)
            if to_storage == "local":
                url = _public_url(url, key, domain)
            codes = _embed_codes(image["filename"], url)
            services.store.update_storage_batch(
                [image["id"]], to_storage, {image["id"]: {"path": key, "url": url, **codes}}
            )

        return run

    def on_settled(outcome: Settled) -> None:
        if not outcome.ok:
            logger.error("migrating image %s failed: %s", images[outcome.index]["filename"], outcome.error)
        with lock:
            counters["done"] += 1
            done = counters["done"]
        job.progress(10 + math.floor(done / total * 85))

    outcomes = settle_all([migrate_one(img) for img in images], MIGRATION_CONCURRENCY, on_settled)
    migrated = sum(1 for o in outcomes if o.ok)
    failed = total - migrated

    job.progress(100)
    return {
        "success": True,
        "total": total,
        "migrated": migrated,
        "failed": failed,
        "message": f"migrated {migrated}/{total} images from {from_storage} to {to_storage}",
    }


def register_processors(manager: "QueueManager", services: ProcessorServices) -> None:
    manager.register(IMAGE_PROCESSING, "upload", UPLOAD_CONCURRENCY, lambda job: process_image_upload(job, services))
    manager.register(IMAGE_PROCESSING, "batch-upload", 1, lambda job: process_batch_image_upload(job, manager), parent=True)
    manager.register(DATABASE_BACKUP, "backup", 1, lambda job: process_backup(job, services))
    manager.register(DATABASE_BACKUP, "restore", 1, lambda job: process_restore(job, services))
    manager.register(STORAGE_MIGRATION, "migrate", 1, lambda job: process_storage_migration(job, services))
