"""Queue manager: owns the named queues, their workers and lifecycle observers.

One instance is built at startup and handed to the HTTP layer and the worker
entry point; nothing reaches it through module globals.
"""
from __future__ import annotations

import logging
import threading
import time
from typing import Any, Dict, List, Mapping, Optional

from config import (
    DATABASE_BACKUP,
    IMAGE_PROCESSING,
    STORAGE_MIGRATION,
    get_queue_config,
    get_worker_config,
)
from taskqueue.errors import BrokerUnavailableError, QueueClosingError, QueueNotReadyError, UnknownQueueError
from taskqueue.queue import Processor, Queue
from taskqueue.types import Job, JobBroker, JobOptions
from taskqueue.worker import StallMonitor, Worker

logger = logging.getLogger(__name__)

QUEUE_ALIASES: Mapping[str, str] = {
    "imageProcessing": IMAGE_PROCESSING,
    "databaseBackup": DATABASE_BACKUP,
    "storageMigration": STORAGE_MIGRATION,
}
# upper bound for parent workers to hand their job back once queues close
PARENT_RELEASE_SECONDS = 5.0


def _options_from_config(cfg: Mapping[str, Any]) -> JobOptions:
    return JobOptions.from_mapping({k: v for k, v in cfg.items() if k in JobOptions.__dataclass_fields__})


class QueueManager:
    """Creates queues, registers processors, runs workers and answers status queries."""

    def __init__(
        self,
        broker: JobBroker,
        services: Optional[Any] = None,
        queue_config: Optional[Mapping[str, Mapping[str, Any]]] = None,
        worker_config: Optional[Mapping[str, Any]] = None,
        start_workers: bool = True,
    ) -> None:
        self.broker = broker
        self.services = services
        self.queue_config = dict(queue_config or get_queue_config())
        self.worker_config = {**get_worker_config(), **(worker_config or {})}
        self.start_workers = start_workers
        self.queues: Dict[str, Queue] = {}
        self.workers: List[Worker] = []
        self._stall_monitor: Optional[StallMonitor] = None
        self._initialized = False
        self._closing = False
        self._lock = threading.RLock()

    @classmethod
    def from_env(cls, db: Any = None, start_workers: bool = True) -> "QueueManager":
        """Build the manager the way the worker entry point and the app do."""
        from taskqueue.memory import InMemoryBroker
        from taskqueue.processors import ProcessorServices
        from taskqueue.sql import SqlBroker

        worker_config = get_worker_config()
        if worker_config["backend"] == "memory":
            broker: JobBroker = InMemoryBroker()
        else:
            if db is None:
                from db.db_conn import DbConn

                db = DbConn()
            broker = SqlBroker(db)
        services = ProcessorServices.from_env(db) if db is not None else None
        return cls(broker, services=services, worker_config=worker_config, start_workers=start_workers)

    @property
    def initialized(self) -> bool:
        return self._initialized

    def initialize(self) -> None:
        """Create queues, register processors and observers, start workers. Idempotent."""
        with self._lock:
            if self._initialized:
                logger.warning("queue manager already initialized")
                return
            try:
                self.broker.ping()
            except BrokerUnavailableError:
                logger.error("queue manager initialization failed: broker unreachable")
                raise
            except Exception as exc:
                logger.error("queue manager initialization failed: %s", exc)
                raise BrokerUnavailableError(str(exc)) from exc

            self._closing = False
            for name, cfg in self.queue_config.items():
                self.queues[name] = Queue(name, self.broker, _options_from_config(cfg))

            if self.services is not None:
                from taskqueue.processors import register_processors

                register_processors(self, self.services)
            self._register_event_listeners()

            if self.start_workers:
                for queue in self.queues.values():
                    for job_type in queue.processors:
                        self._start_worker(queue, job_type)
                window = float(self.worker_config["stalled_interval"])
                self._stall_monitor = StallMonitor(
                    list(self.queues.values()),
                    visibility_window=window,
                    max_stalled=int(self.worker_config.get("max_stalled", 1)),
                )
                self._stall_monitor.start()

            self._initialized = True
            logger.info("queue manager initialized: %s", ", ".join(self.queues))

    def register(self, queue_name: str, job_type: str, concurrency: int, fn: Processor, parent: bool = False) -> None:
        """Register a processor; starts its worker at once if the manager is running.

        ``parent`` marks processors that submit and await child jobs; their
        workers are drained first at shutdown.
        """
        queue = self.queue(queue_name)
        queue.process(job_type, concurrency, fn, parent=parent)
        if self._initialized and self.start_workers:
            self._start_worker(queue, job_type)

    def _start_worker(self, queue: Queue, job_type: str) -> None:
        window = float(self.worker_config["stalled_interval"])
        worker = Worker(
            queue,
            job_type,
            queue.processors[job_type],
            concurrency=queue.concurrency[job_type],
            poll_seconds=float(self.worker_config["poll_seconds"]),
            heartbeat_seconds=max(window / 3.0, 0.01),
        )
        worker.start()
        self.workers.append(worker)

    def _register_event_listeners(self) -> None:
        for name, queue in self.queues.items():
            queue.on("completed", self._log_completed(name))
            queue.on("failed", self._log_failed(name))
            queue.on("stalled", self._log_stalled(name))

    @staticmethod
    def _log_completed(name: str):
        def observer(job: Job, result: Any) -> None:
            duration_ms = None
            if job.finished_at is not None:
                duration_ms = int((job.finished_at - job.created_at).total_seconds() * 1000)
            message = result.get("message") if isinstance(result, dict) else None
            logger.info("[%s] job completed: %s (duration=%sms, result=%s)", name, job.id, duration_ms, message or "success")

        return observer

    @staticmethod
    def _log_failed(name: str):
        def observer(job: Job, exc: BaseException) -> None:
            logger.error("[%s] job failed: %s (error=%s, attempts=%s, state=%s)", name, job.id, exc, job.attempts_made, job.state.value)

        return observer

    @staticmethod
    def _log_stalled(name: str):
        def observer(job: Job) -> None:
            logger.warning("[%s] job stalled: %s", name, job.id)

        return observer

    def queue(self, name: str) -> Queue:
        queue = self.queues.get(QUEUE_ALIASES.get(name, name))
        if queue is None:
            raise UnknownQueueError(name)
        return queue

    def _require_ready(self) -> None:
        if not self._initialized:
            raise QueueNotReadyError("queue manager is not initialized")
        if self._closing:
            raise QueueClosingError("queue manager is shutting down")

    def submit(
        self,
        queue_name: str,
        job_type: str,
        payload: Dict[str, Any],
        options: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, str]:
        """Enqueue a job and return its handle without waiting for execution."""
        self._require_ready()
        queue = self.queue(queue_name)
        job = queue.add(job_type, payload, options)
        logger.info("[%s] job submitted: %s type=%s", queue.name, job.id, job_type)
        return {"jobId": job.id, "queue": queue.name}

    def get_status(self, queue_name: str, job_id: str) -> Dict[str, Any]:
        queue = self.queue(queue_name)
        job = queue.get_job(job_id)
        if job is None:
            return {"exists": False, "message": "job not found"}
        return job.status()

    def get_queue_stats(self, queue_name: str) -> Dict[str, int]:
        return self.queue(queue_name).counts()

    def clean_queue(self, queue_name: str, grace_ms: int = 0, state: str = "completed") -> Dict[str, Any]:
        queue = self.queue(queue_name)
        removed = queue.clean(grace_ms, state)
        return {"success": True, "removed": removed, "message": f"queue {queue.name}: removed {removed} {state} jobs"}

    def wait_for(self, queue_name: str, job_id: str, timeout: Optional[float] = None) -> Any:
        return self.queue(queue_name).wait_for(job_id, timeout)

    # ----- convenience submitters -----

    def add_image_upload_job(self, file_data: Dict[str, Any], options: Dict[str, Any], user_id: Optional[str] = None) -> Dict[str, str]:
        payload = {"fileData": file_data, "options": options, "userId": user_id}
        return self.submit(IMAGE_PROCESSING, "upload", payload, {"priority": 2})

    def add_batch_image_upload_job(self, files: List[Dict[str, Any]], options: Dict[str, Any], user_id: Optional[str] = None) -> Dict[str, str]:
        payload = {"files": files, "options": options, "userId": user_id}
        return self.submit(IMAGE_PROCESSING, "batch-upload", payload, {"priority": 1})

    def add_backup_job(self, fmt: str = "sql") -> Dict[str, str]:
        return self.submit(DATABASE_BACKUP, "backup", {"format": fmt})

    def add_restore_job(self, file_path: str, fmt: str = "sql") -> Dict[str, str]:
        return self.submit(DATABASE_BACKUP, "restore", {"filePath": file_path, "format": fmt})

    def add_migration_job(self, from_storage: str, to_storage: str, options: Optional[Dict[str, Any]] = None) -> Dict[str, str]:
        payload = {"fromStorage": from_storage, "toStorage": to_storage, "options": options or {}}
        return self.submit(STORAGE_MIGRATION, "migrate", payload)

    @staticmethod
    def _join(workers: List[Worker], deadline: float) -> None:
        for worker in workers:
            worker.join(timeout=max(0.0, deadline - time.monotonic()))

    def shutdown(self, grace: Optional[float] = None) -> None:
        """Stop claiming, wait for in-flight jobs up to ``grace`` seconds, close the broker.

        Parent workers (batch jobs awaiting children) are drained first while
        the child workers keep running. A parent still waiting when the grace
        period ends gets ``QueueClosingError`` from ``wait_for`` and hands its
        job back to ``waiting`` for the next process.
        """
        with self._lock:
            if not self._initialized:
                return
            grace = float(self.worker_config["shutdown_grace"]) if grace is None else grace
            logger.info("shutting down queues (grace=%ss)", grace)
            deadline = time.monotonic() + grace
            if self._stall_monitor:
                self._stall_monitor.stop()

            parents = [w for w in self.workers if w.job_type in w.queue.parent_types]
            children = [w for w in self.workers if w not in parents]
            for worker in parents:
                worker.stop()
            self._join(parents, deadline)

            self._closing = True
            for queue in self.queues.values():
                queue.close()
            for worker in children:
                worker.stop()
            self._join(parents, max(deadline, time.monotonic() + PARENT_RELEASE_SECONDS))
            self._join(children, deadline)
            for worker in self.workers:
                if worker.busy:
                    logger.warning("[%s] %s job(s) still running at shutdown", worker.label, worker.busy)
            self.workers = []
            try:
                self.broker.close()
            except Exception:
                logger.exception("failed to close broker")
            self._initialized = False
            logger.info("all queues closed")
