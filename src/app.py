from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from config import get_worker_config, load_env_file
from taskqueue.errors import BrokerUnavailableError, QueueNotReadyError, UnknownQueueError
from taskqueue.manager import QueueManager
from web.routes import images, jobs, maintenance, uploads


def _error(code: int, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=code, content={"success": False, "error": str(exc)})


def _register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(UnknownQueueError)
    def unknown_queue(_: Request, exc: UnknownQueueError) -> JSONResponse:
        return _error(status.HTTP_404_NOT_FOUND, exc)

    @app.exception_handler(QueueNotReadyError)
    def not_ready(_: Request, exc: QueueNotReadyError) -> JSONResponse:
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, exc)

    @app.exception_handler(BrokerUnavailableError)
    def broker_down(_: Request, exc: BrokerUnavailableError) -> JSONResponse:
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, exc)

    @app.exception_handler(ValueError)
    def bad_request(_: Request, exc: ValueError) -> JSONResponse:
        return _error(status.HTTP_400_BAD_REQUEST, exc)


def create_app(manager: Optional[QueueManager] = None) -> FastAPI:
    """Create and configure the FastAPI application.

    When ``manager`` is given it is used as-is (and left running at exit);
    otherwise one is built from the environment at startup and shut down
    with the app.
    """
    load_env_file()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        owned = manager is None
        qm = manager
        if qm is None:
            from db.db_conn import DbConn
            from taskqueue.logs import get_logger

            db = DbConn()
            get_logger(db)
            qm = QueueManager.from_env(db, start_workers=get_worker_config()["app_workers"])
        if not qm.initialized:
            qm.initialize()
        app.state.queue_manager = qm
        app.state.image_store = getattr(qm.services, "store", None)
        app.state.db = getattr(app.state.image_store, "db", None)
        try:
            yield
        finally:
            if owned:
                qm.shutdown()

    app = FastAPI(
        title="Media Jobs API",
        version="0.1.0",
        description="Image uploads, backups and storage migrations as background jobs.",
        lifespan=lifespan,
    )
    _register_error_handlers(app)

    @app.get("/health")
    def health(request: Request) -> dict[str, str]:
        qm = getattr(request.app.state, "queue_manager", None)
        return {"status": "ok" if qm is not None and qm.initialized else "starting"}

    app.include_router(uploads.router)
    app.include_router(jobs.router)
    app.include_router(maintenance.router)
    app.include_router(images.router)

    return app


app = create_app()
