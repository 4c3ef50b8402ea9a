"""FastAPI application entry point."""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import OperationalError

from docsync.api.health import router as health_router
from docsync.api.sync import router as sync_router
from docsync.api.worker import router as worker_router
from docsync.config import Settings
from docsync.database import create_engine, create_tables
from docsync.exceptions import NotFoundError, SyncStateError
from docsync.services.sync_worker import SyncWorker
from docsync.tracker.base import TrackerError, TransientTrackerError
from docsync.tracker.registry import create_tracker_client

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

logger = logging.getLogger(__name__)


def _configure_logging(debug: bool) -> None:
    """Configure application logging."""
    level = logging.DEBUG if debug else logging.INFO
    fmt = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"
    logging.basicConfig(
        level=level,
        format=fmt,
        stream=sys.stdout,
        force=True,
    )
    # Quiet noisy libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO if debug else logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _ensure_sqlite_dir(database_url: str) -> None:
    if database_url.startswith("sqlite") and "///" in database_url:
        db_path = database_url.split("///", 1)[-1]
        if db_path and db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    """Application lifespan: startup and shutdown."""
    settings: Settings = app.state.settings
    settings.validate_runtime_security()
    _configure_logging(settings.debug)
    logger.info("Starting DocSync (debug=%s, tracker=%s)", settings.debug, settings.tracker_type)

    try:
        _ensure_sqlite_dir(settings.database_url)
        engine, session_factory = create_engine(settings)
        app.state.engine = engine
        app.state.session_factory = session_factory
        await create_tables(engine)
    except Exception as exc:
        logger.critical(
            "Failed to initialize database: %s. Check database path and permissions.", exc
        )
        raise

    try:
        settings.mirrors_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        logger.critical("Failed to create mirrors directory %s: %s", settings.mirrors_dir, exc)
        raise

    try:
        tracker = create_tracker_client(settings)
    except ValueError as exc:
        logger.critical("Failed to configure %s tracker: %s", settings.tracker_type, exc)
        raise
    app.state.tracker = tracker

    worker = SyncWorker(settings, session_factory, tracker)
    app.state.worker = worker
    if settings.worker_autostart:
        await worker.start()

    yield

    try:
        await worker.stop()
    except Exception as exc:
        logger.error("Error during worker shutdown: %s", exc, exc_info=True)

    try:
        await tracker.aclose()
    except Exception as exc:
        logger.error("Error closing tracker client: %s", exc, exc_info=True)

    try:
        await engine.dispose()
    except Exception as exc:
        logger.error("Error during engine disposal: %s", exc, exc_info=True)

    logger.info("DocSync stopped")


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    if settings is None:
        settings = Settings()

    docs_enabled = settings.debug or settings.expose_docs

    app = FastAPI(
        title="DocSync",
        description="Content import and two-way feature request sync",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/docs" if docs_enabled else None,
        redoc_url="/redoc" if docs_enabled else None,
        openapi_url="/openapi.json" if docs_enabled else None,
    )
    app.state.settings = settings

    app.include_router(health_router)
    app.include_router(worker_router)
    app.include_router(sync_router)

    # Global exception handlers

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        errors = []
        for err in exc.errors():
            loc = err.get("loc", ())
            field = str(loc[-1]) if loc else "unknown"
            errors.append({"field": field, "message": err.get("msg", "Invalid value")})
        logger.warning(
            "RequestValidationError in %s %s: %s",
            request.method,
            request.url.path,
            errors,
        )
        return JSONResponse(status_code=422, content={"detail": errors})

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
        logger.info("NotFoundError in %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(SyncStateError)
    async def sync_state_handler(request: Request, exc: SyncStateError) -> JSONResponse:
        logger.warning("%s in %s %s: %s", type(exc).__name__, request.method, request.url.path, exc)
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(TrackerError)
    async def tracker_error_handler(request: Request, exc: TrackerError) -> JSONResponse:
        logger.error(
            "%s in %s %s: %s",
            type(exc).__name__,
            request.method,
            request.url.path,
            exc,
            exc_info=exc,
        )
        detail = (
            "External tracker unavailable"
            if isinstance(exc, TransientTrackerError)
            else "External tracker rejected the request"
        )
        return JSONResponse(status_code=502, content={"detail": detail})

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        logger.error("ValueError in %s %s: %s", request.method, request.url.path, exc, exc_info=exc)
        message = str(exc) or "Invalid value"
        return JSONResponse(
            status_code=422,
            content={"detail": message},
        )

    @app.exception_handler(OperationalError)
    async def operational_error_handler(request: Request, exc: OperationalError) -> JSONResponse:
        logger.error(
            "OperationalError in %s %s: %s", request.method, request.url.path, exc, exc_info=exc
        )
        return JSONResponse(
            status_code=503,
            content={"detail": "Database temporarily unavailable"},
        )

    return app


app = create_app()


def cli_entry() -> None:
    """CLI entry point for running the server."""
    import uvicorn

    settings: Settings = app.state.settings
    uvicorn.run(
        "docsync.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
