"""Sync worker lifecycle endpoints."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends

from docsync.api.deps import get_worker, require_worker_token
from docsync.schemas.sync import WorkerStatusResponse
from docsync.services.datetime_service import format_iso
from docsync.services.sync_worker import SyncWorker, WorkerRun

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sync/worker", tags=["worker"])


def _status_response(run: WorkerRun) -> WorkerStatusResponse:
    return WorkerStatusResponse(
        status=run.status.value,
        started_at=format_iso(run.started_at) if run.started_at else None,
        last_tick_at=format_iso(run.last_tick_at) if run.last_tick_at else None,
        last_error=run.last_error,
    )


@router.post(
    "/start",
    response_model=WorkerStatusResponse,
    dependencies=[Depends(require_worker_token)],
)
async def start_worker(
    worker: Annotated[SyncWorker, Depends(get_worker)],
) -> WorkerStatusResponse:
    """Start the periodic sync loop; idempotent while running."""
    return _status_response(await worker.start())


@router.post(
    "/stop",
    response_model=WorkerStatusResponse,
    dependencies=[Depends(require_worker_token)],
)
async def stop_worker(
    worker: Annotated[SyncWorker, Depends(get_worker)],
) -> WorkerStatusResponse:
    """Stop the loop once the in-flight target finishes."""
    return _status_response(await worker.stop())


@router.get("/status", response_model=WorkerStatusResponse)
async def worker_status(
    worker: Annotated[SyncWorker, Depends(get_worker)],
) -> WorkerStatusResponse:
    return _status_response(worker.status())
