"""Manual sync triggers and conflict resolution endpoints."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, BackgroundTasks, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from docsync.api.deps import get_session, get_worker, require_worker_token
from docsync.exceptions import NotFoundError, SyncInProgressError, SyncValidationError
from docsync.models.feature import FeatureRequest, SyncConflict
from docsync.models.repository import Repository
from docsync.schemas.sync import (
    CommentSyncResponse,
    ConflictListResponse,
    ConflictResponse,
    FeatureSyncResponse,
    ManualSyncResponse,
    RepositorySyncAccepted,
    ResolveConflictRequest,
)
from docsync.services.conflict_service import list_open_conflicts
from docsync.services.datetime_service import format_iso
from docsync.services.feature_sync_service import ReconcileOutcome
from docsync.services.lock_service import repository_key
from docsync.services.sync_worker import SyncWorker

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api",
    tags=["sync"],
    dependencies=[Depends(require_worker_token)],
)


def _conflict_response(conflict: SyncConflict) -> ConflictResponse:
    return ConflictResponse(
        id=conflict.id,
        feature_id=conflict.feature_id,
        local_snapshot=conflict.local_snapshot,
        external_snapshot=conflict.external_snapshot,
        detected_at=format_iso(conflict.detected_at),
        resolved_at=format_iso(conflict.resolved_at) if conflict.resolved_at else None,
        resolution=conflict.resolution,
    )


async def _feature_response(
    session: AsyncSession, feature_id: int, outcome: ReconcileOutcome
) -> FeatureSyncResponse:
    feature = await session.get(FeatureRequest, feature_id)
    if feature is None:
        raise NotFoundError("Feature", feature_id)
    return FeatureSyncResponse(
        feature_id=feature.id,
        outcome=outcome.value,
        external_id=feature.external_id,
        sync_state=feature.sync_state,
        sync_error=feature.sync_error,
    )


@router.post(
    "/repositories/{repository_id}/sync",
    response_model=RepositorySyncAccepted,
    status_code=status.HTTP_202_ACCEPTED,
)
async def sync_repository(
    repository_id: int,
    background_tasks: BackgroundTasks,
    session: Annotated[AsyncSession, Depends(get_session)],
    worker: Annotated[SyncWorker, Depends(get_worker)],
) -> RepositorySyncAccepted:
    """Schedule an import of one repository; progress is reported in its sync log."""
    repository = await session.get(Repository, repository_id)
    if repository is None:
        raise NotFoundError("Repository", repository_id)
    if not repository.enabled:
        msg = f"Repository {repository_id} is disabled"
        raise SyncValidationError(msg)
    key = repository_key(repository_id)
    if worker.locks.is_held(key):
        raise SyncInProgressError(key)
    background_tasks.add_task(worker.sync_repository_in_background, repository_id)
    logger.info("Scheduled manual import of repository %d", repository_id)
    return RepositorySyncAccepted(repository_id=repository_id)


@router.post("/features/{feature_id}/sync", response_model=FeatureSyncResponse)
async def sync_feature(
    feature_id: int,
    session: Annotated[AsyncSession, Depends(get_session)],
    worker: Annotated[SyncWorker, Depends(get_worker)],
) -> FeatureSyncResponse:
    """Reconcile one feature with its tracker work item now."""
    outcome = await worker.sync_feature(feature_id)
    return await _feature_response(session, feature_id, outcome)


@router.post("/features/{feature_id}/push", response_model=FeatureSyncResponse)
async def push_feature(
    feature_id: int,
    session: Annotated[AsyncSession, Depends(get_session)],
    worker: Annotated[SyncWorker, Depends(get_worker)],
) -> FeatureSyncResponse:
    """Create the tracker work item for a feature that has none yet."""
    outcome = await worker.push_feature(feature_id)
    return await _feature_response(session, feature_id, outcome)


@router.post("/features/{feature_id}/sync-comments", response_model=CommentSyncResponse)
async def sync_feature_comments(
    feature_id: int,
    worker: Annotated[SyncWorker, Depends(get_worker)],
) -> CommentSyncResponse:
    result = await worker.sync_feature_comments(feature_id)
    return CommentSyncResponse(synced=result.synced, skipped=result.skipped)


@router.post("/sync/comments", response_model=ManualSyncResponse)
async def sync_all_comments(
    worker: Annotated[SyncWorker, Depends(get_worker)],
) -> ManualSyncResponse:
    """Import new tracker comments for every syncable feature."""
    summary = await worker.trigger_manual_sync()
    return ManualSyncResponse(
        features=summary.features,
        synced=summary.synced,
        skipped=summary.skipped,
        failed=summary.failed,
        in_progress=summary.in_progress,
    )


@router.get("/sync/conflicts", response_model=ConflictListResponse)
async def list_conflicts(
    session: Annotated[AsyncSession, Depends(get_session)],
) -> ConflictListResponse:
    conflicts = await list_open_conflicts(session)
    return ConflictListResponse(items=[_conflict_response(c) for c in conflicts])


@router.post("/sync/conflicts/{conflict_id}/resolve", response_model=ConflictResponse)
async def resolve_conflict(
    conflict_id: int,
    body: ResolveConflictRequest,
    worker: Annotated[SyncWorker, Depends(get_worker)],
) -> ConflictResponse:
    """Close an open conflict with keep-local, keep-external or merge."""
    conflict = await worker.resolve_conflict(conflict_id, body.resolution)
    return _conflict_response(conflict)
