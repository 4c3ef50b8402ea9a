"""Sync worker and conflict schemas."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class WorkerStatusResponse(BaseModel):
    """Lifecycle state of the background sync worker."""

    status: str
    started_at: str | None = None
    last_tick_at: str | None = None
    last_error: str | None = None


class RepositorySyncAccepted(BaseModel):
    """Response for a repository import scheduled in the background."""

    repository_id: int
    status: str = "accepted"


class FeatureSyncResponse(BaseModel):
    """Outcome of reconciling or pushing one feature."""

    feature_id: int
    outcome: str
    external_id: str | None = None
    sync_state: str
    sync_error: str | None = None


class CommentSyncResponse(BaseModel):
    """Counts of imported and already-present comments for one feature."""

    synced: int
    skipped: int


class ManualSyncResponse(BaseModel):
    """Aggregate counts of a manual comment sync across all features."""

    features: int
    synced: int
    skipped: int
    failed: int
    in_progress: int


class ConflictResponse(BaseModel):
    """Sync conflict with both snapshots."""

    id: int
    feature_id: int
    local_snapshot: dict[str, Any]
    external_snapshot: dict[str, Any]
    detected_at: str
    resolved_at: str | None = None
    resolution: str | None = None


class ConflictListResponse(BaseModel):
    """Open sync conflicts, oldest first."""

    items: list[ConflictResponse]


class ResolveConflictRequest(BaseModel):
    """Request to resolve an open conflict."""

    resolution: str = Field(
        min_length=1, description="One of 'keep-local', 'keep-external' or 'merge'"
    )
