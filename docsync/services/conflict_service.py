"""Conflict resolver: close open sync conflicts with an operator decision."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from sqlalchemy import select

from docsync.exceptions import ConflictAlreadyResolvedError, InvalidResolutionError, NotFoundError
from docsync.models.feature import SyncConflict, SyncState
from docsync.services.datetime_service import now_utc, parse_datetime
from docsync.services.feature_sync_service import apply_update, get_feature
from docsync.tracker.base import SYNCED_FIELDS

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from docsync.tracker.base import TrackerClient

logger = logging.getLogger(__name__)


class Resolution(StrEnum):
    """Operator decision for an open conflict."""

    KEEP_LOCAL = "keep-local"
    KEEP_EXTERNAL = "keep-external"
    MERGE = "merge"


@dataclass
class ResolvedState:
    """Field values chosen by a resolution and whether they go to the tracker."""

    fields: dict[str, Any]
    push: bool


def parse_resolution(value: str) -> Resolution:
    """Raises InvalidResolutionError for unknown values."""
    try:
        return Resolution(value)
    except ValueError:
        raise InvalidResolutionError(value) from None


def _field_time(snapshot: dict[str, Any], name: str) -> Any:
    raw = (snapshot.get("field_timestamps") or {}).get(name)
    return parse_datetime(raw) if raw else None


def merge_snapshots(local: dict[str, Any], external: dict[str, Any]) -> dict[str, Any]:
    """Merge two conflict snapshots field by field.

    Fields that agree are kept. For a divergent field the side with the later
    per-field timestamp wins when both sides report one; otherwise the local
    value wins. Local timestamps are only as precise as the feature's stored
    baseline: without one, every local field carries the record time.
    """
    local_fields = local.get("fields") or {}
    external_fields = external.get("fields") or {}
    merged: dict[str, Any] = {}
    for name in SYNCED_FIELDS:
        local_value = local_fields.get(name)
        external_value = external_fields.get(name)
        merged[name] = local_value
        if local_value == external_value:
            continue
        local_time = _field_time(local, name)
        external_time = _field_time(external, name)
        if local_time is not None and external_time is not None and external_time > local_time:
            merged[name] = external_value
    return merged


def resolved_state(conflict: SyncConflict, resolution: Resolution) -> ResolvedState:
    """Compute the field values a resolution writes."""
    if resolution is Resolution.KEEP_LOCAL:
        return ResolvedState(fields=dict(conflict.local_snapshot.get("fields") or {}), push=True)
    if resolution is Resolution.KEEP_EXTERNAL:
        return ResolvedState(
            fields=dict(conflict.external_snapshot.get("fields") or {}), push=False
        )
    return ResolvedState(
        fields=merge_snapshots(conflict.local_snapshot, conflict.external_snapshot), push=True
    )


async def list_open_conflicts(session: AsyncSession) -> list[SyncConflict]:
    result = await session.scalars(
        select(SyncConflict)
        .where(SyncConflict.resolved_at.is_(None))
        .order_by(SyncConflict.detected_at, SyncConflict.id)
    )
    return list(result.all())


async def resolve_conflict(
    session: AsyncSession,
    tracker: TrackerClient,
    conflict_id: int,
    resolution: str,
) -> SyncConflict:
    """Apply *resolution* to an open conflict and return the closed conflict.

    The chosen values are pushed before the conflict is closed, so a tracker
    failure leaves the conflict open and the feature in conflict state.

    Raises InvalidResolutionError, NotFoundError or ConflictAlreadyResolvedError.
    Tracker errors propagate.
    """
    choice = parse_resolution(resolution)
    conflict = await session.get(SyncConflict, conflict_id)
    if conflict is None:
        raise NotFoundError("Conflict", conflict_id)
    if conflict.resolved_at is not None:
        raise ConflictAlreadyResolvedError(conflict_id, conflict.resolution)

    feature = await get_feature(session, conflict.feature_id)
    state = resolved_state(conflict, choice)
    external_updated_at = None
    if not state.push:
        raw = conflict.external_snapshot.get("updated_at")
        external_updated_at = parse_datetime(raw) if raw else None

    await apply_update(
        session,
        tracker,
        feature,
        state.fields,
        push=state.push,
        external_updated_at=external_updated_at,
    )
    conflict.resolved_at = now_utc()
    conflict.resolution = choice.value
    feature.sync_state = SyncState.SYNCED
    await session.commit()
    logger.info("Resolved conflict %d on feature %d with %s", conflict_id, feature.id, choice)
    return conflict
