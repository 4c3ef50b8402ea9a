"""Two-way sync engine for feature requests and tracker work items.

Change detection compares each side's last modification time with the
feature's ``last_synced_at`` using strict greater-than:

- only the tracker changed: pull its fields
- only the local record changed: push local fields
- both changed: open a SyncConflict and stop syncing the feature
- neither changed: nothing to do

``last_synced_at`` is taken after a push returns so that the tracker's own
modification time for our write does not register as an external change on
the next reconciliation.
"""

from __future__ import annotations

import logging
from datetime import datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from sqlalchemy import select

from docsync.exceptions import ConflictAlreadyOpenError, NotFoundError
from docsync.models.feature import FeatureRequest, SyncConflict, SyncState
from docsync.services.datetime_service import as_utc, format_iso, is_after, now_utc
from docsync.tracker.base import SYNCED_FIELDS, TrackerError

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from docsync.tracker.base import TrackerClient, WorkItem

logger = logging.getLogger(__name__)


class ReconcileOutcome(StrEnum):
    """Result of reconciling one feature with the tracker."""

    NO_CHANGE = "no_change"
    PULLED = "pulled"
    PUSHED = "pushed"
    CREATED = "created"
    CONFLICT = "conflict"
    SKIPPED = "skipped"


def local_fields(feature: FeatureRequest) -> dict[str, Any]:
    """Return the synced fields of a feature."""
    return {name: getattr(feature, name) for name in SYNCED_FIELDS}


def local_snapshot(feature: FeatureRequest) -> dict[str, Any]:
    """Snapshot the local side of a feature for a conflict.

    A field still equal to its value at the last sync is stamped with
    ``last_synced_at``; an edited one carries ``local_updated_at``. Without a
    stored baseline every field carries ``local_updated_at``.
    """
    updated_at = format_iso(feature.local_updated_at)
    fields = local_fields(feature)
    baseline = feature.synced_fields or {}
    synced_at = feature.last_synced_at
    timestamps: dict[str, str] = {}
    for name, value in fields.items():
        if synced_at is not None and name in baseline and baseline[name] == value:
            timestamps[name] = format_iso(synced_at)
        else:
            timestamps[name] = updated_at
    return {"fields": fields, "updated_at": updated_at, "field_timestamps": timestamps}


def external_snapshot(item: WorkItem) -> dict[str, Any]:
    return {
        "fields": {name: item.fields.get(name) for name in SYNCED_FIELDS},
        "updated_at": format_iso(item.updated_at),
        "field_timestamps": {
            name: format_iso(when) for name, when in item.field_timestamps.items()
        },
    }


async def get_feature(session: AsyncSession, feature_id: int) -> FeatureRequest:
    """Load a feature. Raises NotFoundError if it does not exist."""
    feature = await session.get(FeatureRequest, feature_id)
    if feature is None:
        raise NotFoundError("Feature", feature_id)
    return feature


async def get_open_conflict(session: AsyncSession, feature_id: int) -> SyncConflict | None:
    result = await session.scalar(
        select(SyncConflict).where(
            SyncConflict.feature_id == feature_id,
            SyncConflict.resolved_at.is_(None),
        )
    )
    return result


async def _record_error(session: AsyncSession, feature: FeatureRequest, exc: Exception) -> None:
    feature.sync_error = str(exc)[:1000]
    await session.commit()


async def apply_update(
    session: AsyncSession,
    tracker: TrackerClient,
    feature: FeatureRequest,
    fields: dict[str, Any],
    push: bool,
    external_updated_at: datetime | None = None,
) -> None:
    """Write *fields* to the feature and optionally push them to the tracker.

    This is the single write primitive of the engine and the conflict
    resolver. On success the feature is marked synced. When *push* is set,
    tracker errors propagate before anything is committed. Does not commit.
    """
    unknown = set(fields) - set(SYNCED_FIELDS)
    if unknown:
        msg = f"Cannot sync unknown fields: {sorted(unknown)}"
        raise ValueError(msg)

    if push:
        if feature.external_id is None:
            msg = f"Feature {feature.id} has no external work item"
            raise ValueError(msg)
        await tracker.update_work_item(feature.external_id, fields)

    synced_at = now_utc()
    for name, value in fields.items():
        setattr(feature, name, value)
    if push:
        feature.external_updated_at = synced_at
    elif external_updated_at is not None:
        feature.external_updated_at = external_updated_at
    # Locally applied values are no longer an unsynced local edit.
    feature.local_updated_at = synced_at
    feature.last_synced_at = synced_at
    feature.sync_state = SyncState.SYNCED
    feature.sync_error = None
    feature.synced_fields = local_fields(feature)


async def open_conflict(
    session: AsyncSession,
    feature: FeatureRequest,
    item: WorkItem,
) -> SyncConflict:
    """Snapshot both sides of a feature into a new open conflict.

    Raises ConflictAlreadyOpenError if the feature already has one.
    """
    if await get_open_conflict(session, feature.id) is not None:
        raise ConflictAlreadyOpenError(feature.id)
    conflict = SyncConflict(
        feature_id=feature.id,
        local_snapshot=local_snapshot(feature),
        external_snapshot=external_snapshot(item),
        detected_at=now_utc(),
    )
    session.add(conflict)
    feature.sync_state = SyncState.CONFLICT
    feature.external_updated_at = item.updated_at
    feature.sync_error = None
    await session.flush()
    return conflict


async def push_new_feature(
    session: AsyncSession,
    tracker: TrackerClient,
    feature_id: int,
) -> ReconcileOutcome:
    """Create the tracker work item of a feature that has none yet.

    Returns ``skipped`` when the feature is already linked.
    """
    feature = await get_feature(session, feature_id)
    if feature.external_id is not None:
        logger.debug("Feature %d already linked to %s", feature_id, feature.external_id)
        return ReconcileOutcome.SKIPPED

    try:
        external_id = await tracker.create_work_item(local_fields(feature))
    except TrackerError as exc:
        logger.warning("Failed to create work item for feature %d: %s", feature_id, exc)
        await _record_error(session, feature, exc)
        raise

    synced_at = now_utc()
    feature.external_id = external_id
    feature.external_updated_at = synced_at
    feature.local_updated_at = synced_at
    feature.last_synced_at = synced_at
    feature.sync_state = SyncState.SYNCED
    feature.sync_error = None
    feature.synced_fields = local_fields(feature)
    await session.commit()
    logger.info("Created %s work item %s for feature %d", tracker.source, external_id, feature_id)
    return ReconcileOutcome.CREATED


async def reconcile_feature(
    session: AsyncSession,
    tracker: TrackerClient,
    feature_id: int,
) -> ReconcileOutcome:
    """Reconcile one feature with its tracker work item and commit the result.

    Features in conflict are skipped until the conflict is resolved.
    Unlinked features are created on the tracker. A linked feature that was
    never synced is baselined from the tracker.

    Raises NotFoundError for unknown features. Tracker errors are recorded
    on the feature as ``sync_error`` and re-raised.
    """
    feature = await get_feature(session, feature_id)
    if feature.sync_state == SyncState.CONFLICT:
        logger.debug("Feature %d has an open conflict, skipping", feature_id)
        return ReconcileOutcome.SKIPPED
    if feature.external_id is None:
        return await push_new_feature(session, tracker, feature_id)

    try:
        item = await tracker.get_work_item(feature.external_id)
    except TrackerError as exc:
        logger.warning("Failed to fetch work item for feature %d: %s", feature_id, exc)
        await _record_error(session, feature, exc)
        raise

    if feature.last_synced_at is None:
        await apply_update(
            session,
            tracker,
            feature,
            external_snapshot(item)["fields"],
            push=False,
            external_updated_at=as_utc(item.updated_at),
        )
        await session.commit()
        logger.info("Baselined feature %d from %s", feature_id, feature.external_id)
        return ReconcileOutcome.PULLED

    external_changed = is_after(item.updated_at, feature.last_synced_at)
    local_changed = is_after(feature.local_updated_at, feature.last_synced_at)

    if external_changed and local_changed:
        await open_conflict(session, feature, item)
        await session.commit()
        logger.warning(
            "Sync conflict on feature %d: local and %s both changed",
            feature_id,
            feature.external_id,
        )
        return ReconcileOutcome.CONFLICT

    if external_changed:
        await apply_update(
            session,
            tracker,
            feature,
            external_snapshot(item)["fields"],
            push=False,
            external_updated_at=as_utc(item.updated_at),
        )
        await session.commit()
        logger.info("Pulled feature %d from %s", feature_id, feature.external_id)
        return ReconcileOutcome.PULLED

    if local_changed:
        try:
            await apply_update(session, tracker, feature, local_fields(feature), push=True)
        except TrackerError as exc:
            logger.warning("Failed to push feature %d: %s", feature_id, exc)
            await _record_error(session, feature, exc)
            raise
        await session.commit()
        logger.info("Pushed feature %d to %s", feature_id, feature.external_id)
        return ReconcileOutcome.PUSHED

    if feature.sync_state != SyncState.SYNCED or feature.sync_error is not None:
        feature.sync_state = SyncState.SYNCED
        feature.sync_error = None
        await session.commit()
    return ReconcileOutcome.NO_CHANGE
