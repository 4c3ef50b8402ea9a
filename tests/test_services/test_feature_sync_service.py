"""Tests for two-way feature reconciliation."""

from __future__ import annotations

from datetime import timedelta
from typing import TYPE_CHECKING, Any

import pytest
from sqlalchemy import func, select

from docsync.exceptions import ConflictAlreadyOpenError, NotFoundError
from docsync.models.feature import FeatureRequest, SyncConflict, SyncState
from docsync.services.datetime_service import as_utc
from docsync.services.feature_sync_service import (
    ReconcileOutcome,
    apply_update,
    open_conflict,
    push_new_feature,
    reconcile_feature,
)
from docsync.tracker.base import TrackerNetworkError, TrackerNotFoundError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from tests.conftest import FakeTracker

    MakeFeature = Callable[..., Awaitable[FeatureRequest]]


async def _load(
    session_factory: async_sessionmaker[AsyncSession], feature_id: int
) -> FeatureRequest:
    async with session_factory() as session:
        feature = await session.get(FeatureRequest, feature_id)
        assert feature is not None
        return feature


async def _reconcile(
    session_factory: async_sessionmaker[AsyncSession],
    tracker: FakeTracker,
    feature_id: int,
) -> ReconcileOutcome:
    async with session_factory() as session:
        return await reconcile_feature(session, tracker, feature_id)


class TestChangeDetection:
    async def test_external_change_is_pulled(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        fake_tracker: FakeTracker,
        make_feature: MakeFeature,
    ) -> None:
        feature = await make_feature()
        assert feature.last_synced_at is not None
        fake_tracker.add_item(
            "1",
            feature.last_synced_at + timedelta(minutes=10),
            title="Dark mode v2",
            description="Updated upstream",
            status="planned",
            priority="high",
        )

        outcome = await _reconcile(session_factory, fake_tracker, feature.id)

        assert outcome == ReconcileOutcome.PULLED
        stored = await _load(session_factory, feature.id)
        assert stored.title == "Dark mode v2"
        assert stored.description == "Updated upstream"
        assert stored.status == "planned"
        assert stored.priority == "high"
        assert stored.sync_state == SyncState.SYNCED
        assert stored.last_synced_at is not None
        assert as_utc(stored.last_synced_at) > as_utc(feature.last_synced_at)
        assert fake_tracker.updates == []

    async def test_local_change_is_pushed(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        fake_tracker: FakeTracker,
        make_feature: MakeFeature,
    ) -> None:
        feature = await make_feature(title="Renamed locally")
        assert feature.last_synced_at is not None
        async with session_factory() as session:
            stored = await session.get(FeatureRequest, feature.id)
            assert stored is not None
            stored.local_updated_at = feature.last_synced_at + timedelta(minutes=5)
            await session.commit()
        fake_tracker.add_item("1", feature.last_synced_at - timedelta(minutes=10))

        outcome = await _reconcile(session_factory, fake_tracker, feature.id)

        assert outcome == ReconcileOutcome.PUSHED
        assert len(fake_tracker.updates) == 1
        external_id, fields = fake_tracker.updates[0]
        assert external_id == "1"
        assert fields["title"] == "Renamed locally"
        assert set(fields) == {"title", "description", "status", "priority"}
        stored = await _load(session_factory, feature.id)
        assert stored.sync_state == SyncState.SYNCED

    async def test_pushed_change_does_not_echo_back(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        fake_tracker: FakeTracker,
        make_feature: MakeFeature,
    ) -> None:
        feature = await make_feature()
        assert feature.last_synced_at is not None
        async with session_factory() as session:
            stored = await session.get(FeatureRequest, feature.id)
            assert stored is not None
            stored.local_updated_at = feature.last_synced_at + timedelta(minutes=5)
            await session.commit()
        fake_tracker.add_item("1", feature.last_synced_at - timedelta(minutes=10))

        assert await _reconcile(session_factory, fake_tracker, feature.id) == (
            ReconcileOutcome.PUSHED
        )
        assert await _reconcile(session_factory, fake_tracker, feature.id) == (
            ReconcileOutcome.NO_CHANGE
        )

    async def test_both_sides_changed_opens_conflict(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        fake_tracker: FakeTracker,
        make_feature: MakeFeature,
    ) -> None:
        feature = await make_feature(title="Local title")
        assert feature.last_synced_at is not None
        async with session_factory() as session:
            stored = await session.get(FeatureRequest, feature.id)
            assert stored is not None
            stored.local_updated_at = feature.last_synced_at + timedelta(minutes=5)
            await session.commit()
        fake_tracker.add_item(
            "1", feature.last_synced_at + timedelta(minutes=7), title="External title"
        )

        outcome = await _reconcile(session_factory, fake_tracker, feature.id)

        assert outcome == ReconcileOutcome.CONFLICT
        stored = await _load(session_factory, feature.id)
        assert stored.sync_state == SyncState.CONFLICT
        assert stored.title == "Local title"
        async with session_factory() as session:
            conflicts = (await session.scalars(select(SyncConflict))).all()
        assert len(conflicts) == 1
        conflict = conflicts[0]
        assert conflict.resolved_at is None
        assert conflict.local_snapshot["fields"]["title"] == "Local title"
        assert conflict.external_snapshot["fields"]["title"] == "External title"
        assert fake_tracker.updates == []

    async def test_neither_side_changed_is_noop(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        fake_tracker: FakeTracker,
        make_feature: MakeFeature,
    ) -> None:
        feature = await make_feature()
        assert feature.last_synced_at is not None
        fake_tracker.add_item("1", feature.last_synced_at - timedelta(days=1), title="Other")

        outcome = await _reconcile(session_factory, fake_tracker, feature.id)

        assert outcome == ReconcileOutcome.NO_CHANGE
        stored = await _load(session_factory, feature.id)
        assert stored.title == "Dark mode"
        assert stored.last_synced_at is not None
        assert as_utc(stored.last_synced_at) == as_utc(feature.last_synced_at)

    async def test_equal_timestamps_never_conflict(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        fake_tracker: FakeTracker,
        make_feature: MakeFeature,
    ) -> None:
        feature = await make_feature()
        assert feature.last_synced_at is not None
        # Both sides report exactly the last sync time.
        fake_tracker.add_item("1", feature.last_synced_at, title="Other")

        outcome = await _reconcile(session_factory, fake_tracker, feature.id)

        assert outcome == ReconcileOutcome.NO_CHANGE
        async with session_factory() as session:
            count = await session.scalar(select(func.count()).select_from(SyncConflict))
        assert count == 0


class TestFeatureStates:
    async def test_conflict_state_is_skipped(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        fake_tracker: FakeTracker,
        make_feature: MakeFeature,
    ) -> None:
        feature = await make_feature(sync_state=SyncState.CONFLICT)
        fake_tracker.fail_with = AssertionError("tracker must not be called")

        outcome = await _reconcile(session_factory, fake_tracker, feature.id)

        assert outcome == ReconcileOutcome.SKIPPED

    async def test_unlinked_feature_is_created(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        fake_tracker: FakeTracker,
        make_feature: MakeFeature,
    ) -> None:
        feature = await make_feature(
            external_id=None, last_synced_at=None, sync_state=SyncState.PENDING
        )

        outcome = await _reconcile(session_factory, fake_tracker, feature.id)

        assert outcome == ReconcileOutcome.CREATED
        assert len(fake_tracker.created) == 1
        assert fake_tracker.created[0]["title"] == "Dark mode"
        stored = await _load(session_factory, feature.id)
        assert stored.external_id == "101"
        assert stored.sync_state == SyncState.SYNCED
        assert stored.last_synced_at is not None

    async def test_push_new_feature_skips_linked_feature(
        self,
        db_session: AsyncSession,
        fake_tracker: FakeTracker,
        make_feature: MakeFeature,
    ) -> None:
        feature = await make_feature()

        outcome = await push_new_feature(db_session, fake_tracker, feature.id)

        assert outcome == ReconcileOutcome.SKIPPED
        assert fake_tracker.created == []

    async def test_never_synced_feature_is_baselined_from_tracker(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        fake_tracker: FakeTracker,
        make_feature: MakeFeature,
    ) -> None:
        feature = await make_feature(last_synced_at=None, sync_state=SyncState.PENDING)
        fake_tracker.add_item("1", feature.local_updated_at - timedelta(days=3), title="Tracker")

        outcome = await _reconcile(session_factory, fake_tracker, feature.id)

        assert outcome == ReconcileOutcome.PULLED
        stored = await _load(session_factory, feature.id)
        assert stored.title == "Tracker"
        assert stored.sync_state == SyncState.SYNCED

    async def test_unknown_feature_raises_not_found(
        self, db_session: AsyncSession, fake_tracker: FakeTracker
    ) -> None:
        with pytest.raises(NotFoundError):
            await reconcile_feature(db_session, fake_tracker, 404)


class TestTrackerFailures:
    async def test_network_error_is_recorded_and_raised(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        fake_tracker: FakeTracker,
        make_feature: MakeFeature,
    ) -> None:
        feature = await make_feature()
        fake_tracker.fail_with = TrackerNetworkError("connection reset")

        with pytest.raises(TrackerNetworkError):
            await _reconcile(session_factory, fake_tracker, feature.id)

        stored = await _load(session_factory, feature.id)
        assert stored.sync_error == "connection reset"
        assert stored.sync_state == SyncState.SYNCED

    async def test_missing_work_item_raises_not_found(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        fake_tracker: FakeTracker,
        make_feature: MakeFeature,
    ) -> None:
        feature = await make_feature(external_id="999")

        with pytest.raises(TrackerNotFoundError):
            await _reconcile(session_factory, fake_tracker, feature.id)

        stored = await _load(session_factory, feature.id)
        assert stored.sync_error is not None
        assert "999" in stored.sync_error

    async def test_sync_error_cleared_after_success(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        fake_tracker: FakeTracker,
        make_feature: MakeFeature,
    ) -> None:
        feature = await make_feature(sync_error="previous failure")
        assert feature.last_synced_at is not None
        fake_tracker.add_item("1", feature.last_synced_at - timedelta(minutes=1))

        assert await _reconcile(session_factory, fake_tracker, feature.id) == (
            ReconcileOutcome.NO_CHANGE
        )
        stored = await _load(session_factory, feature.id)
        assert stored.sync_error is None


class TestWritePrimitives:
    async def test_apply_update_rejects_unknown_fields(
        self,
        db_session: AsyncSession,
        fake_tracker: FakeTracker,
        make_feature: MakeFeature,
    ) -> None:
        feature = await make_feature()
        loaded = await db_session.get(FeatureRequest, feature.id)
        assert loaded is not None
        fields: dict[str, Any] = {"is_pinned": True}

        with pytest.raises(ValueError, match="unknown fields"):
            await apply_update(db_session, fake_tracker, loaded, fields, push=False)

    async def test_apply_update_push_failure_leaves_feature_unchanged(
        self,
        db_session: AsyncSession,
        fake_tracker: FakeTracker,
        make_feature: MakeFeature,
    ) -> None:
        feature = await make_feature()
        loaded = await db_session.get(FeatureRequest, feature.id)
        assert loaded is not None
        fake_tracker.add_item("1", loaded.local_updated_at)
        fake_tracker.fail_with = TrackerNetworkError("timeout")

        with pytest.raises(TrackerNetworkError):
            await apply_update(db_session, fake_tracker, loaded, {"title": "New"}, push=True)

        assert loaded.title == "Dark mode"

    async def test_second_open_conflict_is_refused(
        self,
        db_session: AsyncSession,
        fake_tracker: FakeTracker,
        make_feature: MakeFeature,
    ) -> None:
        feature = await make_feature()
        loaded = await db_session.get(FeatureRequest, feature.id)
        assert loaded is not None
        item = fake_tracker.add_item("1", loaded.local_updated_at + timedelta(minutes=1))
        await open_conflict(db_session, loaded, item)
        await db_session.commit()

        with pytest.raises(ConflictAlreadyOpenError):
            await open_conflict(db_session, loaded, item)
