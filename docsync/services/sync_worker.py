"""Background sync worker: lifecycle, periodic ticks and shared sync primitives.

The worker is constructed once per process in the application lifespan and
handed to the API layer through ``app.state``. The scheduled tick and the
manual HTTP triggers call the same locked primitives, so a manual "sync now"
behaves exactly like a scheduled sync and can never run concurrently with it
on the same target.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import StrEnum
from functools import partial
from typing import TYPE_CHECKING, Any

from sqlalchemy import select

from docsync.exceptions import NotFoundError, SyncInProgressError
from docsync.models.feature import FeatureRequest, SyncConflict, SyncState
from docsync.models.repository import Repository
from docsync.services.comment_sync_service import CommentSyncResult, sync_comments
from docsync.services.conflict_service import resolve_conflict
from docsync.services.datetime_service import as_utc, now_utc
from docsync.services.feature_sync_service import (
    ReconcileOutcome,
    push_new_feature,
    reconcile_feature,
)
from docsync.services.git_service import GitService
from docsync.services.import_service import ImportResult, import_repository
from docsync.services.lock_service import TargetLocks, feature_key, repository_key

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from docsync.config import Settings
    from docsync.tracker.base import TrackerClient

logger = logging.getLogger(__name__)


class WorkerStatus(StrEnum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


@dataclass
class WorkerRun:
    """In-memory lifecycle state of the worker. Never persisted."""

    status: WorkerStatus = WorkerStatus.IDLE
    started_at: datetime | None = None
    last_tick_at: datetime | None = None
    last_error: str | None = None


@dataclass
class TickSummary:
    """Target counts of one tick."""

    repositories: int = 0
    features: int = 0
    skipped: int = 0
    failed: int = 0
    stopped: bool = False


@dataclass
class ManualSyncSummary:
    """Aggregate of a manual comment sync across all eligible features."""

    features: int = 0
    synced: int = 0
    skipped: int = 0
    failed: int = 0
    in_progress: int = 0


def is_due(repository: Repository, now: datetime) -> bool:
    """Return True when a repository should be imported on this tick.

    A frequency of zero means the repository is only synced on demand.
    """
    if not repository.enabled or repository.sync_frequency_seconds <= 0:
        return False
    if repository.last_sync_at is None:
        return True
    elapsed = now - as_utc(repository.last_sync_at)
    return elapsed >= timedelta(seconds=repository.sync_frequency_seconds)


class SyncWorker:
    """Owns the tick loop and serializes sync work per target."""

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        tracker: TrackerClient,
        locks: TargetLocks | None = None,
    ) -> None:
        self.settings = settings
        self.session_factory = session_factory
        self.tracker = tracker
        self.locks = locks if locks is not None else TargetLocks()
        self._run = WorkerRun()
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    # Lifecycle

    def status(self) -> WorkerRun:
        """Return a copy of the current lifecycle state."""
        return replace(self._run)

    async def start(self) -> WorkerRun:
        """Start the tick loop. A no-op while already running."""
        if self._task is not None and not self._task.done():
            return self.status()
        self._stop_event.clear()
        self._run = WorkerRun(status=WorkerStatus.RUNNING, started_at=now_utc())
        self._task = asyncio.create_task(self._loop(), name="docsync-sync-worker")
        logger.info(
            "Sync worker started (interval=%ss)", self.settings.worker_interval_seconds
        )
        return self.status()

    async def stop(self) -> WorkerRun:
        """Stop after the in-flight target finishes. A no-op when not running."""
        task = self._task
        if task is None or task.done():
            return self.status()
        self._run.status = WorkerStatus.STOPPING
        self._stop_event.set()
        logger.info("Sync worker stopping")
        await task
        return self.status()

    async def _loop(self) -> None:
        try:
            while not self._stop_event.is_set():
                try:
                    await self.run_tick()
                except Exception as exc:
                    logger.exception("Sync tick failed")
                    self._run.last_error = f"tick: {exc}"
                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(
                        self._stop_event.wait(),
                        timeout=self.settings.worker_interval_seconds,
                    )
        finally:
            self._run.status = WorkerStatus.STOPPED
            logger.info("Sync worker stopped")

    # Tick

    async def _run_target(
        self,
        summary: TickSummary,
        stage: str,
        target: str,
        work: Callable[[], Awaitable[Any]],
    ) -> None:
        """Run one target's unit of work; failures are recorded, never raised."""
        try:
            await work()
        except SyncInProgressError:
            logger.info("Sync already in progress for %s, skipping", target)
            summary.skipped += 1
        except Exception as exc:
            logger.error("Sync failed for %s at stage %s: %s", target, stage, exc, exc_info=exc)
            self._run.last_error = f"{stage} {target}: {exc}"
            summary.failed += 1

    async def _due_repository_ids(self) -> list[int]:
        now = now_utc()
        async with self.session_factory() as session:
            repositories = (
                await session.scalars(
                    select(Repository).where(Repository.enabled.is_(True)).order_by(Repository.id)
                )
            ).all()
        return [repository.id for repository in repositories if is_due(repository, now)]

    async def _syncable_feature_ids(self) -> list[int]:
        async with self.session_factory() as session:
            result = await session.scalars(
                select(FeatureRequest.id)
                .where(
                    FeatureRequest.external_id.is_not(None),
                    FeatureRequest.is_archived.is_(False),
                    FeatureRequest.sync_state != SyncState.CONFLICT,
                )
                .order_by(FeatureRequest.id)
            )
            return list(result.all())

    async def _unlinked_feature_ids(self) -> list[int]:
        async with self.session_factory() as session:
            result = await session.scalars(
                select(FeatureRequest.id)
                .where(
                    FeatureRequest.external_id.is_(None),
                    FeatureRequest.is_archived.is_(False),
                    FeatureRequest.sync_state == SyncState.PENDING,
                )
                .order_by(FeatureRequest.id)
            )
            return list(result.all())

    async def run_tick(self) -> TickSummary:
        """Run one pass over all due repositories and syncable features.

        The stop signal is checked between targets; the target in flight
        always completes.
        """
        self._run.last_tick_at = now_utc()
        summary = TickSummary()

        for repository_id in await self._due_repository_ids():
            if self._stop_event.is_set():
                summary.stopped = True
                return summary
            summary.repositories += 1
            await self._run_target(
                summary,
                "import",
                repository_key(repository_id),
                partial(self.sync_repository, repository_id),
            )

        if self.settings.auto_push_new_features:
            for feature_id in await self._unlinked_feature_ids():
                if self._stop_event.is_set():
                    summary.stopped = True
                    return summary
                summary.features += 1
                await self._run_target(
                    summary,
                    "create",
                    feature_key(feature_id),
                    partial(self.push_feature, feature_id),
                )

        for feature_id in await self._syncable_feature_ids():
            if self._stop_event.is_set():
                summary.stopped = True
                return summary
            summary.features += 1
            await self._run_target(
                summary,
                "feature",
                feature_key(feature_id),
                partial(self._sync_feature_and_comments, feature_id),
            )

        logger.debug("Sync tick finished: %s", summary)
        return summary

    async def _sync_feature_and_comments(self, feature_id: int) -> None:
        with self.locks.claim(feature_key(feature_id)):
            async with self.session_factory() as session:
                await reconcile_feature(session, self.tracker, feature_id)
            async with self.session_factory() as session:
                await sync_comments(session, self.tracker, feature_id)

    # Shared primitives

    def git_service_for(self, repository_id: int) -> GitService:
        return GitService(
            self.settings.mirrors_dir / f"repository-{repository_id}",
            timeout_seconds=self.settings.git_timeout_seconds,
        )

    async def sync_repository(self, repository_id: int) -> ImportResult:
        """Import one repository under its lock."""
        with self.locks.claim(repository_key(repository_id)):
            async with self.session_factory() as session:
                return await import_repository(
                    session, repository_id, self.git_service_for(repository_id)
                )

    async def sync_repository_in_background(self, repository_id: int) -> None:
        """Fire-and-forget variant of sync_repository; errors land in status()."""
        await self._run_target(
            TickSummary(),
            "import",
            repository_key(repository_id),
            partial(self.sync_repository, repository_id),
        )

    async def sync_feature(self, feature_id: int) -> ReconcileOutcome:
        """Reconcile one feature under its lock."""
        with self.locks.claim(feature_key(feature_id)):
            async with self.session_factory() as session:
                return await reconcile_feature(session, self.tracker, feature_id)

    async def push_feature(self, feature_id: int) -> ReconcileOutcome:
        """Create the tracker work item of an unlinked feature under its lock."""
        with self.locks.claim(feature_key(feature_id)):
            async with self.session_factory() as session:
                return await push_new_feature(session, self.tracker, feature_id)

    async def sync_feature_comments(self, feature_id: int) -> CommentSyncResult:
        """Import new tracker comments for one feature under its lock."""
        with self.locks.claim(feature_key(feature_id)):
            async with self.session_factory() as session:
                return await sync_comments(session, self.tracker, feature_id)

    async def trigger_manual_sync(self) -> ManualSyncSummary:
        """Run comment sync for every syncable feature and aggregate the counts.

        A failing feature is logged and counted, never raised. A feature whose
        lock is held elsewhere is counted as in progress.
        """
        summary = ManualSyncSummary()
        for feature_id in await self._syncable_feature_ids():
            summary.features += 1
            try:
                result = await self.sync_feature_comments(feature_id)
            except SyncInProgressError:
                logger.info("Sync already in progress for %s, skipping", feature_key(feature_id))
                summary.in_progress += 1
                continue
            except Exception as exc:
                logger.error(
                    "Comment sync failed for %s: %s", feature_key(feature_id), exc, exc_info=exc
                )
                summary.failed += 1
                continue
            summary.synced += result.synced
            summary.skipped += result.skipped
        logger.info(
            "Manual comment sync: %d features, %d synced, %d skipped, %d failed, %d in progress",
            summary.features,
            summary.synced,
            summary.skipped,
            summary.failed,
            summary.in_progress,
        )
        return summary

    async def resolve_conflict(self, conflict_id: int, resolution: str) -> SyncConflict:
        """Resolve a conflict under its feature's lock."""
        async with self.session_factory() as session:
            conflict = await session.get(SyncConflict, conflict_id)
            if conflict is None:
                raise NotFoundError("Conflict", conflict_id)
            feature_id = conflict.feature_id
        with self.locks.claim(feature_key(feature_id)):
            async with self.session_factory() as session:
                return await resolve_conflict(session, self.tracker, conflict_id, resolution)
