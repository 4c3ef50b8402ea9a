"""Tests for application startup and shutdown."""

from __future__ import annotations

import subprocess
from typing import TYPE_CHECKING

import pytest
from fastapi.exceptions import RequestValidationError
from sqlalchemy.exc import OperationalError

from docsync.exceptions import NotFoundError, SyncStateError
from docsync.main import create_app, lifespan
from docsync.services.sync_worker import SyncWorker, WorkerStatus
from docsync.tracker.base import TrackerError
from docsync.tracker.github import GitHubTrackerClient

if TYPE_CHECKING:
    from docsync.config import Settings


class TestLifespan:
    async def test_startup_wires_tracker_and_worker(self, test_settings: Settings) -> None:
        app = create_app(test_settings)

        async with lifespan(app):
            assert isinstance(app.state.tracker, GitHubTrackerClient)
            assert isinstance(app.state.worker, SyncWorker)
            assert app.state.worker.status().status == WorkerStatus.IDLE
            assert test_settings.mirrors_dir.is_dir()

    async def test_autostart_runs_worker_until_shutdown(self, test_settings: Settings) -> None:
        settings = test_settings.model_copy(update={"worker_autostart": True})
        app = create_app(settings)

        async with lifespan(app):
            worker: SyncWorker = app.state.worker
            assert worker.status().status == WorkerStatus.RUNNING

        assert worker.status().status == WorkerStatus.STOPPED

    async def test_misconfigured_tracker_fails_startup(self, test_settings: Settings) -> None:
        settings = test_settings.model_copy(update={"tracker_project": "not-a-repo"})
        app = create_app(settings)

        with pytest.raises(ValueError, match="owner/repo"):
            async with lifespan(app):
                pass

    async def test_insecure_production_settings_fail_startup(
        self, test_settings: Settings
    ) -> None:
        settings = test_settings.model_copy(update={"debug": False, "worker_secret": "short"})
        app = create_app(settings)

        with pytest.raises(ValueError, match="WORKER_SECRET"):
            async with lifespan(app):
                pass


class TestExceptionHandlers:
    def test_registers_handlers_for_raised_error_types(self, test_settings: Settings) -> None:
        app = create_app(test_settings)

        assert set(app.exception_handlers) >= {
            RequestValidationError,
            NotFoundError,
            SyncStateError,
            TrackerError,
            ValueError,
            OperationalError,
        }
        assert subprocess.CalledProcessError not in app.exception_handlers
