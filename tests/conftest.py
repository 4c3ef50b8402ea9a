"""Shared test fixtures for DocSync."""

from __future__ import annotations

import os
import subprocess
from collections.abc import Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from docsync.config import Settings
from docsync.database import create_engine, create_tables
from docsync.main import create_app
from docsync.models.feature import FeatureRequest, SyncState
from docsync.services.datetime_service import now_utc
from docsync.services.sync_worker import SyncWorker
from docsync.tracker.base import ExternalComment, TrackerNotFoundError, WorkItem

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator
    from pathlib import Path

TEST_WORKER_SECRET = "test-worker-secret-with-at-least-32-chars"

GIT_ENV = {
    "GIT_AUTHOR_NAME": "Test",
    "GIT_AUTHOR_EMAIL": "test@example.com",
    "GIT_COMMITTER_NAME": "Test",
    "GIT_COMMITTER_EMAIL": "test@example.com",
}


class FakeTracker:
    """In-memory tracker implementing the TrackerClient protocol.

    ``fail_with`` makes every call raise the given exception; ``clock`` is the
    modification time stamped on items by updates.
    """

    source = "fake"

    def __init__(self) -> None:
        self.items: dict[str, WorkItem] = {}
        self.comments: dict[str, list[ExternalComment]] = {}
        self.updates: list[tuple[str, dict[str, Any]]] = []
        self.created: list[dict[str, Any]] = []
        self.fail_with: Exception | None = None
        self.clock: datetime | None = None
        self.closed = False
        self._next_id = 100

    def _check(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with

    def add_item(
        self,
        external_id: str,
        updated_at: datetime,
        field_timestamps: dict[str, datetime] | None = None,
        **fields: Any,
    ) -> WorkItem:
        values = {"title": "Item", "description": "", "status": "proposal", "priority": None}
        values.update(fields)
        item = WorkItem(
            external_id=external_id,
            fields=values,
            updated_at=updated_at,
            field_timestamps=field_timestamps or {},
        )
        self.items[external_id] = item
        return item

    def add_comment(
        self,
        external_id: str,
        comment_id: str,
        body: str = "comment",
        author: str = "octocat",
        author_email: str | None = None,
    ) -> None:
        self.comments.setdefault(external_id, []).append(
            ExternalComment(
                external_comment_id=comment_id,
                author=author,
                body=body,
                created_at=now_utc(),
                author_email=author_email,
            )
        )

    async def get_work_item(self, external_id: str) -> WorkItem:
        self._check()
        if external_id not in self.items:
            raise TrackerNotFoundError(external_id)
        return replace(self.items[external_id], fields=dict(self.items[external_id].fields))

    async def list_comments(self, external_id: str) -> list[ExternalComment]:
        self._check()
        return list(self.comments.get(external_id, []))

    async def update_work_item(self, external_id: str, fields: dict[str, Any]) -> None:
        self._check()
        if external_id not in self.items:
            raise TrackerNotFoundError(external_id)
        self.updates.append((external_id, dict(fields)))
        item = self.items[external_id]
        item.fields.update(fields)
        item.updated_at = self.clock or now_utc()

    async def create_work_item(self, fields: dict[str, Any]) -> str:
        self._check()
        self._next_id += 1
        external_id = str(self._next_id)
        self.created.append(dict(fields))
        self.add_item(external_id, self.clock or now_utc(), **fields)
        return external_id

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Create test settings with temporary paths."""
    db_path = tmp_path / "test.db"
    return Settings(
        debug=True,
        database_url=f"sqlite+aiosqlite:///{db_path}",
        mirrors_dir=tmp_path / "mirrors",
        worker_secret=TEST_WORKER_SECRET,
        worker_interval_seconds=3600,
        tracker_project="acme/widgets",
        tracker_token="test-token",
    )


@pytest.fixture
async def db_engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine]:
    """Create a test database engine with all tables."""
    engine = create_async_engine(
        test_settings.database_url,
        echo=False,
    )
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession]:
    """Create a test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def fake_tracker() -> FakeTracker:
    return FakeTracker()


@pytest.fixture
def make_feature(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[FeatureRequest]]:
    """Factory inserting a feature request; timestamps default to a synced state."""

    async def _make(**overrides: Any) -> FeatureRequest:
        synced_at = now_utc() - timedelta(hours=1)
        values: dict[str, Any] = {
            "title": "Dark mode",
            "description": "Please add dark mode",
            "status": "proposal",
            "priority": "medium",
            "external_id": "1",
            "local_updated_at": synced_at,
            "last_synced_at": synced_at,
            "sync_state": SyncState.SYNCED,
        }
        values.update(overrides)
        async with session_factory() as session:
            feature = FeatureRequest(**values)
            session.add(feature)
            await session.commit()
            return feature

    return _make


def git(repo: Path, *args: str) -> str:
    """Run a git command in a test repository."""
    result = subprocess.run(
        ["git", *args],
        cwd=repo,
        check=True,
        capture_output=True,
        text=True,
        env={**os.environ, **GIT_ENV},
    )
    return result.stdout


def commit_files(repo: Path, files: dict[str, str], message: str = "update") -> str:
    """Write *files* into *repo*, commit them and return the commit hash."""
    for rel_path, content in files.items():
        target = repo / rel_path
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
    git(repo, "add", "-A")
    git(repo, "commit", "--quiet", "-m", message)
    return git(repo, "rev-parse", "HEAD").strip()


@pytest.fixture
def content_repo(tmp_path: Path) -> Path:
    """Create an empty source git repository on branch ``main``."""
    repo = tmp_path / "source"
    repo.mkdir()
    git(repo, "init", "--quiet")
    git(repo, "checkout", "--quiet", "-b", "main")
    return repo


@pytest.fixture
def commit_to_repo() -> Callable[..., str]:
    """Return a helper committing a ``{path: content}`` mapping to a repository."""
    return commit_files


@asynccontextmanager
async def create_test_client(
    settings: Settings, tracker: FakeTracker
) -> AsyncGenerator[AsyncClient]:
    """Create an HTTP test client with a fully initialized app.

    Manually performs the work of the application lifespan (DB, tracker,
    worker) because ASGITransport does not trigger it.
    """
    app = create_app(settings)
    settings.validate_runtime_security()

    engine, session_factory = create_engine(settings)
    await create_tables(engine)
    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.tracker = tracker
    worker = SyncWorker(settings, session_factory, tracker)
    app.state.worker = worker

    transport = ASGITransport(app=app)
    try:
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            yield ac
    finally:
        await worker.stop()
        await engine.dispose()
