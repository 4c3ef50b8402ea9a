"""Content importer: mirror a git repository and upsert its markdown into the store."""

from __future__ import annotations

import asyncio
import logging
import subprocess
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import yaml
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from docsync.exceptions import NotFoundError, SyncValidationError
from docsync.filesystem.frontmatter import (
    hash_content,
    is_blog_path,
    is_markdown_path,
    parse_markdown_document,
    slug_from_path,
)
from docsync.filesystem.meta import is_meta_path, parse_meta_file
from docsync.models.content import BlogPost, CategoryMetadata, Document
from docsync.models.repository import Repository, SyncLog
from docsync.services.datetime_service import now_utc

if TYPE_CHECKING:
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession

    from docsync.services.git_service import GitService

logger = logging.getLogger(__name__)

# Errors that fail a single file without aborting the run.
_FILE_ERRORS = (
    subprocess.CalledProcessError,
    subprocess.TimeoutExpired,
    UnicodeDecodeError,
    yaml.YAMLError,
    ValueError,
    SQLAlchemyError,
)
_FETCH_ERRORS = (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError, ValueError)
_MAX_REPORTED_ERRORS = 5


@dataclass
class ImportResult:
    """Per-run file counts of a repository import."""

    added: int = 0
    updated: int = 0
    unchanged: int = 0
    failed: int = 0
    commit: str | None = None
    errors: list[str] = field(default_factory=list)

    @property
    def status(self) -> str:
        return "partial" if self.failed else "success"


def _relative_path(file_path: str, base_path: str) -> str:
    prefix = base_path.strip("/")
    if prefix and file_path.startswith(prefix + "/"):
        return file_path[len(prefix) + 1 :]
    return file_path


async def _store_markdown(
    session: AsyncSession,
    repository_id: int,
    file_path: str,
    relative_path: str,
    raw_content: str,
    now: datetime,
) -> str:
    """Upsert one markdown file. Returns ``added``, ``updated`` or ``unchanged``."""
    model: type[Document] | type[BlogPost] = (
        BlogPost if is_blog_path(relative_path) else Document
    )
    slug = slug_from_path(relative_path)
    existing = await session.scalar(
        select(model).where(model.repository_id == repository_id, model.slug == slug)
    )
    if existing is not None and existing.content_hash == hash_content(raw_content):
        return "unchanged"

    parsed = parse_markdown_document(relative_path, raw_content)
    values: dict[str, Any] = {
        "file_path": file_path,
        "file_name": parsed.file_name,
        "title": parsed.title,
        "content": parsed.content,
        "excerpt": parsed.excerpt,
        "category": parsed.category,
        "tags": parsed.tags,
        "author": parsed.author,
        "published_at": parsed.published_at,
        "content_hash": parsed.content_hash,
        "last_synced_at": now,
    }
    if model is BlogPost:
        values["is_draft"] = parsed.is_draft

    if existing is None:
        session.add(model(repository_id=repository_id, slug=slug, **values))
        await session.flush()
        return "added"

    for key, value in values.items():
        setattr(existing, key, value)
    await session.flush()
    return "updated"


async def _store_meta(
    session: AsyncSession,
    repository_id: int,
    relative_path: str,
    raw_content: str,
) -> str:
    """Upsert the categories declared in one ``_meta.json`` file."""
    entries = parse_meta_file(relative_path, raw_content)
    outcome = "unchanged"
    for entry in entries:
        existing = await session.scalar(
            select(CategoryMetadata).where(
                CategoryMetadata.repository_id == repository_id,
                CategoryMetadata.category_slug == entry.category_slug,
            )
        )
        values = {
            "title": entry.title,
            "icon": entry.icon,
            "description": entry.description,
            "order": entry.order,
            "parent_slug": entry.parent_slug,
            "level": entry.level,
        }
        if existing is None:
            session.add(
                CategoryMetadata(
                    repository_id=repository_id,
                    category_slug=entry.category_slug,
                    **values,
                )
            )
            outcome = "added"
            continue
        if any(getattr(existing, key) != value for key, value in values.items()):
            for key, value in values.items():
                setattr(existing, key, value)
            if outcome == "unchanged":
                outcome = "updated"
    await session.flush()
    return outcome


async def import_repository(
    session: AsyncSession,
    repository_id: int,
    source: GitService,
) -> ImportResult:
    """Import every markdown and ``_meta.json`` file of a repository.

    Each file is stored in its own savepoint: one file failing to read,
    parse or store is counted and skipped. Files no longer present in the
    repository are left untouched. A failed fetch marks the run failed and
    re-raises.

    Raises NotFoundError if the repository does not exist and
    SyncValidationError if it is disabled.
    """
    repository = await session.get(Repository, repository_id)
    if repository is None:
        raise NotFoundError("Repository", repository_id)
    if not repository.enabled:
        msg = f"Repository {repository_id} is disabled"
        raise SyncValidationError(msg)

    started = time.monotonic()
    sync_log = SyncLog(repository_id=repository_id, status="in_progress", started_at=now_utc())
    session.add(sync_log)
    await session.commit()

    def finish(status: str, error: str | None) -> None:
        completed_at = now_utc()
        repository.last_sync_at = completed_at
        repository.last_sync_status = status
        repository.last_sync_error = error
        sync_log.status = status
        sync_log.error = error
        sync_log.completed_at = completed_at
        sync_log.duration_ms = int((time.monotonic() - started) * 1000)

    try:
        commit = await asyncio.to_thread(source.fetch, repository.source_url, repository.branch)
        paths = await asyncio.to_thread(source.list_files, repository.branch, repository.base_path)
    except _FETCH_ERRORS as exc:
        logger.error("Fetch failed for repository %d (%s): %s", repository_id, repository.name, exc)
        finish("failed", f"Fetch failed: {exc}")
        await session.commit()
        raise

    result = ImportResult(commit=commit)
    now = now_utc()
    for file_path in paths:
        relative_path = _relative_path(file_path, repository.base_path)
        if is_meta_path(relative_path):
            kind = "meta"
        elif is_markdown_path(relative_path):
            kind = "markdown"
        else:
            continue

        try:
            async with session.begin_nested():
                raw_content = await asyncio.to_thread(
                    source.read_file, repository.branch, file_path
                )
                if kind == "meta":
                    outcome = await _store_meta(session, repository_id, relative_path, raw_content)
                else:
                    outcome = await _store_markdown(
                        session, repository_id, file_path, relative_path, raw_content, now
                    )
        except _FILE_ERRORS as exc:
            logger.warning("Skipping %s in repository %d: %s", file_path, repository_id, exc)
            result.failed += 1
            result.errors.append(f"{file_path}: {exc}")
            continue

        if outcome == "added":
            result.added += 1
        elif outcome == "updated":
            result.updated += 1
        else:
            result.unchanged += 1

    sync_log.files_added = result.added
    sync_log.files_changed = result.updated
    sync_log.files_failed = result.failed
    error = "; ".join(result.errors[:_MAX_REPORTED_ERRORS]) or None
    finish(result.status, error)
    await session.commit()

    logger.info(
        "Imported repository %d at %s: %d added, %d updated, %d unchanged, %d failed",
        repository_id,
        commit[:12],
        result.added,
        result.updated,
        result.unchanged,
        result.failed,
    )
    return result
