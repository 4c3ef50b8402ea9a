"""Idempotent import of tracker comments into feature discussions."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from docsync.exceptions import SyncValidationError
from docsync.models.feature import FeatureComment
from docsync.models.user import User
from docsync.services.datetime_service import as_utc
from docsync.services.feature_sync_service import get_feature

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from docsync.tracker.base import ExternalComment, TrackerClient

logger = logging.getLogger(__name__)


@dataclass
class CommentSyncResult:
    """Counts of imported and already-present comments."""

    synced: int = 0
    skipped: int = 0


async def _find_user_id(session: AsyncSession, email: str | None) -> int | None:
    if not email:
        return None
    user_id: int | None = await session.scalar(
        select(User.id).where(func.lower(User.email) == email.strip().lower())
    )
    return user_id


async def _insert_comment(
    session: AsyncSession,
    feature_id: int,
    source: str,
    comment: ExternalComment,
) -> bool:
    """Insert one comment in a savepoint. Returns False if it already exists."""
    try:
        async with session.begin_nested():
            session.add(
                FeatureComment(
                    feature_id=feature_id,
                    external_comment_id=comment.external_comment_id,
                    external_source=source,
                    author_id=await _find_user_id(session, comment.author_email),
                    author_name=comment.author,
                    author_email=comment.author_email,
                    content=comment.body,
                    created_at=as_utc(comment.created_at),
                )
            )
    except IntegrityError:
        # Another sync stored the same comment between our read and insert.
        logger.debug(
            "Comment %s on feature %d already stored", comment.external_comment_id, feature_id
        )
        return False
    return True


async def sync_comments(
    session: AsyncSession,
    tracker: TrackerClient,
    feature_id: int,
) -> CommentSyncResult:
    """Import external comments not stored yet for one feature.

    Comments are matched by (feature, external comment id), so repeated runs
    never duplicate them. Comment authors are linked to local users by e-mail.

    Raises NotFoundError for unknown features, SyncValidationError when the
    feature has no tracker work item. Tracker errors propagate.
    """
    feature = await get_feature(session, feature_id)
    if feature.external_id is None:
        msg = f"Feature {feature_id} is not linked to a tracker work item"
        raise SyncValidationError(msg)

    known = set(
        (
            await session.scalars(
                select(FeatureComment.external_comment_id).where(
                    FeatureComment.feature_id == feature_id,
                    FeatureComment.external_comment_id.is_not(None),
                )
            )
        ).all()
    )
    external_comments = await tracker.list_comments(feature.external_id)

    result = CommentSyncResult()
    for comment in external_comments:
        if comment.external_comment_id in known:
            result.skipped += 1
            continue
        if await _insert_comment(session, feature_id, tracker.source, comment):
            result.synced += 1
        else:
            result.skipped += 1
        known.add(comment.external_comment_id)
    await session.commit()

    if result.synced:
        logger.info(
            "Imported %d comments for feature %d (%d skipped)",
            result.synced,
            feature_id,
            result.skipped,
        )
    return result
