"""Feature request, comment and sync conflict models."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from docsync.models.base import Base

if TYPE_CHECKING:
    from docsync.models.user import User


class SyncState(StrEnum):
    """Two-way sync state of a feature request."""

    SYNCED = "synced"
    PENDING = "pending"
    CONFLICT = "conflict"


class FeatureRequest(Base):
    """Feature request mirrored to a work item in the external tracker."""

    __tablename__ = "feature_requests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    external_id: Mapped[str | None] = mapped_column(String, nullable=True, unique=True)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    status: Mapped[str] = mapped_column(String, nullable=False, default="proposal")
    priority: Mapped[str | None] = mapped_column(String, nullable=True)
    is_archived: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_pinned: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    comments_locked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    local_updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    external_updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Synced field values as of last_synced_at; tells local edits apart per field.
    synced_fields: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    sync_state: Mapped[str] = mapped_column(String, nullable=False, default=SyncState.PENDING)
    sync_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    comments: Mapped[list[FeatureComment]] = relationship(
        back_populates="feature", cascade="all, delete-orphan"
    )

    __table_args__ = (Index("idx_features_sync_state", "sync_state", "is_archived"),)


class FeatureComment(Base):
    """Discussion comment on a feature request, local or imported."""

    __tablename__ = "feature_comments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    feature_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("feature_requests.id", ondelete="CASCADE"), nullable=False
    )
    external_comment_id: Mapped[str | None] = mapped_column(String, nullable=True)
    external_source: Mapped[str | None] = mapped_column(String, nullable=True)
    author_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    author_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    author_email: Mapped[str | None] = mapped_column(Text, nullable=True)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    feature: Mapped[FeatureRequest] = relationship(back_populates="comments")
    author: Mapped[User | None] = relationship()

    # NULL external ids never collide, so local comments are unconstrained.
    __table_args__ = (UniqueConstraint("feature_id", "external_comment_id"),)


class SyncConflict(Base):
    """Snapshot of both sides of a feature that changed locally and externally."""

    __tablename__ = "sync_conflicts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    feature_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("feature_requests.id", ondelete="CASCADE"), nullable=False
    )
    local_snapshot: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    external_snapshot: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    detected_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolution: Mapped[str | None] = mapped_column(String, nullable=True)

    __table_args__ = (
        Index(
            "uq_sync_conflicts_open_feature",
            "feature_id",
            unique=True,
            sqlite_where=text("resolved_at IS NULL"),
            postgresql_where=text("resolved_at IS NULL"),
        ),
    )
