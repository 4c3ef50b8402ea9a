"""SQLAlchemy ORM models for DocSync."""

from docsync.models.base import Base
from docsync.models.content import BlogPost, CategoryMetadata, Document
from docsync.models.feature import FeatureComment, FeatureRequest, SyncConflict, SyncState
from docsync.models.repository import Repository, SyncLog
from docsync.models.user import User

__all__ = [
    "Base",
    "BlogPost",
    "CategoryMetadata",
    "Document",
    "FeatureComment",
    "FeatureRequest",
    "Repository",
    "SyncConflict",
    "SyncLog",
    "SyncState",
    "User",
]
