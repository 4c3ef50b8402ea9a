"""Protocol, data classes and errors for external work-item trackers."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from datetime import datetime

# Feature request fields mirrored to the tracker.
SYNCED_FIELDS: tuple[str, ...] = ("title", "description", "status", "priority")


class TrackerError(Exception):
    """Terminal tracker failure (bad request, auth failure, unexpected payload)."""


class TrackerNotFoundError(TrackerError):
    """Raised when the work item does not exist in the tracker."""

    def __init__(self, external_id: str) -> None:
        self.external_id = external_id
        super().__init__(f"Work item {external_id} not found")


class TransientTrackerError(TrackerError):
    """Failure that may succeed on retry."""


class TrackerNetworkError(TransientTrackerError):
    """Raised on connection errors, timeouts and 5xx responses."""


class TrackerRateLimitedError(TransientTrackerError):
    """Raised when the tracker answers 429 or reports an exhausted quota."""

    def __init__(self, retry_after: float | None = None) -> None:
        self.retry_after = retry_after
        suffix = f" Retry after {retry_after}s" if retry_after is not None else ""
        super().__init__(f"Rate limited by tracker.{suffix}")


@dataclass
class WorkItem:
    """Tracker-side state of one work item."""

    external_id: str
    fields: dict[str, Any]
    updated_at: datetime
    # Per-field change times, when the tracker exposes them.
    field_timestamps: dict[str, datetime] = field(default_factory=dict)


@dataclass
class ExternalComment:
    """Comment attached to a work item in the tracker."""

    external_comment_id: str
    author: str
    body: str
    created_at: datetime
    author_email: str | None = None


@runtime_checkable
class TrackerClient(Protocol):
    """Protocol for tracker-specific client implementations."""

    source: str

    async def get_work_item(self, external_id: str) -> WorkItem:
        """Fetch one work item. Raises TrackerNotFoundError if missing."""
        ...

    async def list_comments(self, external_id: str) -> list[ExternalComment]:
        """Return every comment on the work item, oldest first."""
        ...

    async def update_work_item(self, external_id: str, fields: dict[str, Any]) -> None:
        """Overwrite the given synced fields on the work item."""
        ...

    async def create_work_item(self, fields: dict[str, Any]) -> str:
        """Create a work item and return its external id."""
        ...

    async def aclose(self) -> None:
        """Release network resources."""
        ...
