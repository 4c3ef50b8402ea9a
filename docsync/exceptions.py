"""Application-level exception types.

Convention:
- ``ValueError`` subclasses: for validation errors that are safe to forward to
  clients (bad resolution value, feature not linked to the tracker).  The
  global ``ValueError`` handler returns ``str(exc)`` as the 422 detail.
- ``NotFoundError``: unknown repository, feature or conflict id (404).
- ``SyncStateError`` subclasses: the request is valid but the target is in a
  state that forbids it (409). They never mutate state and are never retried.

Tracker transport errors live in ``docsync.tracker.base``.
"""

from __future__ import annotations


class NotFoundError(LookupError):
    """Raised when a repository, feature or conflict id does not exist."""

    def __init__(self, kind: str, target_id: object) -> None:
        self.kind = kind
        self.target_id = target_id
        super().__init__(f"{kind} {target_id} not found")


class SyncValidationError(ValueError):
    """Raised when a sync request is missing required data."""


class InvalidResolutionError(SyncValidationError):
    """Raised when a conflict resolution value is not recognized."""

    def __init__(self, value: object) -> None:
        self.value = value
        super().__init__(
            f"Invalid resolution {value!r}: expected one of keep-local, keep-external, merge"
        )


class SyncStateError(Exception):
    """Base class for requests refused because of the target's current state."""


class ConflictAlreadyOpenError(SyncStateError):
    """Raised when a feature already has an open sync conflict."""

    def __init__(self, feature_id: int) -> None:
        self.feature_id = feature_id
        super().__init__(f"Feature {feature_id} already has an open sync conflict")


class ConflictAlreadyResolvedError(SyncStateError):
    """Raised when resolving a conflict that was already resolved."""

    def __init__(self, conflict_id: int, resolution: str | None) -> None:
        self.conflict_id = conflict_id
        self.resolution = resolution
        super().__init__(f"Conflict {conflict_id} was already resolved ({resolution})")


class SyncInProgressError(SyncStateError):
    """Raised when a sync is already running for the same target."""

    def __init__(self, target: str) -> None:
        self.target = target
        super().__init__(f"Sync already in progress for {target}")
