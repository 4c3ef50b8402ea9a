"""Per-target sync locks shared by the worker tick and the HTTP surface."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import TYPE_CHECKING

from docsync.exceptions import SyncInProgressError

if TYPE_CHECKING:
    from collections.abc import Iterator

logger = logging.getLogger(__name__)


def repository_key(repository_id: int) -> str:
    return f"repository:{repository_id}"


def feature_key(feature_id: int) -> str:
    return f"feature:{feature_id}"


class TargetLocks:
    """Non-blocking in-process lock registry keyed by target.

    A target already being synced is refused immediately rather than queued.
    Claims are made and released on the event loop thread, so a plain set is
    sufficient for a single-worker process.
    """

    def __init__(self) -> None:
        self._held: set[str] = set()

    def is_held(self, key: str) -> bool:
        return key in self._held

    @contextmanager
    def claim(self, key: str) -> Iterator[None]:
        """Hold *key* for the duration of the block.

        Raises SyncInProgressError if *key* is already held.
        """
        if key in self._held:
            raise SyncInProgressError(key)
        self._held.add(key)
        logger.debug("Claimed sync lock %s", key)
        try:
            yield
        finally:
            self._held.discard(key)
            logger.debug("Released sync lock %s", key)
