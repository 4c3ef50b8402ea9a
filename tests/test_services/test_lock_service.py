"""Tests for per-target sync locks."""

from __future__ import annotations

import pytest

from docsync.exceptions import SyncInProgressError
from docsync.services.lock_service import TargetLocks, feature_key, repository_key


class TestTargetLocks:
    def test_keys_are_namespaced(self) -> None:
        assert repository_key(7) == "repository:7"
        assert feature_key(7) == "feature:7"
        assert repository_key(7) != feature_key(7)

    def test_claim_holds_key_for_block(self) -> None:
        locks = TargetLocks()
        with locks.claim("feature:1"):
            assert locks.is_held("feature:1")
        assert not locks.is_held("feature:1")

    def test_second_claim_is_refused(self) -> None:
        locks = TargetLocks()
        with locks.claim("feature:1"):
            with pytest.raises(SyncInProgressError) as exc_info, locks.claim("feature:1"):
                pass
            assert exc_info.value.target == "feature:1"
            assert locks.is_held("feature:1")

    def test_distinct_keys_do_not_block(self) -> None:
        locks = TargetLocks()
        with locks.claim("feature:1"), locks.claim("feature:2"):
            assert locks.is_held("feature:1")
            assert locks.is_held("feature:2")

    def test_released_after_exception(self) -> None:
        locks = TargetLocks()
        with pytest.raises(RuntimeError), locks.claim("repository:3"):
            raise RuntimeError("boom")
        assert not locks.is_held("repository:3")
