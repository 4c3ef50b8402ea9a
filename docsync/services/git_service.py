"""Git service: read-only mirrors of content repositories via git CLI."""

from __future__ import annotations

import logging
import re
import subprocess
from typing import TYPE_CHECKING

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)

_GIT_TIMEOUT_SECONDS = 120.0
_FETCH_ATTEMPTS = 3
_REF_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._/-]*$")


def _validate_ref(branch: str) -> str:
    if not _REF_RE.match(branch) or ".." in branch:
        msg = f"Invalid branch name: {branch!r}"
        raise ValueError(msg)
    return branch


def _validate_source(source_url: str) -> str:
    if not source_url or source_url.startswith("-"):
        msg = f"Invalid repository source: {source_url!r}"
        raise ValueError(msg)
    return source_url


class GitService:
    """Maintains a bare mirror of one content repository and reads files from it.

    All methods block; async callers run them via ``asyncio.to_thread``.
    """

    def __init__(
        self,
        mirror_dir: Path,
        timeout_seconds: float = _GIT_TIMEOUT_SECONDS,
        retry_wait_seconds: float = 1.0,
    ) -> None:
        self.mirror_dir = mirror_dir
        self.timeout_seconds = timeout_seconds
        self.retry_wait_seconds = retry_wait_seconds

    def _run(
        self,
        *args: str,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        """Run a git command against the mirror."""
        return subprocess.run(
            ["git", *args],
            cwd=self.mirror_dir,
            check=check,
            capture_output=True,
            text=True,
            encoding="utf-8",
            timeout=self.timeout_seconds,
        )

    def _ensure_mirror(self) -> None:
        if (self.mirror_dir / "HEAD").exists():
            return
        self.mirror_dir.mkdir(parents=True, exist_ok=True)
        self._run("init", "--bare", "--quiet")
        logger.info("Initialized mirror in %s", self.mirror_dir)

    def fetch(self, source_url: str, branch: str) -> str:
        """Fetch *branch* from *source_url* into the mirror and return its commit hash.

        Network failures and timeouts are retried with exponential backoff;
        the last error is re-raised once attempts are exhausted.
        """
        source_url = _validate_source(source_url)
        ref = _validate_ref(branch)
        self._ensure_mirror()

        for attempt in Retrying(
            retry=retry_if_exception_type(
                (subprocess.CalledProcessError, subprocess.TimeoutExpired)
            ),
            stop=stop_after_attempt(_FETCH_ATTEMPTS),
            wait=wait_exponential(multiplier=self.retry_wait_seconds, max=30),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        ):
            with attempt:
                self._run(
                    "fetch",
                    "--quiet",
                    "--force",
                    "--prune",
                    source_url,
                    f"+refs/heads/{ref}:refs/heads/{ref}",
                )

        head = self._run("rev-parse", f"refs/heads/{ref}").stdout.strip()
        logger.debug("Fetched %s@%s -> %s", source_url, ref, head)
        return head

    def list_files(self, branch: str, base_path: str = "") -> list[str]:
        """List all file paths under *base_path* at the tip of *branch*."""
        ref = _validate_ref(branch)
        args = ["ls-tree", "-r", "-z", "--name-only", f"refs/heads/{ref}"]
        prefix = base_path.strip("/")
        if prefix:
            args.extend(["--", prefix])
        result = self._run(*args)
        return [path for path in result.stdout.split("\0") if path]

    def read_file(self, branch: str, file_path: str) -> str:
        """Return the UTF-8 content of *file_path* at the tip of *branch*.

        Raises subprocess.CalledProcessError when the file does not exist and
        UnicodeDecodeError when it is not valid UTF-8.
        """
        ref = _validate_ref(branch)
        return self._run("show", f"refs/heads/{ref}:{file_path}").stdout
