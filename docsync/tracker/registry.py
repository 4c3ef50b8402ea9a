"""Tracker registry: build the configured tracker client."""

from __future__ import annotations

from typing import TYPE_CHECKING

from docsync.tracker.azure_devops import AzureDevOpsTrackerClient
from docsync.tracker.github import GITHUB_API_URL, GitHubTrackerClient

if TYPE_CHECKING:
    import httpx

    from docsync.config import Settings
    from docsync.tracker.base import TrackerClient

TRACKERS: dict[str, type[GitHubTrackerClient] | type[AzureDevOpsTrackerClient]] = {
    "github": GitHubTrackerClient,
    "azure-devops": AzureDevOpsTrackerClient,
}


def create_tracker_client(
    settings: Settings,
    transport: httpx.AsyncBaseTransport | None = None,
) -> TrackerClient:
    """Create the tracker client selected by ``settings.tracker_type``.

    Raises ValueError if the tracker type is unknown or misconfigured.
    """
    tracker_cls = TRACKERS.get(settings.tracker_type)
    if tracker_cls is None:
        msg = f"Unknown tracker type: {settings.tracker_type!r}. Available: {list(TRACKERS)}"
        raise ValueError(msg)

    if tracker_cls is GitHubTrackerClient:
        return GitHubTrackerClient(
            repository=settings.tracker_project,
            token=settings.tracker_token,
            base_url=settings.tracker_base_url or GITHUB_API_URL,
            timeout_seconds=settings.tracker_timeout_seconds,
            max_attempts=settings.tracker_max_attempts,
            backoff_seconds=settings.tracker_backoff_seconds,
            transport=transport,
        )
    return AzureDevOpsTrackerClient(
        base_url=settings.tracker_base_url,
        project=settings.tracker_project,
        token=settings.tracker_token,
        timeout_seconds=settings.tracker_timeout_seconds,
        max_attempts=settings.tracker_max_attempts,
        backoff_seconds=settings.tracker_backoff_seconds,
        transport=transport,
    )


def list_trackers() -> list[str]:
    """Return the list of supported tracker types."""
    return list(TRACKERS.keys())
