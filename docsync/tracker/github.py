"""GitHub Issues tracker client."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from docsync.services.datetime_service import parse_datetime
from docsync.tracker.base import ExternalComment, TrackerError, WorkItem
from docsync.tracker.http import HttpTrackerClient

logger = logging.getLogger(__name__)

GITHUB_API_URL = "https://api.github.com"
PAGE_SIZE = 100

# Local statuses that close the issue.
CLOSED_STATUSES = frozenset({"completed", "declined", "duplicate"})

_STATUS_LABEL_PREFIX = "status:"
_PRIORITY_LABEL_PREFIX = "priority:"


def _label_names(issue: dict[str, Any]) -> list[str]:
    names: list[str] = []
    for label in issue.get("labels") or []:
        name = label.get("name") if isinstance(label, dict) else label
        if isinstance(name, str):
            names.append(name)
    return names


def _prefixed_label(labels: list[str], prefix: str) -> str | None:
    for name in labels:
        if name.lower().startswith(prefix):
            return name[len(prefix) :].strip() or None
    return None


def _issue_fields(issue: dict[str, Any]) -> dict[str, Any]:
    """Map a GitHub issue payload onto the synced feature fields.

    Status and priority travel as ``status:<x>`` / ``priority:<x>`` labels;
    an issue without a status label maps to ``proposal`` while open and
    ``completed`` once closed.
    """
    labels = _label_names(issue)
    status = _prefixed_label(labels, _STATUS_LABEL_PREFIX)
    if status is None:
        status = "completed" if issue.get("state") == "closed" else "proposal"
    return {
        "title": issue.get("title") or "",
        "description": issue.get("body") or "",
        "status": status,
        "priority": _prefixed_label(labels, _PRIORITY_LABEL_PREFIX),
    }


def _merge_labels(existing: list[str], fields: dict[str, Any]) -> list[str]:
    """Replace managed labels for the pushed fields, keep all others."""
    labels = list(existing)
    for key, prefix in (("status", _STATUS_LABEL_PREFIX), ("priority", _PRIORITY_LABEL_PREFIX)):
        if key not in fields:
            continue
        labels = [name for name in labels if not name.lower().startswith(prefix)]
        if fields[key]:
            labels.append(f"{prefix}{fields[key]}")
    return labels


class GitHubTrackerClient(HttpTrackerClient):
    """Work items are issues in one ``owner/repo`` repository; ids are issue numbers."""

    source = "github"

    def __init__(
        self,
        repository: str,
        token: str,
        base_url: str = GITHUB_API_URL,
        timeout_seconds: float = 15.0,
        max_attempts: int = 4,
        backoff_seconds: float = 1.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if repository.count("/") != 1:
            msg = f"GitHub repository must be 'owner/repo', got {repository!r}"
            raise ValueError(msg)
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"
        super().__init__(
            base_url,
            headers,
            timeout_seconds=timeout_seconds,
            max_attempts=max_attempts,
            backoff_seconds=backoff_seconds,
            transport=transport,
        )
        self.repository = repository

    def _issue_url(self, external_id: str) -> str:
        if not external_id.isdigit():
            msg = f"Invalid GitHub issue number: {external_id!r}"
            raise TrackerError(msg)
        return f"/repos/{self.repository}/issues/{external_id}"

    async def _get_issue(self, external_id: str) -> dict[str, Any]:
        response = await self._request("GET", self._issue_url(external_id), external_id)
        issue: dict[str, Any] = response.json()
        return issue

    async def get_work_item(self, external_id: str) -> WorkItem:
        issue = await self._get_issue(external_id)
        return WorkItem(
            external_id=str(issue["number"]),
            fields=_issue_fields(issue),
            updated_at=parse_datetime(issue["updated_at"]),
        )

    async def list_comments(self, external_id: str) -> list[ExternalComment]:
        """Fetch every comment, following the ``Link: rel="next"`` header."""
        comments: list[ExternalComment] = []
        url: str | None = f"{self._issue_url(external_id)}/comments"
        params: dict[str, Any] | None = {"per_page": PAGE_SIZE}
        while url is not None:
            response = await self._request("GET", url, external_id, params=params)
            for item in response.json():
                user = item.get("user") or {}
                comments.append(
                    ExternalComment(
                        external_comment_id=str(item["id"]),
                        author=user.get("login") or "unknown",
                        body=item.get("body") or "",
                        created_at=parse_datetime(item["created_at"]),
                        author_email=user.get("email"),
                    )
                )
            next_link = response.links.get("next")
            url = next_link["url"] if next_link else None
            # The next URL already carries the query string.
            params = None
        logger.debug("Fetched %d comments for GitHub issue %s", len(comments), external_id)
        return comments

    def _payload(self, fields: dict[str, Any], labels: list[str]) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        if "title" in fields:
            payload["title"] = fields["title"]
        if "description" in fields:
            payload["body"] = fields["description"]
        if "status" in fields:
            payload["state"] = "closed" if fields["status"] in CLOSED_STATUSES else "open"
        payload["labels"] = _merge_labels(labels, fields)
        return payload

    async def update_work_item(self, external_id: str, fields: dict[str, Any]) -> None:
        # Labels are replaced wholesale, so read the current set first.
        issue = await self._get_issue(external_id)
        payload = self._payload(fields, _label_names(issue))
        await self._request("PATCH", self._issue_url(external_id), external_id, json=payload)
        logger.info("Updated GitHub issue %s#%s", self.repository, external_id)

    async def create_work_item(self, fields: dict[str, Any]) -> str:
        payload = self._payload(fields, [])
        state = payload.pop("state", "open")
        response = await self._request("POST", f"/repos/{self.repository}/issues", json=payload)
        number = str(response.json()["number"])
        if state == "closed":
            await self._request(
                "PATCH", self._issue_url(number), number, json={"state": "closed"}
            )
        logger.info("Created GitHub issue %s#%s", self.repository, number)
        return number
