"""Azure DevOps Boards tracker client."""

from __future__ import annotations

import base64
import logging
from datetime import datetime
from typing import Any
from urllib.parse import quote

import httpx

from docsync.services.datetime_service import parse_datetime
from docsync.tracker.base import ExternalComment, TrackerError, WorkItem
from docsync.tracker.http import HttpTrackerClient
from docsync.tracker.markup import html_to_markdown, markdown_to_html

logger = logging.getLogger(__name__)

API_VERSION = "7.1"
COMMENTS_API_VERSION = "7.1-preview.4"
PAGE_SIZE = 200

FIELD_PATHS: dict[str, str] = {
    "title": "System.Title",
    "description": "System.Description",
    "status": "System.State",
    "priority": "Microsoft.VSTS.Common.Priority",
}

PRIORITY_TO_NUMBER: dict[str, int] = {"critical": 1, "high": 2, "medium": 3, "low": 4}
NUMBER_TO_PRIORITY: dict[int, str] = {v: k for k, v in PRIORITY_TO_NUMBER.items()}

INITIAL_STATE = "New"

STATUS_TO_STATE: dict[str, str] = {
    "proposal": INITIAL_STATE,
    "planned": "Approved",
    "in_progress": "Active",
    "completed": "Closed",
    "declined": "Removed",
}
STATE_TO_STATUS: dict[str, str] = {
    **{v: k for k, v in STATUS_TO_STATE.items()},
    "Committed": "planned",
    "In Progress": "in_progress",
    "Resolved": "completed",
    "Done": "completed",
}


def _priority_to_local(value: Any) -> str | None:
    if value is None:
        return None
    try:
        return NUMBER_TO_PRIORITY.get(int(value), "medium")
    except (TypeError, ValueError):
        return None


def _state_to_local(value: Any) -> str:
    state = str(value or "New")
    return STATE_TO_STATUS.get(state, state.lower().replace(" ", "_"))


def _to_remote(key: str, value: Any) -> Any:
    if key == "priority":
        return PRIORITY_TO_NUMBER.get(str(value), 3) if value else None
    if key == "status":
        return STATUS_TO_STATE.get(str(value), value)
    if key == "description" and value is not None:
        return markdown_to_html(str(value))
    return value


def _work_item_fields(raw_fields: dict[str, Any]) -> dict[str, Any]:
    return {
        "title": raw_fields.get("System.Title") or "",
        "description": html_to_markdown(raw_fields.get("System.Description") or ""),
        "status": _state_to_local(raw_fields.get("System.State")),
        "priority": _priority_to_local(raw_fields.get("Microsoft.VSTS.Common.Priority")),
    }


def _patch_document(fields: dict[str, Any], op: str) -> list[dict[str, Any]]:
    """Build a JSON-patch document for the synced fields present in *fields*."""
    document: list[dict[str, Any]] = []
    for key, path in FIELD_PATHS.items():
        if key not in fields:
            continue
        value = _to_remote(key, fields[key])
        if value is None:
            if op == "replace":
                document.append({"op": "remove", "path": f"/fields/{path}"})
            continue
        document.append({"op": op, "path": f"/fields/{path}", "value": value})
    return document


class AzureDevOpsTrackerClient(HttpTrackerClient):
    """Work items in one Azure DevOps project, authenticated with a PAT.

    *base_url* is the organization URL, e.g. ``https://dev.azure.com/acme``.
    Per-field change times are read from the work item's update history so
    that conflicts can be merged field by field.
    """

    source = "azure-devops"

    def __init__(
        self,
        base_url: str,
        project: str,
        token: str,
        work_item_type: str = "Feature",
        timeout_seconds: float = 15.0,
        max_attempts: int = 4,
        backoff_seconds: float = 1.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not project:
            msg = "Azure DevOps project must be configured"
            raise ValueError(msg)
        credentials = base64.b64encode(f":{token}".encode()).decode("ascii")
        super().__init__(
            base_url,
            {"Authorization": f"Basic {credentials}", "Accept": "application/json"},
            timeout_seconds=timeout_seconds,
            max_attempts=max_attempts,
            backoff_seconds=backoff_seconds,
            transport=transport,
        )
        self.project = project
        self.work_item_type = work_item_type

    def _api(self, path: str) -> str:
        return f"/{quote(self.project)}/_apis/wit/{path}"

    def _item_path(self, external_id: str) -> str:
        if not external_id.isdigit():
            msg = f"Invalid Azure DevOps work item id: {external_id!r}"
            raise TrackerError(msg)
        return self._api(f"workitems/{external_id}")

    async def _field_timestamps(self, external_id: str) -> dict[str, datetime]:
        """Latest change time of each synced field, from the update history."""
        wanted = {path: key for key, path in FIELD_PATHS.items()}
        timestamps: dict[str, datetime] = {}
        skip = 0
        while True:
            response = await self._request(
                "GET",
                f"{self._item_path(external_id)}/updates",
                external_id,
                params={"api-version": API_VERSION, "$top": PAGE_SIZE, "$skip": skip},
            )
            updates = response.json().get("value", [])
            for update in updates:
                changed = update.get("fields") or {}
                changed_date = (changed.get("System.ChangedDate") or {}).get("newValue")
                if changed_date is None:
                    continue
                when = parse_datetime(changed_date)
                for path in changed:
                    if path in wanted:
                        timestamps[wanted[path]] = when
            if len(updates) < PAGE_SIZE:
                return timestamps
            skip += PAGE_SIZE

    async def get_work_item(self, external_id: str) -> WorkItem:
        response = await self._request(
            "GET",
            self._item_path(external_id),
            external_id,
            params={"api-version": API_VERSION},
        )
        data = response.json()
        raw_fields = data.get("fields") or {}
        changed_date = raw_fields.get("System.ChangedDate")
        if changed_date is None:
            msg = f"Work item {external_id} has no System.ChangedDate"
            raise TrackerError(msg)
        return WorkItem(
            external_id=str(data["id"]),
            fields=_work_item_fields(raw_fields),
            updated_at=parse_datetime(changed_date),
            field_timestamps=await self._field_timestamps(external_id),
        )

    async def list_comments(self, external_id: str) -> list[ExternalComment]:
        """Fetch every comment, following ``continuationToken``."""
        comments: list[ExternalComment] = []
        token: str | None = None
        while True:
            params: dict[str, Any] = {"api-version": COMMENTS_API_VERSION, "$top": PAGE_SIZE}
            if token:
                params["continuationToken"] = token
            response = await self._request(
                "GET", f"{self._item_path(external_id)}/comments", external_id, params=params
            )
            data = response.json()
            for item in data.get("comments", []):
                created_by = item.get("createdBy") or {}
                unique_name = created_by.get("uniqueName")
                comments.append(
                    ExternalComment(
                        external_comment_id=str(item["id"]),
                        author=created_by.get("displayName") or unique_name or "unknown",
                        body=html_to_markdown(item.get("text") or ""),
                        created_at=parse_datetime(item["createdDate"]),
                        author_email=unique_name if unique_name and "@" in unique_name else None,
                    )
                )
            token = data.get("continuationToken")
            if not token:
                break
        comments.sort(key=lambda comment: comment.created_at)
        return comments

    async def update_work_item(self, external_id: str, fields: dict[str, Any]) -> None:
        document = _patch_document(fields, "replace")
        if not document:
            return
        await self._request(
            "PATCH",
            self._item_path(external_id),
            external_id,
            params={"api-version": API_VERSION},
            json=document,
            headers={"Content-Type": "application/json-patch+json"},
        )
        logger.info("Updated Azure DevOps work item %s", external_id)

    async def create_work_item(self, fields: dict[str, Any]) -> str:
        """Create a work item, then move it out of the initial state if needed.

        Azure DevOps rejects a non-initial ``System.State`` on creation, so the
        requested status is applied with a follow-up update.
        """
        create_fields = {key: value for key, value in fields.items() if key != "status"}
        response = await self._request(
            "POST",
            self._api(f"workitems/${quote(self.work_item_type)}"),
            params={"api-version": API_VERSION},
            json=_patch_document(create_fields, "add"),
            headers={"Content-Type": "application/json-patch+json"},
        )
        external_id = str(response.json()["id"])
        status = fields.get("status")
        if status is not None and _to_remote("status", status) != INITIAL_STATE:
            await self.update_work_item(external_id, {"status": status})
        logger.info("Created Azure DevOps work item %s", external_id)
        return external_id
