"""Shared httpx transport with timeout, status mapping and retry/backoff."""

from __future__ import annotations

import logging
from typing import Any

import httpx
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from docsync.tracker.base import (
    TrackerError,
    TrackerNetworkError,
    TrackerNotFoundError,
    TrackerRateLimitedError,
    TransientTrackerError,
)

logger = logging.getLogger(__name__)

_MAX_BACKOFF_SECONDS = 30.0


def _retry_after(response: httpx.Response) -> float | None:
    raw = response.headers.get("Retry-After")
    if raw is None:
        return None
    try:
        return max(float(raw), 0.0)
    except ValueError:
        return None


def raise_for_tracker_status(response: httpx.Response, external_id: str | None = None) -> None:
    """Translate an error response into the tracker error taxonomy."""
    status = response.status_code
    if status < 400:
        return
    if status == 429 or (status == 403 and response.headers.get("x-ratelimit-remaining") == "0"):
        raise TrackerRateLimitedError(_retry_after(response))
    if status == 404:
        raise TrackerNotFoundError(external_id or str(response.request.url))
    if status >= 500:
        msg = f"Tracker error {status} for {response.request.method} {response.request.url}"
        raise TrackerNetworkError(msg)
    detail = response.text[:200]
    msg = f"Tracker rejected {response.request.method} {response.request.url}: {status} {detail}"
    raise TrackerError(msg)


class HttpTrackerClient:
    """Base class for HTTP tracker clients.

    Every request gets the client-wide timeout. Transient failures (transport
    errors, timeouts, 429 and 5xx) are retried with exponential backoff up to
    ``max_attempts``; the final error propagates to the caller.
    """

    source: str = "http"

    def __init__(
        self,
        base_url: str,
        headers: dict[str, str],
        timeout_seconds: float = 15.0,
        max_attempts: int = 4,
        backoff_seconds: float = 1.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout_seconds,
            transport=transport,
        )

    async def _send(
        self,
        method: str,
        url: str,
        external_id: str | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            msg = f"Tracker request timed out: {method} {url}"
            raise TrackerNetworkError(msg) from exc
        except httpx.TransportError as exc:
            msg = f"Tracker request failed: {method} {url}: {exc}"
            raise TrackerNetworkError(msg) from exc
        raise_for_tracker_status(response, external_id)
        return response

    async def _request(
        self,
        method: str,
        url: str,
        external_id: str | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send a request, retrying transient failures."""
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(TransientTrackerError),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_seconds, max=_MAX_BACKOFF_SECONDS),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        ):
            with attempt:
                return await self._send(method, url, external_id, **kwargs)
        msg = "unreachable: retry loop exited without result"
        raise AssertionError(msg)

    async def aclose(self) -> None:
        await self._client.aclose()
