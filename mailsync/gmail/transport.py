"""Gmail REST transport — raw provider calls with typed errors and transient retry."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import httpx

from mailsync.gmail.errors import (
    GmailError,
    HistoryExpired,
    NotFound,
    ProviderError,
    RateLimited,
    Unauthorized,
)
from mailsync.gmail.types import INBOX

logger = logging.getLogger(__name__)

T = TypeVar("T")

GMAIL_API_BASE = "https://gmail.googleapis.com/gmail/v1/users/me"

_DEFAULT_TIMEOUT_SECONDS = 30.0
_MAX_ATTEMPTS = 3
_BACKOFF_BASE_SECONDS = 0.5
# history.list pages are capped at 500 records by Gmail
_HISTORY_PAGE_SIZE = 500


def _error_detail(response: httpx.Response) -> str:
    """Pull the human-readable message out of a Google error body, if any."""
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        return str(error.get("message") or error.get("status") or error)
    if isinstance(error, str):
        return error
    return str(body)[:200]


def classify_response(response: httpx.Response, operation: str) -> GmailError:
    """Map a failed HTTP response onto the GmailError hierarchy."""
    status = response.status_code
    detail = f"{operation} failed ({status}): {_error_detail(response)}"
    if status == 401:
        return Unauthorized(detail, status)
    if status == 404:
        return NotFound(detail, status)
    if status == 429:
        return RateLimited(detail, status)
    if status >= 500:
        return ProviderError(detail, status, transient=True)
    return ProviderError(detail, status)


def _is_transient(exc: GmailError) -> bool:
    return isinstance(exc, RateLimited) or (
        isinstance(exc, ProviderError) and exc.transient
    )


async def retry_transient(
    call: Callable[[], Awaitable[T]],
    operation: str,
    *,
    max_attempts: int = _MAX_ATTEMPTS,
    backoff_base: float = _BACKOFF_BASE_SECONDS,
) -> T:
    """Await ``call()``, retrying rate limits, 5xx and network errors with backoff.

    Any other error, or the last transient one, is raised unchanged.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await call()
        except GmailError as exc:
            if not _is_transient(exc) or attempt >= max_attempts:
                raise
            delay = backoff_base * 2 ** (attempt - 1)
            logger.warning(
                "%s transient failure (attempt %d/%d): %s; retrying in %.1fs",
                operation,
                attempt,
                max_attempts,
                exc,
                delay,
            )
            await asyncio.sleep(delay)


class GmailTransport:
    """Async Gmail REST adapter.

    Every method takes the bearer token explicitly, so one transport (and one
    connection pool) is shared by all users without sharing credential state.
    Rate limits, 5xx responses and network errors are retried here with
    exponential backoff; everything else surfaces immediately as a typed
    GmailError.
    """

    def __init__(
        self,
        http: httpx.AsyncClient | None = None,
        *,
        base_url: str = GMAIL_API_BASE,
        max_attempts: int = _MAX_ATTEMPTS,
        backoff_base: float = _BACKOFF_BASE_SECONDS,
    ) -> None:
        self._http = http or httpx.AsyncClient(timeout=_DEFAULT_TIMEOUT_SECONDS)
        self._base_url = base_url.rstrip("/")
        self._max_attempts = max(1, max_attempts)
        self._backoff_base = backoff_base

    async def aclose(self) -> None:
        await self._http.aclose()

    # ── Provider operations ────────────────────────────────────────────────────

    async def list_messages(
        self, token: str, query: str, max_results: int
    ) -> list[dict[str, Any]]:
        """Return message stubs (``{"id", "threadId"}``) matching a search query."""
        data = await self._request(
            "GET",
            "/messages",
            token,
            operation="messages.list",
            params={"q": query, "maxResults": max_results},
        )
        return list(data.get("messages", []))

    async def get_message(self, token: str, message_id: str) -> dict[str, Any]:
        """Return the full message resource (payload tree, labels, headers)."""
        return await self._request(
            "GET",
            f"/messages/{message_id}",
            token,
            operation="messages.get",
            params={"format": "full"},
        )

    async def list_history_since(
        self,
        token: str,
        start_id: str,
        history_types: tuple[str, ...] = ("messageAdded",),
    ) -> list[dict[str, Any]]:
        """Return every history record after ``start_id``, following pagination.

        Raises:
            HistoryExpired: if Gmail no longer has history for ``start_id``.
        """
        records: list[dict[str, Any]] = []
        page_token: str | None = None
        while True:
            params: dict[str, Any] = {
                "startHistoryId": start_id,
                "historyTypes": list(history_types),
                "maxResults": _HISTORY_PAGE_SIZE,
            }
            if page_token:
                params["pageToken"] = page_token
            try:
                data = await self._request(
                    "GET", "/history", token, operation="history.list", params=params
                )
            except NotFound as exc:
                raise HistoryExpired(str(exc), exc.status_code) from exc
            except ProviderError as exc:
                if exc.status_code == 400:
                    raise HistoryExpired(str(exc), exc.status_code) from exc
                raise
            records.extend(data.get("history", []))
            page_token = data.get("nextPageToken")
            if not page_token:
                return records

    async def modify_labels(
        self,
        token: str,
        message_id: str,
        add: list[str] | None = None,
        remove: list[str] | None = None,
    ) -> dict[str, Any]:
        """Add/remove label IDs on one message."""
        return await self._request(
            "POST",
            f"/messages/{message_id}/modify",
            token,
            operation="messages.modify",
            json={"addLabelIds": add or [], "removeLabelIds": remove or []},
        )

    async def get_profile(self, token: str) -> dict[str, Any]:
        """Return ``{"emailAddress", "historyId", ...}`` for the mailbox."""
        return await self._request("GET", "/profile", token, operation="profile.get")

    async def watch(
        self, token: str, topic: str, label_ids: list[str] | None = None
    ) -> dict[str, Any]:
        """Start (or renew) push notifications to a Pub/Sub topic."""
        return await self._request(
            "POST",
            "/watch",
            token,
            operation="users.watch",
            json={"topicName": topic, "labelIds": label_ids or [INBOX]},
        )

    async def stop_watch(self, token: str) -> None:
        await self._request("POST", "/stop", token, operation="users.stop")

    # ── Internal ───────────────────────────────────────────────────────────────

    async def _request(
        self,
        method: str,
        path: str,
        token: str,
        *,
        operation: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Send one request, retrying transient failures with backoff."""
        return await retry_transient(
            lambda: self._send_once(method, path, token, operation, params, json),
            operation,
            max_attempts=self._max_attempts,
            backoff_base=self._backoff_base,
        )

    async def _send_once(
        self,
        method: str,
        path: str,
        token: str,
        operation: str,
        params: dict[str, Any] | None,
        json: dict[str, Any] | None,
    ) -> dict[str, Any]:
        logger.debug("Gmail → %s %s %s", operation, path, params or "")
        try:
            response = await self._http.request(
                method,
                f"{self._base_url}{path}",
                headers={"Authorization": f"Bearer {token}"},
                params=params,
                json=json,
            )
        except httpx.TransportError as exc:
            raise ProviderError(f"{operation} network error: {exc}", transient=True) from exc

        if response.is_error:
            raise classify_response(response, operation)
        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError as exc:
            raise ProviderError(f"{operation} returned invalid JSON") from exc
        return data if isinstance(data, dict) else {}
