"""Per-user Gmail client — incremental history sync, archive, watch."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, TypeVar

from mailsync.gmail.auth import TokenVault
from mailsync.gmail.errors import (
    GmailError,
    NotFound,
    ReauthenticationRequiredError,
    Unauthorized,
)
from mailsync.gmail.transport import GmailTransport
from mailsync.gmail.types import INBOX, ArchiveResult, WatchResponse
from mailsync.processing.normalizer import normalize
from mailsync.processing.types import CanonicalMessage

logger = logging.getLogger(__name__)

T = TypeVar("T")

_FETCH_CONCURRENCY = 5
_ARCHIVE_BATCH_SIZE = 10
_ARCHIVE_BATCH_PAUSE_SECONDS = 0.5


@dataclass
class FetchBatch:
    """Messages fetched for one sync window, plus the ids that could not be fetched."""

    messages: list[CanonicalMessage] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


class MailClient:
    """Gmail operations for one user.

    Holds no OAuth state of its own: every call asks the TokenVault for a
    token scoped to ``user_id``.  A 401 triggers exactly one forced refresh
    and one retry; a second 401 surfaces as ReauthenticationRequiredError.

    Usage::

        client = MailClient(transport, vault, user_id)
        batch = await client.fetch_since(cursor)
        result = await client.archive_all([m.provider_message_id for m in batch.messages])
    """

    def __init__(
        self,
        transport: GmailTransport,
        vault: TokenVault,
        user_id: str,
        *,
        archive_pause: float = _ARCHIVE_BATCH_PAUSE_SECONDS,
    ) -> None:
        self._transport = transport
        self._vault = vault
        self._user_id = user_id
        self._archive_pause = archive_pause
        self._semaphore = asyncio.Semaphore(_FETCH_CONCURRENCY)

    @property
    def user_id(self) -> str:
        return self._user_id

    # ── Public API ─────────────────────────────────────────────────────────────

    async def list_recent_inbox(self, max_results: int = 10) -> FetchBatch:
        """Return up to ``max_results`` of the newest inbox messages, fully fetched."""
        stubs = await self._authorized(
            "messages.list",
            lambda token: self._transport.list_messages(token, "in:inbox", max_results),
        )
        ids = [str(s["id"]) for s in stubs if s.get("id")]
        return await self._fetch_messages(ids)

    async def fetch_since(self, cursor_history_id: str) -> FetchBatch:
        """Return inbox messages added after ``cursor_history_id``.

        IDs are deduplicated across history records (one message can appear
        in several).  Messages deleted in the meantime, or already moved out of
        the inbox by another agent, are dropped.  Messages that could not be
        fetched are listed in ``FetchBatch.failed``.

        Raises:
            HistoryExpired: Gmail no longer keeps history that far back.
            ReauthenticationRequiredError: the user must grant access again.
        """
        records = await self._authorized(
            "history.list",
            lambda token: self._transport.list_history_since(token, cursor_history_id),
        )
        ids = extract_added_message_ids(records)
        logger.info(
            "user=%s history since %s: %d record(s), %d new message id(s)",
            self._user_id,
            cursor_history_id,
            len(records),
            len(ids),
        )
        batch = await self._fetch_messages(ids)
        in_inbox = [m for m in batch.messages if m.in_inbox]
        if len(in_inbox) < len(batch.messages):
            logger.info(
                "user=%s dropped %d message(s) no longer in the inbox",
                self._user_id,
                len(batch.messages) - len(in_inbox),
            )
        return FetchBatch(in_inbox, batch.failed)

    async def archive_all(self, message_ids: list[str]) -> ArchiveResult:
        """Remove INBOX from each message.  Best effort; never raises per id.

        A message that no longer exists counts as archived.
        """
        result = ArchiveResult()
        for start in range(0, len(message_ids), _ARCHIVE_BATCH_SIZE):
            batch = message_ids[start : start + _ARCHIVE_BATCH_SIZE]
            outcomes = await asyncio.gather(*(self._archive_one(mid) for mid in batch))
            for message_id, ok in zip(batch, outcomes):
                (result.succeeded if ok else result.failed).append(message_id)
            if start + _ARCHIVE_BATCH_SIZE < len(message_ids) and self._archive_pause:
                await asyncio.sleep(self._archive_pause)

        logger.info(
            "user=%s archived %d message(s), %d failed",
            self._user_id,
            len(result.succeeded),
            len(result.failed),
        )
        return result

    async def get_watermark(self) -> str:
        """Return the mailbox's current historyId."""
        profile = await self._authorized(
            "profile.get", lambda token: self._transport.get_profile(token)
        )
        return str(profile["historyId"])

    async def watch(self, topic: str) -> WatchResponse:
        """Subscribe the inbox to push notifications on ``topic``."""
        data = await self._authorized(
            "users.watch", lambda token: self._transport.watch(token, topic, [INBOX])
        )
        expiration_ms = data.get("expiration")
        expiration = (
            datetime.fromtimestamp(int(expiration_ms) / 1000, tz=timezone.utc)
            if expiration_ms
            else None
        )
        return WatchResponse(history_id=str(data["historyId"]), expiration=expiration)

    async def stop_watch(self) -> None:
        await self._authorized("users.stop", lambda token: self._transport.stop_watch(token))

    # ── Internal ───────────────────────────────────────────────────────────────

    async def _authorized(
        self, operation: str, call: Callable[[str], Awaitable[T]]
    ) -> T:
        """Run ``call`` with a valid token; on 401 force one refresh and retry once."""
        token = await self._vault.get_valid_access_token(self._user_id)
        try:
            return await call(token)
        except Unauthorized:
            logger.info("user=%s %s got 401; forcing token refresh", self._user_id, operation)

        token = await self._vault.force_refresh(self._user_id, rejected_token=token)
        try:
            return await call(token)
        except Unauthorized as exc:
            raise ReauthenticationRequiredError(
                self._user_id, f"{operation} rejected a freshly refreshed token"
            ) from exc

    async def _fetch_messages(self, message_ids: list[str]) -> FetchBatch:
        """Fetch each id independently; one bad message never sinks the batch.

        Raises:
            ReauthenticationRequiredError: the user's grant is gone, so every
                other id would fail the same way.
        """
        outcomes = await asyncio.gather(
            *(self._fetch_one(mid) for mid in message_ids), return_exceptions=True
        )
        for outcome in outcomes:
            if isinstance(outcome, ReauthenticationRequiredError) or (
                isinstance(outcome, BaseException) and not isinstance(outcome, Exception)
            ):
                raise outcome

        batch = FetchBatch()
        for message_id, outcome in zip(message_ids, outcomes):
            if isinstance(outcome, Exception):
                logger.error(
                    "user=%s failed to fetch message %s: %s",
                    self._user_id,
                    message_id,
                    outcome,
                    exc_info=outcome if not isinstance(outcome, GmailError) else None,
                )
                batch.failed.append(message_id)
            elif outcome is not None:
                batch.messages.append(outcome)
        return batch

    async def _fetch_one(self, message_id: str) -> CanonicalMessage | None:
        async with self._semaphore:
            try:
                raw = await self._authorized(
                    "messages.get",
                    lambda token: self._transport.get_message(token, message_id),
                )
            except NotFound:
                logger.info("user=%s message %s vanished before fetch", self._user_id, message_id)
                return None
        return normalize(raw)

    async def _archive_one(self, message_id: str) -> bool:
        try:
            await self._authorized(
                "messages.modify",
                lambda token: self._transport.modify_labels(token, message_id, remove=[INBOX]),
            )
        except NotFound:
            logger.info("user=%s message %s already gone; counting as archived", self._user_id, message_id)
            return True
        except (GmailError, ReauthenticationRequiredError) as exc:
            logger.error("user=%s failed to archive %s: %s", self._user_id, message_id, exc)
            return False
        return True


def extract_added_message_ids(records: list[dict[str, Any]]) -> list[str]:
    """Collect messagesAdded IDs from history records, first occurrence wins."""
    ids: dict[str, None] = {}
    for record in records:
        for added in record.get("messagesAdded", []):
            message_id = (added.get("message") or {}).get("id")
            if message_id:
                ids.setdefault(str(message_id), None)
    return list(ids)
