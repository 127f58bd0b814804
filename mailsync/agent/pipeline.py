"""Notification-driven incremental import: fetch, dedup, persist, enrich, archive, advance."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Protocol

from mailsync.agent.enrichment import EnrichmentScheduler
from mailsync.agent.notifications import Notification
from mailsync.gmail.client import FetchBatch, MailClient
from mailsync.gmail.errors import GmailError, HistoryExpired, ReauthenticationRequiredError
from mailsync.storage.cursor import SyncCursor, history_max
from mailsync.storage.db import MailStore

logger = logging.getLogger(__name__)


class SyncState(str, Enum):
    IDLE = "idle"
    VERIFYING = "verifying"
    FETCHING = "fetching"
    DEDUPING = "deduping"
    PERSISTING = "persisting"
    ENRICHING = "enriching"
    ARCHIVING = "archiving"
    ADVANCING = "advancing"


class SyncOutcome(str, Enum):
    COMPLETED = "completed"
    REBASELINED = "rebaselined"
    USER_NOT_FOUND = "user_not_found"
    REAUTH_REQUIRED = "reauth_required"
    FETCH_FAILED = "fetch_failed"


@dataclass
class IngestResult:
    """Counts for one notification (or manual import)."""

    outcome: SyncOutcome
    imported: int = 0
    skipped: int = 0
    failed: int = 0
    enrichment_started: int = 0
    archived: int = 0
    archive_failed: int = 0
    history_id: str | None = None

    def as_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["outcome"] = self.outcome.value
        return data


class ClientProvider(Protocol):
    def client(self, user_id: str) -> MailClient:
        ...


class IngestionPipeline:
    """Turns one push notification into imported, archived messages.

    The cursor is read fresh at the start of every run and advanced once at
    the end to ``max(cursor now, target)``, so a stale or replayed
    notification never moves it backward.  No lock is held across network
    calls; overlapping runs for one user are made safe by the storage-level
    dedup and the monotonic advance.  Terminal failures (re-auth required,
    fetch failure) leave the cursor where it was so the range is retried.

    Usage::

        pipeline = IngestionPipeline(store, cursor, mailboxes, enrichment)
        result = await pipeline.handle_notification(Notification("a@x.com", "100"))
    """

    def __init__(
        self,
        store: MailStore,
        cursor: SyncCursor,
        mailboxes: ClientProvider,
        enrichment: EnrichmentScheduler,
        recent_limit: int = 10,
    ) -> None:
        self._store = store
        self._cursor = cursor
        self._mailboxes = mailboxes
        self._enrichment = enrichment
        self._recent_limit = recent_limit
        self._states: dict[str, SyncState] = {}
        self._active: dict[str, int] = {}

    def state(self, user_id: str) -> SyncState:
        """Latest transition for ``user_id``; IDLE only once every run for the user ended.

        With overlapping runs for one user this is whichever run moved last.
        """
        return self._states.get(user_id, SyncState.IDLE)

    # ── Public API ─────────────────────────────────────────────────────────────

    async def handle_notification(self, notification: Notification) -> IngestResult:
        """Process one notification.  Never raises for provider or per-message errors."""
        user = self._store.find_user_by_email(notification.email_address)
        if user is None:
            logger.warning(
                "Notification for unknown address %s dropped", notification.email_address
            )
            return IngestResult(SyncOutcome.USER_NOT_FOUND)

        user_id = user.id
        self._begin(user_id, SyncState.VERIFYING)
        try:
            result = await self._sync(user_id, notification)
        finally:
            self._leave(user_id)

        logger.info(
            "user=%s notification %s: %s imported=%d skipped=%d failed=%d "
            "archived=%d cursor=%s",
            user_id,
            notification.history_id,
            result.outcome.value,
            result.imported,
            result.skipped,
            result.failed,
            result.archived,
            result.history_id,
        )
        return result

    async def import_recent(self, user_id: str, max_results: int | None = None) -> IngestResult:
        """Import the newest inbox messages for a user (first import / manual resync).

        Seeds the cursor from the current watermark when the user has none.
        """
        limit = max_results or self._recent_limit
        self._begin(user_id, SyncState.FETCHING)
        try:
            client = self._mailboxes.client(user_id)
            try:
                seed = None
                if self._cursor.read(user_id) is None:
                    # read before listing so anything arriving meanwhile stays in the window
                    seed = await client.get_watermark()
                batch = await client.list_recent_inbox(limit)
            except ReauthenticationRequiredError as exc:
                return self._reauth_required(user_id, exc)
            except GmailError as exc:
                logger.error("user=%s recent import failed: %s", user_id, exc)
                return IngestResult(SyncOutcome.FETCH_FAILED)

            result = await self._ingest(user_id, client, batch, SyncOutcome.COMPLETED)
            self._enter(user_id, SyncState.ADVANCING)
            if seed is not None:
                self._cursor.advance(user_id, seed)
            result.history_id = self._cursor.read(user_id)
            return result
        finally:
            self._leave(user_id)

    # ── Internal ───────────────────────────────────────────────────────────────

    async def _sync(self, user_id: str, notification: Notification) -> IngestResult:
        client = self._mailboxes.client(user_id)
        start_id = self._cursor.start_id(user_id, notification.history_id)

        self._enter(user_id, SyncState.FETCHING)
        try:
            batch, outcome, target = await self._fetch_window(
                user_id, client, start_id, notification.history_id
            )
        except ReauthenticationRequiredError as exc:
            return self._reauth_required(user_id, exc)
        except GmailError as exc:
            logger.error("user=%s fetch failed; cursor left at %s: %s", user_id, start_id, exc)
            return IngestResult(SyncOutcome.FETCH_FAILED)

        result = await self._ingest(user_id, client, batch, outcome)
        self._enter(user_id, SyncState.ADVANCING)
        result.history_id = self._advance(user_id, target)
        return result

    async def _fetch_window(
        self, user_id: str, client: MailClient, start_id: str, history_id: str
    ) -> tuple[FetchBatch, SyncOutcome, str]:
        """Fetch changes since ``start_id``; returns the batch, outcome and cursor target."""
        try:
            batch = await client.fetch_since(start_id)
        except HistoryExpired:
            logger.warning(
                "user=%s history since %s expired; re-importing recent inbox "
                "and re-baselining (gaps or duplicates possible)",
                user_id,
                start_id,
            )
            watermark = await client.get_watermark()
            batch = await client.list_recent_inbox(self._recent_limit)
            return batch, SyncOutcome.REBASELINED, watermark
        return batch, SyncOutcome.COMPLETED, history_id

    async def _ingest(
        self,
        user_id: str,
        client: MailClient,
        batch: FetchBatch,
        outcome: SyncOutcome,
    ) -> IngestResult:
        # messages the client could not fetch count as failed; the cursor still advances
        result = IngestResult(outcome, failed=len(batch.failed))
        to_archive: list[str] = []

        for message in batch.messages:
            message_id = message.provider_message_id
            try:
                self._enter(user_id, SyncState.DEDUPING)
                if self._store.find_message(user_id, message_id) is not None:
                    result.skipped += 1
                    continue
                self._enter(user_id, SyncState.PERSISTING)
                if self._store.insert_message(user_id, message) is None:
                    # lost a race with an overlapping run
                    result.skipped += 1
                    continue
            except Exception as exc:  # noqa: BLE001
                result.failed += 1
                logger.error(
                    "user=%s failed to persist message %s: %s",
                    user_id,
                    message_id,
                    exc,
                    exc_info=True,
                )
                continue

            result.imported += 1
            self._enter(user_id, SyncState.ENRICHING)
            self._enrichment.enqueue(user_id, message_id, message.summary_request())
            result.enrichment_started += 1
            to_archive.append(message_id)

        if to_archive:
            self._enter(user_id, SyncState.ARCHIVING)
            archive = await client.archive_all(to_archive)
            result.archived = len(archive.succeeded)
            result.archive_failed = len(archive.failed)
        return result

    def _advance(self, user_id: str, target: str) -> str | None:
        current = self._cursor.read(user_id)
        new = history_max(current, target)
        if new is not None and new != current:
            self._cursor.advance(user_id, new)
        elif new is not None:
            logger.debug("user=%s cursor already at %s (target %s)", user_id, current, target)
        return new

    def _reauth_required(
        self, user_id: str, exc: ReauthenticationRequiredError
    ) -> IngestResult:
        logger.error("user=%s needs to re-authenticate; disabling watch: %s", user_id, exc.reason)
        self._store.disable_watch(user_id)
        return IngestResult(SyncOutcome.REAUTH_REQUIRED)

    def _enter(self, user_id: str, state: SyncState) -> None:
        previous = self._states.get(user_id, SyncState.IDLE)
        if previous is not state:
            logger.debug("user=%s %s -> %s", user_id, previous.value, state.value)
        self._states[user_id] = state

    def _begin(self, user_id: str, state: SyncState) -> None:
        self._active[user_id] = self._active.get(user_id, 0) + 1
        self._enter(user_id, state)

    def _leave(self, user_id: str) -> None:
        remaining = self._active.get(user_id, 1) - 1
        if remaining > 0:
            self._active[user_id] = remaining
            return
        self._active.pop(user_id, None)
        self._enter(user_id, SyncState.IDLE)
        self._states.pop(user_id, None)
