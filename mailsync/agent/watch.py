"""Gmail push-subscription lifecycle: subscribe, stop, status, renewal."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from mailsync.agent.pipeline import ClientProvider
from mailsync.gmail.errors import GmailError, ReauthenticationRequiredError
from mailsync.gmail.types import WatchResponse
from mailsync.storage.db import MailStore

logger = logging.getLogger(__name__)

# Gmail watches last seven days; renew anything inside this window
RENEWAL_WINDOW = timedelta(hours=24)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class WatchStatus:
    state: str  # "active" | "expired" | "disabled"
    expires_at: datetime | None = None
    expires_in_hours: float | None = None
    history_id: str | None = None


@dataclass
class RenewalReport:
    renewed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


class WatchManager:
    """Keeps each user's users.watch subscription alive.

    Subscribing seeds the sync cursor only for a user who has none yet, so a
    renewal never rewinds or skips an existing cursor.
    """

    def __init__(
        self,
        store: MailStore,
        mailboxes: ClientProvider,
        topic: str,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._mailboxes = mailboxes
        self._topic = topic
        self._clock = clock

    async def subscribe(self, user_id: str) -> WatchResponse:
        """Start (or refresh) the push subscription for one user.

        Raises:
            ValueError: no Pub/Sub topic is configured.
            GmailError, ReauthenticationRequiredError: the provider call failed.
        """
        if not self._topic:
            raise ValueError("GMAIL_PUBSUB_TOPIC is not configured")
        client = self._mailboxes.client(user_id)
        response = await client.watch(self._topic)
        self._store.set_watch(user_id, response.expiration)
        if self._store.read_cursor(user_id) is None:
            self._store.write_cursor(user_id, response.history_id)
        logger.info(
            "user=%s watch active until %s (historyId %s)",
            user_id,
            response.expiration.isoformat() if response.expiration else "unknown",
            response.history_id,
        )
        return response

    async def stop(self, user_id: str) -> None:
        client = self._mailboxes.client(user_id)
        try:
            await client.stop_watch()
        finally:
            self._store.disable_watch(user_id)
        logger.info("user=%s watch stopped", user_id)

    def status(self, user_id: str) -> WatchStatus | None:
        """Return the user's watch state, or None for an unknown user."""
        watch = self._store.get_watch(user_id)
        if watch is None:
            return None
        if not watch.enabled:
            return WatchStatus("disabled", watch.expiration, history_id=watch.history_id)
        if watch.expiration is None:
            return WatchStatus("expired", history_id=watch.history_id)
        remaining = (watch.expiration - self._clock()).total_seconds() / 3600
        state = "active" if remaining > 0 else "expired"
        return WatchStatus(state, watch.expiration, round(remaining, 1), watch.history_id)

    async def renew_expiring(self, within: timedelta = RENEWAL_WINDOW) -> RenewalReport:
        """Re-subscribe every enabled watch that expires within ``within``.

        A user whose renewal fails has their watch disabled.
        """
        report = RenewalReport()
        due = self._store.users_with_expiring_watch(self._clock() + within)
        logger.info("%d watch(es) due for renewal", len(due))
        for user_id in due:
            try:
                await self.subscribe(user_id)
            except (GmailError, ReauthenticationRequiredError, ValueError) as exc:
                logger.error("user=%s watch renewal failed; disabling: %s", user_id, exc)
                self._store.disable_watch(user_id)
                report.failed.append(user_id)
            else:
                report.renewed.append(user_id)
        return report
