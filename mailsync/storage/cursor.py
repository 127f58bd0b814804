"""Per-user watermark into the Gmail change log."""

import logging

from mailsync.storage.db import MailStore

logger = logging.getLogger(__name__)


class SyncCursor:
    """Reads and overwrites a user's last processed historyId.

    ``advance`` is an unconditional overwrite: the pipeline decides what value
    is safe to write and only calls it after a batch has been handled.
    """

    def __init__(self, store: MailStore) -> None:
        self._store = store

    def read(self, user_id: str) -> str | None:
        return self._store.read_cursor(user_id)

    def advance(self, user_id: str, history_id: str) -> None:
        logger.debug("user=%s cursor -> %s", user_id, history_id)
        self._store.write_cursor(user_id, history_id)

    def start_id(self, user_id: str, notification_history_id: str) -> str:
        """Where history.list should start for this notification.

        Without a stored cursor this is ``notification - 1`` so the change that
        triggered the notification is still inside the window.
        """
        current = self.read(user_id)
        if current:
            return current
        try:
            return str(max(int(notification_history_id) - 1, 1))
        except ValueError:
            return notification_history_id


def history_max(*history_ids: str | None) -> str | None:
    """Return the numerically largest historyId, ignoring None and non-numeric values."""
    best: tuple[int, str] | None = None
    for value in history_ids:
        if not value:
            continue
        try:
            number = int(value)
        except ValueError:
            logger.warning("Ignoring non-numeric historyId %r", value)
            continue
        if best is None or number > best[0]:
            best = (number, value)
    return best[1] if best else None
