"""SQLite structured storage — users, sync cursors, credentials, and emails."""

import json
import logging
import sqlite3
import uuid
from datetime import datetime, timezone
from pathlib import Path

from mailsync.gmail.types import UserCredential
from mailsync.processing.types import CanonicalMessage, EmailSummary
from mailsync.storage.models import ALL_TABLES, ImportStats, UserRecord, WatchState

logger = logging.getLogger(__name__)

_DEFAULT_DB_PATH = Path("data/mailsync.db")

_MESSAGE_COLUMNS = """gmail_message_id, thread_id, subject, sender_email, sender_name,
                      recipient_email, body_text, body_html, snippet, has_attachments,
                      is_read, labels, received_at, summary"""


def _to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class MailStore:
    """Wraps SQLite for users, their sync state, and their imported emails.

    Designed for single-threaded use from an async event loop — all calls are
    synchronous/blocking but fast enough for personal email volume.

    The UNIQUE(user_id, gmail_message_id) constraint is the only thing that
    prevents duplicate messages; ``insert_message`` reports a collision by
    returning None instead of raising.

    Usage::

        store = MailStore()
        user_id = store.upsert_user("a@x.com", access_token, refresh_token)
        if store.insert_message(user_id, message) is None:
            ...  # already imported
    """

    def __init__(self, db_path: str | Path = _DEFAULT_DB_PATH) -> None:
        self._path = Path(db_path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        # the webhook server may touch the store from a worker thread
        self._conn = sqlite3.connect(str(self._path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._create_tables()

    def close(self) -> None:
        """Close the underlying database connection."""
        self._conn.close()

    # ── Users ───────────────────────────────────────────────────────────────────

    def upsert_user(
        self,
        email: str,
        access_token: str,
        refresh_token: str | None = None,
        expiry: datetime | None = None,
    ) -> str:
        """Create or update the user for ``email`` and return its id.

        An empty ``refresh_token`` never replaces a stored one.
        """
        existing = self.find_user_by_email(email)
        if existing is not None:
            self.write_credential(
                UserCredential(existing.id, access_token, refresh_token, expiry)
            )
            return existing.id

        user_id = uuid.uuid4().hex
        with self._conn:
            self._conn.execute(
                """
                INSERT INTO users (id, email, access_token, refresh_token, token_expires_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (user_id, email, access_token, refresh_token or None, _to_iso(expiry)),
            )
        logger.info("Registered user %s as %s", email, user_id)
        return user_id

    def find_user_by_email(self, email: str) -> UserRecord | None:
        """Return the user registered for ``email`` (case-insensitive), or None."""
        row = self._conn.execute(
            "SELECT id, email FROM users WHERE lower(email) = lower(?)",
            (email.strip(),),
        ).fetchone()
        return UserRecord(**dict(row)) if row else None

    def get_user(self, user_id: str) -> UserRecord | None:
        row = self._conn.execute(
            "SELECT id, email FROM users WHERE id = ?", (user_id,)
        ).fetchone()
        return UserRecord(**dict(row)) if row else None

    def list_users(self) -> list[UserRecord]:
        rows = self._conn.execute("SELECT id, email FROM users ORDER BY email").fetchall()
        return [UserRecord(**dict(r)) for r in rows]

    # ── Credentials ─────────────────────────────────────────────────────────────

    def read_credential(self, user_id: str) -> UserCredential | None:
        row = self._conn.execute(
            "SELECT access_token, refresh_token, token_expires_at FROM users WHERE id = ?",
            (user_id,),
        ).fetchone()
        if row is None:
            return None
        return UserCredential(
            user_id=user_id,
            access_token=row["access_token"],
            refresh_token=row["refresh_token"],
            expiry=_from_iso(row["token_expires_at"]),
        )

    def write_credential(self, credential: UserCredential) -> None:
        """Persist a credential, keeping the stored refresh token when the new one is empty."""
        with self._conn:
            self._conn.execute(
                """
                UPDATE users SET
                    access_token     = ?,
                    refresh_token    = COALESCE(NULLIF(?, ''), refresh_token),
                    token_expires_at = ?,
                    updated_at       = datetime('now')
                WHERE id = ?
                """,
                (
                    credential.access_token,
                    credential.refresh_token,
                    _to_iso(credential.expiry),
                    credential.user_id,
                ),
            )

    # ── Sync cursor ─────────────────────────────────────────────────────────────

    def read_cursor(self, user_id: str) -> str | None:
        row = self._conn.execute(
            "SELECT watch_history_id FROM users WHERE id = ?", (user_id,)
        ).fetchone()
        return row["watch_history_id"] if row else None

    def write_cursor(self, user_id: str, history_id: str) -> None:
        """Overwrite the cursor unconditionally."""
        with self._conn:
            self._conn.execute(
                "UPDATE users SET watch_history_id = ?, updated_at = datetime('now') WHERE id = ?",
                (history_id, user_id),
            )

    # ── Watch state ─────────────────────────────────────────────────────────────

    def set_watch(self, user_id: str, expiration: datetime | None) -> None:
        """Record an active push subscription."""
        with self._conn:
            self._conn.execute(
                """
                UPDATE users SET
                    watch_expiration = ?,
                    watch_enabled    = 1,
                    updated_at       = datetime('now')
                WHERE id = ?
                """,
                (_to_iso(expiration), user_id),
            )

    def disable_watch(self, user_id: str) -> None:
        with self._conn:
            self._conn.execute(
                "UPDATE users SET watch_enabled = 0, updated_at = datetime('now') WHERE id = ?",
                (user_id,),
            )

    def get_watch(self, user_id: str) -> WatchState | None:
        row = self._conn.execute(
            "SELECT watch_history_id, watch_expiration, watch_enabled FROM users WHERE id = ?",
            (user_id,),
        ).fetchone()
        if row is None:
            return None
        return WatchState(
            user_id=user_id,
            history_id=row["watch_history_id"],
            expiration=_from_iso(row["watch_expiration"]),
            enabled=bool(row["watch_enabled"]),
        )

    def users_with_expiring_watch(self, before: datetime) -> list[str]:
        """Return ids of users whose enabled watch expires at or before ``before``."""
        rows = self._conn.execute(
            """SELECT id FROM users
               WHERE watch_enabled = 1
                 AND watch_expiration IS NOT NULL
                 AND watch_expiration <= ?
               ORDER BY watch_expiration""",
            (_to_iso(before),),
        ).fetchall()
        return [row["id"] for row in rows]

    # ── Messages ────────────────────────────────────────────────────────────────

    def find_message(self, user_id: str, provider_message_id: str) -> CanonicalMessage | None:
        row = self._conn.execute(
            f"SELECT {_MESSAGE_COLUMNS} FROM emails WHERE user_id = ? AND gmail_message_id = ?",
            (user_id, provider_message_id),
        ).fetchone()
        return _row_to_message(row) if row else None

    def insert_message(self, user_id: str, message: CanonicalMessage) -> int | None:
        """Insert a new message and return its row id.

        Returns None when (user_id, provider_message_id) already exists.
        """
        try:
            with self._conn:
                cursor = self._conn.execute(
                    """
                    INSERT INTO emails
                        (user_id, gmail_message_id, thread_id, subject, sender_email,
                         sender_name, recipient_email, body_text, body_html, snippet,
                         has_attachments, is_read, labels, received_at, summary)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        user_id,
                        message.provider_message_id,
                        message.thread_id,
                        message.subject,
                        message.sender_email,
                        message.sender_name,
                        message.recipient_email,
                        message.body_text,
                        message.body_html,
                        message.snippet,
                        int(message.has_attachments),
                        int(message.is_read),
                        json.dumps(message.labels),
                        _to_iso(message.received_at),
                        message.summary.to_json() if message.summary else None,
                    ),
                )
        except sqlite3.IntegrityError:
            logger.debug(
                "Message %s already stored for user %s", message.provider_message_id, user_id
            )
            return None
        return cursor.lastrowid

    def update_summary(
        self, user_id: str, provider_message_id: str, summary: EmailSummary
    ) -> bool:
        """Set the summary if it is still NULL.  Returns True if a row changed."""
        with self._conn:
            cursor = self._conn.execute(
                """UPDATE emails SET summary = ?
                   WHERE user_id = ? AND gmail_message_id = ? AND summary IS NULL""",
                (summary.to_json(), user_id, provider_message_id),
            )
        return cursor.rowcount == 1

    def list_messages(self, user_id: str, limit: int = 20) -> list[CanonicalMessage]:
        """Return the user's most recently received messages, newest first."""
        rows = self._conn.execute(
            f"""SELECT {_MESSAGE_COLUMNS} FROM emails
                WHERE user_id = ?
                ORDER BY received_at DESC
                LIMIT ?""",
            (user_id, limit),
        ).fetchall()
        return [_row_to_message(row) for row in rows]

    def import_stats(self, user_id: str) -> ImportStats:
        row = self._conn.execute(
            """SELECT COUNT(*) AS total, COUNT(summary) AS summarized
               FROM emails WHERE user_id = ?""",
            (user_id,),
        ).fetchone()
        return ImportStats(total=row["total"], summarized=row["summarized"])

    # ── Private ─────────────────────────────────────────────────────────────────

    def _create_tables(self) -> None:
        with self._conn:
            for ddl in ALL_TABLES:
                self._conn.execute(ddl)


def _row_to_message(row: sqlite3.Row) -> CanonicalMessage:
    summary = None
    if row["summary"]:
        try:
            summary = EmailSummary.from_json(row["summary"])
        except (ValueError, TypeError) as exc:
            logger.warning("Unreadable summary for message %s: %s", row["gmail_message_id"], exc)
    return CanonicalMessage(
        provider_message_id=row["gmail_message_id"],
        thread_id=row["thread_id"],
        subject=row["subject"],
        sender_email=row["sender_email"],
        sender_name=row["sender_name"],
        recipient_email=row["recipient_email"],
        body_text=row["body_text"],
        body_html=row["body_html"],
        has_attachments=bool(row["has_attachments"]),
        labels=json.loads(row["labels"]),
        received_at=_from_iso(row["received_at"]) or datetime.now(timezone.utc),
        snippet=row["snippet"],
        is_read=bool(row["is_read"]),
        summary=summary,
    )
