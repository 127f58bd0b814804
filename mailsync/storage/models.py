"""SQLite table schemas and typed query result types for the storage layer."""

from dataclasses import dataclass
from datetime import datetime


# ── DDL ────────────────────────────────────────────────────────────────────────

_CREATE_USERS = """
CREATE TABLE IF NOT EXISTS users (
    id                TEXT PRIMARY KEY,
    email             TEXT NOT NULL UNIQUE,
    access_token      TEXT NOT NULL DEFAULT '',
    refresh_token     TEXT,
    token_expires_at  TEXT,
    watch_history_id  TEXT,
    watch_expiration  TEXT,
    watch_enabled     INTEGER NOT NULL DEFAULT 0,
    created_at        TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at        TEXT NOT NULL DEFAULT (datetime('now'))
)
"""

_CREATE_EMAILS = """
CREATE TABLE IF NOT EXISTS emails (
    id                INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id           TEXT NOT NULL,
    gmail_message_id  TEXT NOT NULL,
    thread_id         TEXT NOT NULL,
    subject           TEXT NOT NULL,
    sender_email      TEXT NOT NULL,
    sender_name       TEXT,
    recipient_email   TEXT NOT NULL DEFAULT '',
    body_text         TEXT NOT NULL DEFAULT '',
    body_html         TEXT NOT NULL DEFAULT '',
    snippet           TEXT NOT NULL DEFAULT '',
    has_attachments   INTEGER NOT NULL DEFAULT 0,
    is_read           INTEGER NOT NULL DEFAULT 0,
    labels            TEXT NOT NULL DEFAULT '[]',
    received_at       TEXT NOT NULL,
    summary           TEXT,
    created_at        TEXT NOT NULL DEFAULT (datetime('now')),
    UNIQUE (user_id, gmail_message_id),
    FOREIGN KEY (user_id) REFERENCES users(id)
)
"""

_CREATE_EMAILS_RECEIVED_INDEX = """
CREATE INDEX IF NOT EXISTS idx_emails_user_received
    ON emails (user_id, received_at DESC)
"""

#: All DDL statements in creation order (respects FK dependencies).
ALL_TABLES: list[str] = [
    _CREATE_USERS,
    _CREATE_EMAILS,
    _CREATE_EMAILS_RECEIVED_INDEX,
]


# ── Query result types ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class UserRecord:
    """Identity columns of a users row."""

    id: str
    email: str


@dataclass(frozen=True)
class WatchState:
    """Push-subscription columns of a users row."""

    user_id: str
    history_id: str | None
    expiration: datetime | None
    enabled: bool


@dataclass(frozen=True)
class ImportStats:
    """Per-user message counts for the status command."""

    total: int
    summarized: int

    @property
    def unsummarized(self) -> int:
        return self.total - self.summarized
