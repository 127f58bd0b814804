"""Shared pytest fixtures."""

import base64
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest

from mailsync.storage.db import MailStore


def _b64(text: str) -> str:
    return base64.urlsafe_b64encode(text.encode()).decode().rstrip("=")


@pytest.fixture
def store(tmp_path: Path) -> Iterator[MailStore]:
    db = MailStore(db_path=tmp_path / "test.db")
    yield db
    db.close()


@pytest.fixture
def make_raw_message() -> Callable[..., dict[str, Any]]:
    """Factory for Gmail ``messages.get?format=full`` resources."""

    def factory(
        message_id: str = "m1",
        *,
        subject: str = "Q2 budget review",
        sender: str = "Jane Doe <jane@x.com>",
        to: str = "me@x.com",
        date: str = "Mon, 02 Mar 2026 09:00:00 +0000",
        labels: tuple[str, ...] = ("INBOX", "UNREAD"),
        text: str | None = "Please review the budget by Friday.",
        html: str | None = None,
    ) -> dict[str, Any]:
        parts = []
        if text is not None:
            parts.append({"mimeType": "text/plain", "filename": "", "body": {"data": _b64(text)}})
        if html is not None:
            parts.append({"mimeType": "text/html", "filename": "", "body": {"data": _b64(html)}})
        return {
            "id": message_id,
            "threadId": f"thread-{message_id}",
            "labelIds": list(labels),
            "snippet": (text or "")[:40],
            "internalDate": "1772442000000",
            "payload": {
                "mimeType": "multipart/alternative",
                "headers": [
                    {"name": "From", "value": sender},
                    {"name": "To", "value": to},
                    {"name": "Subject", "value": subject},
                    {"name": "Date", "value": date},
                ],
                "parts": parts,
            },
        }

    return factory
