"""Canonical message and AI summary types."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum

from mailsync.gmail.types import INBOX


class Sentiment(str, Enum):
    POSITIVE = "positive"
    NEUTRAL = "neutral"
    NEGATIVE = "negative"


class Category(str, Enum):
    """Coarse category the summarizer assigns to each email."""

    WORK = "Work"
    PERSONAL = "Personal"
    MARKETING = "Marketing"
    NEWSLETTER = "Newsletter"
    SUPPORT = "Support"
    FINANCE = "Finance"
    TRAVEL = "Travel"
    SHOPPING = "Shopping"
    SOCIAL = "Social"
    OTHER = "Other"


# ── Summary ────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class SummaryRequest:
    """Snapshot of the content handed to the summarizer.

    Captured at ingestion time so the enrichment task never reads the message
    back from storage.
    """

    subject: str
    sender: str
    recipient: str
    body: str
    snippet: str = ""


@dataclass(frozen=True)
class EmailSummary:
    """Structured summary produced by the summarizer and stored as JSON."""

    summary: str
    key_points: list[str] = field(default_factory=list)
    sentiment: Sentiment = Sentiment.NEUTRAL
    category: Category = Category.OTHER
    action_required: bool = False
    confidence: float = 0.5

    def to_json(self) -> str:
        data = asdict(self)
        data["sentiment"] = self.sentiment.value
        data["category"] = self.category.value
        return json.dumps(data)

    @classmethod
    def from_json(cls, text: str) -> EmailSummary:
        data = json.loads(text)
        return cls(
            summary=str(data.get("summary", "")),
            key_points=[str(p) for p in data.get("key_points", [])],
            sentiment=Sentiment(data.get("sentiment", Sentiment.NEUTRAL.value)),
            category=Category(data.get("category", Category.OTHER.value)),
            action_required=bool(data.get("action_required", False)),
            confidence=float(data.get("confidence", 0.5)),
        )


# ── Canonical message ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class CanonicalMessage:
    """Provider-independent representation of one email.

    Built by ``normalize()`` from a raw Gmail message resource.  Identity is
    (user, provider_message_id); ``summary`` is the only field that changes
    after persistence, and only once.

    ``body_text`` holds real text/plain content only.  When a message is
    HTML-only, ``plain_fallback`` carries a tag-stripped rendition used as
    summarizer input; it is never persisted as the canonical text.
    """

    provider_message_id: str
    thread_id: str
    subject: str
    sender_email: str
    sender_name: str | None
    recipient_email: str
    body_text: str
    body_html: str
    has_attachments: bool
    labels: list[str]
    received_at: datetime
    snippet: str = ""
    is_read: bool = False
    plain_fallback: str = ""
    summary: EmailSummary | None = None

    @property
    def in_inbox(self) -> bool:
        return INBOX in self.labels

    @property
    def sender(self) -> str:
        """The sender as it would appear in a From header."""
        if self.sender_name:
            return f"{self.sender_name} <{self.sender_email}>"
        return self.sender_email

    def summary_text(self) -> str:
        """Best available plain text for downstream text processing."""
        return self.body_text or self.plain_fallback or self.snippet

    def summary_request(self) -> SummaryRequest:
        return SummaryRequest(
            subject=self.subject,
            sender=self.sender,
            recipient=self.recipient_email,
            body=self.summary_text(),
            snippet=self.snippet,
        )
