"""AI summarizer — Claude Haiku with a forced tool call."""

from __future__ import annotations

import logging
import os
from typing import Protocol, runtime_checkable

from anthropic import AsyncAnthropic
from anthropic.types import ToolUseBlock

from mailsync.processing.prompts import SUMMARY_TOOL, SUMMARY_TOOL_NAME, build_messages
from mailsync.processing.types import Category, EmailSummary, Sentiment, SummaryRequest

logger = logging.getLogger(__name__)

_MODEL = "claude-haiku-4-5-20251001"
_MAX_TOKENS = 1024
_FALLBACK_CONFIDENCE = 0.1


class SummaryError(Exception):
    """Raised when the model does not return a usable summary tool call."""


@runtime_checkable
class Summarizer(Protocol):
    """Anything that turns a SummaryRequest into an EmailSummary.

    Implementations may raise; the enrichment task treats any exception as
    "no summary".
    """

    async def summarize(self, request: SummaryRequest) -> EmailSummary:
        ...


def fallback_summary(request: SummaryRequest) -> EmailSummary:
    """Deterministic low-confidence summary built from headers and snippet alone."""
    text = f'Email from {request.sender} about "{request.subject}".'
    if request.snippet:
        text = f"{text} {request.snippet}"
    return EmailSummary(summary=text, confidence=_FALLBACK_CONFIDENCE)


class EmailSummarizer:
    """Sends one email to Claude and returns a structured EmailSummary.

    With ``fallback_on_error`` set, API failures and malformed responses
    return ``fallback_summary()`` instead of raising.

    Usage::

        summarizer = EmailSummarizer()
        summary = await summarizer.summarize(message.summary_request())
    """

    def __init__(
        self,
        api_key: str | None = None,
        *,
        fallback_on_error: bool = False,
        client: AsyncAnthropic | None = None,
    ) -> None:
        self._client = client or AsyncAnthropic(
            api_key=api_key or os.environ.get("ANTHROPIC_API_KEY", "")
        )
        self._fallback_on_error = fallback_on_error

    async def summarize(self, request: SummaryRequest) -> EmailSummary:
        """Summarize one email.

        Raises:
            SummaryError: no tool call came back (unless fallback is enabled).
        """
        try:
            return await self._summarize(request)
        except Exception as exc:
            if not self._fallback_on_error:
                raise
            logger.warning("Summarizer failed (%s); using fallback summary", exc)
            return fallback_summary(request)

    async def _summarize(self, request: SummaryRequest) -> EmailSummary:
        response = await self._client.messages.create(
            model=_MODEL,
            max_tokens=_MAX_TOKENS,
            tools=[SUMMARY_TOOL],  # type: ignore[list-item]
            tool_choice={"type": "tool", "name": SUMMARY_TOOL_NAME},
            messages=build_messages(request),  # type: ignore[arg-type]
        )

        for block in response.content:
            if isinstance(block, ToolUseBlock) and block.name == SUMMARY_TOOL_NAME:
                return parse_summary(block.input)  # type: ignore[arg-type]

        raise SummaryError(
            f"model did not call {SUMMARY_TOOL_NAME} "
            f"(stop_reason={response.stop_reason!r})"
        )


def parse_summary(data: dict[str, object]) -> EmailSummary:
    """Validate raw tool input, substituting defaults for anything out of range."""
    raw_sentiment = str(data.get("sentiment", ""))
    sentiment = (
        Sentiment(raw_sentiment)
        if raw_sentiment in {s.value for s in Sentiment}
        else Sentiment.NEUTRAL
    )
    raw_category = str(data.get("category", ""))
    category = (
        Category(raw_category)
        if raw_category in {c.value for c in Category}
        else Category.OTHER
    )
    key_points = data.get("key_points")
    try:
        confidence = float(data.get("confidence", 0.5))  # type: ignore[arg-type]
    except (TypeError, ValueError):
        confidence = 0.5

    return EmailSummary(
        summary=str(data.get("summary") or "Unable to generate summary"),
        key_points=[str(p) for p in key_points] if isinstance(key_points, list) else [],
        sentiment=sentiment,
        category=category,
        action_required=bool(data.get("action_required", False)),
        confidence=min(max(confidence, 0.0), 1.0),
    )
