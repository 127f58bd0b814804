"""Tests for the AI summarizer (Haiku integration) and its prompt builder."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from anthropic.types import ToolUseBlock

from mailsync.processing.prompts import BODY_CHAR_LIMIT, SUMMARY_TOOL_NAME, build_messages
from mailsync.processing.summarizer import (
    EmailSummarizer,
    Summarizer,
    SummaryError,
    fallback_summary,
    parse_summary,
)
from mailsync.processing.types import Category, EmailSummary, Sentiment, SummaryRequest


# ── Helpers ────────────────────────────────────────────────────────────────────


def make_request(**kwargs: str) -> SummaryRequest:
    defaults = dict(
        subject="Q2 budget review",
        sender="Jane Doe <jane@x.com>",
        recipient="me@x.com",
        body="Please review the attached budget by Friday.",
        snippet="Please review the attached budget",
    )
    return SummaryRequest(**{**defaults, **kwargs})


def make_tool_block(data: dict[str, object], name: str = SUMMARY_TOOL_NAME) -> ToolUseBlock:
    return ToolUseBlock(type="tool_use", id="toolu_test_123", name=name, input=data)


VALID_DATA: dict[str, object] = {
    "summary": "Jane needs the Q2 budget reviewed by Friday.",
    "key_points": ["Budget attached", "Deadline Friday"],
    "sentiment": "neutral",
    "category": "Work",
    "action_required": True,
    "confidence": 0.9,
}


def mock_response(*blocks: object, stop_reason: str = "tool_use") -> MagicMock:
    response = MagicMock()
    response.content = list(blocks)
    response.stop_reason = stop_reason
    return response


# ── build_messages ─────────────────────────────────────────────────────────────


class TestBuildMessages:
    def test_returns_single_user_message(self) -> None:
        msgs = build_messages(make_request())
        assert len(msgs) == 1
        assert msgs[0]["role"] == "user"

    def test_contains_headers_and_body(self) -> None:
        content = build_messages(make_request())[0]["content"]
        assert "From: Jane Doe <jane@x.com>" in content
        assert "To: me@x.com" in content
        assert "Subject: Q2 budget review" in content
        assert "review the attached budget by Friday" in content

    def test_body_truncated_at_limit(self) -> None:
        content = build_messages(make_request(body="x" * (BODY_CHAR_LIMIT + 100)))[0]["content"]
        assert "x" * BODY_CHAR_LIMIT in content
        assert "x" * (BODY_CHAR_LIMIT + 1) not in content
        assert "truncated" in content

    def test_empty_body_uses_snippet(self) -> None:
        content = build_messages(make_request(body="", snippet="just the snippet"))[0]["content"]
        assert "just the snippet" in content


# ── parse_summary ──────────────────────────────────────────────────────────────


class TestParseSummary:
    def test_valid_data(self) -> None:
        summary = parse_summary(VALID_DATA)
        assert summary == EmailSummary(
            summary="Jane needs the Q2 budget reviewed by Friday.",
            key_points=["Budget attached", "Deadline Friday"],
            sentiment=Sentiment.NEUTRAL,
            category=Category.WORK,
            action_required=True,
            confidence=0.9,
        )

    def test_unknown_enums_fall_back(self) -> None:
        summary = parse_summary({**VALID_DATA, "sentiment": "ecstatic", "category": "Spam"})
        assert summary.sentiment is Sentiment.NEUTRAL
        assert summary.category is Category.OTHER

    @pytest.mark.parametrize(("raw", "expected"), [(1.7, 1.0), (-0.2, 0.0), ("bad", 0.5)])
    def test_confidence_is_clamped(self, raw: object, expected: float) -> None:
        assert parse_summary({**VALID_DATA, "confidence": raw}).confidence == expected

    def test_missing_summary_text(self) -> None:
        summary = parse_summary({"key_points": "not a list"})
        assert summary.summary == "Unable to generate summary"
        assert summary.key_points == []


class TestFallbackSummary:
    def test_built_from_headers_and_snippet(self) -> None:
        summary = fallback_summary(make_request())
        assert summary.summary == (
            'Email from Jane Doe <jane@x.com> about "Q2 budget review". '
            "Please review the attached budget"
        )
        assert summary.confidence == 0.1
        assert summary.category is Category.OTHER

    def test_without_snippet(self) -> None:
        summary = fallback_summary(make_request(snippet=""))
        assert summary.summary.endswith('about "Q2 budget review".')


# ── EmailSummarizer ────────────────────────────────────────────────────────────


class TestEmailSummarizer:
    def test_satisfies_protocol(self) -> None:
        assert isinstance(EmailSummarizer(api_key="test"), Summarizer)

    async def test_returns_parsed_tool_call(self) -> None:
        summarizer = EmailSummarizer(api_key="test")
        summarizer._client.messages.create = AsyncMock(
            return_value=mock_response(make_tool_block(VALID_DATA))
        )

        summary = await summarizer.summarize(make_request())

        assert summary.category is Category.WORK
        kwargs = summarizer._client.messages.create.await_args.kwargs
        assert kwargs["tool_choice"] == {"type": "tool", "name": SUMMARY_TOOL_NAME}

    async def test_skips_non_tool_blocks(self) -> None:
        summarizer = EmailSummarizer(api_key="test")
        text_block = MagicMock()
        text_block.type = "text"
        summarizer._client.messages.create = AsyncMock(
            return_value=mock_response(text_block, make_tool_block(VALID_DATA))
        )

        summary = await summarizer.summarize(make_request())
        assert summary.action_required is True

    async def test_no_tool_call_raises(self) -> None:
        summarizer = EmailSummarizer(api_key="test")
        summarizer._client.messages.create = AsyncMock(
            return_value=mock_response(make_tool_block(VALID_DATA, name="other_tool"))
        )

        with pytest.raises(SummaryError):
            await summarizer.summarize(make_request())

    async def test_api_error_propagates_by_default(self) -> None:
        summarizer = EmailSummarizer(api_key="test")
        summarizer._client.messages.create = AsyncMock(side_effect=RuntimeError("overloaded"))

        with pytest.raises(RuntimeError):
            await summarizer.summarize(make_request())

    async def test_fallback_on_error(self) -> None:
        summarizer = EmailSummarizer(api_key="test", fallback_on_error=True)
        summarizer._client.messages.create = AsyncMock(side_effect=RuntimeError("overloaded"))

        summary = await summarizer.summarize(make_request())

        assert summary.confidence == 0.1
        assert summary.summary.startswith("Email from Jane Doe")
