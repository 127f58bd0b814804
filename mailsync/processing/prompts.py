"""Anthropic tool definition and prompt builder for email summarization."""

from typing import Any

from mailsync.processing.types import Category, Sentiment, SummaryRequest

# Maximum characters of body sent to the model
BODY_CHAR_LIMIT = 2_000

SUMMARY_TOOL_NAME = "record_email_summary"

# ── Tool definition ────────────────────────────────────────────────────────────

#: Anthropic tool schema for structured email summaries.
SUMMARY_TOOL: dict[str, Any] = {
    "name": SUMMARY_TOOL_NAME,
    "description": "Record a concise structured summary of an email.",
    "input_schema": {
        "type": "object",
        "properties": {
            "summary": {
                "type": "string",
                "description": "One or two sentences on the email's main purpose.",
            },
            "key_points": {
                "type": "array",
                "items": {"type": "string"},
                "description": "Up to three key facts or requests.",
            },
            "sentiment": {
                "type": "string",
                "enum": [s.value for s in Sentiment],
            },
            "category": {
                "type": "string",
                "enum": [c.value for c in Category],
            },
            "action_required": {
                "type": "boolean",
                "description": "True if the recipient must do something.",
            },
            "confidence": {
                "type": "number",
                "description": "0.0-1.0 confidence in this summary.",
            },
        },
        "required": [
            "summary",
            "key_points",
            "sentiment",
            "category",
            "action_required",
            "confidence",
        ],
    },
}


# ── Prompt builder ─────────────────────────────────────────────────────────────


def build_messages(request: SummaryRequest) -> list[dict[str, str]]:
    """Build the Anthropic messages list for summarizing one email.

    Falls back to the snippet when the body is empty.
    """
    body = request.body or request.snippet or ""
    preview = body[:BODY_CHAR_LIMIT]

    lines = [
        f"From: {request.sender}",
        f"To: {request.recipient}",
        f"Subject: {request.subject}",
        "",
        preview,
    ]
    if len(body) > BODY_CHAR_LIMIT:
        lines.append("\n[… email truncated …]")

    return [
        {
            "role": "user",
            "content": (
                "Summarize the following email so someone can judge its importance "
                f"at a glance, then call {SUMMARY_TOOL_NAME} with your findings.\n\n"
                + "\n".join(lines)
            ),
        }
    ]
