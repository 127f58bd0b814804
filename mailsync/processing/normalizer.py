"""Raw Gmail message → CanonicalMessage.  Pure: no I/O, never raises on bad input."""

import base64
import binascii
import logging
import re
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from html.parser import HTMLParser
from typing import Any

from mailsync.gmail.types import UNREAD
from mailsync.processing.types import CanonicalMessage

logger = logging.getLogger(__name__)

NO_SUBJECT = "(No Subject)"

# Guards against maliciously deep multipart nesting
_MAX_PART_DEPTH = 20

_NAME_ADDR_RE = re.compile(r"^(.+?)\s*<(.+?)>$")
_BARE_EMAIL_RE = re.compile(r"[\w.+-]+@[\w.-]+\.\w+")


# ── HTML stripper ───────────────────────────────────────────────────────────────


class _HTMLStripper(HTMLParser):
    """Collects visible text nodes, skipping <script> and <style> content."""

    _SKIP = {"script", "style", "head"}

    def __init__(self) -> None:
        super().__init__()
        self._parts: list[str] = []
        self._skip_depth = 0

    def handle_starttag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        if tag in self._SKIP:
            self._skip_depth += 1

    def handle_endtag(self, tag: str) -> None:
        if tag in self._SKIP and self._skip_depth:
            self._skip_depth -= 1

    def handle_data(self, data: str) -> None:
        if self._skip_depth:
            return
        text = data.strip()
        if text:
            self._parts.append(text)

    def get_text(self) -> str:
        return " ".join(self._parts)


def strip_html(html: str) -> str:
    """Return the text nodes of an HTML document joined by single spaces.

    Tag stripping only — no layout is rendered, so the result is lossy and
    meant for summarizer input, not display.
    """
    if "<" not in html:
        return " ".join(html.split())
    stripper = _HTMLStripper()
    try:
        stripper.feed(html)
        stripper.close()
    except Exception as exc:  # noqa: BLE001
        logger.warning("HTML stripping failed, falling back to regex: %s", exc)
        return " ".join(re.sub(r"<[^>]*>", " ", html).split())
    return " ".join(stripper.get_text().split())


# ── Field parsers ──────────────────────────────────────────────────────────────


def parse_sender(raw: str) -> tuple[str | None, str]:
    """Split a From header into (display name, email address).

    ``"Jane Doe <jane@x.com>"`` → ``("Jane Doe", "jane@x.com")``.  Without
    angle brackets the first bare address token is used; failing that the
    raw string is returned as the address with no name.
    """
    value = (raw or "").strip()
    match = _NAME_ADDR_RE.match(value)
    if match:
        name = match.group(1).strip().replace('"', "").strip()
        return (name or None), match.group(2).strip()
    token = _BARE_EMAIL_RE.search(value)
    if token:
        return None, token.group(0)
    return None, value


def parse_received_at(
    date_header: str, internal_date: str | None = None, message_id: str = ""
) -> datetime:
    """Parse the Date header into an aware UTC datetime.

    Falls back to Gmail's ``internalDate`` (epoch millis), then to now.
    """
    if date_header:
        try:
            parsed = parsedate_to_datetime(date_header)
        except (TypeError, ValueError, IndexError):
            parsed = None
        if parsed is not None:
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return parsed.astimezone(timezone.utc)

    if internal_date:
        try:
            return datetime.fromtimestamp(int(internal_date) / 1000, tz=timezone.utc)
        except (TypeError, ValueError, OverflowError, OSError):
            pass

    logger.warning(
        "Unparseable date %r for message %s; using current time", date_header, message_id
    )
    return datetime.now(timezone.utc)


def _decode_body(data: str) -> str:
    padded = data + "=" * (-len(data) % 4)
    try:
        return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")
    except (binascii.Error, ValueError):
        logger.warning("Undecodable body part (%d chars)", len(data))
        return ""


def extract_bodies(payload: dict[str, Any]) -> tuple[str, str]:
    """Return (first text/plain, first text/html) found anywhere in the part tree."""
    found: dict[str, str] = {}

    def walk(part: dict[str, Any], depth: int) -> None:
        if depth > _MAX_PART_DEPTH:
            logger.warning("Maximum multipart depth reached; ignoring deeper parts")
            return
        mime_type = str(part.get("mimeType", "")).lower()
        data = (part.get("body") or {}).get("data")
        # parts with a filename are attachments, even text/plain ones
        if data and not part.get("filename") and mime_type in ("text/plain", "text/html"):
            found.setdefault(mime_type, _decode_body(data))
        for child in part.get("parts") or []:
            if "text/plain" in found and "text/html" in found:
                return
            walk(child, depth + 1)

    walk(payload, 0)
    return found.get("text/plain", ""), found.get("text/html", "")


def has_attachments(part: dict[str, Any], depth: int = 0) -> bool:
    """True if this part or any descendant carries a non-empty filename."""
    if depth > _MAX_PART_DEPTH:
        return False
    if part.get("filename"):
        return True
    return any(has_attachments(child, depth + 1) for child in part.get("parts") or [])


# ── Normalizer ─────────────────────────────────────────────────────────────────


def _as_list(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []


def normalize(raw: dict[str, Any]) -> CanonicalMessage:
    """Build a CanonicalMessage from a Gmail ``messages.get?format=full`` resource."""
    message_id = str(raw.get("id", ""))
    payload = raw.get("payload")
    if not isinstance(payload, dict):
        payload = {}
    headers = {
        str(h.get("name", "")).lower(): str(h.get("value", ""))
        for h in _as_list(payload.get("headers"))
        if isinstance(h, dict)
    }
    labels = [str(label) for label in _as_list(raw.get("labelIds"))]

    sender_name, sender_email = parse_sender(headers.get("from", ""))

    try:
        body_text, body_html = extract_bodies(payload)
    except Exception as exc:  # noqa: BLE001
        logger.warning("Body extraction failed for message %s: %s", message_id, exc)
        body_text, body_html = "", ""

    try:
        attachments = has_attachments(payload)
    except Exception as exc:  # noqa: BLE001
        logger.warning("Attachment detection failed for message %s: %s", message_id, exc)
        attachments = False

    return CanonicalMessage(
        provider_message_id=message_id,
        thread_id=str(raw.get("threadId", "")),
        subject=headers.get("subject", "").strip() or NO_SUBJECT,
        sender_email=sender_email,
        sender_name=sender_name,
        recipient_email=headers.get("to", ""),
        body_text=body_text,
        body_html=body_html,
        has_attachments=attachments,
        labels=labels,
        received_at=parse_received_at(
            headers.get("date", ""), raw.get("internalDate"), message_id
        ),
        snippet=str(raw.get("snippet", "")),
        is_read=UNREAD not in labels,
        plain_fallback=strip_html(body_html) if body_html and not body_text else "",
    )
