"""Inbound Gmail push notifications — envelope parsing and acknowledgement."""

from __future__ import annotations

import base64
import binascii
import hmac
import json
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from mailsync.agent.pipeline import IngestionPipeline

logger = logging.getLogger(__name__)


class NotificationFormatError(ValueError):
    """The notification envelope itself is malformed (the only case we reject)."""


@dataclass(frozen=True)
class Notification:
    """A mailbox-changed signal: whose mailbox, and its historyId at that moment."""

    email_address: str
    history_id: str


def parse_notification(body: dict[str, Any]) -> Notification:
    """Extract a Notification from a push body.

    Accepts the Pub/Sub push envelope ``{"message": {"data": base64(json)}}``
    as well as the bare ``{"emailAddress", "historyId"}`` payload.

    Raises:
        NotificationFormatError: anything structurally wrong with the body.
    """
    if not isinstance(body, dict):
        raise NotificationFormatError("notification body must be a JSON object")

    payload: Any = body
    if "message" in body:
        message = body["message"]
        if not isinstance(message, dict) or not message.get("data"):
            raise NotificationFormatError("Pub/Sub envelope carries no message.data")
        try:
            decoded = base64.b64decode(str(message["data"]), validate=False)
            payload = json.loads(decoded.decode("utf-8"))
        except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
            raise NotificationFormatError(f"undecodable message.data: {exc}") from exc

    if not isinstance(payload, dict):
        raise NotificationFormatError("notification payload must be a JSON object")

    email_address = payload.get("emailAddress")
    history_id = payload.get("historyId")
    if not isinstance(email_address, str) or not email_address.strip():
        raise NotificationFormatError("notification has no emailAddress")
    if isinstance(history_id, bool) or not isinstance(history_id, (str, int)):
        raise NotificationFormatError("notification has no historyId")
    history_id = str(history_id).strip()
    if not history_id.isdigit():
        raise NotificationFormatError(f"historyId {history_id!r} is not numeric")

    return Notification(email_address=email_address.strip(), history_id=history_id)


class NotificationHandler:
    """Acknowledges every well-formed push, whatever happens downstream.

    The push transport redelivers on any non-2xx, so internal failures are
    reported in the ack body instead of the status code.  Only a malformed
    envelope raises (NotificationFormatError), which the HTTP layer turns
    into a 400.
    """

    def __init__(self, pipeline: IngestionPipeline, verification_token: str = "") -> None:
        self._pipeline = pipeline
        self._verification_token = verification_token

    async def handle(self, body: dict[str, Any] | None, token: str | None = None) -> dict[str, Any]:
        if not body:
            return {"success": True, "status": "ok", "message": "empty notification"}
        if not isinstance(body, dict):
            raise NotificationFormatError("notification body must be a JSON object")
        if "challenge" in body:
            return {"challenge": body["challenge"]}

        if self._verification_token and not hmac.compare_digest(
            (token or "").encode(), self._verification_token.encode()
        ):
            logger.warning("Push notification with a bad verification token ignored")
            return {"success": True, "status": "unauthorized"}

        notification = parse_notification(body)
        logger.info(
            "Push notification for %s at historyId %s",
            notification.email_address,
            notification.history_id,
        )
        try:
            result = await self._pipeline.handle_notification(notification)
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "Notification for %s failed: %s", notification.email_address, exc, exc_info=True
            )
            return {"success": False, "status": "error", "error": str(exc)}
        return {"success": True, "status": result.outcome.value, "result": result.as_dict()}
