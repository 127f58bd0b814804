"""Runtime settings read from the environment (after ``load_dotenv()``)."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "")
    if not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Invalid %s %r; defaulting to %d", name, raw, default)
        return default
    if value <= 0:
        logger.warning("%s must be positive, got %d; defaulting to %d", name, value, default)
        return default
    return value


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "")
    if not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Invalid %s %r; defaulting to %s", name, raw, default)
        return default
    if value <= 0:
        logger.warning("%s must be positive, got %s; defaulting to %s", name, value, default)
        return default
    return value


@dataclass(frozen=True)
class Settings:
    """Everything the server and CLI need, resolved once at startup."""

    google_client_id: str = ""
    google_client_secret: str = ""
    pubsub_topic: str = ""
    verification_token: str = ""
    anthropic_api_key: str = ""
    db_path: Path = Path("data/mailsync.db")
    recent_import_limit: int = 10
    summary_timeout_seconds: float = 30.0
    summary_fallback: bool = False
    watch_renewal_time: str = "03:00"
    webhook_host: str = "0.0.0.0"
    webhook_port: int = 8080
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> Settings:
        """Build Settings from environment variables."""
        return cls(
            google_client_id=os.environ.get("GOOGLE_CLIENT_ID", ""),
            google_client_secret=os.environ.get("GOOGLE_CLIENT_SECRET", ""),
            pubsub_topic=os.environ.get("GMAIL_PUBSUB_TOPIC", ""),
            verification_token=os.environ.get("PUBSUB_VERIFICATION_TOKEN", ""),
            anthropic_api_key=os.environ.get("ANTHROPIC_API_KEY", ""),
            db_path=Path(os.environ.get("MAILSYNC_DB_PATH", "data/mailsync.db")),
            recent_import_limit=_env_int("RECENT_IMPORT_LIMIT", 10),
            summary_timeout_seconds=_env_float("SUMMARY_TIMEOUT_SECONDS", 30.0),
            summary_fallback=os.environ.get("SUMMARY_FALLBACK", "false").strip().lower()
            in _TRUE_VALUES,
            watch_renewal_time=os.environ.get("WATCH_RENEWAL_TIME", "03:00"),
            webhook_host=os.environ.get("WEBHOOK_HOST", "0.0.0.0"),
            webhook_port=_env_int("WEBHOOK_PORT", 8080),
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        )
