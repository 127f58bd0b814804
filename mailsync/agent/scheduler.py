"""APScheduler setup for the daily watch renewal."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from apscheduler.schedulers.asyncio import AsyncIOScheduler

if TYPE_CHECKING:
    from mailsync.agent.watch import WatchManager

logger = logging.getLogger(__name__)


def _parse_renewal_time(time_str: str) -> tuple[int, int]:
    """Parse 'HH:MM' into (hour, minute). Falls back to (3, 0) on parse error."""
    try:
        hour_str, minute_str = time_str.strip().split(":")
        hour, minute = int(hour_str), int(minute_str)
    except (ValueError, AttributeError):
        logger.warning("Invalid WATCH_RENEWAL_TIME %r; defaulting to 03:00", time_str)
        return 3, 0
    if not (0 <= hour < 24 and 0 <= minute < 60):
        logger.warning("Out-of-range WATCH_RENEWAL_TIME %r; defaulting to 03:00", time_str)
        return 3, 0
    return hour, minute


def create_renewal_scheduler(watches: WatchManager, renewal_time: str = "03:00") -> AsyncIOScheduler:
    """Return a configured AsyncIOScheduler that fires WatchManager.renew_expiring() daily.

    The caller is responsible for calling scheduler.start() and scheduler.shutdown().
    """
    scheduler = AsyncIOScheduler()
    hour, minute = _parse_renewal_time(renewal_time)
    scheduler.add_job(
        watches.renew_expiring, "cron", hour=hour, minute=minute, id="renew-watches"
    )
    logger.info("Watch renewal scheduled daily at %02d:%02d", hour, minute)
    return scheduler
