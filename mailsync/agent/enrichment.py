"""Fire-and-forget AI summaries for freshly imported messages."""

import asyncio
import logging
from dataclasses import dataclass

from mailsync.agent.tasks import DetachedTasks
from mailsync.processing.summarizer import Summarizer
from mailsync.processing.types import SummaryRequest
from mailsync.storage.db import MailStore

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT_SECONDS = 30.0


@dataclass(frozen=True)
class EnrichmentTask:
    """One pending summary.  In memory only; lost if the process dies."""

    user_id: str
    provider_message_id: str
    content: SummaryRequest


class EnrichmentScheduler:
    """Launches one detached summarize-then-store task per message.

    ``enqueue`` returns immediately.  A failed or timed-out summary leaves the
    stored message with ``summary`` NULL; nothing retries it.

    Usage::

        scheduler = EnrichmentScheduler(summarizer, store, tasks)
        scheduler.enqueue(user_id, message.provider_message_id, message.summary_request())
    """

    def __init__(
        self,
        summarizer: Summarizer,
        store: MailStore,
        tasks: DetachedTasks,
        timeout: float = _DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self._summarizer = summarizer
        self._store = store
        self._tasks = tasks
        self._timeout = timeout

    def enqueue(
        self, user_id: str, provider_message_id: str, content: SummaryRequest
    ) -> EnrichmentTask:
        task = EnrichmentTask(user_id, provider_message_id, content)
        self._tasks.spawn(self._run(task), name=f"enrich:{user_id}:{provider_message_id}")
        return task

    async def _run(self, task: EnrichmentTask) -> None:
        try:
            summary = await asyncio.wait_for(
                self._summarizer.summarize(task.content), timeout=self._timeout
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Summary for message %s timed out after %.0fs; leaving it unsummarized",
                task.provider_message_id,
                self._timeout,
            )
            return
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "Summary for message %s failed; leaving it unsummarized: %s",
                task.provider_message_id,
                exc,
            )
            return

        if self._store.update_summary(task.user_id, task.provider_message_id, summary):
            logger.info(
                "Stored summary for message %s (%s, confidence %.2f)",
                task.provider_message_id,
                summary.category.value,
                summary.confidence,
            )
        else:
            logger.debug("Message %s already had a summary", task.provider_message_id)
