"""Object graph shared by the webhook server and the CLI."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from mailsync.agent.config import Settings
from mailsync.agent.enrichment import EnrichmentScheduler
from mailsync.agent.mailboxes import Mailboxes
from mailsync.agent.notifications import NotificationHandler
from mailsync.agent.pipeline import IngestionPipeline
from mailsync.agent.tasks import DetachedTasks
from mailsync.agent.watch import WatchManager
from mailsync.gmail.auth import OAuthTokenEndpoint
from mailsync.gmail.transport import GmailTransport
from mailsync.processing.summarizer import EmailSummarizer, Summarizer
from mailsync.storage.cursor import SyncCursor
from mailsync.storage.db import MailStore

logger = logging.getLogger(__name__)

# Seconds to wait for in-flight summaries on shutdown
_DRAIN_TIMEOUT_SECONDS = 30.0


@dataclass
class Runtime:
    settings: Settings
    store: MailStore
    tasks: DetachedTasks
    transport: GmailTransport
    endpoint: OAuthTokenEndpoint
    mailboxes: Mailboxes
    pipeline: IngestionPipeline
    watches: WatchManager
    notifications: NotificationHandler

    async def aclose(self) -> None:
        """Let detached work settle, then release network and database handles."""
        if self.tasks.pending:
            logger.info("Waiting for %d background task(s)", self.tasks.pending)
        await self.tasks.drain(timeout=_DRAIN_TIMEOUT_SECONDS)
        await self.transport.aclose()
        await self.endpoint.aclose()
        self.store.close()


def build_runtime(
    settings: Settings,
    *,
    store: MailStore | None = None,
    http: httpx.AsyncClient | None = None,
    summarizer: Summarizer | None = None,
) -> Runtime:
    """Wire every component from ``settings``.

    ``http`` and ``summarizer`` exist for tests (an ``httpx.MockTransport``
    client and a fake summarizer).
    """
    store = store or MailStore(settings.db_path)
    tasks = DetachedTasks()
    transport = GmailTransport(http)
    endpoint = OAuthTokenEndpoint(
        settings.google_client_id, settings.google_client_secret, http=http
    )
    mailboxes = Mailboxes(store, transport, endpoint, tasks)
    summarizer = summarizer or EmailSummarizer(
        settings.anthropic_api_key or None, fallback_on_error=settings.summary_fallback
    )
    enrichment = EnrichmentScheduler(
        summarizer, store, tasks, timeout=settings.summary_timeout_seconds
    )
    pipeline = IngestionPipeline(
        store,
        SyncCursor(store),
        mailboxes,
        enrichment,
        recent_limit=settings.recent_import_limit,
    )
    return Runtime(
        settings=settings,
        store=store,
        tasks=tasks,
        transport=transport,
        endpoint=endpoint,
        mailboxes=mailboxes,
        pipeline=pipeline,
        watches=WatchManager(store, mailboxes, settings.pubsub_topic),
        notifications=NotificationHandler(pipeline, settings.verification_token),
    )
