"""Webhook service — receives Gmail push notifications over HTTP."""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from mailsync.agent.config import Settings
from mailsync.agent.notifications import NotificationFormatError
from mailsync.agent.runtime import Runtime, build_runtime
from mailsync.agent.scheduler import create_renewal_scheduler

logger = logging.getLogger(__name__)


def _push_token(request: Request) -> str | None:
    """Verification token from ``Authorization: Bearer`` or the ``?token=`` push URL."""
    header = request.headers.get("authorization", "")
    if header.lower().startswith("bearer "):
        return header[7:].strip()
    return request.query_params.get("token")


def create_app(runtime: Runtime, *, start_scheduler: bool = True) -> FastAPI:
    """Build the FastAPI app around an already-wired Runtime.

    The renewal scheduler runs for the lifetime of the app; on shutdown
    outstanding summaries are drained before handles are closed.
    """

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        scheduler = None
        if start_scheduler:
            scheduler = create_renewal_scheduler(
                runtime.watches, runtime.settings.watch_renewal_time
            )
            scheduler.start()
        try:
            yield
        finally:
            if scheduler is not None:
                scheduler.shutdown(wait=False)
            await runtime.aclose()

    app = FastAPI(title="mailsync", lifespan=lifespan)

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {"status": "ok", "background_tasks": runtime.tasks.pending}

    @app.post("/webhooks/gmail")
    async def gmail_webhook(request: Request) -> JSONResponse:
        raw = await request.body()
        body: Any = None
        if raw.strip():
            try:
                body = json.loads(raw)
            except ValueError:
                logger.warning("Rejected push notification with invalid JSON")
                return JSONResponse({"success": False, "error": "invalid JSON"}, status_code=400)

        try:
            ack = await runtime.notifications.handle(body, _push_token(request))
        except NotificationFormatError as exc:
            logger.warning("Rejected malformed push notification: %s", exc)
            return JSONResponse({"success": False, "error": str(exc)}, status_code=400)
        return JSONResponse(ack)

    return app


def main() -> None:
    load_dotenv()
    settings = Settings.from_env()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    )
    if not settings.pubsub_topic:
        logger.warning("GMAIL_PUBSUB_TOPIC is not set; watch renewal will fail")

    app = create_app(build_runtime(settings))
    uvicorn.run(app, host=settings.webhook_host, port=settings.webhook_port)


if __name__ == "__main__":
    main()
