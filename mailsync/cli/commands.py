"""CLI command implementations — each builds a Runtime and drives one operation."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone
from typing import TypeVar

import click
from rich import box
from rich.console import Console
from rich.table import Table

from mailsync.agent.config import Settings
from mailsync.agent.pipeline import IngestResult
from mailsync.agent.runtime import Runtime, build_runtime
from mailsync.gmail.errors import GmailError, ReauthenticationRequiredError
from mailsync.storage.db import MailStore

logger = logging.getLogger(__name__)
console = Console(width=200)

T = TypeVar("T")


def _run(settings: Settings, action: Callable[[Runtime], Awaitable[T]]) -> T:
    """Run one async action against a fresh Runtime, always closing it."""

    async def runner() -> T:
        runtime = build_runtime(settings)
        try:
            return await action(runtime)
        finally:
            await runtime.aclose()

    return asyncio.run(runner())


def _resolve_user(store: MailStore, email: str) -> str:
    user = store.find_user_by_email(email)
    if user is None:
        raise click.ClickException(f"No user registered for {email}. Run `mailsync register` first.")
    return user.id


# ── register ─────────────────────────────────────────────────────────────────


@click.command()
@click.argument("email")
@click.option("--access-token", required=True, help="OAuth access token.")
@click.option("--refresh-token", default=None, help="OAuth refresh token.")
@click.option(
    "--expires-in", default=None, type=int, help="Seconds until the access token expires."
)
@click.pass_obj
def register(
    settings: Settings,
    email: str,
    access_token: str,
    refresh_token: str | None,
    expires_in: int | None,
) -> None:
    """Store (or update) OAuth credentials for a Gmail address."""
    expiry = (
        datetime.now(timezone.utc) + timedelta(seconds=expires_in)
        if expires_in is not None
        else None
    )
    store = MailStore(settings.db_path)
    try:
        user_id = store.upsert_user(email, access_token, refresh_token, expiry)
    finally:
        store.close()
    console.print(f"[green]Registered[/green] {email} [dim]({user_id})[/dim]")


# ── import-recent ────────────────────────────────────────────────────────────


@click.command("import-recent")
@click.argument("email")
@click.option("--limit", default=None, type=int, help="Messages to import (default RECENT_IMPORT_LIMIT).")
@click.pass_obj
def import_recent(settings: Settings, email: str, limit: int | None) -> None:
    """Import the newest inbox messages for a user and wait for their summaries."""

    async def action(runtime: Runtime) -> IngestResult:
        user_id = _resolve_user(runtime.store, email)
        with console.status("Importing recent inbox messages..."):
            return await runtime.pipeline.import_recent(user_id, limit)

    result = _run(settings, action)
    _print_result(email, result)


def _print_result(email: str, result: IngestResult) -> None:
    table = Table(box=box.ROUNDED, show_header=True, header_style="bold cyan")
    table.add_column("Outcome")
    table.add_column("Imported", justify="right")
    table.add_column("Skipped", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("Archived", justify="right")
    table.add_column("Cursor")
    style = "green" if result.outcome.value in ("completed", "rebaselined") else "red"
    table.add_row(
        f"[{style}]{result.outcome.value}[/{style}]",
        str(result.imported),
        str(result.skipped),
        str(result.failed),
        f"{result.archived}" + (f" ([red]{result.archive_failed} failed[/red])" if result.archive_failed else ""),
        result.history_id or "—",
    )
    console.print(f"\nImport for [bold]{email}[/bold]\n")
    console.print(table)


# ── watch / unwatch / renew-watches ──────────────────────────────────────────


@click.command()
@click.argument("email")
@click.pass_obj
def watch(settings: Settings, email: str) -> None:
    """Subscribe a user's inbox to push notifications."""

    async def action(runtime: Runtime) -> None:
        user_id = _resolve_user(runtime.store, email)
        try:
            response = await runtime.watches.subscribe(user_id)
        except (GmailError, ReauthenticationRequiredError, ValueError) as exc:
            raise click.ClickException(f"Watch failed: {exc}") from exc
        expires = response.expiration.isoformat() if response.expiration else "unknown"
        console.print(
            f"[green]Watching[/green] {email} until {expires} "
            f"[dim](historyId {response.history_id})[/dim]"
        )

    _run(settings, action)


@click.command()
@click.argument("email")
@click.pass_obj
def unwatch(settings: Settings, email: str) -> None:
    """Stop push notifications for a user."""

    async def action(runtime: Runtime) -> None:
        user_id = _resolve_user(runtime.store, email)
        try:
            await runtime.watches.stop(user_id)
        except (GmailError, ReauthenticationRequiredError) as exc:
            console.print(f"[yellow]Provider stop failed ({exc}); watch disabled locally.[/yellow]")
            return
        console.print(f"Stopped watching {email}")

    _run(settings, action)


@click.command("renew-watches")
@click.option("--within-hours", default=24, show_default=True, help="Renew watches expiring within N hours.")
@click.pass_obj
def renew_watches(settings: Settings, within_hours: int) -> None:
    """Renew every watch that is about to expire."""

    async def action(runtime: Runtime) -> None:
        report = await runtime.watches.renew_expiring(timedelta(hours=within_hours))
        console.print(
            f"Renewed [green]{len(report.renewed)}[/green], "
            f"failed [red]{len(report.failed)}[/red]"
        )

    _run(settings, action)


# ── status ───────────────────────────────────────────────────────────────────


@click.command()
@click.argument("email", required=False)
@click.pass_obj
def status(settings: Settings, email: str | None) -> None:
    """Show watch state and import counts per user."""

    async def action(runtime: Runtime) -> None:
        store = runtime.store
        if email:
            user = store.get_user(_resolve_user(store, email))
            users = [user] if user else []
        else:
            users = store.list_users()
        if not users:
            console.print("[yellow]No users registered yet.[/yellow]")
            return

        table = Table(box=box.ROUNDED, show_header=True, header_style="bold cyan")
        table.add_column("Email")
        table.add_column("Watch")
        table.add_column("Expires in", justify="right")
        table.add_column("Cursor")
        table.add_column("Emails", justify="right")
        table.add_column("Unsummarized", justify="right")
        for user in users:
            watch_status = runtime.watches.status(user.id)
            stats = store.import_stats(user.id)
            state = watch_status.state if watch_status else "—"
            style = {"active": "green", "expired": "yellow"}.get(state, "red")
            hours = (
                f"{watch_status.expires_in_hours:.1f}h"
                if watch_status and watch_status.expires_in_hours is not None
                else "—"
            )
            table.add_row(
                user.email,
                f"[{style}]{state}[/{style}]",
                hours,
                store.read_cursor(user.id) or "—",
                str(stats.total),
                str(stats.unsummarized),
            )
        console.print(table)

    _run(settings, action)


# ── serve ────────────────────────────────────────────────────────────────────


@click.command()
@click.option("--host", default=None, help="Bind address (default WEBHOOK_HOST).")
@click.option("--port", default=None, type=int, help="Port (default WEBHOOK_PORT).")
@click.pass_obj
def serve(settings: Settings, host: str | None, port: int | None) -> None:
    """Run the push-notification webhook server."""
    import uvicorn

    from mailsync.agent.server import create_app

    logging.getLogger().setLevel(getattr(logging, settings.log_level, logging.INFO))
    app = create_app(build_runtime(settings))
    uvicorn.run(app, host=host or settings.webhook_host, port=port or settings.webhook_port)
