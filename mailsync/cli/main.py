"""CLI entry point for the mailsync backend."""

import logging

import click
from dotenv import load_dotenv

from mailsync.agent.config import Settings

logger = logging.getLogger(__name__)


@click.group()
@click.pass_context
def cli(ctx: click.Context) -> None:
    """Gmail sync backend — register users, manage watches, import mail."""
    load_dotenv()
    logging.basicConfig(
        level=logging.WARNING,  # keep CLI output clean; errors still surface
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    )
    ctx.obj = Settings.from_env()


# Import and register commands after cli is defined to avoid circular imports.
from mailsync.cli.commands import (  # noqa: E402
    import_recent,
    register,
    renew_watches,
    serve,
    status,
    unwatch,
    watch,
)

cli.add_command(register)
cli.add_command(import_recent)
cli.add_command(watch)
cli.add_command(unwatch)
cli.add_command(renew_watches)
cli.add_command(status)
cli.add_command(serve)
