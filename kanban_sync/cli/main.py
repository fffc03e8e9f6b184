"""CLI entry point for the kanban sync service."""

import logging

import click
from dotenv import load_dotenv

from kanban_sync.agent.service import build_core
from kanban_sync.config import SyncConfig

logger = logging.getLogger(__name__)


@click.group()
@click.pass_context
def cli(ctx: click.Context) -> None:
    """Gmail kanban sync — run the service and manage users, watches and items."""
    load_dotenv()
    logging.basicConfig(
        level=logging.WARNING,  # keep CLI output clean; errors still surface
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj = build_core(SyncConfig.from_env())
    ctx.call_on_close(ctx.obj.close)


# Import and register commands after cli is defined to avoid circular imports.
from kanban_sync.cli.commands import move, serve, snooze, status, sweep, user, watch  # noqa: E402

cli.add_command(serve)
cli.add_command(status)
cli.add_command(user)
cli.add_command(watch)
cli.add_command(sweep)
cli.add_command(snooze)
cli.add_command(move)
