"""CLI command implementations — all commands operate on the shared SyncCore."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING

import click
from rich import box
from rich.console import Console
from rich.table import Table

from kanban_sync.processing.workflow import DEFAULT_COLUMN_RULES
from kanban_sync.storage.models import SNOOZED_STATUS

if TYPE_CHECKING:
    from kanban_sync.agent.service import SyncCore
    from kanban_sync.sync.watch import WatchStatus

logger = logging.getLogger(__name__)
console = Console(width=200)

_DATETIME_FORMATS = ["%Y-%m-%dT%H:%M:%S", "%Y-%m-%dT%H:%M", "%Y-%m-%d %H:%M", "%Y-%m-%d"]


def _as_utc(value: datetime) -> datetime:
    """Naive CLI input is taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _require_user(core: SyncCore, user_id: str) -> None:
    if core.db.get_user(user_id) is None:
        raise click.ClickException(f"Unknown user {user_id!r}. Run `kanban-sync user add` first.")


# ── Service ────────────────────────────────────────────────────────────────────


@click.command()
@click.pass_obj
def serve(core: SyncCore) -> None:
    """Run the sync service: notification loop, scheduled jobs and WebSocket server."""
    from kanban_sync.agent.service import serve_forever

    logging.getLogger().setLevel(logging.INFO)
    try:
        asyncio.run(serve_forever(core))
    except KeyboardInterrupt:
        logger.info("Interrupted — goodbye")


@click.command()
@click.pass_obj
def status(core: SyncCore) -> None:
    """Show every user's history cursor, watch expiry and item counts."""
    users = core.db.list_users()
    if not users:
        console.print("[yellow]No users registered. Run `kanban-sync user add USER_ID ADDRESS`.[/yellow]")
        return

    table = Table(box=box.ROUNDED, show_header=True, header_style="bold cyan")
    table.add_column("User", max_width=24)
    table.add_column("Address", max_width=36)
    table.add_column("History cursor", width=16)
    table.add_column("Watch expires", width=20)
    table.add_column("Items", max_width=60)

    now = datetime.now(timezone.utc)
    for user in users:
        if user.watch_expiration is None:
            expires = "[dim]—[/dim]"
        elif user.watch_expiration <= now:
            expires = f"[red]{user.watch_expiration:%Y-%m-%d %H:%M}[/red]"
        else:
            expires = f"{user.watch_expiration:%Y-%m-%d %H:%M}"
        counts = core.db.count_emails_by_status(user.user_id)
        items = ", ".join(f"{name} {n}" for name, n in sorted(counts.items())) or "[dim]none[/dim]"
        table.add_row(
            user.user_id,
            user.mail_address,
            str(user.latest_history_id) if user.latest_history_id is not None else "[dim]unseeded[/dim]",
            expires,
            items,
        )

    console.print(table)


# ── Users and watches ──────────────────────────────────────────────────────────


@click.group()
def user() -> None:
    """Manage registered users."""


@user.command("add")
@click.argument("user_id")
@click.argument("address")
@click.pass_obj
def user_add(core: SyncCore, user_id: str, address: str) -> None:
    """Register USER_ID for mailbox ADDRESS and seed the default columns."""
    state = core.db.upsert_user(user_id, address)
    rules = core.db.ensure_default_rules(user_id)
    console.print(
        f"[green]✓[/green] {state.user_id} <{state.mail_address}> "
        f"with columns: {', '.join(r.status_value for r in rules)}"
    )


@click.group()
def watch() -> None:
    """Start or stop Gmail change notifications for a user."""


def _report_watch(result: WatchStatus, action: str, done: str) -> None:
    if result.ok:
        detail = f" (historyId {result.history_id})" if result.history_id is not None else ""
        console.print(f"[green]✓[/green] Watch {done} for {result.user_id}{detail}")
        return
    hint = " — safe to retry" if result.retryable else ""
    console.print(f"[red]Watch {action} failed for {result.user_id}: {result.error}{hint}[/red]")
    raise SystemExit(1)


@watch.command("start")
@click.argument("user_id")
@click.pass_obj
def watch_start(core: SyncCore, user_id: str) -> None:
    """Register a Gmail watch and seed the history cursor."""
    _require_user(core, user_id)
    _report_watch(asyncio.run(core.watch_manager.start(user_id)), "start", "started")


@watch.command("stop")
@click.argument("user_id")
@click.pass_obj
def watch_stop(core: SyncCore, user_id: str) -> None:
    """Cancel a user's Gmail watch."""
    _require_user(core, user_id)
    _report_watch(asyncio.run(core.watch_manager.stop(user_id)), "stop", "stopped")


# ── Items ──────────────────────────────────────────────────────────────────────


@click.command()
@click.pass_obj
def sweep(core: SyncCore) -> None:
    """Restore every expired snooze now."""
    restored = asyncio.run(core.sweeper.sweep())
    if not restored:
        console.print("No expired snoozes.")
        return
    for item in restored:
        console.print(f"  • {item.subject or '(no subject)'} → [bold]{item.workflow_status}[/bold]")
    console.print(f"[green]✓[/green] Restored {len(restored)} item(s)")


@click.command()
@click.argument("user_id")
@click.argument("message_id")
@click.argument("until", type=click.DateTime(formats=_DATETIME_FORMATS))
@click.pass_obj
def snooze(core: SyncCore, user_id: str, message_id: str, until: datetime) -> None:
    """Snooze MESSAGE_ID until UNTIL (UTC unless an offset is given)."""
    deadline = _as_utc(until)
    if deadline <= datetime.now(timezone.utc):
        raise click.BadParameter("snooze time must be in the future", param_hint="UNTIL")
    item = core.db.snooze_email(user_id, message_id, deadline)
    if item is None:
        raise click.ClickException(f"No message {message_id!r} for user {user_id!r}")
    console.print(f"[green]✓[/green] Snoozed {item.subject or message_id!r} until {deadline:%Y-%m-%d %H:%M} UTC")


@click.command()
@click.argument("user_id")
@click.argument("message_id")
@click.argument("status_value", metavar="STATUS")
@click.pass_obj
def move(core: SyncCore, user_id: str, message_id: str, status_value: str) -> None:
    """Move MESSAGE_ID to the column with STATUS. Clears any snooze."""
    if status_value == SNOOZED_STATUS:
        raise click.BadParameter("use `kanban-sync snooze` to snooze an item", param_hint="STATUS")
    rules = core.db.get_column_rules(user_id) or DEFAULT_COLUMN_RULES
    allowed = [r.status_value for r in sorted(rules, key=lambda r: r.order_index)]
    if status_value not in allowed:
        raise click.BadParameter(
            f"{status_value!r} is not one of {', '.join(allowed)}", param_hint="STATUS"
        )
    item = core.db.move_email(user_id, message_id, status_value)
    if item is None:
        raise click.ClickException(f"No message {message_id!r} for user {user_id!r}")
    console.print(f"[green]✓[/green] Moved {item.subject or message_id!r} to [bold]{status_value}[/bold]")
