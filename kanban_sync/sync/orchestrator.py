"""Sync orchestrator — turns one mailbox-change notification into ingested, mapped, delivered mail.

A pass for one user:

1. Resolve the user by mailbox address and load the history cursor. Unknown
   users and users whose watch was never seeded are dropped.
2. Drop the notification if its historyId is not newer than the cursor. This is
   the idempotency guard against redelivery and out-of-order arrival.
3. Fetch Gmail history for ``(cursor, historyId]``.
4. For each added message not already stored: fetch, convert, map to a workflow
   status, insert. Existing items are never touched, so manual moves survive.
5. Advance the cursor (compare-and-set) only after every record succeeded.
6. Fan the new items out to the user's live connections.

Passes for the same user are serialized through ``UserLockRegistry``; any failure
before step 5 leaves the cursor where it was so the redelivered notification
retries the whole range, and step 4's existence check makes the retry cheap.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, TypeVar

from kanban_sync.delivery.registry import ConnectionRegistry, DeliveryEvent
from kanban_sync.gmail.client import (
    GmailProvider,
    HistoryExpiredError,
    MessageNotFoundError,
    ProviderError,
)
from kanban_sync.gmail.parser import parse_message
from kanban_sync.notifications.base import Notification
from kanban_sync.processing.workflow import DEFAULT_COLUMN_RULES, map_status
from kanban_sync.storage.db import PersistenceConflictError, SyncDatabase
from kanban_sync.storage.models import ColumnRule, MailItem
from kanban_sync.sync.locks import UserLockRegistry

logger = logging.getLogger(__name__)

_T = TypeVar("_T")


class SyncOutcome(str, Enum):
    PROCESSED = "processed"
    STALE = "stale"
    UNKNOWN_USER = "unknown_user"
    RESET = "reset"  # history expired; cursor jumped forward


class SyncError(Exception):
    """A pass was aborted without advancing the cursor. The notification should be retried."""


@dataclass(frozen=True)
class SyncResult:
    """What a pass did. Every outcome that is returned (rather than raised) is acknowledgeable."""

    outcome: SyncOutcome
    user_id: str | None = None
    previous_history_id: int | None = None
    history_id: int | None = None
    created: tuple[MailItem, ...] = ()

    @property
    def acknowledge(self) -> bool:
        return True


def added_message_ids(history: Iterable[dict[str, Any]]) -> list[str]:
    """Message ids from ``messagesAdded`` records, first-seen order, no duplicates."""
    seen: set[str] = set()
    ids: list[str] = []
    for record in history:
        for added in record.get("messagesAdded", []):
            message_id = (added.get("message") or {}).get("id")
            if message_id and message_id not in seen:
                seen.add(message_id)
                ids.append(message_id)
    return ids


class SyncOrchestrator:
    """Runs incremental sync passes for all users, one pass per user at a time.

    Usage::

        orchestrator = SyncOrchestrator(db, provider, registry, locks)
        result = await orchestrator.handle(Notification("alice@example.com", 105))
    """

    def __init__(
        self,
        db: SyncDatabase,
        provider: GmailProvider,
        registry: ConnectionRegistry,
        locks: UserLockRegistry,
    ) -> None:
        self._db = db
        self._provider = provider
        self._registry = registry
        self._locks = locks

    async def handle(self, notification: Notification) -> SyncResult:
        """Process one notification.

        Raises:
            SyncError: if the pass was aborted and the notification must be redelivered.
        """
        user = self._db.get_user_by_address(notification.mail_address)
        if user is None:
            logger.warning(
                "Notification for unknown mailbox %s (historyId=%s); dropping",
                notification.mail_address,
                notification.history_id,
            )
            return SyncResult(outcome=SyncOutcome.UNKNOWN_USER, history_id=notification.history_id)

        created: list[MailItem] = []
        try:
            async with self._locks.hold(user.user_id):
                return await self._sync_user(user.user_id, notification.history_id, created)
        finally:
            # Delivered after the user lock is released.
            if created:
                await self._registry.deliver_many(
                    user.user_id, (DeliveryEvent.new_email(item) for item in created)
                )

    # ── Internal ───────────────────────────────────────────────────────────────

    async def _sync_user(
        self, user_id: str, new_history_id: int, created: list[MailItem]
    ) -> SyncResult:
        """Run one pass under the user's lock. Stored items are appended to ``created``."""
        # Re-read under the lock: a pass that held it before us may have moved it.
        cursor = self._db.get_cursor(user_id)
        if cursor is None:
            logger.warning("User %s has no history cursor (watch never seeded); dropping", user_id)
            return SyncResult(
                outcome=SyncOutcome.UNKNOWN_USER, user_id=user_id, history_id=new_history_id
            )

        if new_history_id <= cursor:
            logger.debug(
                "Stale notification for user %s: %s <= cursor %s", user_id, new_history_id, cursor
            )
            return SyncResult(
                outcome=SyncOutcome.STALE,
                user_id=user_id,
                previous_history_id=cursor,
                history_id=cursor,
            )

        logger.info("Syncing user %s history (%s, %s]", user_id, cursor, new_history_id)
        try:
            try:
                history = await self._provider.get_history(user_id, cursor, new_history_id)
            except HistoryExpiredError:
                logger.warning(
                    "History for user %s expired at %s; jumping cursor to %s "
                    "(mail in the gap is reconciled by the client read path)",
                    user_id,
                    cursor,
                    new_history_id,
                )
                self._commit_cursor(user_id, cursor, new_history_id)
                return SyncResult(
                    outcome=SyncOutcome.RESET,
                    user_id=user_id,
                    previous_history_id=cursor,
                    history_id=new_history_id,
                )

            rules = self._db.get_column_rules(user_id) or list(DEFAULT_COLUMN_RULES)
            for message_id in added_message_ids(history):
                item = await self._ingest(user_id, message_id, rules)
                if item is not None:
                    created.append(item)

            self._commit_cursor(user_id, cursor, new_history_id)
        except (ProviderError, PersistenceConflictError) as exc:
            logger.error(
                "Sync aborted for user %s at cursor %s (%d new item(s) kept): %s",
                user_id,
                cursor,
                len(created),
                exc,
            )
            raise SyncError(f"sync for user {user_id} aborted: {exc}") from exc

        logger.info(
            "User %s synced to %s: %d new item(s)", user_id, new_history_id, len(created)
        )
        return SyncResult(
            outcome=SyncOutcome.PROCESSED,
            user_id=user_id,
            previous_history_id=cursor,
            history_id=new_history_id,
            created=tuple(created),
        )

    async def _ingest(
        self, user_id: str, message_id: str, rules: list[ColumnRule]
    ) -> MailItem | None:
        """Store one message if it is new. Returns the stored item, or None if skipped."""
        if self._write(lambda: self._db.email_exists(user_id, message_id)):
            logger.debug("Message %s already stored for user %s; skipping", message_id, user_id)
            return None

        try:
            raw = await self._provider.get_message(user_id, message_id)
        except MessageNotFoundError:
            logger.warning("Message %s for user %s vanished before fetch; skipping", message_id, user_id)
            return None

        parsed = parse_message(raw, user_id)
        item = replace(
            parsed, workflow_status=map_status(rules, parsed.labels, parsed.mailbox_hint)
        )
        if not self._write(lambda: self._db.insert_email(item)):
            # Lost a race with another writer; theirs stands.
            return None
        logger.debug("Stored message %s for user %s as %r", message_id, user_id, item.workflow_status)
        return item

    def _commit_cursor(self, user_id: str, expected: int, new: int) -> None:
        """Advance the cursor, retrying once against a fresh read if another writer moved it."""
        if self._write(lambda: self._db.advance_cursor(user_id, expected, new)):
            return

        fresh = self._db.get_cursor(user_id)
        if fresh is not None and fresh >= new:
            logger.info("Cursor for user %s already at %s (>= %s)", user_id, fresh, new)
            return
        if fresh is None or not self._write(lambda: self._db.advance_cursor(user_id, fresh, new)):
            raise PersistenceConflictError(
                f"cursor for user {user_id} changed concurrently (expected {expected}, now {fresh})"
            )

    @staticmethod
    def _write(operation: Callable[[], _T]) -> _T:
        """Run a storage call, retrying once if SQLite reports contention."""
        try:
            return operation()
        except sqlite3.OperationalError as exc:
            logger.warning("Storage contention (%s); retrying once", exc)
        try:
            return operation()
        except sqlite3.OperationalError as exc:
            raise PersistenceConflictError(str(exc)) from exc
