"""Snooze expiry sweeper — returns items whose snooze has lapsed to the inbox column."""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, timezone

from kanban_sync.delivery.registry import ConnectionRegistry, DeliveryEvent
from kanban_sync.processing.workflow import DEFAULT_COLUMN_RULES, inbox_status
from kanban_sync.storage.db import SyncDatabase
from kanban_sync.storage.models import MailItem
from kanban_sync.sync.locks import UserLockRegistry

logger = logging.getLogger(__name__)


class SnoozeSweeper:
    """Finds expired snoozes and restores them, one compare-and-set per item.

    Restored items land in the user's inbox-equivalent column (the one fed by
    the ``INBOX`` label) whatever labels they carry. Each write is conditioned on
    the item still being snoozed, so a second sweep (or a user move in between)
    changes nothing.
    """

    def __init__(
        self,
        db: SyncDatabase,
        registry: ConnectionRegistry,
        locks: UserLockRegistry,
    ) -> None:
        self._db = db
        self._registry = registry
        self._locks = locks

    async def sweep(self, now: datetime | None = None) -> list[MailItem]:
        """Run one pass. Returns the items that were transitioned."""
        now = now or datetime.now(timezone.utc)
        expired = self._db.find_expired_snoozes(now)
        if not expired:
            return []

        logger.info("Found %d expired snooze(s)", len(expired))
        restored: list[MailItem] = []
        for item in expired:
            try:
                updated = await self._restore(item, now)
            except sqlite3.Error as exc:
                logger.error(
                    "Could not restore snoozed message %s for user %s: %s",
                    item.provider_message_id,
                    item.user_id,
                    exc,
                )
                continue
            if updated is not None:
                restored.append(updated)
                await self._registry.deliver(updated.user_id, DeliveryEvent.updated_email(updated))

        logger.info("Restored %d of %d expired snooze(s)", len(restored), len(expired))
        return restored

    async def _restore(self, item: MailItem, now: datetime) -> MailItem | None:
        async with self._locks.hold(item.user_id):
            rules = self._db.get_column_rules(item.user_id) or list(DEFAULT_COLUMN_RULES)
            status = inbox_status(rules)
            if not self._db.expire_snooze(item.user_id, item.provider_message_id, status, now):
                logger.debug(
                    "Snooze on %s for user %s already cleared", item.provider_message_id, item.user_id
                )
                return None
            return self._db.get_email(item.user_id, item.provider_message_id)
