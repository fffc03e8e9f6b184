"""Watch lifecycle — register, cancel and renew per-user Gmail push watches."""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from kanban_sync.gmail.client import GmailProvider, ProviderError
from kanban_sync.storage.db import SyncDatabase
from kanban_sync.sync.locks import UserLockRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WatchStatus:
    """Outcome of a watch call. Never raised: the login flow continues either way."""

    user_id: str
    ok: bool
    history_id: int | None = None
    expiration: datetime | None = None
    error: str | None = None
    retryable: bool = False


class WatchManager:
    """Starts and stops change notifications for a user's mailbox.

    ``start`` seeds the history cursor from the watch response only when the user
    has none, so re-registering (renewal, repeat login) never rewinds or skips
    ahead of mail that is still waiting to be synced.

    Usage::

        watches = WatchManager(db, provider, locks, topic_name="projects/p/topics/t")
        status = await watches.start("u1")
    """

    def __init__(
        self,
        db: SyncDatabase,
        provider: GmailProvider,
        locks: UserLockRegistry,
        topic_name: str,
        label_ids: list[str] | None = None,
    ) -> None:
        self._db = db
        self._provider = provider
        self._locks = locks
        self._topic_name = topic_name
        self._label_ids = list(label_ids) if label_ids else ["INBOX"]

    async def start(self, user_id: str) -> WatchStatus:
        try:
            known = self._db.get_user(user_id) is not None
        except sqlite3.Error as exc:
            logger.error("Could not look up user %s before starting a watch: %s", user_id, exc)
            return WatchStatus(user_id=user_id, ok=False, error=str(exc), retryable=True)
        if not known:
            logger.error("Cannot start Gmail watch for unregistered user %s", user_id)
            return WatchStatus(user_id=user_id, ok=False, error="user is not registered")

        try:
            registration = await self._provider.watch(user_id, self._topic_name, self._label_ids)
        except ProviderError as exc:
            logger.error("Failed to start Gmail watch for user %s: %s", user_id, exc)
            return WatchStatus(user_id=user_id, ok=False, error=str(exc), retryable=exc.retryable)
        except Exception as exc:
            logger.error("Unexpected error starting Gmail watch for user %s", user_id, exc_info=True)
            return WatchStatus(user_id=user_id, ok=False, error=repr(exc))

        try:
            async with self._locks.hold(user_id):
                if self._db.seed_cursor(user_id, registration.history_id):
                    logger.info(
                        "Seeded history cursor for user %s at %s", user_id, registration.history_id
                    )
                self._db.set_watch_expiration(user_id, registration.expiration)
        except sqlite3.Error as exc:
            logger.error("Gmail watch for user %s started but could not be recorded: %s", user_id, exc)
            return WatchStatus(
                user_id=user_id,
                ok=False,
                history_id=registration.history_id,
                expiration=registration.expiration,
                error=str(exc),
                retryable=True,
            )

        logger.info(
            "Gmail watch active for user %s (historyId=%s, expires %s)",
            user_id,
            registration.history_id,
            registration.expiration.isoformat() if registration.expiration else "unknown",
        )
        return WatchStatus(
            user_id=user_id,
            ok=True,
            history_id=registration.history_id,
            expiration=registration.expiration,
        )

    async def stop(self, user_id: str) -> WatchStatus:
        try:
            await self._provider.stop_watch(user_id)
        except ProviderError as exc:
            logger.error("Failed to stop Gmail watch for user %s: %s", user_id, exc)
            return WatchStatus(user_id=user_id, ok=False, error=str(exc), retryable=exc.retryable)
        except Exception as exc:
            logger.error("Unexpected error stopping Gmail watch for user %s", user_id, exc_info=True)
            return WatchStatus(user_id=user_id, ok=False, error=repr(exc))

        try:
            async with self._locks.hold(user_id):
                self._db.set_watch_expiration(user_id, None)
        except sqlite3.Error as exc:
            logger.error("Gmail watch for user %s stopped but could not be recorded: %s", user_id, exc)
            return WatchStatus(user_id=user_id, ok=False, error=str(exc), retryable=True)
        logger.info("Gmail watch stopped for user %s", user_id)
        return WatchStatus(user_id=user_id, ok=True)

    async def renew_expiring(
        self, within: timedelta = timedelta(hours=24), now: datetime | None = None
    ) -> list[WatchStatus]:
        """Re-register every watch lapsing within ``within`` of ``now``."""
        now = now or datetime.now(timezone.utc)
        due = self._db.users_with_expiring_watch(now + within)
        if not due:
            logger.debug("No Gmail watches due for renewal")
            return []

        logger.info("Renewing %d Gmail watch(es)", len(due))
        results = []
        for user in due:
            results.append(await self.start(user.user_id))
        failed = sum(1 for r in results if not r.ok)
        if failed:
            logger.warning("%d of %d watch renewal(s) failed", failed, len(results))
        return results
