"""PUSH notification strategy. Declared for configuration parity; not implemented yet."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from kanban_sync.notifications.base import EnvelopeError, NotificationType, parse_envelope
from kanban_sync.sync.watch import WatchStatus

logger = logging.getLogger(__name__)

_NOT_IMPLEMENTED = "push notifications are not implemented"


class PushStrategy:
    """Placeholder for webhook-driven delivery.

    Every operation logs that push is not implemented. Webhook notifications are
    parsed (so malformed bodies still show up in the log) but never processed or
    acknowledged, leaving them with Pub/Sub.
    """

    kind = NotificationType.PUSH

    def __init__(self) -> None:
        self._stop_event = asyncio.Event()

    async def start(self, user_id: str) -> WatchStatus:
        logger.warning("Cannot start watch for user %s: %s", user_id, _NOT_IMPLEMENTED)
        return WatchStatus(user_id=user_id, ok=False, error=_NOT_IMPLEMENTED)

    async def stop(self, user_id: str) -> WatchStatus:
        logger.warning("Cannot stop watch for user %s: %s", user_id, _NOT_IMPLEMENTED)
        return WatchStatus(user_id=user_id, ok=False, error=_NOT_IMPLEMENTED)

    async def handle_notification(self, data: bytes | str | dict[str, Any]) -> bool:
        try:
            notification = parse_envelope(data)
        except EnvelopeError as exc:
            logger.warning("Malformed push notification: %s", exc)
            return False
        logger.warning(
            "Push notification for %s (historyId=%s) ignored: %s",
            notification.mail_address,
            notification.history_id,
            _NOT_IMPLEMENTED,
        )
        return False

    async def run(self) -> None:
        """Nothing to pull; idles until ``stop_listening``."""
        logger.info("Push strategy selected: %s", _NOT_IMPLEMENTED)
        await self._stop_event.wait()

    def stop_listening(self) -> None:
        self._stop_event.set()
