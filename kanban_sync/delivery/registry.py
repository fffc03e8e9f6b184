"""Connection registry and per-user delivery fan-out."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from kanban_sync.storage.models import MailItem

logger = logging.getLogger(__name__)

EMAIL_NEW = "email:new"
EMAIL_UPDATED = "email:updated"


@dataclass(frozen=True)
class DeliveryEvent:
    """One message for a client: ``{"type": ..., "payload": ...}`` on the wire."""

    type: str
    payload: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def new_email(cls, item: MailItem) -> DeliveryEvent:
        return cls(type=EMAIL_NEW, payload=item.to_payload())

    @classmethod
    def updated_email(cls, item: MailItem) -> DeliveryEvent:
        return cls(type=EMAIL_UPDATED, payload=item.to_payload())

    def to_message(self) -> dict[str, Any]:
        return {"type": self.type, "payload": self.payload}


@runtime_checkable
class Connection(Protocol):
    """Anything that can push JSON to one client (a FastAPI WebSocket satisfies this)."""

    async def send_json(self, data: Any) -> None:
        ...


class ConnectionRegistry:
    """Tracks live client connections per user and fans events out to them.

    Process-local and non-durable: a client that was offline when an event was
    delivered reconciles through the CRUD read path on reconnect. All mutation
    goes through this class under its own lock.
    """

    def __init__(self) -> None:
        self._connections: dict[str, set[Connection]] = {}
        self._lock = asyncio.Lock()

    async def register(self, user_id: str, connection: Connection) -> None:
        async with self._lock:
            self._connections.setdefault(user_id, set()).add(connection)
            count = len(self._connections[user_id])
        logger.info("Client connected: user=%s (%d live)", user_id, count)

    async def unregister(self, user_id: str, connection: Connection) -> bool:
        """Remove a connection. Returns False if it was not registered."""
        async with self._lock:
            connections = self._connections.get(user_id)
            if connections is None or connection not in connections:
                return False
            connections.discard(connection)
            if not connections:
                del self._connections[user_id]
        logger.info("Client disconnected: user=%s", user_id)
        return True

    def connection_count(self, user_id: str) -> int:
        return len(self._connections.get(user_id, ()))

    @property
    def user_count(self) -> int:
        return len(self._connections)

    async def deliver(self, user_id: str, event: DeliveryEvent) -> int:
        """Send an event to every live connection of ``user_id``.

        Returns how many connections received it. With none registered the event
        is dropped. A connection whose send fails is unregistered.
        """
        async with self._lock:
            targets = list(self._connections.get(user_id, ()))
        if not targets:
            logger.debug("No live connection for user %s; dropping %s", user_id, event.type)
            return 0

        message = event.to_message()
        results = await asyncio.gather(
            *(conn.send_json(message) for conn in targets), return_exceptions=True
        )
        delivered = 0
        for conn, result in zip(targets, results):
            if isinstance(result, BaseException):
                logger.warning(
                    "Send to user %s failed (%s); dropping stale connection", user_id, result
                )
                await self.unregister(user_id, conn)
            else:
                delivered += 1
        return delivered

    async def deliver_many(self, user_id: str, events: Iterable[DeliveryEvent]) -> int:
        """Deliver a batch of events for one user, in order."""
        total = 0
        for event in events:
            total += await self.deliver(user_id, event)
        return total
