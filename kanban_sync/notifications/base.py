"""Notification strategy interface and the Gmail change-notification envelope."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from kanban_sync.gmail.parser import parse_history_id

if TYPE_CHECKING:
    from kanban_sync.sync.watch import WatchStatus

logger = logging.getLogger(__name__)


class NotificationType(str, Enum):
    """How mailbox-change notifications reach the service."""

    PULL = "PULL"
    PUSH = "PUSH"


class EnvelopeError(ValueError):
    """Raised when a queue message is not a valid ``{emailAddress, historyId}`` envelope."""


@dataclass(frozen=True)
class Notification:
    """A parsed "your mailbox changed" event. Transient; never persisted."""

    mail_address: str
    history_id: int


def parse_envelope(data: bytes | str | dict[str, Any]) -> Notification:
    """Parse the JSON body Gmail publishes to the topic.

    Raises:
        EnvelopeError: on undecodable bytes, invalid JSON, a missing address, or a
            historyId that is not a decimal integer.
    """
    if isinstance(data, bytes):
        try:
            data = data.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise EnvelopeError("envelope is not UTF-8") from exc
    if isinstance(data, str):
        try:
            data = json.loads(data)
        except json.JSONDecodeError as exc:
            raise EnvelopeError(f"envelope is not JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise EnvelopeError(f"envelope must be a JSON object, got {type(data).__name__}")

    address = data.get("emailAddress")
    if not isinstance(address, str) or not address.strip():
        raise EnvelopeError("envelope has no emailAddress")
    try:
        history_id = parse_history_id(data.get("historyId"))
    except ValueError as exc:
        raise EnvelopeError(str(exc)) from exc

    return Notification(mail_address=address.strip().lower(), history_id=history_id)


@runtime_checkable
class NotificationStrategy(Protocol):
    """One way of receiving mailbox-change notifications.

    ``start``/``stop`` manage a user's provider-side registration; ``run`` is the
    long-lived receive loop and returns after ``stop_listening`` once in-flight
    work has drained.
    """

    kind: NotificationType

    async def start(self, user_id: str) -> WatchStatus:
        ...

    async def stop(self, user_id: str) -> WatchStatus:
        ...

    async def handle_notification(self, data: bytes | str | dict[str, Any]) -> bool:
        """Process one notification. Returns True if it may be acknowledged."""
        ...

    async def run(self) -> None:
        ...

    def stop_listening(self) -> None:
        ...
