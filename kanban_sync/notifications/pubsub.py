"""Pub/Sub subscription client — pull and acknowledge over the REST discovery API."""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

import google.auth
import httplib2
from google.auth.exceptions import GoogleAuthError
from google.oauth2 import service_account
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

logger = logging.getLogger(__name__)

PUBSUB_SCOPES = ["https://www.googleapis.com/auth/pubsub"]


class SubscriptionError(Exception):
    """Raised when a pull or acknowledge call fails."""


@dataclass(frozen=True)
class ReceivedMessage:
    ack_id: str
    data: bytes
    message_id: str = ""


def load_pubsub_credentials(service_account_key: str = "") -> Any:
    """Credentials for Pub/Sub: inline service-account JSON if given, else ADC."""
    if service_account_key:
        info = json.loads(service_account_key)
        return service_account.Credentials.from_service_account_info(info, scopes=PUBSUB_SCOPES)
    credentials, _project = google.auth.default(scopes=PUBSUB_SCOPES)
    return credentials


def decode_push_data(data: str | None) -> bytes:
    """Decode the base64 ``message.data`` field of a Pub/Sub message."""
    if not data:
        return b""
    try:
        return base64.b64decode(data)
    except (binascii.Error, ValueError):
        logger.warning("Pub/Sub message data is not valid base64")
        return b""


class SubscriptionClient:
    """Synchronous-pull client for one subscription.

    Usage::

        client = SubscriptionClient("projects/p/subscriptions/s", credentials)
        for message in await client.pull(10):
            ...
        await client.acknowledge([m.ack_id for m in messages])
    """

    def __init__(
        self,
        subscription_path: str,
        credentials: Any = None,
        service_factory: Callable[[], Any] | None = None,
    ) -> None:
        self.subscription_path = subscription_path
        self._credentials = credentials
        self._service_factory = service_factory or self._build_service

    def _build_service(self) -> Any:
        return build("pubsub", "v1", credentials=self._credentials, cache_discovery=False)

    async def pull(self, max_messages: int = 10) -> list[ReceivedMessage]:
        """Long-poll for up to ``max_messages``. Returns an empty list when idle."""
        response = await self._execute(
            "pull",
            lambda subs: subs.pull(
                subscription=self.subscription_path, body={"maxMessages": max_messages}
            ),
        )
        messages = []
        for received in response.get("receivedMessages", []):
            message = received.get("message", {})
            messages.append(
                ReceivedMessage(
                    ack_id=received["ackId"],
                    data=decode_push_data(message.get("data")),
                    message_id=message.get("messageId", ""),
                )
            )
        return messages

    async def acknowledge(self, ack_ids: Sequence[str]) -> None:
        if not ack_ids:
            return
        await self._execute(
            "acknowledge",
            lambda subs: subs.acknowledge(
                subscription=self.subscription_path, body={"ackIds": list(ack_ids)}
            ),
        )

    async def _execute(self, operation: str, make_request: Callable[[Any], Any]) -> dict[str, Any]:
        try:
            subscriptions = self._service_factory().projects().subscriptions()
            response = await asyncio.to_thread(make_request(subscriptions).execute)
        except HttpError as exc:
            status = exc.resp.status if exc.resp is not None else "?"
            raise SubscriptionError(
                f"Pub/Sub {operation} on {self.subscription_path} failed: HTTP {status}"
            ) from exc
        except (GoogleAuthError, httplib2.HttpLib2Error, OSError) as exc:
            raise SubscriptionError(
                f"Pub/Sub {operation} on {self.subscription_path} failed: {exc}"
            ) from exc
        return response or {}
