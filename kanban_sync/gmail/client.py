"""Gmail API client — watch registration, history and message fetch behind a typed async API."""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

import httplib2
from google.auth.exceptions import RefreshError, TransportError
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

logger = logging.getLogger(__name__)

SCOPES = [
    "https://www.googleapis.com/auth/gmail.readonly",
    "https://www.googleapis.com/auth/gmail.modify",
]

# Gmail caps history.list pages at 500 records.
_HISTORY_PAGE_SIZE = 500


class ProviderError(Exception):
    """Raised when a Gmail API call fails.

    ``retryable`` is True for network failures, rate limiting and 5xx responses:
    the same request is expected to succeed later.
    """

    def __init__(self, message: str, *, status: int | None = None, retryable: bool = True) -> None:
        super().__init__(message)
        self.status = status
        self.retryable = retryable


class HistoryExpiredError(ProviderError):
    """The start historyId is older than Gmail's retained history (HTTP 404)."""


class MessageNotFoundError(ProviderError):
    """The message was deleted between the history record and the fetch (HTTP 404)."""


@dataclass(frozen=True)
class WatchRegistration:
    """Response of ``users.watch``: the baseline cursor and when the watch lapses."""

    history_id: int
    expiration: datetime | None = None


class CredentialSource(Protocol):
    """Supplies a valid Gmail credential per user. Refresh is the source's concern."""

    def credentials_for(self, user_id: str) -> Credentials:
        ...


class TokenFileCredentials:
    """Loads authorized-user token files written by the login flow: ``<token_dir>/<user_id>.json``."""

    def __init__(self, token_dir: str | Path) -> None:
        self._token_dir = Path(token_dir)

    def credentials_for(self, user_id: str) -> Credentials:
        path = self._token_dir / f"{user_id}.json"
        if not path.exists():
            raise ProviderError(f"No Gmail token for user {user_id} at {path}", retryable=False)
        return Credentials.from_authorized_user_file(str(path), SCOPES)


def _build_gmail(credentials: Credentials) -> Any:
    return build("gmail", "v1", credentials=credentials, cache_discovery=False)


class GmailProvider:
    """Thin async wrapper around the Gmail v1 REST API for many users.

    The discovery client is blocking, so every ``execute()`` runs in a worker
    thread. A fresh service object is built per call: googleapiclient's HTTP
    transport is not safe to share across threads.

    Usage::

        provider = GmailProvider(TokenFileCredentials("data/tokens"))
        history = await provider.get_history("u1", start_history_id=100, end_history_id=105)
    """

    def __init__(
        self,
        credentials: CredentialSource,
        service_factory: Callable[[Credentials], Any] | None = None,
    ) -> None:
        self._credentials = credentials
        self._service_factory = service_factory or _build_gmail

    # ── Public API ─────────────────────────────────────────────────────────────

    async def watch(self, user_id: str, topic_name: str, label_ids: list[str]) -> WatchRegistration:
        """Register push notifications for the user's mailbox on a Pub/Sub topic."""
        body = {"topicName": topic_name, "labelIds": label_ids, "labelFilterBehavior": "include"}
        response = await self._execute(
            user_id,
            "users.watch",
            lambda service: service.users().watch(userId="me", body=body),
        )
        try:
            expiration_ms = response.get("expiration")
            expiration = (
                datetime.fromtimestamp(int(expiration_ms) / 1000, tz=timezone.utc)
                if expiration_ms
                else None
            )
            return WatchRegistration(history_id=int(response["historyId"]), expiration=expiration)
        except (AttributeError, KeyError, TypeError, ValueError, OverflowError, OSError) as exc:
            raise ProviderError(
                f"users.watch for {user_id} returned an unusable response: {exc!r}",
                retryable=False,
            ) from exc

    async def stop_watch(self, user_id: str) -> None:
        """Cancel the user's watch. Gmail treats stopping an absent watch as success."""
        await self._execute(
            user_id, "users.stop", lambda service: service.users().stop(userId="me")
        )

    async def get_history(
        self,
        user_id: str,
        start_history_id: int,
        end_history_id: int | None = None,
    ) -> list[dict[str, Any]]:
        """Return ``messageAdded`` history records in ``(start, end]``, following pagination.

        Records newer than ``end_history_id`` are dropped: they belong to a later
        notification's range.

        Raises:
            HistoryExpiredError: if Gmail no longer retains history at ``start_history_id``.
            ProviderError: for any other API failure.
        """
        records: list[dict[str, Any]] = []
        page_token: str | None = None
        while True:
            params: dict[str, Any] = {
                "userId": "me",
                "startHistoryId": str(start_history_id),
                "historyTypes": ["messageAdded"],
                "maxResults": _HISTORY_PAGE_SIZE,
            }
            if page_token:
                params["pageToken"] = page_token
            try:
                response = await self._execute(
                    user_id,
                    "history.list",
                    lambda service, p=params: service.users().history().list(**p),
                )
            except ProviderError as exc:
                if exc.status == 404:
                    raise HistoryExpiredError(
                        f"History for user {user_id} no longer available at {start_history_id}",
                        status=404,
                        retryable=False,
                    ) from exc
                raise

            records.extend(response.get("history", []))
            page_token = response.get("nextPageToken")
            if not page_token:
                break

        if end_history_id is not None:
            records = [r for r in records if int(r.get("id", 0)) <= end_history_id]
        logger.debug(
            "history.list user=%s start=%s end=%s → %d record(s)",
            user_id, start_history_id, end_history_id, len(records),
        )
        return records

    async def get_message(self, user_id: str, message_id: str) -> dict[str, Any]:
        """Return the full message resource (headers, MIME tree, labels).

        Raises:
            MessageNotFoundError: if the message no longer exists.
            ProviderError: for any other API failure.
        """
        try:
            return await self._execute(
                user_id,
                "messages.get",
                lambda service: service.users().messages().get(
                    userId="me", id=message_id, format="full"
                ),
            )
        except ProviderError as exc:
            if exc.status == 404:
                raise MessageNotFoundError(
                    f"Message {message_id} for user {user_id} not found",
                    status=404,
                    retryable=False,
                ) from exc
            raise

    # ── Internal helpers ───────────────────────────────────────────────────────

    async def _execute(
        self,
        user_id: str,
        operation: str,
        make_request: Callable[[Any], Any],
    ) -> dict[str, Any]:
        """Build and execute one API request off the event loop, mapping failures to ProviderError."""
        try:
            service = self._service_factory(self._credentials.credentials_for(user_id))
            request = make_request(service)
            response = await asyncio.to_thread(request.execute)
        except ProviderError:
            raise
        except HttpError as exc:
            status = int(exc.resp.status) if exc.resp is not None else None
            retryable = status is None or status == 429 or status >= 500
            raise ProviderError(
                f"Gmail {operation} failed for user {user_id}: HTTP {status}",
                status=status,
                retryable=retryable,
            ) from exc
        except RefreshError as exc:
            raise ProviderError(
                f"Gmail credential for user {user_id} could not be refreshed",
                retryable=False,
            ) from exc
        except (TransportError, httplib2.HttpLib2Error, OSError) as exc:
            raise ProviderError(f"Gmail {operation} failed for user {user_id}: {exc}") from exc

        logger.debug("Gmail %s ok for user %s", operation, user_id)
        return response or {}
