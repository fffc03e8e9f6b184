"""Shared pytest fixtures."""

import base64
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest

from kanban_sync.storage.db import SyncDatabase


def _b64url(text: str) -> str:
    return base64.urlsafe_b64encode(text.encode("utf-8")).decode("ascii").rstrip("=")


@pytest.fixture
def db(tmp_path: Path) -> Iterator[SyncDatabase]:
    database = SyncDatabase(db_path=tmp_path / "test.db")
    yield database
    database.close()


@pytest.fixture
def make_gmail_message() -> Callable[..., dict[str, Any]]:
    """Factory for ``users.messages.get(format="full")`` resources."""

    def make(
        id: str = "msg_1",
        labels: list[str] | None = None,
        subject: str = "Q2 budget review",
        sender: str = "Alice Example <alice@example.com>",
        to: str = "bob@example.com",
        text: str = "Hi,\nplease review the figures.",
        html: str | None = None,
        date: str = "Fri, 27 Feb 2026 09:00:00 +0000",
    ) -> dict[str, Any]:
        parts = [{"mimeType": "text/plain", "body": {"data": _b64url(text)}}]
        if html is not None:
            parts.append({"mimeType": "text/html", "body": {"data": _b64url(html)}})
        return {
            "id": id,
            "threadId": f"thread_{id}",
            "labelIds": ["INBOX", "UNREAD"] if labels is None else labels,
            "snippet": "please review",
            "internalDate": "1772182800000",
            "payload": {
                "mimeType": "multipart/alternative",
                "headers": [
                    {"name": "Subject", "value": subject},
                    {"name": "From", "value": sender},
                    {"name": "To", "value": to},
                    {"name": "Date", "value": date},
                ],
                "parts": parts,
            },
        }

    return make
