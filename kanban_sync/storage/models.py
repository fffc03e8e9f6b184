"""SQLite table schemas and typed row types for the sync engine's storage layer."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

#: System column for snoozed items. Never produced by a column rule; only
#: explicit user action puts an item here and only the sweeper takes it out.
SNOOZED_STATUS = "snoozed"

#: Fallback mailbox hint when a message carries no recognisable system label.
DEFAULT_MAILBOX = "INBOX"


# ── DDL ────────────────────────────────────────────────────────────────────────

_CREATE_USERS = """
CREATE TABLE IF NOT EXISTS users (
    user_id            TEXT PRIMARY KEY,
    mail_address       TEXT NOT NULL UNIQUE,
    latest_history_id  TEXT,
    watch_expiration   TEXT,
    created_at         TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at         TEXT NOT NULL DEFAULT (datetime('now'))
)
"""

_CREATE_EMAILS = """
CREATE TABLE IF NOT EXISTS emails (
    id                   INTEGER PRIMARY KEY AUTOINCREMENT,
    provider_message_id  TEXT NOT NULL,
    user_id              TEXT NOT NULL,
    thread_id            TEXT NOT NULL DEFAULT '',
    subject              TEXT NOT NULL,
    sender               TEXT NOT NULL,
    recipients           TEXT NOT NULL DEFAULT '[]',
    cc                   TEXT NOT NULL DEFAULT '[]',
    body                 TEXT NOT NULL,
    preview              TEXT NOT NULL DEFAULT '',
    timestamp_utc        TEXT NOT NULL,
    labels               TEXT NOT NULL DEFAULT '[]',
    workflow_status      TEXT NOT NULL,
    snooze_until         TEXT,
    mailbox_hint         TEXT NOT NULL,
    is_read              INTEGER NOT NULL DEFAULT 0,
    is_starred           INTEGER NOT NULL DEFAULT 0,
    attachments          TEXT NOT NULL DEFAULT '[]',
    created_at           TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at           TEXT NOT NULL DEFAULT (datetime('now')),
    UNIQUE (provider_message_id, user_id),
    FOREIGN KEY (user_id) REFERENCES users(user_id)
)
"""

_CREATE_COLUMN_RULES = """
CREATE TABLE IF NOT EXISTS column_rules (
    user_id         TEXT NOT NULL,
    column_id       TEXT NOT NULL,
    title           TEXT NOT NULL DEFAULT '',
    status_value    TEXT NOT NULL,
    provider_label  TEXT,
    order_index     INTEGER NOT NULL,
    PRIMARY KEY (user_id, column_id),
    UNIQUE (user_id, order_index),
    FOREIGN KEY (user_id) REFERENCES users(user_id)
)
"""

_CREATE_EMAIL_STATUS_INDEX = """
CREATE INDEX IF NOT EXISTS ix_emails_user_status ON emails (user_id, workflow_status)
"""

_CREATE_SNOOZE_INDEX = """
CREATE INDEX IF NOT EXISTS ix_emails_snooze ON emails (workflow_status, snooze_until)
"""

#: All DDL statements in creation order (respects FK dependencies).
ALL_TABLES: list[str] = [
    _CREATE_USERS,
    _CREATE_EMAILS,
    _CREATE_COLUMN_RULES,
    _CREATE_EMAIL_STATUS_INDEX,
    _CREATE_SNOOZE_INDEX,
]


# ── Timestamps ─────────────────────────────────────────────────────────────────


def to_db_time(value: datetime) -> str:
    """Serialise a datetime as fixed-width UTC text so SQL string comparison orders correctly.

    Naive datetimes are taken to be UTC.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def from_db_time(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.strptime(value, "%Y-%m-%dT%H:%M:%S.%fZ").replace(tzinfo=timezone.utc)


# ── Row types ──────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class EmailAddress:
    """A single mailbox address, e.g. ``Alice <alice@example.com>``."""

    email: str
    name: str = ""

    def to_dict(self) -> dict[str, str]:
        return {"name": self.name, "email": self.email}


@dataclass(frozen=True)
class Attachment:
    """Attachment metadata only; content is downloaded on demand by the CRUD surface."""

    attachment_id: str
    filename: str
    mime_type: str
    size: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.attachment_id,
            "name": self.filename,
            "type": self.mime_type,
            "size": self.size,
        }


@dataclass(frozen=True)
class UserSyncState:
    """A row from the users table.

    ``latest_history_id`` is the history cursor: an arbitrary-precision integer,
    stored as decimal text and never compared as a string.
    """

    user_id: str
    mail_address: str
    latest_history_id: int | None = None
    watch_expiration: datetime | None = None


@dataclass(frozen=True)
class ColumnRule:
    """One kanban column and the provider label that feeds it (if any)."""

    column_id: str
    status_value: str
    provider_label: str | None
    order_index: int
    title: str = ""


@dataclass(frozen=True)
class MailItem:
    """An email as a kanban card.

    Built from the provider's wire format by ``gmail.parser.parse_message``; the
    ``workflow_status`` placeholder is replaced by the Workflow Mapper before the
    item is first persisted.
    """

    provider_message_id: str
    user_id: str
    subject: str
    sender: EmailAddress
    body: str
    timestamp_utc: datetime
    workflow_status: str
    mailbox_hint: str = DEFAULT_MAILBOX
    labels: frozenset[str] = field(default_factory=frozenset)
    recipients: tuple[EmailAddress, ...] = ()
    cc: tuple[EmailAddress, ...] = ()
    preview: str = ""
    thread_id: str = ""
    snooze_until: datetime | None = None
    is_read: bool = False
    is_starred: bool = False
    attachments: tuple[Attachment, ...] = ()

    @property
    def provider_link(self) -> str:
        return f"https://mail.google.com/mail/u/0/#inbox/{self.provider_message_id}"

    def to_payload(self) -> dict[str, Any]:
        """Client-facing JSON shape, as consumed by the kanban board."""
        return {
            "id": self.provider_message_id,
            "userId": self.user_id,
            "threadId": self.thread_id,
            "mailboxId": self.mailbox_hint,
            "from": self.sender.to_dict(),
            "to": [a.to_dict() for a in self.recipients],
            "cc": [a.to_dict() for a in self.cc],
            "subject": self.subject,
            "body": self.body,
            "preview": self.preview,
            "timestamp": self.timestamp_utc.isoformat(),
            "labels": sorted(self.labels),
            "isRead": self.is_read,
            "isStarred": self.is_starred,
            "attachments": [a.to_dict() for a in self.attachments],
            "status": self.workflow_status,
            "snoozeUntil": self.snooze_until.isoformat() if self.snooze_until else None,
            "gmailLink": self.provider_link,
        }
