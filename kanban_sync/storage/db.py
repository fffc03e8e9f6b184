"""SQLite structured storage — user sync state, mail items, and column rules."""

import json
import logging
import sqlite3
from collections.abc import Sequence
from datetime import datetime
from pathlib import Path

from kanban_sync.processing.workflow import DEFAULT_COLUMN_RULES, validate_rules
from kanban_sync.storage.models import (
    ALL_TABLES,
    SNOOZED_STATUS,
    Attachment,
    ColumnRule,
    EmailAddress,
    MailItem,
    UserSyncState,
    from_db_time,
    to_db_time,
)

logger = logging.getLogger(__name__)

_DEFAULT_DB_PATH = Path("data/kanban_sync.db")

_EMAIL_COLUMNS = """provider_message_id, user_id, thread_id, subject, sender, recipients,
                    cc, body, preview, timestamp_utc, labels, workflow_status,
                    snooze_until, mailbox_hint, is_read, is_starred, attachments"""


class PersistenceConflictError(Exception):
    """Raised when a conditional write keeps losing to a concurrent writer."""


class SyncDatabase:
    """Wraps SQLite for the cursor store, mail items and per-user column rules.

    Designed for single-threaded use from an async event loop — all calls are
    synchronous/blocking but short. Writes that race with other writers (cursor
    advance, snooze expiry) are compare-and-set updates and report whether they
    took effect instead of raising.

    Usage::

        db = SyncDatabase()
        db.upsert_user("u1", "alice@example.com")
        cursor = db.get_cursor("u1")
    """

    def __init__(self, db_path: str | Path = _DEFAULT_DB_PATH) -> None:
        self._path = Path(db_path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self._path))
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._create_tables()

    def close(self) -> None:
        """Close the underlying database connection."""
        self._conn.close()

    # ── Users & cursor ──────────────────────────────────────────────────────────

    def upsert_user(self, user_id: str, mail_address: str) -> UserSyncState:
        """Create the user, or update their address. Never touches the cursor."""
        with self._conn:
            self._conn.execute(
                """
                INSERT INTO users (user_id, mail_address) VALUES (?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    mail_address = excluded.mail_address,
                    updated_at   = datetime('now')
                """,
                (user_id, mail_address.strip().lower()),
            )
        user = self.get_user(user_id)
        assert user is not None
        return user

    def get_user(self, user_id: str) -> UserSyncState | None:
        row = self._conn.execute(
            "SELECT user_id, mail_address, latest_history_id, watch_expiration "
            "FROM users WHERE user_id = ?",
            (user_id,),
        ).fetchone()
        return _row_to_user(row) if row else None

    def get_user_by_address(self, mail_address: str) -> UserSyncState | None:
        """Look a user up by mailbox address (case-insensitive)."""
        row = self._conn.execute(
            "SELECT user_id, mail_address, latest_history_id, watch_expiration "
            "FROM users WHERE mail_address = ?",
            (mail_address.strip().lower(),),
        ).fetchone()
        return _row_to_user(row) if row else None

    def list_users(self) -> list[UserSyncState]:
        rows = self._conn.execute(
            "SELECT user_id, mail_address, latest_history_id, watch_expiration "
            "FROM users ORDER BY user_id"
        ).fetchall()
        return [_row_to_user(r) for r in rows]

    def get_cursor(self, user_id: str) -> int | None:
        """Return the user's history cursor, or None if the watch was never seeded."""
        row = self._conn.execute(
            "SELECT latest_history_id FROM users WHERE user_id = ?", (user_id,)
        ).fetchone()
        if row is None or row["latest_history_id"] is None:
            return None
        return int(row["latest_history_id"])

    def seed_cursor(self, user_id: str, history_id: int) -> bool:
        """Set the cursor only if the user has none. Returns True if it was set."""
        with self._conn:
            cur = self._conn.execute(
                """
                UPDATE users SET latest_history_id = ?, updated_at = datetime('now')
                WHERE user_id = ? AND latest_history_id IS NULL
                """,
                (str(history_id), user_id),
            )
        return cur.rowcount == 1

    def advance_cursor(self, user_id: str, expected: int, new: int) -> bool:
        """Compare-and-set the cursor from ``expected`` to ``new``.

        Returns False if the stored cursor is no longer ``expected`` (another
        writer got there first); the caller decides whether to re-read and retry.

        Raises:
            ValueError: if ``new`` is lower than ``expected``.
        """
        if new < expected:
            raise ValueError(f"history cursor must not move backwards ({expected} -> {new})")
        with self._conn:
            cur = self._conn.execute(
                """
                UPDATE users SET latest_history_id = ?, updated_at = datetime('now')
                WHERE user_id = ? AND latest_history_id = ?
                """,
                (str(new), user_id, str(expected)),
            )
        return cur.rowcount == 1

    def set_watch_expiration(self, user_id: str, expiration: datetime | None) -> None:
        with self._conn:
            self._conn.execute(
                "UPDATE users SET watch_expiration = ?, updated_at = datetime('now') "
                "WHERE user_id = ?",
                (to_db_time(expiration) if expiration else None, user_id),
            )

    def users_with_expiring_watch(self, before: datetime) -> list[UserSyncState]:
        """Return watched users whose registration lapses before ``before`` (or is unknown)."""
        rows = self._conn.execute(
            """
            SELECT user_id, mail_address, latest_history_id, watch_expiration
            FROM users
            WHERE latest_history_id IS NOT NULL
              AND (watch_expiration IS NULL OR watch_expiration <= ?)
            ORDER BY user_id
            """,
            (to_db_time(before),),
        ).fetchall()
        return [_row_to_user(r) for r in rows]

    # ── Column rules ────────────────────────────────────────────────────────────

    def get_column_rules(self, user_id: str) -> list[ColumnRule]:
        """Return the user's rules in ``order_index`` order (empty if none stored)."""
        rows = self._conn.execute(
            "SELECT column_id, title, status_value, provider_label, order_index "
            "FROM column_rules WHERE user_id = ? ORDER BY order_index",
            (user_id,),
        ).fetchall()
        return [ColumnRule(**dict(r)) for r in rows]

    def set_column_rules(self, user_id: str, rules: Sequence[ColumnRule]) -> None:
        """Replace the user's rule set atomically.

        Raises:
            ColumnRuleError: if the rule set breaks the column constraints.
        """
        validate_rules(rules)
        with self._conn:
            self._conn.execute("DELETE FROM column_rules WHERE user_id = ?", (user_id,))
            self._conn.executemany(
                """
                INSERT INTO column_rules
                    (user_id, column_id, title, status_value, provider_label, order_index)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                [
                    (user_id, r.column_id, r.title, r.status_value, r.provider_label, r.order_index)
                    for r in rules
                ],
            )

    def ensure_default_rules(self, user_id: str) -> list[ColumnRule]:
        """Seed the default columns for a user who has none; return the effective rules."""
        rules = self.get_column_rules(user_id)
        if rules:
            return rules
        self.set_column_rules(user_id, DEFAULT_COLUMN_RULES)
        logger.info("Seeded default column rules for user %s", user_id)
        return list(DEFAULT_COLUMN_RULES)

    # ── Mail items ──────────────────────────────────────────────────────────────

    def email_exists(self, user_id: str, provider_message_id: str) -> bool:
        return self._conn.execute(
            "SELECT 1 FROM emails WHERE user_id = ? AND provider_message_id = ?",
            (user_id, provider_message_id),
        ).fetchone() is not None

    def insert_email(self, item: MailItem) -> bool:
        """Insert a new item. Returns False (and changes nothing) if it already exists."""
        with self._conn:
            cur = self._conn.execute(
                f"""
                INSERT INTO emails ({_EMAIL_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(provider_message_id, user_id) DO NOTHING
                """,
                _item_to_params(item),
            )
        return cur.rowcount == 1

    def get_email(self, user_id: str, provider_message_id: str) -> MailItem | None:
        row = self._conn.execute(
            f"SELECT {_EMAIL_COLUMNS} FROM emails "
            "WHERE user_id = ? AND provider_message_id = ?",
            (user_id, provider_message_id),
        ).fetchone()
        return _row_to_item(row) if row else None

    def list_emails(self, user_id: str, status: str | None = None) -> list[MailItem]:
        """Return the user's items, newest first, optionally filtered by status."""
        sql = f"SELECT {_EMAIL_COLUMNS} FROM emails WHERE user_id = ?"
        params: tuple[str, ...] = (user_id,)
        if status is not None:
            sql += " AND workflow_status = ?"
            params += (status,)
        rows = self._conn.execute(sql + " ORDER BY timestamp_utc DESC", params).fetchall()
        return [_row_to_item(r) for r in rows]

    def count_emails_by_status(self, user_id: str) -> dict[str, int]:
        rows = self._conn.execute(
            "SELECT workflow_status, COUNT(*) AS n FROM emails "
            "WHERE user_id = ? GROUP BY workflow_status",
            (user_id,),
        ).fetchall()
        return {r["workflow_status"]: r["n"] for r in rows}

    def move_email(self, user_id: str, provider_message_id: str, status: str) -> MailItem | None:
        """Explicit user move to a non-snoozed column. Clears any snooze deadline.

        Returns the updated item, or None if it does not exist.
        """
        if status == SNOOZED_STATUS:
            raise ValueError("use snooze_email() to snooze an item")
        with self._conn:
            cur = self._conn.execute(
                """
                UPDATE emails SET workflow_status = ?, snooze_until = NULL,
                                  updated_at = datetime('now')
                WHERE user_id = ? AND provider_message_id = ?
                """,
                (status, user_id, provider_message_id),
            )
        if cur.rowcount == 0:
            return None
        return self.get_email(user_id, provider_message_id)

    def snooze_email(
        self, user_id: str, provider_message_id: str, until: datetime
    ) -> MailItem | None:
        """Explicit user snooze. Returns the updated item, or None if it does not exist."""
        with self._conn:
            cur = self._conn.execute(
                """
                UPDATE emails SET workflow_status = ?, snooze_until = ?,
                                  updated_at = datetime('now')
                WHERE user_id = ? AND provider_message_id = ?
                """,
                (SNOOZED_STATUS, to_db_time(until), user_id, provider_message_id),
            )
        if cur.rowcount == 0:
            return None
        return self.get_email(user_id, provider_message_id)

    def find_expired_snoozes(self, now: datetime) -> list[MailItem]:
        """Return snoozed items whose deadline is at or before ``now``, oldest deadline first."""
        rows = self._conn.execute(
            f"""
            SELECT {_EMAIL_COLUMNS} FROM emails
            WHERE workflow_status = ? AND snooze_until IS NOT NULL AND snooze_until <= ?
            ORDER BY snooze_until
            """,
            (SNOOZED_STATUS, to_db_time(now)),
        ).fetchall()
        return [_row_to_item(r) for r in rows]

    def expire_snooze(
        self, user_id: str, provider_message_id: str, status: str, now: datetime
    ) -> bool:
        """Compare-and-set an expired snooze back to ``status``.

        Only applies while the item is still snoozed with a deadline at or before
        ``now``; a concurrent user move makes this a no-op. Returns True if applied.
        """
        with self._conn:
            cur = self._conn.execute(
                """
                UPDATE emails SET workflow_status = ?, snooze_until = NULL,
                                  updated_at = datetime('now')
                WHERE user_id = ? AND provider_message_id = ?
                  AND workflow_status = ?
                  AND snooze_until IS NOT NULL AND snooze_until <= ?
                """,
                (status, user_id, provider_message_id, SNOOZED_STATUS, to_db_time(now)),
            )
        return cur.rowcount == 1

    # ── Private ─────────────────────────────────────────────────────────────────

    def _create_tables(self) -> None:
        with self._conn:
            for ddl in ALL_TABLES:
                self._conn.execute(ddl)


def _row_to_user(row: sqlite3.Row) -> UserSyncState:
    raw_cursor = row["latest_history_id"]
    return UserSyncState(
        user_id=row["user_id"],
        mail_address=row["mail_address"],
        latest_history_id=int(raw_cursor) if raw_cursor is not None else None,
        watch_expiration=from_db_time(row["watch_expiration"]),
    )


def _item_to_params(item: MailItem) -> tuple[object, ...]:
    return (
        item.provider_message_id,
        item.user_id,
        item.thread_id,
        item.subject,
        json.dumps(item.sender.to_dict()),
        json.dumps([a.to_dict() for a in item.recipients]),
        json.dumps([a.to_dict() for a in item.cc]),
        item.body,
        item.preview,
        to_db_time(item.timestamp_utc),
        json.dumps(sorted(item.labels)),
        item.workflow_status,
        to_db_time(item.snooze_until) if item.snooze_until else None,
        item.mailbox_hint,
        int(item.is_read),
        int(item.is_starred),
        json.dumps([a.to_dict() for a in item.attachments]),
    )


def _address(data: dict[str, str]) -> EmailAddress:
    return EmailAddress(email=data.get("email", ""), name=data.get("name", ""))


def _row_to_item(row: sqlite3.Row) -> MailItem:
    timestamp = from_db_time(row["timestamp_utc"])
    assert timestamp is not None
    return MailItem(
        provider_message_id=row["provider_message_id"],
        user_id=row["user_id"],
        thread_id=row["thread_id"],
        subject=row["subject"],
        sender=_address(json.loads(row["sender"])),
        recipients=tuple(_address(a) for a in json.loads(row["recipients"])),
        cc=tuple(_address(a) for a in json.loads(row["cc"])),
        body=row["body"],
        preview=row["preview"],
        timestamp_utc=timestamp,
        labels=frozenset(json.loads(row["labels"])),
        workflow_status=row["workflow_status"],
        snooze_until=from_db_time(row["snooze_until"]),
        mailbox_hint=row["mailbox_hint"],
        is_read=bool(row["is_read"]),
        is_starred=bool(row["is_starred"]),
        attachments=tuple(
            Attachment(
                attachment_id=a["id"],
                filename=a["name"],
                mime_type=a["type"],
                size=int(a["size"]),
            )
            for a in json.loads(row["attachments"])
        ),
    )
