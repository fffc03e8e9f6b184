"""Tests for SyncOrchestrator — real SQLite and registry, Gmail provider mocked."""

import asyncio
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from kanban_sync.delivery.registry import EMAIL_NEW, ConnectionRegistry
from kanban_sync.gmail.client import HistoryExpiredError, MessageNotFoundError, ProviderError
from kanban_sync.notifications.base import Notification
from kanban_sync.storage.db import SyncDatabase
from kanban_sync.storage.models import ColumnRule
from kanban_sync.sync.locks import UserLockRegistry
from kanban_sync.sync.orchestrator import (
    SyncError,
    SyncOrchestrator,
    SyncOutcome,
    added_message_ids,
)


# ── Helpers ────────────────────────────────────────────────────────────────────


class FakeConnection:
    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []

    async def send_json(self, data: Any) -> None:
        self.sent.append(data)


def added(history_id: int, *message_ids: str) -> dict[str, Any]:
    return {"id": str(history_id), "messagesAdded": [{"message": {"id": m}} for m in message_ids]}


def make_provider(history: list[dict[str, Any]], messages: dict[str, dict[str, Any]]) -> MagicMock:
    provider = MagicMock()
    provider.get_history = AsyncMock(return_value=history)

    async def get_message(user_id: str, message_id: str) -> dict[str, Any]:
        if message_id not in messages:
            raise MessageNotFoundError(f"{message_id} not found", status=404, retryable=False)
        return messages[message_id]

    provider.get_message = AsyncMock(side_effect=get_message)
    return provider


@pytest.fixture
def seeded_db(db: SyncDatabase) -> SyncDatabase:
    db.upsert_user("u1", "alice@example.com")
    db.seed_cursor("u1", 100)
    db.ensure_default_rules("u1")
    return db


@pytest.fixture
def registry() -> ConnectionRegistry:
    return ConnectionRegistry()


def make_orchestrator(
    db: SyncDatabase, provider: MagicMock, registry: ConnectionRegistry
) -> SyncOrchestrator:
    return SyncOrchestrator(db, provider, registry, UserLockRegistry())


# ── added_message_ids ──────────────────────────────────────────────────────────


class TestAddedMessageIds:
    def test_dedupes_in_first_seen_order(self) -> None:
        history = [added(101, "m1", "m2"), added(102, "m2", "m3"), {"id": "103"}]
        assert added_message_ids(history) == ["m1", "m2", "m3"]


# ── handle ─────────────────────────────────────────────────────────────────────


class TestStaleRejection:
    async def test_older_history_id_is_dropped_without_fetch(
        self, seeded_db: SyncDatabase, registry: ConnectionRegistry
    ) -> None:
        seeded_db.advance_cursor("u1", 100, 105)
        provider = make_provider([], {})

        result = await make_orchestrator(seeded_db, provider, registry).handle(
            Notification("alice@example.com", 103)
        )

        assert result.outcome is SyncOutcome.STALE
        assert result.acknowledge is True
        provider.get_history.assert_not_awaited()
        assert seeded_db.get_cursor("u1") == 105

    async def test_equal_history_id_is_stale(
        self, seeded_db: SyncDatabase, registry: ConnectionRegistry
    ) -> None:
        provider = make_provider([], {})
        result = await make_orchestrator(seeded_db, provider, registry).handle(
            Notification("alice@example.com", 100)
        )
        assert result.outcome is SyncOutcome.STALE
        provider.get_history.assert_not_awaited()

    async def test_comparison_is_numeric(
        self, seeded_db: SyncDatabase, registry: ConnectionRegistry
    ) -> None:
        # "99" > "100" lexically; 99 < 100 numerically.
        provider = make_provider([], {})
        result = await make_orchestrator(seeded_db, provider, registry).handle(
            Notification("alice@example.com", 99)
        )
        assert result.outcome is SyncOutcome.STALE


class TestFreshProcessing:
    async def test_two_new_messages(
        self, seeded_db: SyncDatabase, registry: ConnectionRegistry, make_gmail_message
    ) -> None:
        conn = FakeConnection()
        await registry.register("u1", conn)
        provider = make_provider(
            [added(103, "m1"), added(105, "m2")],
            {
                "m1": make_gmail_message("m1", labels=["INBOX", "UNREAD"]),
                "m2": make_gmail_message("m2", labels=["STARRED"]),
            },
        )

        result = await make_orchestrator(seeded_db, provider, registry).handle(
            Notification("alice@example.com", 105)
        )

        assert result.outcome is SyncOutcome.PROCESSED
        assert result.previous_history_id == 100
        assert result.history_id == 105
        assert [i.provider_message_id for i in result.created] == ["m1", "m2"]
        assert seeded_db.get_cursor("u1") == 105
        provider.get_history.assert_awaited_once_with("u1", 100, 105)

        m1 = seeded_db.get_email("u1", "m1")
        m2 = seeded_db.get_email("u1", "m2")
        assert m1 is not None and m1.workflow_status == "inbox"
        assert m2 is not None and m2.workflow_status == "todo"

        assert [m["type"] for m in conn.sent] == [EMAIL_NEW, EMAIL_NEW]
        assert [m["payload"]["id"] for m in conn.sent] == ["m1", "m2"]
        assert conn.sent[0]["payload"]["status"] == "inbox"

    async def test_address_lookup_is_case_insensitive(
        self, seeded_db: SyncDatabase, registry: ConnectionRegistry
    ) -> None:
        provider = make_provider([], {})
        result = await make_orchestrator(seeded_db, provider, registry).handle(
            Notification("Alice@Example.COM", 101)
        )
        assert result.outcome is SyncOutcome.PROCESSED
        assert seeded_db.get_cursor("u1") == 101

    async def test_uses_user_column_rules(
        self, seeded_db: SyncDatabase, registry: ConnectionRegistry, make_gmail_message
    ) -> None:
        seeded_db.set_column_rules(
            "u1",
            [
                ColumnRule("urgent", "urgent", "IMPORTANT", 0),
                ColumnRule("rest", "rest", None, 1),
            ],
        )
        provider = make_provider(
            [added(101, "m1", "m2")],
            {
                "m1": make_gmail_message("m1", labels=["INBOX", "IMPORTANT"]),
                "m2": make_gmail_message("m2", labels=["INBOX"]),
            },
        )
        await make_orchestrator(seeded_db, provider, registry).handle(
            Notification("alice@example.com", 101)
        )
        assert seeded_db.count_emails_by_status("u1") == {"urgent": 1, "rest": 1}

    async def test_duplicate_ids_in_batch_fetched_once(
        self, seeded_db: SyncDatabase, registry: ConnectionRegistry, make_gmail_message
    ) -> None:
        provider = make_provider(
            [added(101, "m1"), added(102, "m1")], {"m1": make_gmail_message("m1")}
        )
        result = await make_orchestrator(seeded_db, provider, registry).handle(
            Notification("alice@example.com", 102)
        )
        assert len(result.created) == 1
        assert provider.get_message.await_count == 1

    async def test_deleted_message_is_skipped(
        self, seeded_db: SyncDatabase, registry: ConnectionRegistry, make_gmail_message
    ) -> None:
        provider = make_provider([added(101, "gone", "m2")], {"m2": make_gmail_message("m2")})
        result = await make_orchestrator(seeded_db, provider, registry).handle(
            Notification("alice@example.com", 101)
        )
        assert result.outcome is SyncOutcome.PROCESSED
        assert [i.provider_message_id for i in result.created] == ["m2"]
        assert seeded_db.get_cursor("u1") == 101


class TestIdempotency:
    async def test_redelivery_is_a_no_op(
        self, seeded_db: SyncDatabase, registry: ConnectionRegistry, make_gmail_message
    ) -> None:
        conn = FakeConnection()
        await registry.register("u1", conn)
        provider = make_provider([added(105, "m1")], {"m1": make_gmail_message("m1")})
        orchestrator = make_orchestrator(seeded_db, provider, registry)

        first = await orchestrator.handle(Notification("alice@example.com", 105))
        second = await orchestrator.handle(Notification("alice@example.com", 105))

        assert first.outcome is SyncOutcome.PROCESSED
        assert second.outcome is SyncOutcome.STALE
        assert len(seeded_db.list_emails("u1")) == 1
        assert len(conn.sent) == 1

    async def test_manual_move_survives_resync(
        self, seeded_db: SyncDatabase, registry: ConnectionRegistry, make_gmail_message
    ) -> None:
        messages = {"m1": make_gmail_message("m1"), "m2": make_gmail_message("m2")}
        provider = make_provider([added(101, "m1")], messages)
        orchestrator = make_orchestrator(seeded_db, provider, registry)
        await orchestrator.handle(Notification("alice@example.com", 101))

        seeded_db.move_email("u1", "m1", "done")

        # A later range that still reports m1 (e.g. overlapping history) must not reset it.
        provider.get_history.return_value = [added(102, "m1"), added(103, "m2")]
        result = await orchestrator.handle(Notification("alice@example.com", 103))

        assert [i.provider_message_id for i in result.created] == ["m2"]
        m1 = seeded_db.get_email("u1", "m1")
        assert m1 is not None and m1.workflow_status == "done"
        fetched = [c.args[1] for c in provider.get_message.await_args_list]
        assert fetched == ["m1", "m2"]


class TestFailure:
    async def test_provider_failure_keeps_cursor_and_delivers_partial(
        self, seeded_db: SyncDatabase, registry: ConnectionRegistry, make_gmail_message
    ) -> None:
        conn = FakeConnection()
        await registry.register("u1", conn)
        provider = make_provider([added(103, "m1"), added(105, "m2")], {})

        async def get_message(user_id: str, message_id: str) -> dict[str, Any]:
            if message_id == "m2":
                raise ProviderError("HTTP 503", status=503)
            return make_gmail_message(message_id)

        provider.get_message.side_effect = get_message

        with pytest.raises(SyncError):
            await make_orchestrator(seeded_db, provider, registry).handle(
                Notification("alice@example.com", 105)
            )

        assert seeded_db.get_cursor("u1") == 100
        assert seeded_db.email_exists("u1", "m1")
        assert not seeded_db.email_exists("u1", "m2")
        assert [m["payload"]["id"] for m in conn.sent] == ["m1"]

    async def test_retry_after_failure_completes(
        self, seeded_db: SyncDatabase, registry: ConnectionRegistry, make_gmail_message
    ) -> None:
        provider = make_provider([added(105, "m1")], {})
        provider.get_history.side_effect = [ProviderError("timeout"), [added(105, "m1")]]
        provider.get_message.side_effect = None
        provider.get_message.return_value = make_gmail_message("m1")
        orchestrator = make_orchestrator(seeded_db, provider, registry)

        with pytest.raises(SyncError):
            await orchestrator.handle(Notification("alice@example.com", 105))
        result = await orchestrator.handle(Notification("alice@example.com", 105))

        assert result.outcome is SyncOutcome.PROCESSED
        assert seeded_db.get_cursor("u1") == 105

    async def test_expired_history_resets_cursor(
        self, seeded_db: SyncDatabase, registry: ConnectionRegistry
    ) -> None:
        provider = make_provider([], {})
        provider.get_history.side_effect = HistoryExpiredError("gone", status=404, retryable=False)

        result = await make_orchestrator(seeded_db, provider, registry).handle(
            Notification("alice@example.com", 500)
        )

        assert result.outcome is SyncOutcome.RESET
        assert result.acknowledge is True
        assert seeded_db.get_cursor("u1") == 500
        provider.get_message.assert_not_awaited()


class TestUnknownUser:
    async def test_unknown_address(self, seeded_db: SyncDatabase, registry: ConnectionRegistry) -> None:
        provider = make_provider([], {})
        result = await make_orchestrator(seeded_db, provider, registry).handle(
            Notification("stranger@example.com", 200)
        )
        assert result.outcome is SyncOutcome.UNKNOWN_USER
        assert result.acknowledge is True
        provider.get_history.assert_not_awaited()

    async def test_user_without_cursor(self, db: SyncDatabase, registry: ConnectionRegistry) -> None:
        db.upsert_user("u2", "carol@example.com")
        provider = make_provider([], {})
        result = await make_orchestrator(db, provider, registry).handle(
            Notification("carol@example.com", 200)
        )
        assert result.outcome is SyncOutcome.UNKNOWN_USER
        assert db.get_cursor("u2") is None


class TestCursorContention:
    async def test_cursor_moved_below_target_is_retried(
        self, seeded_db: SyncDatabase, registry: ConnectionRegistry, make_gmail_message
    ) -> None:
        provider = make_provider([added(105, "m1")], {})

        async def get_message(user_id: str, message_id: str) -> dict[str, Any]:
            seeded_db.advance_cursor("u1", 100, 102)  # another writer
            return make_gmail_message(message_id)

        provider.get_message.side_effect = get_message
        result = await make_orchestrator(seeded_db, provider, registry).handle(
            Notification("alice@example.com", 105)
        )

        assert result.outcome is SyncOutcome.PROCESSED
        assert seeded_db.get_cursor("u1") == 105

    async def test_cursor_moved_past_target_is_kept(
        self, seeded_db: SyncDatabase, registry: ConnectionRegistry, make_gmail_message
    ) -> None:
        provider = make_provider([added(105, "m1")], {})

        async def get_message(user_id: str, message_id: str) -> dict[str, Any]:
            seeded_db.advance_cursor("u1", 100, 107)
            return make_gmail_message(message_id)

        provider.get_message.side_effect = get_message
        result = await make_orchestrator(seeded_db, provider, registry).handle(
            Notification("alice@example.com", 105)
        )

        assert result.outcome is SyncOutcome.PROCESSED
        assert seeded_db.get_cursor("u1") == 107


class TestSerialization:
    async def test_concurrent_duplicates_fetch_history_once(
        self, seeded_db: SyncDatabase, registry: ConnectionRegistry, make_gmail_message
    ) -> None:
        provider = make_provider([], {"m1": make_gmail_message("m1")})

        async def get_history(user_id: str, start: int, end: int) -> list[dict[str, Any]]:
            await asyncio.sleep(0)
            return [added(105, "m1")]

        provider.get_history.side_effect = get_history
        orchestrator = make_orchestrator(seeded_db, provider, registry)

        results = await asyncio.gather(
            orchestrator.handle(Notification("alice@example.com", 105)),
            orchestrator.handle(Notification("alice@example.com", 105)),
        )

        assert sorted(r.outcome.value for r in results) == ["processed", "stale"]
        assert provider.get_history.await_count == 1
        assert len(seeded_db.list_emails("u1")) == 1

    async def test_out_of_order_notifications(
        self, seeded_db: SyncDatabase, registry: ConnectionRegistry, make_gmail_message
    ) -> None:
        provider = make_provider(
            [added(103, "m1"), added(110, "m2")],
            {"m1": make_gmail_message("m1"), "m2": make_gmail_message("m2")},
        )
        orchestrator = make_orchestrator(seeded_db, provider, registry)

        newer = await orchestrator.handle(Notification("alice@example.com", 110))
        older = await orchestrator.handle(Notification("alice@example.com", 105))

        assert newer.outcome is SyncOutcome.PROCESSED
        assert older.outcome is SyncOutcome.STALE
        assert seeded_db.get_cursor("u1") == 110

    async def test_delivery_happens_after_lock_release(
        self, seeded_db: SyncDatabase, registry: ConnectionRegistry, make_gmail_message
    ) -> None:
        locks = UserLockRegistry()
        release = asyncio.Event()
        locked_during_send: list[bool] = []

        class SlowConnection:
            async def send_json(self, data: Any) -> None:
                locked_during_send.append(locks.is_locked("u1"))
                await release.wait()

        await registry.register("u1", SlowConnection())
        provider = make_provider([added(105, "m1")], {"m1": make_gmail_message("m1")})
        orchestrator = SyncOrchestrator(seeded_db, provider, registry, locks)

        first = asyncio.create_task(orchestrator.handle(Notification("alice@example.com", 105)))
        while not locked_during_send:
            await asyncio.sleep(0)

        provider.get_history.return_value = []
        second = await asyncio.wait_for(
            orchestrator.handle(Notification("alice@example.com", 107)), timeout=1
        )

        assert locked_during_send == [False]
        assert second.outcome is SyncOutcome.PROCESSED
        assert seeded_db.get_cursor("u1") == 107
        release.set()
        await first
