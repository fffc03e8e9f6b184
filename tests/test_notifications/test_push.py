"""Tests for the PUSH placeholder strategy and strategy selection."""

import asyncio
import logging
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from kanban_sync.config import SyncConfig
from kanban_sync.notifications.base import NotificationType
from kanban_sync.notifications.manager import create_strategy
from kanban_sync.notifications.pull import PullStrategy
from kanban_sync.notifications.push import PushStrategy


class TestPushStrategy:
    async def test_start_reports_not_implemented(self, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.WARNING):
            status = await PushStrategy().start("u1")
        assert status.ok is False
        assert "not implemented" in (status.error or "")
        assert "not implemented" in caplog.text

    async def test_stop_reports_not_implemented(self) -> None:
        status = await PushStrategy().stop("u1")
        assert status.ok is False

    async def test_notifications_are_not_acknowledged(self, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.WARNING):
            acked = await PushStrategy().handle_notification(
                b'{"emailAddress": "alice@example.com", "historyId": "7"}'
            )
        assert acked is False
        assert "alice@example.com" in caplog.text

    async def test_malformed_notification(self) -> None:
        assert await PushStrategy().handle_notification(b"junk") is False

    async def test_run_returns_after_stop_listening(self) -> None:
        strategy = PushStrategy()
        task = asyncio.create_task(strategy.run())
        await asyncio.sleep(0)
        strategy.stop_listening()
        await asyncio.wait_for(task, timeout=1)


class TestCreateStrategy:
    def test_push(self, tmp_path: Path) -> None:
        config = SyncConfig(db_path=tmp_path / "db", notification_strategy="PUSH")
        strategy = create_strategy(config, MagicMock(), MagicMock())
        assert isinstance(strategy, PushStrategy)

    def test_pull_with_injected_subscriber(self, tmp_path: Path) -> None:
        config = SyncConfig(db_path=tmp_path / "db", notification_strategy="pull")
        subscriber = MagicMock()
        subscriber.subscription_path = "projects/p/subscriptions/s"
        strategy = create_strategy(config, MagicMock(), MagicMock(), subscriber=subscriber)
        assert isinstance(strategy, PullStrategy)
        assert strategy.kind is NotificationType.PULL

    def test_unknown_strategy_rejected(self, tmp_path: Path) -> None:
        config = SyncConfig(db_path=tmp_path / "db", notification_strategy="CARRIER_PIGEON")
        with pytest.raises(ValueError, match="PULL or PUSH"):
            create_strategy(config, MagicMock(), MagicMock())
