"""Chooses the notification strategy named by configuration."""

from __future__ import annotations

import logging

from kanban_sync.config import SyncConfig
from kanban_sync.notifications.base import NotificationStrategy, NotificationType
from kanban_sync.notifications.pubsub import SubscriptionClient, load_pubsub_credentials
from kanban_sync.notifications.pull import PullStrategy
from kanban_sync.notifications.push import PushStrategy
from kanban_sync.sync.orchestrator import SyncOrchestrator
from kanban_sync.sync.watch import WatchManager

logger = logging.getLogger(__name__)


def create_strategy(
    config: SyncConfig,
    orchestrator: SyncOrchestrator,
    watch_manager: WatchManager,
    subscriber: SubscriptionClient | None = None,
) -> NotificationStrategy:
    """Build the strategy for ``config.notification_strategy``.

    Raises:
        ValueError: if the configured strategy is neither PULL nor PUSH.
    """
    try:
        kind = NotificationType(config.notification_strategy.upper())
    except ValueError:
        raise ValueError(
            f"NOTIFICATION_STRATEGY must be PULL or PUSH, got {config.notification_strategy!r}"
        ) from None

    if kind is NotificationType.PUSH:
        logger.info("Using PUSH notification strategy")
        return PushStrategy()

    if subscriber is None:
        subscriber = SubscriptionClient(
            config.subscription_path, load_pubsub_credentials(config.service_account_key)
        )
    logger.info("Using PULL notification strategy on %s", subscriber.subscription_path)
    return PullStrategy(
        orchestrator,
        watch_manager,
        subscriber,
        max_messages=config.pull_max_messages,
        max_in_flight=config.max_concurrent_syncs,
    )
