"""Service wiring — builds every component and runs the notification loop, scheduler and server."""

from __future__ import annotations

import asyncio
import logging
import signal
from dataclasses import dataclass

import uvicorn
from dotenv import load_dotenv

from kanban_sync.config import SyncConfig
from kanban_sync.delivery.registry import ConnectionRegistry
from kanban_sync.delivery.server import create_app
from kanban_sync.gmail.client import GmailProvider, TokenFileCredentials
from kanban_sync.notifications.base import NotificationStrategy
from kanban_sync.notifications.manager import create_strategy
from kanban_sync.notifications.pubsub import SubscriptionClient
from kanban_sync.storage.db import SyncDatabase
from kanban_sync.sync.locks import UserLockRegistry
from kanban_sync.sync.orchestrator import SyncOrchestrator
from kanban_sync.sync.scheduler import create_sync_scheduler
from kanban_sync.sync.sweeper import SnoozeSweeper
from kanban_sync.sync.watch import WatchManager

logger = logging.getLogger(__name__)


# ── Components ─────────────────────────────────────────────────────────────────


@dataclass
class SyncCore:
    """The components shared by the service and the CLI. No network I/O on construction."""

    config: SyncConfig
    db: SyncDatabase
    locks: UserLockRegistry
    registry: ConnectionRegistry
    provider: GmailProvider
    orchestrator: SyncOrchestrator
    watch_manager: WatchManager
    sweeper: SnoozeSweeper

    def close(self) -> None:
        self.db.close()


def build_core(
    config: SyncConfig,
    db: SyncDatabase | None = None,
    provider: GmailProvider | None = None,
) -> SyncCore:
    db = db or SyncDatabase(config.db_path)
    provider = provider or GmailProvider(TokenFileCredentials(config.token_dir))
    locks = UserLockRegistry()
    registry = ConnectionRegistry()
    return SyncCore(
        config=config,
        db=db,
        locks=locks,
        registry=registry,
        provider=provider,
        orchestrator=SyncOrchestrator(db, provider, registry, locks),
        watch_manager=WatchManager(
            db, provider, locks, topic_name=config.topic_name, label_ids=config.watch_label_ids
        ),
        sweeper=SnoozeSweeper(db, registry, locks),
    )


# ── Service ────────────────────────────────────────────────────────────────────


class SyncService:
    """Runs the notification strategy, the scheduled jobs and the HTTP/WebSocket server.

    Shutdown order: stop pulling, drain in-flight passes, stop the scheduler,
    stop the server. ``stop()`` is safe to call from a signal handler.

    Usage::

        service = SyncService(build_core(SyncConfig.from_env()))
        await service.run()
    """

    def __init__(
        self,
        core: SyncCore,
        strategy: NotificationStrategy | None = None,
        subscriber: SubscriptionClient | None = None,
    ) -> None:
        self.core = core
        self.strategy = strategy or create_strategy(
            core.config, core.orchestrator, core.watch_manager, subscriber=subscriber
        )
        self.scheduler = create_sync_scheduler(core.sweeper, core.watch_manager, core.config)
        self.app = create_app(core.registry, self.strategy, core.config.jwt_secret)
        self.server = uvicorn.Server(
            uvicorn.Config(
                self.app,
                host=core.config.host,
                port=core.config.port,
                log_config=None,  # keep our logging.basicConfig format
            )
        )

    def stop(self) -> None:
        """Begin a graceful shutdown; ``run`` returns when it completes."""
        self.strategy.stop_listening()

    async def run(self) -> None:
        if not self.core.config.jwt_secret:
            logger.warning("JWT_SECRET is not set — every client connection will be rejected")

        self.scheduler.start()
        server_task = asyncio.create_task(self.server.serve())
        # uvicorn handles SIGINT itself; when it exits, wind the rest down too.
        server_task.add_done_callback(lambda _task: self.stop())
        try:
            await self.strategy.run()
        finally:
            self.scheduler.shutdown(wait=False)
            self.server.should_exit = True
            await asyncio.gather(server_task, return_exceptions=True)
            self.core.close()
        logger.info("Service stopped")


# ── Entry point ────────────────────────────────────────────────────────────────


def main() -> None:
    """Start the sync service without the CLI. Called by `python -m kanban_sync`."""
    load_dotenv()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        asyncio.run(_amain())
    except KeyboardInterrupt:
        # Ctrl+C on Windows (no add_signal_handler) arrives here
        logger.info("Interrupted — goodbye")


async def _amain() -> None:
    await serve_forever(build_core(SyncConfig.from_env()))


async def serve_forever(core: SyncCore) -> None:
    """Wire up signal handlers and run the service until it is stopped."""
    service = SyncService(core)

    loop = asyncio.get_running_loop()
    try:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, service.stop)
    except (NotImplementedError, AttributeError):
        pass

    await service.run()
