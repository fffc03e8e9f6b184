"""PULL notification strategy — one long-lived loop on the Pub/Sub subscription."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from kanban_sync.notifications.base import EnvelopeError, NotificationType, parse_envelope
from kanban_sync.notifications.pubsub import ReceivedMessage, SubscriptionClient, SubscriptionError
from kanban_sync.sync.orchestrator import SyncError, SyncOrchestrator
from kanban_sync.sync.watch import WatchManager, WatchStatus

logger = logging.getLogger(__name__)

# Backoff: 2^attempt seconds, capped at 5 minutes
_MAX_BACKOFF_SECONDS = 300


class PullStrategy:
    """Pulls change notifications for every user from a single subscription.

    Each received message becomes its own task, bounded by ``max_in_flight``.
    A message is acknowledged only after the orchestrator returns normally;
    malformed envelopes and aborted passes stay unacknowledged and Pub/Sub
    redelivers them once the ack deadline lapses.

    Usage::

        strategy = PullStrategy(orchestrator, watches, SubscriptionClient(path, creds))
        loop.add_signal_handler(signal.SIGTERM, strategy.stop_listening)
        await strategy.run()
    """

    kind = NotificationType.PULL

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        watch_manager: WatchManager,
        subscriber: SubscriptionClient,
        max_messages: int = 10,
        max_in_flight: int = 8,
    ) -> None:
        self._orchestrator = orchestrator
        self._watch_manager = watch_manager
        self._subscriber = subscriber
        self._max_messages = max_messages
        self._semaphore = asyncio.Semaphore(max_in_flight)
        self._in_flight: set[asyncio.Task[bool]] = set()
        self._stop_event = asyncio.Event()

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    async def start(self, user_id: str) -> WatchStatus:
        return await self._watch_manager.start(user_id)

    async def stop(self, user_id: str) -> WatchStatus:
        return await self._watch_manager.stop(user_id)

    def stop_listening(self) -> None:
        """Stop pulling. ``run`` returns once in-flight passes have drained."""
        logger.info("Shutdown requested — no more pulls, draining %d in-flight", self.in_flight)
        self._stop_event.set()

    async def handle_notification(self, data: bytes | str | dict[str, Any]) -> bool:
        """Parse and process one envelope. Returns True if it may be acknowledged."""
        try:
            notification = parse_envelope(data)
        except EnvelopeError as exc:
            logger.warning("Malformed notification left for redelivery: %s", exc)
            return False

        try:
            result = await self._orchestrator.handle(notification)
        except SyncError as exc:
            logger.warning("Notification for %s left for redelivery: %s", notification.mail_address, exc)
            return False
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "Unexpected error syncing %s: %s", notification.mail_address, exc, exc_info=True
            )
            return False
        return result.acknowledge

    async def handle_message(self, message: ReceivedMessage) -> bool:
        """Process one pulled message and acknowledge it on success."""
        if not await self.handle_notification(message.data):
            return False
        try:
            await self._subscriber.acknowledge([message.ack_id])
        except SubscriptionError as exc:
            # Redelivery is harmless: the pass is now a stale no-op.
            logger.warning("Ack failed for message %s: %s", message.message_id, exc)
        return True

    async def run(self) -> None:
        """Pull until ``stop_listening`` is called, retrying pull failures with backoff."""
        logger.info("Pulling notifications from %s", self._subscriber.subscription_path)
        attempt = 0
        while not self._stop_event.is_set():
            try:
                messages = await self._pull()
                attempt = 0
            except SubscriptionError as exc:
                attempt += 1
                delay = min(2**attempt, _MAX_BACKOFF_SECONDS)
                logger.error("Pull failed (attempt %d): %s — retrying in %ds", attempt, exc, delay)
                await self._interruptible_sleep(delay)
                continue

            if messages:
                logger.debug("Pulled %d notification(s)", len(messages))
            for message in messages:
                await self._semaphore.acquire()
                task = asyncio.create_task(self._run_one(message))
                self._in_flight.add(task)
                task.add_done_callback(self._in_flight.discard)

        await self.drain()
        logger.info("Pull loop stopped")

    async def drain(self) -> None:
        """Wait for every in-flight pass to finish."""
        if self._in_flight:
            await asyncio.gather(*self._in_flight, return_exceptions=True)

    # ── Internal ───────────────────────────────────────────────────────────────

    async def _run_one(self, message: ReceivedMessage) -> bool:
        try:
            return await self.handle_message(message)
        finally:
            self._semaphore.release()

    async def _pull(self) -> list[ReceivedMessage]:
        """One pull, abandoned early if shutdown is requested mid-poll."""
        pull_task = asyncio.ensure_future(self._subscriber.pull(self._max_messages))
        stop_task = asyncio.ensure_future(self._stop_event.wait())
        done, _ = await asyncio.wait({pull_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
        stop_task.cancel()
        if pull_task not in done:
            # Anything it still returns is redelivered after the ack deadline.
            pull_task.cancel()
            return []
        return pull_task.result()

    async def _interruptible_sleep(self, seconds: float) -> None:
        """Sleep for `seconds` but wake immediately if stop_listening() is called."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
