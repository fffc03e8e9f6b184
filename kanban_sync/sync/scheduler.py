"""APScheduler setup for the snooze sweep and watch renewal jobs."""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING

from apscheduler.schedulers.asyncio import AsyncIOScheduler

if TYPE_CHECKING:
    from kanban_sync.config import SyncConfig
    from kanban_sync.sync.sweeper import SnoozeSweeper
    from kanban_sync.sync.watch import WatchManager

logger = logging.getLogger(__name__)

SWEEP_JOB_ID = "snooze-sweep"
RENEW_JOB_ID = "watch-renewal"


def create_sync_scheduler(
    sweeper: SnoozeSweeper,
    watch_manager: WatchManager,
    config: SyncConfig,
) -> AsyncIOScheduler:
    """Return an AsyncIOScheduler with the sweep and renewal jobs registered.

    The caller is responsible for calling scheduler.start() and scheduler.shutdown().
    """
    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        sweeper.sweep,
        "interval",
        seconds=config.sweep_interval_seconds,
        id=SWEEP_JOB_ID,
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        watch_manager.renew_expiring,
        "interval",
        hours=24,
        id=RENEW_JOB_ID,
        kwargs={"within": timedelta(hours=config.watch_renew_within_hours)},
        max_instances=1,
        coalesce=True,
    )
    logger.info(
        "Snooze sweep every %ds; watch renewal daily (window %dh)",
        config.sweep_interval_seconds,
        config.watch_renew_within_hours,
    )
    return scheduler
