"""
services.py — Wiring of the long-lived components for one process.

    feed ──┬──▶ WatchSessionRegistry (LiveMatcher per watcher)
           └──▶ FanoutWorker ──▶ FanoutDispatcher ──▶ NotificationSender
                                        │
                                        └──▶ SubscriberDirectory (snapshot)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from hazardwatch.alerts.channels.push_gateway import NotificationSender, SimulatedPushSender
from hazardwatch.alerts.directory import SubscriberDirectory, build_directory
from hazardwatch.alerts.fanout_dispatcher import (
    DispatchReportStore,
    FanoutDispatcher,
    FanoutWorker,
)
from hazardwatch.core.config import settings
from hazardwatch.feed.hazard_feed import InMemoryHazardFeed
from hazardwatch.matching.live_matcher import WatchSessionRegistry

logger = logging.getLogger(__name__)


@dataclass
class Services:
    feed: InMemoryHazardFeed
    directory: SubscriberDirectory
    sender: NotificationSender
    report_store: DispatchReportStore
    dispatcher: FanoutDispatcher
    worker: FanoutWorker
    sessions: WatchSessionRegistry

    async def start(self) -> None:
        await self.worker.start()

    async def shutdown(self) -> None:
        await self.sessions.stop_all()
        await self.worker.stop()
        await self.directory.close()


def build_services(
    *,
    feed: Optional[InMemoryHazardFeed] = None,
    directory=None,
    sender: Optional[NotificationSender] = None,
    report_store: Optional[DispatchReportStore] = None,
) -> Services:
    feed = feed if feed is not None else InMemoryHazardFeed()
    directory = directory if directory is not None else build_directory()
    sender = sender or SimulatedPushSender(max_batch_size=settings.FANOUT_BATCH_SIZE)
    report_store = report_store or DispatchReportStore()

    dispatcher = FanoutDispatcher(directory, sender, report_store=report_store)
    logger.info(
        "Fan-out: radius=%.1f km batch=%d retries=%d directory=%s",
        dispatcher.radius_km, dispatcher.batch_size,
        dispatcher.retry.max_retries, type(directory).__name__,
    )

    return Services(
        feed=feed,
        directory=directory,
        sender=sender,
        report_store=report_store,
        dispatcher=dispatcher,
        worker=FanoutWorker(feed, dispatcher),
        sessions=WatchSessionRegistry(feed),
    )
