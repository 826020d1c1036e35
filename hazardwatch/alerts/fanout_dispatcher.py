"""
fanout_dispatcher.py — Server-side fan-out of one hazard event.

This is the coordinator that, per appended event:
    1. Skips events without a location
    2. Reads a directory snapshot (records with location + push token)
    3. Drops the reporter, geofences the rest (bounding box + Haversine)
    4. Partitions push tokens into transport-sized batches
    5. Sends every batch, retrying transport failures with backoff
    6. Reports dropped batches to the operator channel

═══════════════════════════════════════════════════════════════════════════
ORCHESTRATION FLOW
═══════════════════════════════════════════════════════════════════════════

    ┌─────────────────────┐
    │  HazardFeed append  │
    └─────────┬───────────┘
              │  FanoutWorker (dedupe by event id)
              ▼
    ┌─────────────────────┐
    │  1. Snapshot        │  SubscriberDirectory.snapshot()
    └─────────┬───────────┘
              ▼
    ┌─────────────────────┐
    │  2. Geofence        │  reporter excluded, ≤ FANOUT_RADIUS_KM
    └─────────┬───────────┘
              ▼
    ┌─────────────────────┐
    │  3. Batch           │  FANOUT_BATCH_SIZE tokens per call
    └─────────┬───────────┘
              ▼
    ┌─────────────────────┐
    │  4. Send w/ retry   │  batches run concurrently; one batch failing
    │                     │  never affects another
    └─────────┬───────────┘
              ▼
    ┌─────────────────────┐
    │  5. Report          │  DispatchReport + FailedDispatchReport(s)
    └─────────────────────┘

═══════════════════════════════════════════════════════════════════════════
RETRY STRATEGY
═══════════════════════════════════════════════════════════════════════════

Only batch-level transport failures are retried (BatchTransportFailure,
send timeout, network OSError). Per-address rejections are final for this
event and are recorded, not retried.

    delay = FANOUT_RETRY_BACKOFF_MS × 2^(attempt - 1)

    Default (500 ms, 2 retries):  attempt 1 → 0.5s → attempt 2 → 1.0s → attempt 3

After the last retry the batch is dropped and reported: a road hazard
alert that arrives minutes late is mostly noise.

The dispatcher holds no per-subscriber state. Dispatching the same event
twice only sends twice; FanoutWorker dedupes by event id so that happens
only if the worker itself restarts.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict, deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import (
    Awaitable, Callable, Deque, List, Optional, Sequence, Set, Tuple, TypeVar,
)

from hazardwatch.alerts.channels.push_gateway import NotificationSender
from hazardwatch.alerts.directory import SubscriberDirectory
from hazardwatch.alerts.models import (
    BatchOutcome,
    BatchStatus,
    DeliveryFailure,
    DispatchReport,
    FailedDispatchReport,
    SubscriberRecord,
)
from hazardwatch.core.config import settings
from hazardwatch.core.errors import (
    BatchTransportFailure,
    FeedConnectivityError,
    TransientFeedError,
)
from hazardwatch.feed.hazard_feed import FeedSubscription, HazardFeed
from hazardwatch.feed.models import HazardEvent
from hazardwatch.spatial.geo_math import bounding_box, distance_km, inside_bbox

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ═══════════════════════════════════════════════════════════════════════════
# Retry Configuration
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class RetryConfig:
    """Batch transport retry parameters."""
    max_retries: int
    backoff_base_seconds: float
    backoff_type: str = "exponential"  # "exponential" or "linear"

    @classmethod
    def from_settings(cls) -> "RetryConfig":
        return cls(
            max_retries=settings.FANOUT_RETRY_COUNT,
            backoff_base_seconds=settings.FANOUT_RETRY_BACKOFF_MS / 1000.0,
        )


def compute_backoff(config: RetryConfig, attempt: int) -> float:
    """
    Delay in seconds before retrying after failed attempt ``attempt`` (1-based).
    """
    if config.backoff_type == "exponential":
        return config.backoff_base_seconds * (2 ** (attempt - 1))
    return config.backoff_base_seconds * attempt


def partition(items: Sequence[T], size: int) -> List[List[T]]:
    """
    Split into consecutive chunks of at most ``size``.

    >>> [len(b) for b in partition(list(range(1200)), 500)]
    [500, 500, 200]
    """
    if size < 1:
        raise ValueError(f"Batch size must be at least 1, got {size}")
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


# ═══════════════════════════════════════════════════════════════════════════
# Report store (operator-visible channel)
# ═══════════════════════════════════════════════════════════════════════════

FailureListener = Callable[[FailedDispatchReport], None]


class DispatchReportStore:
    """
    Bounded history of dispatch reports and dropped batches.

    Failed dispatches are logged at ERROR and pushed to any registered
    listeners (alerting hooks, dashboards).
    """

    def __init__(self, history: Optional[int] = None):
        size = history or settings.FAILED_DISPATCH_HISTORY
        self._reports: Deque[DispatchReport] = deque(maxlen=size)
        self._failures: Deque[FailedDispatchReport] = deque(maxlen=size)
        self._listeners: List[FailureListener] = []
        self.total_failures = 0

    def add_listener(self, listener: FailureListener) -> None:
        self._listeners.append(listener)

    def record(self, report: DispatchReport) -> None:
        self._reports.append(report)

    def report_failure(self, failure: FailedDispatchReport) -> None:
        self._failures.append(failure)
        self.total_failures += 1
        logger.error(
            "Dropped batch %s for %s: %d address(es) not notified after %d attempt(s): %s",
            failure.batch_id, failure.event_id, len(failure.addresses),
            failure.attempts, failure.error,
            extra={
                "event_id": failure.event_id,
                "batch_id": failure.batch_id,
                "recipient_count": len(failure.addresses),
            },
        )
        for listener in self._listeners:
            try:
                listener(failure)
            except Exception:
                logger.exception("Failed-dispatch listener raised")

    def recent_reports(self, limit: int = 50) -> List[DispatchReport]:
        """Newest first."""
        return list(reversed(self._reports))[:limit]

    def failed_dispatches(self, limit: int = 50) -> List[FailedDispatchReport]:
        """Newest first."""
        return list(reversed(self._failures))[:limit]

    def get(self, event_id: str) -> Optional[DispatchReport]:
        for report in reversed(self._reports):
            if report.event_id == event_id:
                return report
        return None


# ═══════════════════════════════════════════════════════════════════════════
# Dispatcher
# ═══════════════════════════════════════════════════════════════════════════

class FanoutDispatcher:
    """
    Turns one hazard event into batched push notifications.

    Parameters
    ----------
    directory : SubscriberDirectory
        Read-only snapshot source.
    sender : NotificationSender
        Push transport.
    radius_km, batch_size, retry, send_timeout_seconds
        Default to the FANOUT_* / PUSH_* settings.
    sleep : coroutine function
        Backoff sleeper, injectable for tests.
    """

    def __init__(
        self,
        directory: SubscriberDirectory,
        sender: NotificationSender,
        *,
        radius_km: Optional[float] = None,
        batch_size: Optional[int] = None,
        retry: Optional[RetryConfig] = None,
        send_timeout_seconds: Optional[float] = None,
        title: Optional[str] = None,
        body: Optional[str] = None,
        report_store: Optional[DispatchReportStore] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.directory = directory
        self.sender = sender
        self.radius_km = radius_km or settings.FANOUT_RADIUS_KM
        self.batch_size = batch_size or settings.FANOUT_BATCH_SIZE
        self.retry = retry or RetryConfig.from_settings()
        self.send_timeout_seconds = send_timeout_seconds or settings.PUSH_SEND_TIMEOUT_SECONDS
        self.title = title or settings.NOTIFICATION_TITLE
        self.body = body or settings.NOTIFICATION_BODY
        self.report_store = report_store or DispatchReportStore()
        self._sleep = sleep

        if self.radius_km <= 0:
            raise ValueError(f"Radius must be positive, got {self.radius_km}")
        if self.batch_size < 1:
            raise ValueError(f"Batch size must be at least 1, got {self.batch_size}")

    # ── Targeting ──

    def select_recipients(
        self,
        event: HazardEvent,
        records: Sequence[SubscriberRecord],
    ) -> List[Tuple[SubscriberRecord, float]]:
        """
        Subscribers within the fan-out radius, reporter excluded.

        Returns (record, distance_km) pairs in directory order.
        """
        if event.location is None:
            return []

        box = bounding_box(event.location, self.radius_km)
        selected: List[Tuple[SubscriberRecord, float]] = []

        for record in records:
            if not record.is_reachable:
                continue
            if record.subscriber_id == event.reporter_id:
                continue
            location = record.location
            if location is None:
                continue
            if not inside_bbox(location, box):
                continue
            dist = distance_km(event.location, location)
            if dist <= self.radius_km:
                selected.append((record, dist))

        return selected

    # ── Main entry point ──

    async def dispatch(self, event: HazardEvent) -> DispatchReport:
        """
        Fan out one event. Never raises for delivery problems; inspect the
        returned report (also kept in report_store).
        """
        report = DispatchReport(event_id=event.id)

        if event.location is None:
            report.skipped_reason = "no_location"
            report.completed_at = datetime.now(timezone.utc)
            logger.info(
                "Hazard %s has no location, skipping fan-out", event.id,
                extra={"event_id": event.id},
            )
            self.report_store.record(report)
            return report

        records = await self.directory.snapshot()
        report.subscribers_checked = len(records)

        targets = self.select_recipients(event, records)
        # Two subscribers sharing a device token get one notification
        addresses = list(OrderedDict.fromkeys(r.delivery_address for r, _ in targets))
        report.eligible = len(addresses)

        logger.info(
            "Found %d subscriber(s) within %.1f km of %s (%d checked)",
            len(addresses), self.radius_km, event.id, len(records),
            extra={"event_id": event.id, "recipient_count": len(addresses)},
        )

        if not addresses:
            report.skipped_reason = "no_recipients"
            report.completed_at = datetime.now(timezone.utc)
            self.report_store.record(report)
            return report

        batches = partition(addresses, self.batch_size)
        results = await asyncio.gather(
            *(self._send_batch(event, i, batch) for i, batch in enumerate(batches)),
            return_exceptions=True,
        )

        for i, (batch, result) in enumerate(zip(batches, results)):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                logger.exception(
                    "Batch %d of %s crashed", i + 1, event.id,
                    exc_info=result, extra={"event_id": event.id},
                )
                result = self._dropped(event, i, batch, attempts=1, error=repr(result))
            report.batches.append(result)

        report.completed_at = datetime.now(timezone.utc)
        self.report_store.record(report)

        logger.info(
            "Fan-out %s complete: %d/%d delivered, %d address failure(s), "
            "%d/%d batch(es) dropped, %.2fs",
            event.id, report.delivered_count, report.eligible,
            len(report.failures), len(report.dropped_batches), len(report.batches),
            (report.completed_at - report.started_at).total_seconds(),
            extra={"event_id": event.id},
        )
        return report

    # ── Single batch with retry ──

    async def _send_batch(
        self,
        event: HazardEvent,
        index: int,
        addresses: List[str],
    ) -> BatchOutcome:
        batch_id = _batch_id(event, index)
        data = {"event_id": event.id, "label": event.label}
        last_error = ""

        for attempt in range(1, self.retry.max_retries + 2):  # initial + retries
            try:
                results = await asyncio.wait_for(
                    self.sender.send(addresses, self.title, self.body, data=data),
                    timeout=self.send_timeout_seconds,
                )
            except asyncio.TimeoutError:
                last_error = f"send timed out after {self.send_timeout_seconds:.1f}s"
            except (BatchTransportFailure, OSError) as exc:
                last_error = getattr(exc, "message", None) or str(exc) or type(exc).__name__
            else:
                return self._settle(batch_id, index, addresses, results, attempt)

            if attempt <= self.retry.max_retries:
                delay = compute_backoff(self.retry, attempt)
                logger.warning(
                    "Batch %s transport failure (%s); retry %d/%d in %.1fs",
                    batch_id, last_error, attempt, self.retry.max_retries, delay,
                    extra={"event_id": event.id, "batch_id": batch_id, "attempt": attempt},
                )
                await self._sleep(delay)

        return self._dropped(
            event, index, addresses,
            attempts=self.retry.max_retries + 1, error=last_error,
        )

    def _settle(self, batch_id, index, addresses, results, attempts) -> BatchOutcome:
        outcome = BatchOutcome(
            batch_id=batch_id, index=index, addresses=addresses, attempts=attempts,
        )
        verdicts = {r.address: r for r in results}

        for address in addresses:
            verdict = verdicts.get(address)
            if verdict is not None and verdict.ok:
                outcome.delivered += 1
                continue
            reason = verdict.error if verdict is not None else "no result from transport"
            outcome.failures.append(DeliveryFailure(
                address=address, reason=reason or "unknown", batch_id=batch_id,
            ))

        if outcome.failures:
            outcome.status = BatchStatus.PARTIAL
            logger.warning(
                "Batch %s: %d of %d address(es) rejected",
                batch_id, len(outcome.failures), len(addresses),
                extra={"batch_id": batch_id, "recipient_count": len(addresses)},
            )
        return outcome

    def _dropped(self, event, index, addresses, *, attempts, error) -> BatchOutcome:
        batch_id = _batch_id(event, index)
        self.report_store.report_failure(FailedDispatchReport(
            batch_id=batch_id,
            event_id=event.id,
            addresses=list(addresses),
            error=error,
            attempts=attempts,
        ))
        return BatchOutcome(
            batch_id=batch_id,
            index=index,
            addresses=addresses,
            status=BatchStatus.DROPPED,
            attempts=attempts,
            error=error,
        )


def _batch_id(event: HazardEvent, index: int) -> str:
    return f"{event.id}-b{index + 1}"


# ═══════════════════════════════════════════════════════════════════════════
# Worker: feed → dispatcher
# ═══════════════════════════════════════════════════════════════════════════

class FanoutWorker:
    """
    Consumes the feed's change stream and dispatches each new event once.

    Events created before the worker started are ignored. A resubscription
    replays the backlog; the resume cursor (highest created_at submitted so
    far) skips everything already seen, so only the appends made during the
    gap are dispatched. created_at is strictly increasing in delivery order,
    which makes the cursor exact. The bounded event-id window only catches
    live redeliveries.
    """

    def __init__(
        self,
        feed: HazardFeed,
        dispatcher: FanoutDispatcher,
        *,
        dedupe_window: Optional[int] = None,
        resubscribe_retries: Optional[int] = None,
        resubscribe_backoff_ms: Optional[int] = None,
    ):
        self.feed = feed
        self.dispatcher = dispatcher
        self._dedupe_window = dedupe_window or settings.DISPATCH_DEDUPE_WINDOW
        self._resubscribe_retries = (
            settings.FEED_RESUBSCRIBE_RETRIES
            if resubscribe_retries is None else resubscribe_retries
        )
        self._resubscribe_backoff_ms = (
            settings.FEED_RESUBSCRIBE_BACKOFF_MS
            if resubscribe_backoff_ms is None else resubscribe_backoff_ms
        )
        self._claimed: "OrderedDict[str, None]" = OrderedDict()
        self._inflight: Set[asyncio.Task] = set()
        self._subscription: Optional[FeedSubscription] = None
        self._task: Optional[asyncio.Task] = None
        self.watermark: Optional[int] = None
        self.cursor: Optional[int] = None
        self.connectivity_error: Optional[FeedConnectivityError] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def inflight_count(self) -> int:
        return len(self._inflight)

    async def start(self) -> None:
        if self.is_running:
            return
        self.connectivity_error = None
        self.watermark = self.feed.now_ms()
        self.cursor = None
        self._subscription = self.feed.subscribe_changes()
        self._task = asyncio.get_running_loop().create_task(
            self._run(), name="fanout-worker",
        )
        logger.info("Fan-out worker started, watermark=%d", self.watermark)

    async def stop(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)
        logger.info("Fan-out worker stopped")

    async def drain(self) -> None:
        """Wait for every in-flight dispatch to finish."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    def submit(self, event: HazardEvent) -> Optional[asyncio.Task]:
        """
        Dispatch an event in its own task unless already claimed.

        Returns the task, or None for duplicates and pre-watermark events.
        """
        if self.watermark is not None and event.created_at < self.watermark:
            return None
        if self.cursor is not None and event.created_at <= self.cursor:
            logger.debug("Already dispatched up to %d, skipping %s", self.cursor, event.id,
                         extra={"event_id": event.id})
            return None
        if event.id in self._claimed:
            logger.debug("Duplicate append notification for %s", event.id,
                         extra={"event_id": event.id})
            return None

        self.cursor = event.created_at
        self._claimed[event.id] = None
        while len(self._claimed) > self._dedupe_window:
            self._claimed.popitem(last=False)

        task = asyncio.get_running_loop().create_task(
            self.dispatcher.dispatch(event), name=f"fanout-{event.id}",
        )
        self._inflight.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._inflight.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            # Directory read failures and the like; the worker keeps going
            logger.error("Fan-out task %s failed: %r", task.get_name(), exc)

    async def _run(self) -> None:
        failures = 0
        while self._subscription is not None:
            try:
                async for notification in self._subscription:
                    failures = 0
                    self.submit(notification.event)
                return
            except TransientFeedError as exc:
                failures += 1
                if failures > self._resubscribe_retries:
                    self.connectivity_error = FeedConnectivityError(
                        "fanout-worker", failures - 1, exc,
                    )
                    logger.error(self.connectivity_error.message)
                    self._subscription = None
                    return
                delay = self._resubscribe_backoff_ms * (2 ** (failures - 1)) / 1000.0
                logger.warning(
                    "Fan-out feed subscription dropped (%s); resubscribing %d/%d in %.1fs",
                    exc.message, failures, self._resubscribe_retries, delay,
                )
                await asyncio.sleep(delay)
                self._subscription = self.feed.subscribe_changes()
