"""
live_matcher.py — Per-watcher live matching against the hazard feed.

═══════════════════════════════════════════════════════════════════════════
SESSION STATE MACHINE
═══════════════════════════════════════════════════════════════════════════

    ┌──────────────┐   start(watcher_id, location, radius)   ┌────────────┐
    │ UNSUBSCRIBED │ ──────────────────────────────────────▶ │ SUBSCRIBED │
    │              │ ◀────────────────────────────────────── │            │
    └──────────────┘   stop()  /  resubscription exhausted   └────────────┘

    start() while SUBSCRIBED is a no-op.
    start() takes watermark = feed.now_ms(); events from before it are
    never alerted on, including ones missed while stopped.

═══════════════════════════════════════════════════════════════════════════
MATCH RULES (evaluated in order, first failure discards silently)
═══════════════════════════════════════════════════════════════════════════

    1. event.created_at ≥ watcher.watermark
    2. event.reporter_id ≠ watcher.watcher_id
    3. distance_km(event.location, watcher.location) ≤ watcher.radius_km
       (either location missing → no match)
    4. event id not already alerted on in this session

The feed delivers at-least-once. Notifications arrive in append order, so
anything at or below the highest created_at already evaluated is a replay
and is dropped before rule 1; rule 4 catches live redeliveries of the
most recent ids.

═══════════════════════════════════════════════════════════════════════════
FAILURE HANDLING
═══════════════════════════════════════════════════════════════════════════

A dropped subscription (TransientFeedError) is retried with exponential
backoff:

    delay = FEED_RESUBSCRIBE_BACKOFF_MS × 2^(attempt - 1)

Resubscribing replays the backlog; the watermark and the created_at
cursor filter it, so appends made during the gap are still delivered exactly once. When
retries run out the session drops to UNSUBSCRIBED and on_connectivity_lost
fires with a FeedConnectivityError.
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections import OrderedDict
from typing import Callable, Dict, Optional

from hazardwatch.core.config import settings
from hazardwatch.core.errors import (
    ConfigurationError,
    FeedConnectivityError,
    TransientFeedError,
)
from hazardwatch.feed.hazard_feed import FeedSubscription, HazardFeed
from hazardwatch.feed.models import AppendNotification, HazardEvent
from hazardwatch.matching.models import Alert, SessionState, Watcher
from hazardwatch.spatial.geo_math import Coordinate, distance_km

logger = logging.getLogger(__name__)

AlertSink = Callable[[Alert], None]
ConnectivitySink = Callable[[str, FeedConnectivityError], None]


# ═══════════════════════════════════════════════════════════════════════════
# Pure matching
# ═══════════════════════════════════════════════════════════════════════════

def match_distance(event: HazardEvent, watcher: Watcher) -> Optional[float]:
    """
    Apply match rules 1–3.

    Returns
    -------
    float | None
        Distance in km when the event is relevant to the watcher, else None.
    """
    if event.created_at < watcher.watermark:
        return None
    if event.reporter_id == watcher.watcher_id:
        return None
    if event.location is None or watcher.location is None:
        return None

    dist = distance_km(event.location, watcher.location)
    if dist > watcher.radius_km:
        return None
    return dist


def _validate_radius(radius_km: float) -> float:
    if not isinstance(radius_km, (int, float)) or isinstance(radius_km, bool):
        raise ConfigurationError(f"Radius must be a number, got {radius_km!r}", field="radius_km")
    if not math.isfinite(radius_km) or radius_km <= 0:
        raise ConfigurationError(f"Radius must be positive, got {radius_km}", field="radius_km")
    return float(radius_km)


# ═══════════════════════════════════════════════════════════════════════════
# LiveMatcher
# ═══════════════════════════════════════════════════════════════════════════

class LiveMatcher:
    """
    One watcher's live subscription to the hazard feed.

    Parameters
    ----------
    feed : HazardFeed
        Source of AppendNotifications.
    on_alert : callable
        Alert sink, called once per matching event.
    on_connectivity_lost : callable, optional
        Called with (watcher_id, FeedConnectivityError) when resubscription
        gives up.

    Usage:
        matcher = LiveMatcher(feed, on_alert=show_notification)
        await matcher.start("user_ab12", Coordinate(10.0, 10.0))
        ...
        await matcher.stop()
    """

    def __init__(
        self,
        feed: HazardFeed,
        on_alert: AlertSink,
        *,
        on_connectivity_lost: Optional[ConnectivitySink] = None,
        default_radius_km: Optional[float] = None,
        dedupe_window: Optional[int] = None,
        resubscribe_retries: Optional[int] = None,
        resubscribe_backoff_ms: Optional[int] = None,
    ):
        self._feed = feed
        self._on_alert = on_alert
        self._on_connectivity_lost = on_connectivity_lost
        self._default_radius_km = default_radius_km or settings.ALERT_RADIUS_KM
        self._dedupe_window = dedupe_window or settings.MATCHER_DEDUPE_WINDOW
        self._resubscribe_retries = (
            settings.FEED_RESUBSCRIBE_RETRIES
            if resubscribe_retries is None else resubscribe_retries
        )
        self._resubscribe_backoff_ms = (
            settings.FEED_RESUBSCRIBE_BACKOFF_MS
            if resubscribe_backoff_ms is None else resubscribe_backoff_ms
        )

        self._state = SessionState.UNSUBSCRIBED
        self._watcher: Optional[Watcher] = None
        self._subscription: Optional[FeedSubscription] = None
        self._task: Optional[asyncio.Task] = None
        self._session = 0
        self._alerted: "OrderedDict[str, None]" = OrderedDict()
        # Highest created_at evaluated this session; delivery is in append order
        self._cursor: Optional[int] = None

    # ── Introspection ──

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def watcher(self) -> Optional[Watcher]:
        return self._watcher

    @property
    def is_subscribed(self) -> bool:
        return self._state is SessionState.SUBSCRIBED

    # ── Lifecycle ──

    async def start(
        self,
        watcher_id: str,
        location: Optional[Coordinate],
        radius_km: Optional[float] = None,
    ) -> Watcher:
        """
        Begin watching. No-op when already subscribed for this watcher.

        Raises
        ------
        ConfigurationError
            Unknown location, invalid radius, or a different watcher id
            while this matcher is still subscribed.
        """
        current = self._watcher
        if self._state is SessionState.SUBSCRIBED and current is not None:
            if current.watcher_id != watcher_id:
                raise ConfigurationError(
                    f"Matcher is already watching for '{current.watcher_id}'",
                    field="watcher_id",
                )
            logger.debug(
                "start() ignored, %s already subscribed", watcher_id,
                extra={"watcher_id": watcher_id},
            )
            return current

        if not watcher_id:
            raise ConfigurationError("Watcher id is required", field="watcher_id")
        if location is None:
            raise ConfigurationError(
                "Watcher location is unknown; cannot match without it",
                field="location",
            )
        radius = _validate_radius(
            self._default_radius_km if radius_km is None else radius_km
        )

        self._session += 1
        self._alerted.clear()
        self._cursor = None
        self._watcher = Watcher(
            watcher_id=watcher_id,
            location=location,
            watermark=self._feed.now_ms(),
            radius_km=radius,
        )
        self._subscription = self._feed.subscribe_changes()
        self._state = SessionState.SUBSCRIBED
        self._task = asyncio.get_running_loop().create_task(
            self._consume(self._session),
            name=f"live-matcher-{watcher_id}",
        )

        logger.info(
            "Watching for hazards within %.1f km of (%.5f, %.5f), watermark=%d",
            radius, location.latitude, location.longitude, self._watcher.watermark,
            extra={"watcher_id": watcher_id},
        )
        return self._watcher

    async def stop(self) -> None:
        """
        Stop watching. Safe at any time, including from inside on_alert.

        An evaluation already in flight finishes; nothing after it is
        processed.
        """
        if self._state is SessionState.UNSUBSCRIBED:
            return

        watcher_id = self._watcher.watcher_id if self._watcher else None
        self._end_session()

        task, self._task = self._task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        logger.info("Stopped watching", extra={"watcher_id": watcher_id})

    def update_location(self, location: Coordinate) -> Watcher:
        """Move an active session without resetting its watermark."""
        if self._state is not SessionState.SUBSCRIBED or self._watcher is None:
            raise ConfigurationError("No active session to update", field="watcher_id")
        if location is None:
            raise ConfigurationError("Watcher location is unknown", field="location")
        self._watcher = Watcher(
            watcher_id=self._watcher.watcher_id,
            location=location,
            watermark=self._watcher.watermark,
            radius_km=self._watcher.radius_km,
        )
        return self._watcher

    def _end_session(self) -> None:
        self._state = SessionState.UNSUBSCRIBED
        self._watcher = None
        self._alerted.clear()
        self._cursor = None
        self._session += 1
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None

    def _is_current(self, session: int) -> bool:
        return self._session == session and self._state is SessionState.SUBSCRIBED

    # ── Evaluation ──

    def handle(self, notification: AppendNotification) -> Optional[Alert]:
        """
        Evaluate one notification and emit at most one alert.

        Returns the emitted Alert, or None when the event was filtered.
        """
        watcher = self._watcher
        if self._state is not SessionState.SUBSCRIBED or watcher is None:
            return None

        event = notification.event
        if self._cursor is not None and event.created_at <= self._cursor:
            logger.debug(
                "Replayed notification for %s", event.id,
                extra={"watcher_id": watcher.watcher_id, "event_id": event.id},
            )
            return None
        self._cursor = event.created_at

        dist = match_distance(event, watcher)
        if dist is None:
            logger.debug(
                "Filtered %s", event.id,
                extra={"watcher_id": watcher.watcher_id, "event_id": event.id},
            )
            return None

        if not self._remember(event.id):
            logger.debug(
                "Duplicate notification for %s", event.id,
                extra={"watcher_id": watcher.watcher_id, "event_id": event.id},
            )
            return None

        alert = Alert(
            event_id=event.id,
            watcher_id=watcher.watcher_id,
            distance_km=dist,
            label=event.label,
            created_at=event.created_at,
        )
        logger.info(
            "Hazard '%s' %.2f km away", event.label, dist,
            extra={"watcher_id": watcher.watcher_id, "event_id": event.id},
        )

        try:
            self._on_alert(alert)
        except Exception:
            logger.exception(
                "Alert sink failed for %s", event.id,
                extra={"watcher_id": watcher.watcher_id, "event_id": event.id},
            )
        return alert

    def _remember(self, event_id: str) -> bool:
        """Record an alerted event id. False if already seen this session."""
        if event_id in self._alerted:
            return False
        self._alerted[event_id] = None
        while len(self._alerted) > self._dedupe_window:
            self._alerted.popitem(last=False)
        return True

    # ── Consumption loop ──

    async def _consume(self, session: int) -> None:
        failures = 0

        while self._is_current(session):
            subscription = self._subscription
            if subscription is None:
                return
            try:
                async for notification in subscription:
                    if not self._is_current(session):
                        return
                    failures = 0
                    self.handle(notification)
                return
            except TransientFeedError as exc:
                if not self._is_current(session):
                    return
                failures += 1
                if failures > self._resubscribe_retries:
                    self._lose_connectivity(exc, failures - 1)
                    return

                delay = self._resubscribe_backoff_ms * (2 ** (failures - 1)) / 1000.0
                logger.warning(
                    "Feed subscription dropped (%s); resubscribing %d/%d in %.1fs",
                    exc.message, failures, self._resubscribe_retries, delay,
                    extra={"watcher_id": self._watcher_id_or_none()},
                )
                await asyncio.sleep(delay)
                if not self._is_current(session):
                    return
                self._subscription = self._feed.subscribe_changes()

    def _lose_connectivity(self, cause: TransientFeedError, attempts: int) -> None:
        watcher_id = self._watcher_id_or_none() or "unknown"
        error = FeedConnectivityError(watcher_id, attempts, cause)
        logger.error(error.message, extra={"watcher_id": watcher_id})

        self._end_session()
        self._task = None

        if self._on_connectivity_lost is not None:
            try:
                self._on_connectivity_lost(watcher_id, error)
            except Exception:
                logger.exception(
                    "Connectivity sink failed", extra={"watcher_id": watcher_id},
                )

    def _watcher_id_or_none(self) -> Optional[str]:
        return self._watcher.watcher_id if self._watcher else None


# ═══════════════════════════════════════════════════════════════════════════
# Session registry (one matcher per watcher id)
# ═══════════════════════════════════════════════════════════════════════════

class WatchSessionRegistry:
    """
    Holds at most one live LiveMatcher per watcher id.

    Used by the API layer; sessions are independent and share no state.
    """

    def __init__(self, feed: HazardFeed, **matcher_options):
        self._feed = feed
        self._matcher_options = matcher_options
        self._sessions: Dict[str, LiveMatcher] = {}

    async def start(
        self,
        watcher_id: str,
        location: Optional[Coordinate],
        on_alert: AlertSink,
        *,
        radius_km: Optional[float] = None,
        on_connectivity_lost: Optional[ConnectivitySink] = None,
    ) -> LiveMatcher:
        existing = self._sessions.get(watcher_id)
        if existing is not None and existing.is_subscribed:
            return existing

        def _connectivity_lost(wid: str, error: FeedConnectivityError) -> None:
            if self._sessions.get(wid) is matcher:
                del self._sessions[wid]
            if on_connectivity_lost is not None:
                on_connectivity_lost(wid, error)

        matcher = LiveMatcher(
            self._feed,
            on_alert,
            on_connectivity_lost=_connectivity_lost,
            **self._matcher_options,
        )
        await matcher.start(watcher_id, location, radius_km)
        self._sessions[watcher_id] = matcher
        return matcher

    async def stop(self, watcher_id: str) -> bool:
        matcher = self._sessions.pop(watcher_id, None)
        if matcher is None:
            return False
        await matcher.stop()
        return True

    async def stop_all(self) -> None:
        for watcher_id in list(self._sessions):
            await self.stop(watcher_id)

    def get(self, watcher_id: str) -> Optional[LiveMatcher]:
        return self._sessions.get(watcher_id)

    @property
    def active_count(self) -> int:
        return len(self._sessions)
