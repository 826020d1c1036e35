"""
hazard_feed.py — The append-only hazard feed and its change streams.

═══════════════════════════════════════════════════════════════════════════
CONTRACT
═══════════════════════════════════════════════════════════════════════════

    append(hazard) → HazardEvent
        Assigns id and created_at. created_at never decreases in append
        order.

    now_ms() → int
        The store's current time. Every event already appended has
        created_at < now_ms(); every later append has created_at ≥ it.
        Consumers take their watermark from here.

    subscribe_changes(include_existing=True) → FeedSubscription
        Async iterator of AppendNotification, in append order. With
        include_existing the current backlog is replayed first, the way a
        snapshot listener reports every document as "added" on attach.
        Delivery is at-least-once: consumers must tolerate duplicates.
        A dropped subscription raises TransientFeedError from __anext__.

The real deployment sits on a document store; InMemoryHazardFeed is the
reference implementation used by the API process and the tests.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import Callable, Dict, List, Optional, Protocol, Union

from hazardwatch.core.errors import TransientFeedError
from hazardwatch.feed.models import AppendNotification, HazardEvent, NewHazard

logger = logging.getLogger(__name__)


def _wall_clock_ms() -> int:
    return time.time_ns() // 1_000_000


def _generate_id() -> str:
    return f"hz_{uuid.uuid4().hex[:20]}"


# ═══════════════════════════════════════════════════════════════════════════
# Contract
# ═══════════════════════════════════════════════════════════════════════════

class FeedSubscription(Protocol):
    """A live change stream. Close it to stop receiving."""

    @property
    def closed(self) -> bool: ...

    def __aiter__(self) -> "FeedSubscription": ...

    async def __anext__(self) -> AppendNotification: ...

    def close(self) -> None: ...


class HazardFeed(Protocol):
    """Append-only, timestamp-ordered store with change notifications."""

    async def append(self, hazard: NewHazard) -> HazardEvent: ...

    def now_ms(self) -> int: ...

    def subscribe_changes(self, include_existing: bool = True) -> FeedSubscription: ...


# ═══════════════════════════════════════════════════════════════════════════
# In-memory implementation
# ═══════════════════════════════════════════════════════════════════════════

_CLOSE = object()

_QueueItem = Union[AppendNotification, BaseException, object]


class _QueueSubscription:
    """Change stream backed by an asyncio.Queue."""

    def __init__(self, feed: "InMemoryHazardFeed", backlog: List[HazardEvent]):
        self._feed = feed
        self._queue: "asyncio.Queue[_QueueItem]" = asyncio.Queue()
        self._closed = False
        for event in backlog:
            self._queue.put_nowait(AppendNotification(event))

    @property
    def closed(self) -> bool:
        return self._closed

    def _push(self, item: _QueueItem) -> None:
        if not self._closed:
            self._queue.put_nowait(item)

    def __aiter__(self) -> "_QueueSubscription":
        return self

    async def __anext__(self) -> AppendNotification:
        if self._closed:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSE:
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            self._detach()
            raise item
        return item  # type: ignore[return-value]

    def close(self) -> None:
        if self._closed:
            return
        self._detach()
        self._queue.put_nowait(_CLOSE)

    def _detach(self) -> None:
        self._closed = True
        self._feed._detach(self)


class InMemoryHazardFeed:
    """
    Process-local hazard feed.

    Parameters
    ----------
    clock : callable, optional
        Returns epoch milliseconds. Defaults to the wall clock.
    """

    def __init__(self, clock: Optional[Callable[[], int]] = None):
        self._clock = clock or _wall_clock_ms
        self._events: List[HazardEvent] = []
        self._by_id: Dict[str, HazardEvent] = {}
        self._subscriptions: List[_QueueSubscription] = []
        self._last_created_at = -1
        # Highest value handed out by now_ms(); later appends never go below it
        self._floor = -1

    # ── Writes ──

    def _next_timestamp(self) -> int:
        # Strictly increasing and never below an issued watermark, even if
        # the wall clock steps backwards
        return max(self._clock(), self._last_created_at + 1, self._floor)

    async def append(self, hazard: NewHazard) -> HazardEvent:
        """Append a report and notify every live subscription."""
        created_at = self._next_timestamp()
        event = HazardEvent(
            id=_generate_id(),
            reporter_id=hazard.reporter_id,
            location=hazard.location,
            created_at=created_at,
            label=hazard.label,
            source=hazard.source,
            confidence=hazard.confidence,
        )
        self._last_created_at = created_at
        self._events.append(event)
        self._by_id[event.id] = event

        logger.info(
            "Hazard appended: %s label=%s reporter=%s",
            event.id, event.label, event.reporter_id,
            extra={"event_id": event.id},
        )

        self._broadcast(AppendNotification(event))
        return event

    def now_ms(self) -> int:
        self._floor = self._next_timestamp()
        return self._floor

    # ── Change streams ──

    def subscribe_changes(self, include_existing: bool = True) -> _QueueSubscription:
        backlog = list(self._events) if include_existing else []
        subscription = _QueueSubscription(self, backlog)
        self._subscriptions.append(subscription)
        logger.debug(
            "Feed subscription opened (%d active, backlog=%d)",
            len(self._subscriptions), len(backlog),
        )
        return subscription

    def _detach(self, subscription: _QueueSubscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def _broadcast(self, item: _QueueItem) -> None:
        for subscription in list(self._subscriptions):
            subscription._push(item)

    def redeliver(self, event_id: str) -> bool:
        """Re-send an existing event to every live subscription."""
        event = self._by_id.get(event_id)
        if event is None:
            return False
        self._broadcast(AppendNotification(event))
        return True

    def fail_subscriptions(self, error: Optional[BaseException] = None) -> int:
        """Break every live subscription; returns how many were broken."""
        error = error or TransientFeedError("Feed connection reset")
        broken = list(self._subscriptions)
        for subscription in broken:
            subscription._push(error)
        if broken:
            logger.warning("Dropped %d feed subscription(s): %s", len(broken), error)
        return len(broken)

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    # ── Reads ──

    def get(self, event_id: str) -> Optional[HazardEvent]:
        return self._by_id.get(event_id)

    def recent(self, limit: int = 50) -> List[HazardEvent]:
        """Newest first."""
        return list(reversed(self._events[-limit:])) if limit > 0 else []

    def __len__(self) -> int:
        return len(self._events)
