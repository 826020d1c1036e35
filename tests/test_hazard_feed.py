"""
test_hazard_feed.py — Append-only feed, change streams and reporting.

Covers:
    • created_at ordering and the now_ms() watermark boundary
    • Backlog replay, live delivery, redelivery, dropped subscriptions
    • HazardReporter: classify → append, no confidence gate

Run with:
    pytest tests/test_hazard_feed.py -v
"""

from __future__ import annotations

import asyncio

import pytest

from hazardwatch.core.errors import TransientFeedError, ValidationError
from hazardwatch.feed.hazard_feed import InMemoryHazardFeed
from hazardwatch.feed.models import NewHazard
from hazardwatch.feed.reporting import Classification, HazardReporter
from hazardwatch.spatial.geo_math import Coordinate


HERE = Coordinate(10.0, 10.0)


def _hazard(reporter: str = "u1", location=HERE, label: str = "pothole") -> NewHazard:
    return NewHazard(reporter_id=reporter, location=location, label=label)


class TestAppendOrdering:

    def test_ids_unique_and_timestamps_increase(self, clock):
        async def scenario():
            feed = InMemoryHazardFeed(clock=clock)
            events = [await feed.append(_hazard()) for _ in range(5)]
            return events

        events = asyncio.run(scenario())
        assert len({e.id for e in events}) == 5
        stamps = [e.created_at for e in events]
        assert stamps == sorted(stamps)
        assert len(set(stamps)) == 5  # same clock tick still separates them

    def test_follows_clock_when_it_moves(self, clock):
        async def scenario():
            feed = InMemoryHazardFeed(clock=clock)
            first = await feed.append(_hazard())
            clock.advance(5_000)
            second = await feed.append(_hazard())
            return first, second

        first, second = asyncio.run(scenario())
        assert second.created_at == first.created_at + 5_000

    def test_now_ms_separates_past_from_future(self, clock):
        async def scenario():
            feed = InMemoryHazardFeed(clock=clock)
            before = await feed.append(_hazard())
            mark = feed.now_ms()
            after = await feed.append(_hazard())
            return before, mark, after

        before, mark, after = asyncio.run(scenario())
        assert before.created_at < mark <= after.created_at

    def test_clock_stepping_back_never_undercuts_watermark(self, clock):
        async def scenario():
            feed = InMemoryHazardFeed(clock=clock)
            mark = feed.now_ms()
            clock.advance(-1_000)
            event = await feed.append(_hazard())
            return mark, event

        mark, event = asyncio.run(scenario())
        assert event.created_at >= mark

    def test_event_keeps_label_and_allows_missing_location(self, clock):
        async def scenario():
            feed = InMemoryHazardFeed(clock=clock)
            return await feed.append(_hazard(location=None, label="speedbump"))

        event = asyncio.run(scenario())
        assert event.label == "speedbump"
        assert event.has_location is False
        assert event.to_dict()["location"] is None


class TestChangeStreams:

    def test_backlog_then_live_in_append_order(self, clock):
        async def scenario():
            feed = InMemoryHazardFeed(clock=clock)
            old = await feed.append(_hazard(label="old"))
            sub = feed.subscribe_changes()
            new = await feed.append(_hazard(label="new"))
            received = [await sub.__anext__(), await sub.__anext__()]
            sub.close()
            return old, new, received

        old, new, received = asyncio.run(scenario())
        assert [n.event_id for n in received] == [old.id, new.id]

    def test_live_only_subscription_skips_backlog(self, clock):
        async def scenario():
            feed = InMemoryHazardFeed(clock=clock)
            await feed.append(_hazard(label="old"))
            sub = feed.subscribe_changes(include_existing=False)
            new = await feed.append(_hazard(label="new"))
            first = await sub.__anext__()
            return new, first

        new, first = asyncio.run(scenario())
        assert first.event_id == new.id

    def test_redeliver_duplicates_notification(self, clock):
        async def scenario():
            feed = InMemoryHazardFeed(clock=clock)
            sub = feed.subscribe_changes()
            event = await feed.append(_hazard())
            assert feed.redeliver(event.id) is True
            assert feed.redeliver("hz_missing") is False
            return event, [await sub.__anext__(), await sub.__anext__()]

        event, received = asyncio.run(scenario())
        assert [n.event_id for n in received] == [event.id, event.id]

    def test_close_ends_iteration_and_detaches(self, clock):
        async def scenario():
            feed = InMemoryHazardFeed(clock=clock)
            sub = feed.subscribe_changes()
            assert feed.subscription_count == 1
            sub.close()
            items = [n async for n in sub]
            return feed, items

        feed, items = asyncio.run(scenario())
        assert items == []
        assert feed.subscription_count == 0

    def test_failed_subscription_raises_transient_error(self, clock):
        async def scenario():
            feed = InMemoryHazardFeed(clock=clock)
            sub = feed.subscribe_changes()
            assert feed.fail_subscriptions() == 1
            with pytest.raises(TransientFeedError):
                await sub.__anext__()
            return feed, sub

        feed, sub = asyncio.run(scenario())
        assert sub.closed
        assert feed.subscription_count == 0


class TestReads:

    def test_recent_is_newest_first(self, clock):
        async def scenario():
            feed = InMemoryHazardFeed(clock=clock)
            events = [await feed.append(_hazard(label=str(i))) for i in range(3)]
            return feed, events

        feed, events = asyncio.run(scenario())
        assert [e.id for e in feed.recent(2)] == [events[2].id, events[1].id]
        assert feed.get(events[0].id) is events[0]
        assert len(feed) == 3


class _StubClassifier:
    def __init__(self, label: str, confidence: float):
        self.result = Classification(label, confidence)
        self.images = []

    def classify(self, image):
        self.images.append(image)
        return self.result


class TestHazardReporter:

    def test_low_confidence_still_reported(self, clock):
        classifier = _StubClassifier("speedbump", 0.12)

        async def scenario():
            feed = InMemoryHazardFeed(clock=clock)
            reporter = HazardReporter(classifier, feed)
            event = await reporter.report("user_a", b"jpeg-bytes", HERE)
            return feed, event

        feed, event = asyncio.run(scenario())
        assert classifier.images == [b"jpeg-bytes"]
        assert event.label == "speedbump"
        assert event.confidence == pytest.approx(0.12)
        assert event.reporter_id == "user_a"
        assert event.source == "android_app"
        assert len(feed) == 1

    def test_refuses_without_location(self, clock):
        classifier = _StubClassifier("pothole", 0.9)

        async def scenario():
            feed = InMemoryHazardFeed(clock=clock)
            with pytest.raises(ValidationError):
                await HazardReporter(classifier, feed).report("user_a", b"img", None)
            return feed

        feed = asyncio.run(scenario())
        assert len(feed) == 0
        assert classifier.images == []

    def test_refuses_without_image(self, clock):
        async def scenario():
            feed = InMemoryHazardFeed(clock=clock)
            with pytest.raises(ValidationError):
                await HazardReporter(_StubClassifier("pothole", 0.9), feed).report(
                    "user_a", None, HERE,
                )

        asyncio.run(scenario())
