"""
test_fanout_dispatcher.py — Geofenced, batched push fan-out.

Covers:
    • Recipient selection: reporter, reachability and radius exclusions
    • Batching, per-batch retry with backoff, dropped-batch reporting
    • Partial per-address failures, send timeouts
    • FanoutWorker: at-least-once feed → at-most-once dispatch
    • Subscriber directories (in-memory, Redis) and settings validation

Run with:
    pytest tests/test_fanout_dispatcher.py -v
"""

from __future__ import annotations

import asyncio
import fnmatch
import math

import pytest
from pydantic import ValidationError as PydanticValidationError

from hazardwatch.alerts.channels.push_gateway import SimulatedPushSender
from hazardwatch.alerts.directory import (
    InMemorySubscriberDirectory,
    RedisSubscriberDirectory,
)
from hazardwatch.alerts.fanout_dispatcher import (
    DispatchReportStore,
    FanoutDispatcher,
    FanoutWorker,
    RetryConfig,
    compute_backoff,
    partition,
)
from hazardwatch.alerts.models import (
    BatchStatus,
    FailedDispatchReport,
    SubscriberRecord,
)
from hazardwatch.core.config import Settings
from hazardwatch.feed.hazard_feed import InMemoryHazardFeed
from hazardwatch.feed.models import HazardEvent, NewHazard
from hazardwatch.spatial.geo_math import Coordinate

from helpers import ScriptedSender, no_sleep, settle


X = Coordinate(10.0, 10.0)
REPORTER = "user_reporter"


def _event(location=X, reporter=REPORTER, event_id="hz_evt") -> HazardEvent:
    return HazardEvent(
        id=event_id,
        reporter_id=reporter,
        location=location,
        created_at=1_700_000_000_000,
        label="pothole",
    )


def _subscribers(count: int, near=X):
    return [
        SubscriberRecord(
            subscriber_id=f"user_{i:04d}",
            location=Coordinate(near.latitude + i * 1e-6, near.longitude),
            delivery_address=f"tok-{i:04d}",
        )
        for i in range(count)
    ]


def _dispatcher(records, sender, *, max_retries=2, sleep=no_sleep, **kwargs) -> FanoutDispatcher:
    return FanoutDispatcher(
        InMemorySubscriberDirectory(records),
        sender,
        radius_km=kwargs.pop("radius_km", 5.0),
        batch_size=kwargs.pop("batch_size", 500),
        retry=RetryConfig(max_retries=max_retries, backoff_base_seconds=0.5),
        sleep=sleep,
        **kwargs,
    )


# ═══════════════════════════════════════════════════════════════════════════
# Helpers
# ═══════════════════════════════════════════════════════════════════════════

class TestBackoffAndPartition:

    def test_exponential_backoff(self):
        config = RetryConfig(max_retries=3, backoff_base_seconds=0.5)
        assert [compute_backoff(config, n) for n in (1, 2, 3)] == [0.5, 1.0, 2.0]

    def test_linear_backoff(self):
        config = RetryConfig(max_retries=3, backoff_base_seconds=0.5, backoff_type="linear")
        assert [compute_backoff(config, n) for n in (1, 2, 3)] == [0.5, 1.0, 1.5]

    def test_partition_sizes(self):
        assert [len(b) for b in partition(list(range(1200)), 500)] == [500, 500, 200]
        assert partition([], 500) == []
        assert partition([1, 2, 3], 3) == [[1, 2, 3]]

    def test_partition_rejects_zero(self):
        with pytest.raises(ValueError):
            partition([1], 0)


# ═══════════════════════════════════════════════════════════════════════════
# Recipient selection
# ═══════════════════════════════════════════════════════════════════════════

class TestSelectRecipients:

    def test_exclusions(self):
        records = [
            SubscriberRecord("user_ok", Coordinate(10.01, 10.0), "tok-ok"),
            SubscriberRecord(REPORTER, X, "tok-reporter"),
            SubscriberRecord("user_no_token", X, None),
            SubscriberRecord("user_no_location", None, "tok-nowhere"),
            SubscriberRecord("user_far", Coordinate(10.5, 10.0), "tok-far"),
        ]
        dispatcher = _dispatcher(records, ScriptedSender())
        selected = dispatcher.select_recipients(_event(), records)

        assert [r.subscriber_id for r, _ in selected] == ["user_ok"]
        assert selected[0][1] == pytest.approx(1.112, abs=0.01)

    def test_high_latitude_edge_of_radius_selected(self):
        center = Coordinate(80.0, 0.0)
        a = 99.999 / 6371.0
        edge = Coordinate(
            math.degrees(math.asin(math.sin(center.lat_rad) / math.cos(a))),
            math.degrees(math.asin(math.sin(a) / math.cos(center.lat_rad))),
        )
        records = [SubscriberRecord("user_edge", edge, "tok-edge")]
        dispatcher = _dispatcher(records, ScriptedSender(), radius_km=100.0)
        selected = dispatcher.select_recipients(_event(location=center), records)
        assert [r.subscriber_id for r, _ in selected] == ["user_edge"]

    def test_across_antimeridian(self):
        center = Coordinate(0.0, 179.99)
        records = [SubscriberRecord("user_east", Coordinate(0.0, -179.99), "tok-east")]
        dispatcher = _dispatcher(records, ScriptedSender())
        assert len(dispatcher.select_recipients(_event(location=center), records)) == 1


# ═══════════════════════════════════════════════════════════════════════════
# dispatch()
# ═══════════════════════════════════════════════════════════════════════════

class TestDispatch:

    def test_batch_failure_is_isolated(self):
        sender = ScriptedSender(fail_when=lambda addresses: addresses[0] == "tok-0500")
        delays = []

        async def record_sleep(seconds):
            delays.append(seconds)

        store = DispatchReportStore()
        dispatcher = _dispatcher(
            _subscribers(1200), sender, sleep=record_sleep, report_store=store,
        )
        report = asyncio.run(dispatcher.dispatch(_event()))

        assert report.eligible == 1200
        assert [len(b.addresses) for b in report.batches] == [500, 500, 200]
        assert [b.status for b in report.batches] == [
            BatchStatus.DELIVERED, BatchStatus.DROPPED, BatchStatus.DELIVERED,
        ]
        assert report.delivered_count == 700
        assert report.batches[1].attempts == 3
        assert delays == [0.5, 1.0]
        assert len(sender.calls) == 5

        failures = store.failed_dispatches()
        assert len(failures) == 1
        assert failures[0].batch_id == "hz_evt-b2"
        assert failures[0].attempts == 3
        assert len(failures[0].addresses) == 500
        assert store.get("hz_evt") is report

    def test_payload_carries_event(self):
        sender = ScriptedSender()
        dispatcher = _dispatcher(_subscribers(2), sender, title="T", body="B")
        asyncio.run(dispatcher.dispatch(_event()))

        assert sender.payloads[0] == {
            "title": "T",
            "body": "B",
            "data": {"event_id": "hz_evt", "label": "pothole"},
        }

    def test_default_notification_text(self):
        sender = ScriptedSender()
        asyncio.run(_dispatcher(_subscribers(1), sender).dispatch(_event()))

        assert sender.payloads[0]["title"] == "Hazard detected in your area"
        assert "Drive safe" in sender.payloads[0]["body"]

    def test_event_without_location_is_skipped(self):
        sender = ScriptedSender()
        report = asyncio.run(_dispatcher(_subscribers(3), sender).dispatch(_event(location=None)))

        assert report.skipped_reason == "no_location"
        assert report.batches == []
        assert sender.calls == []

    def test_no_recipients(self):
        sender = ScriptedSender()
        far = _subscribers(3, near=Coordinate(40.0, 40.0))
        report = asyncio.run(_dispatcher(far, sender).dispatch(_event()))

        assert report.skipped_reason == "no_recipients"
        assert report.subscribers_checked == 3
        assert sender.calls == []

    def test_shared_token_notified_once(self):
        records = [
            SubscriberRecord("user_a", X, "tok-shared"),
            SubscriberRecord("user_b", X, "tok-shared"),
        ]
        sender = ScriptedSender()
        report = asyncio.run(_dispatcher(records, sender).dispatch(_event()))

        assert report.eligible == 1
        assert sender.calls == [["tok-shared"]]

    def test_rejected_addresses_are_partial_not_retried(self):
        sender = ScriptedSender(reject={"tok-0001"})
        store = DispatchReportStore()
        report = asyncio.run(
            _dispatcher(_subscribers(3), sender, report_store=store).dispatch(_event())
        )

        batch = report.batches[0]
        assert batch.status is BatchStatus.PARTIAL
        assert batch.attempts == 1
        assert batch.delivered == 2
        assert [f.address for f in report.failures] == ["tok-0001"]
        assert store.failed_dispatches() == []
        assert len(sender.calls) == 1

    def test_transient_transport_failure_recovers(self):
        sender = SimulatedPushSender(transport_failures=1)
        report = asyncio.run(_dispatcher(_subscribers(4), sender).dispatch(_event()))

        batch = report.batches[0]
        assert batch.status is BatchStatus.DELIVERED
        assert batch.attempts == 2
        assert report.delivered_count == 4

    def test_send_timeout_drops_batch(self):
        sender = ScriptedSender(delay=0.5)
        store = DispatchReportStore()
        dispatcher = _dispatcher(
            _subscribers(2), sender, max_retries=0,
            send_timeout_seconds=0.01, report_store=store,
        )
        report = asyncio.run(dispatcher.dispatch(_event()))

        assert report.batches[0].status is BatchStatus.DROPPED
        assert "timed out" in report.batches[0].error
        assert store.total_failures == 1

    def test_unknown_address_verdict_counts_as_failure(self):
        class ForgetfulSender(ScriptedSender):
            async def send(self, addresses, title, body, *, data=None):
                results = await super().send(addresses, title, body, data=data)
                return results[:-1]

        report = asyncio.run(_dispatcher(_subscribers(3), ForgetfulSender()).dispatch(_event()))
        assert report.failures[0].reason == "no result from transport"
        assert report.delivered_count == 2

    def test_oversized_batch_is_rejected_by_transport(self):
        sender = SimulatedPushSender(max_batch_size=2)
        store = DispatchReportStore()
        report = asyncio.run(
            _dispatcher(
                _subscribers(3), sender, batch_size=3, max_retries=0, report_store=store,
            ).dispatch(_event())
        )
        assert report.batches[0].status is BatchStatus.DROPPED
        assert store.total_failures == 1


# ═══════════════════════════════════════════════════════════════════════════
# Report store
# ═══════════════════════════════════════════════════════════════════════════

class TestDispatchReportStore:

    def test_listeners_notified_and_isolated(self):
        store = DispatchReportStore(history=2)
        seen = []

        def broken(_failure):
            raise RuntimeError("pager down")

        store.add_listener(broken)
        store.add_listener(seen.append)

        for i in range(3):
            store.report_failure(FailedDispatchReport(
                batch_id=f"hz_{i}-b1", event_id=f"hz_{i}",
                addresses=["tok"], error="boom", attempts=3,
            ))

        assert len(seen) == 3
        assert store.total_failures == 3
        assert [f.event_id for f in store.failed_dispatches()] == ["hz_2", "hz_1"]

    def test_failure_to_dict_masks_tokens(self):
        failure = FailedDispatchReport(
            batch_id="b", event_id="e",
            addresses=["a-very-long-device-token"], error="x", attempts=1,
        )
        assert failure.to_dict()["addresses"] == ["a-very-long-..."]


# ═══════════════════════════════════════════════════════════════════════════
# Worker
# ═══════════════════════════════════════════════════════════════════════════

def _worker(feed, sender, records=None, **options):
    dispatcher = _dispatcher(records or _subscribers(2), sender)
    options.setdefault("resubscribe_backoff_ms", 0)
    return FanoutWorker(feed, dispatcher, **options)


class TestFanoutWorker:

    def test_redelivered_event_dispatched_once(self, clock):
        sender = ScriptedSender()

        async def scenario():
            feed = InMemoryHazardFeed(clock=clock)
            worker = _worker(feed, sender)
            await worker.start()
            event = await feed.append(NewHazard(REPORTER, X))
            await settle()
            feed.redeliver(event.id)
            feed.redeliver(event.id)
            await settle()
            await worker.drain()
            await worker.stop()
            return worker, event

        worker, event = asyncio.run(scenario())
        assert len(sender.calls) == 1
        assert worker.dispatcher.report_store.get(event.id) is not None

    def test_events_before_start_are_ignored(self, clock):
        sender = ScriptedSender()

        async def scenario():
            feed = InMemoryHazardFeed(clock=clock)
            old = await feed.append(NewHazard(REPORTER, X))
            worker = _worker(feed, sender)
            await worker.start()
            await settle()
            await worker.drain()
            resubmitted = worker.submit(old)
            await worker.stop()
            return resubmitted

        assert asyncio.run(scenario()) is None
        assert sender.calls == []

    def test_gap_events_dispatched_after_resubscribe(self, clock):
        sender = ScriptedSender()

        async def scenario():
            feed = InMemoryHazardFeed(clock=clock)
            worker = _worker(feed, sender)
            await worker.start()
            await feed.append(NewHazard(REPORTER, X, label="first"))
            await settle()
            feed.fail_subscriptions()
            await feed.append(NewHazard(REPORTER, X, label="during"))
            await settle()
            await worker.drain()
            running = worker.is_running
            await worker.stop()
            return running

        assert asyncio.run(scenario()) is True
        assert len(sender.calls) == 2

    def test_resubscribe_replay_beyond_dedupe_window_not_redispatched(self, clock):
        sender = ScriptedSender()

        async def scenario():
            feed = InMemoryHazardFeed(clock=clock)
            worker = _worker(feed, sender, dedupe_window=2)
            await worker.start()
            for label in ("first", "second", "third"):
                await feed.append(NewHazard(REPORTER, X, label=label))
            await settle()
            await worker.drain()
            feed.fail_subscriptions()
            await settle()
            await worker.drain()
            fourth = await feed.append(NewHazard(REPORTER, X, label="fourth"))
            await settle()
            await worker.drain()
            await worker.stop()
            return worker, fourth

        worker, fourth = asyncio.run(scenario())
        assert len(sender.calls) == 4
        assert worker.cursor == fourth.created_at

    def test_connectivity_error_after_retries(self, clock):
        async def scenario():
            feed = InMemoryHazardFeed(clock=clock)
            worker = _worker(feed, ScriptedSender(), resubscribe_retries=0)
            await worker.start()
            await settle()
            feed.fail_subscriptions()
            await settle()
            return worker

        worker = asyncio.run(scenario())
        assert not worker.is_running
        assert worker.connectivity_error is not None
        assert worker.connectivity_error.consumer == "fanout-worker"

    def test_directory_failure_does_not_kill_worker(self, clock):
        class BrokenDirectory:
            async def snapshot(self):
                raise ConnectionError("directory unavailable")

        async def scenario():
            feed = InMemoryHazardFeed(clock=clock)
            dispatcher = FanoutDispatcher(BrokenDirectory(), ScriptedSender(), sleep=no_sleep)
            worker = FanoutWorker(feed, dispatcher, resubscribe_backoff_ms=0)
            await worker.start()
            await feed.append(NewHazard(REPORTER, X))
            await settle()
            await worker.drain()
            running = worker.is_running
            await worker.stop()
            return running

        assert asyncio.run(scenario()) is True


# ═══════════════════════════════════════════════════════════════════════════
# Directories
# ═══════════════════════════════════════════════════════════════════════════

class FakeRedis:
    """Just enough of redis.asyncio.Redis for the directory."""

    def __init__(self):
        self.hashes = {}
        self.closed = False

    async def hset(self, key, mapping):
        self.hashes.setdefault(key, {}).update(mapping)
        return len(mapping)

    async def hgetall(self, key):
        return dict(self.hashes.get(key, {}))

    async def delete(self, key):
        return 1 if self.hashes.pop(key, None) is not None else 0

    async def scan_iter(self, match="*"):
        for key in list(self.hashes):
            if fnmatch.fnmatch(key, match):
                yield key

    async def aclose(self):
        self.closed = True


class TestDirectories:

    def test_in_memory_upsert_replaces(self):
        async def scenario():
            directory = InMemorySubscriberDirectory()
            await directory.upsert(SubscriberRecord("user_a", X, "tok-1"))
            await directory.upsert(SubscriberRecord("user_a", X, "tok-2"))
            removed = await directory.remove("user_a")
            return directory, removed

        directory, removed = asyncio.run(scenario())
        assert removed is True
        assert len(directory) == 0

    def test_redis_round_trip_and_snapshot(self):
        client = FakeRedis()
        client.hashes["other:user_x"] = {"lat": "1", "lon": "1", "token": "t"}

        async def scenario():
            directory = RedisSubscriberDirectory(client, prefix="subscriber:")
            await directory.upsert(SubscriberRecord("user_a", X, "tok-a"))
            await directory.upsert(SubscriberRecord("user_b", None, None))
            fetched = await directory.get("user_a")
            snapshot = await directory.snapshot()
            removed = await directory.remove("user_b")
            missing = await directory.get("user_b")
            return fetched, snapshot, removed, missing

        fetched, snapshot, removed, missing = asyncio.run(scenario())
        assert fetched.location == X
        assert fetched.delivery_address == "tok-a"
        assert fetched.updated_at is not None
        assert sorted(r.subscriber_id for r in snapshot) == ["user_a", "user_b"]
        assert [r.is_reachable for r in sorted(snapshot, key=lambda r: r.subscriber_id)] == [
            True, False,
        ]
        assert removed is True
        assert missing is None

    def test_redis_invalid_location_is_unreachable(self):
        client = FakeRedis()
        client.hashes["subscriber:user_bad"] = {"lat": "123.0", "lon": "10.0", "token": "tok"}

        async def scenario():
            return await RedisSubscriberDirectory(client, prefix="subscriber:").snapshot()

        (record,) = asyncio.run(scenario())
        assert record.location is None
        assert not record.is_reachable

    def test_redis_close_releases_client(self):
        client = FakeRedis()
        directory = RedisSubscriberDirectory(client)
        asyncio.run(directory.close())
        assert client.closed


# ═══════════════════════════════════════════════════════════════════════════
# Settings
# ═══════════════════════════════════════════════════════════════════════════

class TestSettings:

    def test_defaults(self):
        config = Settings(_env_file=None)
        assert config.ALERT_RADIUS_KM == 5.0
        assert config.FANOUT_BATCH_SIZE == 500

    @pytest.mark.parametrize("field, value", [
        ("ALERT_RADIUS_KM", 0),
        ("FANOUT_RADIUS_KM", -1.0),
        ("FANOUT_BATCH_SIZE", 0),
        ("FANOUT_RETRY_COUNT", -1),
    ])
    def test_rejects_invalid_values(self, field, value):
        with pytest.raises(PydanticValidationError):
            Settings(_env_file=None, **{field: value})
