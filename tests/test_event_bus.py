"""Tests for jobrelay.orchestrator.event_bus module.

Covers EventBus lifecycle, subscription management, per-subscriber ordered
delivery, filtering, drop-oldest backpressure, failing-subscriber isolation,
durable subscribers, and the Redis-backed bus (broker routing, malformed
messages, degraded mode, reconnecting after the broker drops).
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from jobrelay.orchestrator.event_bus import EventBus, RedisEventBus
from jobrelay.orchestrator.types import JobEvent, JobEventType
from tests.helpers import make_event, wait_until


# ─── Lifecycle ────────────────────────────────────────────────────────


class TestLifecycle:
    """Tests for EventBus connect/close lifecycle."""

    @pytest.mark.asyncio
    async def test_connect_is_idempotent(self):
        bus = EventBus()
        await bus.connect()
        await bus.connect()
        assert bus.is_connected is True
        assert bus.is_degraded is False
        await bus.close()

    @pytest.mark.asyncio
    async def test_publish_before_connect_is_dropped(self):
        """Events published before connect() never reach subscribers."""
        bus = EventBus()
        received: list[JobEvent] = []
        bus.subscribe(received.append)
        await bus.publish(make_event())
        await bus.connect()
        await asyncio.sleep(0.01)
        assert received == []
        await bus.close()

    @pytest.mark.asyncio
    async def test_subscriber_registered_before_connect_gets_pump(self):
        bus = EventBus()
        received: list[JobEvent] = []
        bus.subscribe(received.append)
        await bus.connect()
        await bus.publish(make_event())
        await wait_until(lambda: len(received) == 1)
        await bus.close()

    @pytest.mark.asyncio
    async def test_close_stops_delivery(self):
        bus = EventBus()
        received: list[JobEvent] = []
        bus.subscribe(received.append)
        await bus.connect()
        await bus.close()
        assert bus.is_connected is False
        await bus.publish(make_event())
        await asyncio.sleep(0.01)
        assert received == []

    @pytest.mark.asyncio
    async def test_close_twice_does_not_raise(self):
        bus = EventBus()
        await bus.connect()
        await bus.close()
        await bus.close()


# ─── Subscription ─────────────────────────────────────────────────────


class TestSubscription:
    """Tests for subscribe/unsubscribe and subscriber_count."""

    @pytest.mark.asyncio
    async def test_subscribe_returns_distinct_ids(self):
        bus = EventBus()
        id1 = bus.subscribe(AsyncMock())
        id2 = bus.subscribe(AsyncMock())
        assert id1 != id2
        assert bus.subscriber_count == 2

    @pytest.mark.asyncio
    async def test_unsubscribe_unknown_returns_false(self):
        bus = EventBus()
        assert bus.unsubscribe("nonexistent") is False

    @pytest.mark.asyncio
    async def test_unsubscribe_stops_delivery(self):
        bus = EventBus()
        await bus.connect()
        received: list[JobEvent] = []
        sub_id = bus.subscribe(received.append)
        await bus.publish(make_event(job_id="a"))
        await wait_until(lambda: len(received) == 1)

        assert bus.unsubscribe(sub_id) is True
        assert bus.subscriber_count == 0
        await bus.publish(make_event(job_id="b"))
        await asyncio.sleep(0.01)
        assert [e.job_id for e in received] == ["a"]
        await bus.close()


# ─── Delivery ─────────────────────────────────────────────────────────


class TestDelivery:
    """Tests for fan-out, filtering and ordering."""

    @pytest.mark.asyncio
    async def test_every_subscriber_receives_event(self):
        bus = EventBus()
        await bus.connect()
        first: list[JobEvent] = []
        second = AsyncMock()
        bus.subscribe(first.append)
        bus.subscribe(second)

        event = make_event(JobEventType.STEP, step=1)
        await bus.publish(event)

        await wait_until(lambda: len(first) == 1 and second.await_count == 1)
        assert first[0] is event
        second.assert_awaited_once_with(event)
        await bus.close()

    @pytest.mark.asyncio
    async def test_filter_limits_events(self):
        bus = EventBus()
        await bus.connect()
        received: list[JobEvent] = []
        bus.subscribe(received.append, event_filter=lambda e: e.job_id == "wanted")

        await bus.publish(make_event(job_id="other"))
        await bus.publish(make_event(job_id="wanted"))

        await wait_until(lambda: len(received) == 1)
        await asyncio.sleep(0.01)
        assert [e.job_id for e in received] == ["wanted"]
        await bus.close()

    @pytest.mark.asyncio
    async def test_raising_filter_skips_subscriber(self):
        bus = EventBus()
        await bus.connect()
        broken: list[JobEvent] = []
        healthy: list[JobEvent] = []

        def bad_filter(event: JobEvent) -> bool:
            raise ValueError("bad filter")

        bus.subscribe(broken.append, event_filter=bad_filter)
        bus.subscribe(healthy.append)
        await bus.publish(make_event())

        await wait_until(lambda: len(healthy) == 1)
        assert broken == []
        await bus.close()

    @pytest.mark.asyncio
    async def test_events_arrive_in_publish_order(self):
        bus = EventBus()
        await bus.connect()
        received: list[int] = []

        async def slow(event: JobEvent) -> None:
            await asyncio.sleep(0)
            received.append(event.data["seq"])

        bus.subscribe(slow)
        for seq in range(50):
            await bus.publish(make_event(JobEventType.STEP, seq=seq))

        await wait_until(lambda: len(received) == 50)
        assert received == list(range(50))
        await bus.close()

    @pytest.mark.asyncio
    async def test_slow_subscriber_does_not_block_others(self):
        bus = EventBus()
        await bus.connect()
        gate = asyncio.Event()
        fast: list[JobEvent] = []

        async def stuck(event: JobEvent) -> None:
            await gate.wait()

        bus.subscribe(stuck)
        bus.subscribe(fast.append)
        for seq in range(5):
            await bus.publish(make_event(seq=seq))

        await wait_until(lambda: len(fast) == 5)
        gate.set()
        await bus.close()


# ─── Backpressure ─────────────────────────────────────────────────────


class TestBackpressure:
    """Tests for the bounded per-subscriber queue."""

    @pytest.mark.asyncio
    async def test_full_queue_drops_oldest(self):
        bus = EventBus(max_queue_size=3)
        await bus.connect()
        gate = asyncio.Event()
        received: list[int] = []

        async def blocked(event: JobEvent) -> None:
            received.append(event.data["seq"])
            await gate.wait()

        bus.subscribe(blocked)
        await bus.publish(make_event(seq=0))
        await wait_until(lambda: received == [0])

        # The pump is parked inside the callback for seq=0
        for seq in range(1, 6):
            await bus.publish(make_event(seq=seq))

        gate.set()
        await wait_until(lambda: len(received) == 4)
        assert received == [0, 3, 4, 5]
        await bus.close()

    @pytest.mark.asyncio
    async def test_dropped_events_are_counted(self):
        bus = EventBus(max_queue_size=2)
        sub_id = bus.subscribe(AsyncMock())
        # Not connected: no pump drains the queue, so _deliver fills it
        for seq in range(5):
            bus._deliver(make_event(seq=seq))
        sub = bus._subscribers[sub_id]
        assert sub.dropped == 3
        assert [e.data["seq"] for e in sub.queue] == [3, 4]


# ─── Failing subscribers ──────────────────────────────────────────────


class TestFailingSubscribers:
    """A subscriber that raises is isolated, then disabled."""

    @pytest.mark.asyncio
    async def test_error_does_not_affect_other_subscribers(self):
        bus = EventBus()
        await bus.connect()
        healthy: list[JobEvent] = []
        bus.subscribe(MagicMock(side_effect=RuntimeError("boom")))
        bus.subscribe(healthy.append)

        await bus.publish(make_event())
        await wait_until(lambda: len(healthy) == 1)
        await bus.close()

    @pytest.mark.asyncio
    async def test_disabled_after_consecutive_failures(self):
        bus = EventBus()
        await bus.connect()
        failing = MagicMock(side_effect=RuntimeError("boom"))
        bus.subscribe(failing)

        for seq in range(15):
            await bus.publish(make_event(seq=seq))
        await wait_until(lambda: failing.call_count >= 10)
        await asyncio.sleep(0.02)
        assert failing.call_count == 10
        await bus.close()

    @pytest.mark.asyncio
    async def test_disabled_subscriber_is_not_counted(self):
        bus = EventBus()
        await bus.connect()
        bus.subscribe(MagicMock(side_effect=RuntimeError("boom")))
        bus.subscribe(AsyncMock())

        for seq in range(10):
            await bus.publish(make_event(seq=seq))
        await wait_until(lambda: bus.disabled_subscriber_count == 1)
        assert bus.subscriber_count == 1
        await bus.close()

    @pytest.mark.asyncio
    async def test_durable_subscriber_is_never_disabled(self):
        bus = EventBus()
        await bus.connect()
        calls: list[int] = []

        def failing_then_healthy(event: JobEvent) -> None:
            calls.append(event.data["seq"])
            if event.data["seq"] < 15:
                raise RuntimeError("database is locked")

        bus.subscribe(failing_then_healthy, durable=True)
        for seq in range(16):
            await bus.publish(make_event(seq=seq))

        await wait_until(lambda: len(calls) == 16)
        assert calls == list(range(16))
        assert bus.subscriber_count == 1
        assert bus.disabled_subscriber_count == 0
        await bus.close()

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self):
        bus = EventBus()
        await bus.connect()
        calls: list[int] = []

        def flaky(event: JobEvent) -> None:
            calls.append(event.data["seq"])
            if event.data["seq"] % 2 == 0:
                raise RuntimeError("even")

        bus.subscribe(flaky)
        for seq in range(30):
            await bus.publish(make_event(seq=seq))
        await wait_until(lambda: len(calls) == 30)
        await bus.close()


# ─── Redis-backed bus ─────────────────────────────────────────────────


class _FakePubSub:
    """Stands in for redis.asyncio PubSub; replays scripted messages."""

    def __init__(self, messages: list[dict[str, Any]]) -> None:
        self._messages = messages
        self.subscribed: list[str] = []
        self.closed = False

    async def subscribe(self, channel: str) -> None:
        self.subscribed.append(channel)

    async def unsubscribe(self, channel: str) -> None:
        self.subscribed.remove(channel)

    async def aclose(self) -> None:
        self.closed = True

    async def listen(self) -> AsyncIterator[dict[str, Any]]:
        for message in self._messages:
            yield message


class _DroppingPubSub(_FakePubSub):
    """Replays its messages, then loses the connection."""

    async def listen(self) -> AsyncIterator[dict[str, Any]]:
        for message in self._messages:
            yield message
        raise RedisConnectionError("Connection reset by peer")


def _fake_client(pubsub: _FakePubSub | None = None) -> MagicMock:
    client = MagicMock()
    client.ping = AsyncMock(return_value=True)
    client.publish = AsyncMock(return_value=1)
    client.aclose = AsyncMock()
    client.pubsub = MagicMock(return_value=pubsub or _FakePubSub([]))
    return client


class TestRedisEventBus:
    """Tests for RedisEventBus with a mocked redis client."""

    @pytest.mark.asyncio
    async def test_unreachable_broker_degrades_to_local(self):
        client = _fake_client()
        client.ping = AsyncMock(side_effect=RedisConnectionError("Connection refused"))
        with patch("jobrelay.orchestrator.event_bus.aioredis.from_url", return_value=client):
            bus = RedisEventBus("redis://localhost:6379/0")
            received: list[JobEvent] = []
            bus.subscribe(received.append)
            await bus.connect()

        assert bus.is_connected is True
        assert bus.is_degraded is True
        await bus.publish(make_event())
        await wait_until(lambda: len(received) == 1)
        client.publish.assert_not_awaited()
        await bus.close()

    @pytest.mark.asyncio
    async def test_publish_goes_through_broker(self):
        client = _fake_client()
        with patch("jobrelay.orchestrator.event_bus.aioredis.from_url", return_value=client):
            bus = RedisEventBus("redis://localhost:6379/0", channel="job:events")
            await bus.connect()

        event = make_event(JobEventType.STARTED, job_id="j1")
        await bus.publish(event)
        client.publish.assert_awaited_once_with("job:events", event.to_wire())
        assert bus.is_degraded is False
        await bus.close()

    @pytest.mark.asyncio
    async def test_publish_failure_falls_back_to_local(self):
        client = _fake_client()
        client.publish = AsyncMock(side_effect=RedisConnectionError("gone"))
        with patch("jobrelay.orchestrator.event_bus.aioredis.from_url", return_value=client):
            bus = RedisEventBus("redis://localhost:6379/0")
            await bus.connect()

        received: list[JobEvent] = []
        bus.subscribe(received.append)
        await bus.publish(make_event())
        await wait_until(lambda: len(received) == 1)
        await bus.close()

    @pytest.mark.asyncio
    async def test_channel_messages_fan_out_and_malformed_are_skipped(self):
        good = make_event(JobEventType.STEP, job_id="j1", step=3)
        pubsub = _FakePubSub([
            {"type": "message", "data": "not json"},
            {"type": "message", "data": '{"type": "bogus", "jobId": "j1"}'},
            {"type": "message", "data": good.to_wire()},
        ])
        client = _fake_client(pubsub)
        received: list[JobEvent] = []
        with patch("jobrelay.orchestrator.event_bus.aioredis.from_url", return_value=client):
            bus = RedisEventBus("redis://localhost:6379/0")
            bus.subscribe(received.append)
            await bus.connect()

        await wait_until(lambda: len(received) == 1)
        assert received[0].job_id == "j1"
        assert received[0].data == {"step": 3}
        await bus.close()
        assert pubsub.closed is True
        client.aclose.assert_awaited()

    @pytest.mark.asyncio
    async def test_prefixed_event_types_are_accepted(self):
        pubsub = _FakePubSub([
            {"type": "message", "data": '{"type": "job:completed", "jobId": "j9", "data": {}}'},
        ])
        client = _fake_client(pubsub)
        received: list[JobEvent] = []
        with patch("jobrelay.orchestrator.event_bus.aioredis.from_url", return_value=client):
            bus = RedisEventBus("redis://localhost:6379/0")
            bus.subscribe(received.append)
            await bus.connect()

        await wait_until(lambda: len(received) == 1)
        assert received[0].type == JobEventType.COMPLETED
        await bus.close()

    @pytest.mark.asyncio
    async def test_send_reports_whether_broker_took_event(self):
        client = _fake_client()
        with patch("jobrelay.orchestrator.event_bus.aioredis.from_url", return_value=client):
            bus = RedisEventBus("redis://localhost:6379/0")
            await bus.connect()

        received: list[JobEvent] = []
        bus.subscribe(received.append)
        assert await bus.send(make_event()) is True

        client.publish = AsyncMock(side_effect=RedisConnectionError("gone"))
        assert await bus.send(make_event()) is False
        await asyncio.sleep(0.01)
        assert received == []
        await bus.close()


# ─── Redis reconnect ──────────────────────────────────────────────────


class TestRedisReconnect:
    """The bus recovers from a broker that is down or drops the connection."""

    @pytest.mark.asyncio
    async def test_lost_connection_is_reestablished(self):
        first = make_event(JobEventType.STEP, job_id="j1", step=1)
        second = make_event(JobEventType.STEP, job_id="j1", step=2)
        dropping = _DroppingPubSub([{"type": "message", "data": first.to_wire()}])
        healthy = _FakePubSub([{"type": "message", "data": second.to_wire()}])
        received: list[JobEvent] = []

        with patch(
            "jobrelay.orchestrator.event_bus.aioredis.from_url",
            side_effect=[_fake_client(dropping), _fake_client(healthy)],
        ):
            bus = RedisEventBus("redis://localhost:6379/0", reconnect_base_seconds=0.01)
            bus.subscribe(received.append)
            await bus.connect()
            await wait_until(lambda: len(received) == 2)

        assert [e.data["step"] for e in received] == [1, 2]
        assert bus.is_degraded is False
        assert dropping.closed is True
        await bus.close()

    @pytest.mark.asyncio
    async def test_unreachable_broker_is_retried(self):
        down = _fake_client()
        down.ping = AsyncMock(side_effect=RedisConnectionError("Connection refused"))
        up = _fake_client()

        with patch(
            "jobrelay.orchestrator.event_bus.aioredis.from_url", side_effect=[down, up],
        ):
            bus = RedisEventBus("redis://localhost:6379/0", reconnect_base_seconds=0.01)
            await bus.connect()
            assert bus.is_degraded is True
            await wait_until(lambda: not bus.is_degraded)

        event = make_event(JobEventType.STARTED, job_id="j2")
        await bus.publish(event)
        up.publish.assert_awaited_once_with("job:events", event.to_wire())
        await bus.close()

    def test_backoff_doubles_and_is_capped(self):
        bus = RedisEventBus("redis://localhost:6379/0", reconnect_base_seconds=1.0)
        assert [bus._reconnect_delay(n) for n in (1, 2, 3)] == [1.0, 2.0, 4.0]
        assert bus._reconnect_delay(20) == 60.0
