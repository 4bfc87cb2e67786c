"""Async pub/sub event bus for job events.

Routes JobEvents from remote workers to downstream consumers (live streams,
the event recorder that folds events into job state). Each subscriber gets a
bounded deque drained by its own pump task, so a slow subscriber loses its
oldest events rather than blocking the publisher or its peers.

``EventBus`` fans out within the process. ``RedisEventBus`` carries events
over a single Redis pub/sub channel so workers running elsewhere can publish;
if the broker is unreachable it degrades to in-process fan-out and keeps
reconnecting in the background.
"""

from __future__ import annotations

import asyncio
import uuid
from collections import deque
from collections.abc import Callable
from typing import Any

import redis.asyncio as aioredis
from pydantic import ValidationError
from redis.exceptions import RedisError

from jobrelay.core.constants import JOB_EVENTS_CHANNEL, SUBSCRIBER_QUEUE_SIZE
from jobrelay.core.logging import get_logger
from jobrelay.orchestrator.task_utils import exception_logger
from jobrelay.orchestrator.types import JobEvent

_logger = get_logger("orchestrator.event_bus")

EventFilter = Callable[[JobEvent], bool] | None
EventCallback = Callable[[JobEvent], Any]

_STRIKES_BEFORE_DISABLE = 10
_RECONNECT_MAX_SECONDS = 60.0


class EventBus:
    """In-process pub/sub with a bounded queue and pump task per subscriber.

    Usage::

        bus = EventBus(max_queue_size=1000)
        await bus.connect()

        sub_id = bus.subscribe(my_handler)
        sub_id = bus.subscribe(
            my_handler,
            event_filter=lambda e: e.job_id == job_id,
        )

        await bus.publish(event)

        bus.unsubscribe(sub_id)
        await bus.close()

    Delivery is best-effort: once a subscriber's queue holds
    ``max_queue_size`` undelivered events, each new event evicts the oldest.
    Events reach a given subscriber in publish order.
    """

    def __init__(self, *, max_queue_size: int = SUBSCRIBER_QUEUE_SIZE) -> None:
        self._max_queue_size = max_queue_size
        self._subscribers: dict[str, _Subscriber] = {}
        self._running = False

    @property
    def is_connected(self) -> bool:
        return self._running

    @property
    def is_degraded(self) -> bool:
        """True when live updates from remote workers are unavailable."""
        return False

    async def connect(self) -> None:
        """Start delivering events. Idempotent."""
        if self._running:
            return
        self._running = True
        for sub_id, sub in self._subscribers.items():
            self._start_pump(sub_id, sub)
        _logger.info("event_bus.connected", backend="local")

    async def publish(self, event: JobEvent) -> None:
        """Publish an event to all matching subscribers.

        Never waits on subscriber callbacks. Events published before
        ``connect()`` or after ``close()`` are dropped.
        """
        if not self._running:
            _logger.debug("event_bus.publish_dropped", job_id=event.job_id, reason="not_connected")
            return
        self._deliver(event)

    def subscribe(
        self,
        callback: EventCallback,
        *,
        event_filter: EventFilter = None,
        durable: bool = False,
    ) -> str:
        """Register a subscriber.

        Args:
            callback: Async or sync callable receiving JobEvent.
            event_filter: Optional predicate; the subscriber only receives
                events for which it returns True.
            durable: Never disable this subscriber, however often its
                callback fails. Every failure is still logged.

        Returns:
            Subscription ID for later unsubscribe.
        """
        sub_id = str(uuid.uuid4())
        sub = _Subscriber(
            callback=callback,
            event_filter=event_filter,
            queue=deque(maxlen=self._max_queue_size),
            durable=durable,
        )
        self._subscribers[sub_id] = sub
        if self._running:
            self._start_pump(sub_id, sub)
        _logger.debug("event_bus.subscribed", sub_id=sub_id, durable=durable)
        return sub_id

    def unsubscribe(self, sub_id: str) -> bool:
        """Remove a subscriber and stop its pump.

        Returns:
            True if the subscriber existed and was removed.
        """
        sub = self._subscribers.pop(sub_id, None)
        if sub is None:
            return False
        if sub.pump is not None:
            sub.pump.cancel()
            sub.pump = None
        sub.queue.clear()
        _logger.debug("event_bus.unsubscribed", sub_id=sub_id, dropped=sub.dropped)
        return True

    @property
    def subscriber_count(self) -> int:
        """Number of subscribers still receiving events."""
        return sum(1 for sub in self._subscribers.values() if not sub.disabled)

    @property
    def disabled_subscriber_count(self) -> int:
        """Subscribers switched off after repeated callback failures."""
        return sum(1 for sub in self._subscribers.values() if sub.disabled)

    async def close(self) -> None:
        """Stop every pump. Undelivered events are discarded."""
        self._running = False
        pumps = [sub.pump for sub in self._subscribers.values() if sub.pump is not None]
        for pump in pumps:
            pump.cancel()
        if pumps:
            await asyncio.gather(*pumps, return_exceptions=True)
        for sub in self._subscribers.values():
            sub.pump = None
            sub.queue.clear()
        _logger.info(
            "event_bus.closed",
            remaining_subscribers=len(self._subscribers),
        )

    def _deliver(self, event: JobEvent) -> None:
        """Enqueue an event for every matching subscriber and wake its pump."""
        for sub_id, sub in list(self._subscribers.items()):
            if sub.disabled:
                continue
            try:
                if sub.event_filter is not None and not sub.event_filter(event):
                    continue
            except Exception:
                _logger.warning(
                    "event_bus.filter_error",
                    subscriber_id=sub_id,
                    event_type=event.type.value,
                    exc_info=True,
                )
                continue
            if len(sub.queue) == sub.queue.maxlen:
                sub.dropped += 1
                if sub.dropped == 1 or sub.dropped % 100 == 0:
                    _logger.warning(
                        "event_bus.subscriber_lagging",
                        subscriber_id=sub_id,
                        dropped=sub.dropped,
                    )
            # Bounded deque drops the oldest entry
            sub.queue.append(event)
            sub.wakeup.set()

    def _start_pump(self, sub_id: str, sub: _Subscriber) -> None:
        sub.pump = asyncio.create_task(
            self._pump(sub_id, sub), name=f"event-bus-pump-{sub_id[:8]}"
        )
        sub.pump.add_done_callback(exception_logger(_logger, "event_bus.task_died"))

    async def _pump(self, sub_id: str, sub: _Subscriber) -> None:
        """Deliver queued events to one subscriber, in order."""
        while True:
            await sub.wakeup.wait()
            sub.wakeup.clear()
            while sub.queue:
                event = sub.queue.popleft()
                try:
                    result = sub.callback(event)
                    if asyncio.iscoroutine(result):
                        await result
                    sub.strikes = 0
                except asyncio.CancelledError:
                    raise
                except Exception:
                    sub.strikes += 1
                    _logger.warning(
                        "event_bus.subscriber_error",
                        subscriber_id=sub_id,
                        event_type=event.type.value,
                        strikes=sub.strikes,
                        exc_info=True,
                    )
                    if not sub.durable and sub.strikes >= _STRIKES_BEFORE_DISABLE:
                        sub.disabled = True
                        _logger.error(
                            "event_bus.subscriber_disabled",
                            subscriber_id=sub_id,
                            strikes_allowed=_STRIKES_BEFORE_DISABLE,
                        )
                        sub.queue.clear()
                        return


class RedisEventBus(EventBus):
    """Event bus carried over one Redis pub/sub channel.

    Every publish goes through the broker, including publishes from this
    process, so all subscribers see the same per-job order. While the broker
    is unreachable (at ``connect()`` or after the connection drops) the bus
    is degraded: publishes fan out in-process and a background reader keeps
    reconnecting with exponential backoff.
    """

    def __init__(
        self,
        url: str,
        *,
        channel: str = JOB_EVENTS_CHANNEL,
        max_queue_size: int = SUBSCRIBER_QUEUE_SIZE,
        connect_timeout: float = 5.0,
        reconnect_base_seconds: float = 1.0,
    ) -> None:
        super().__init__(max_queue_size=max_queue_size)
        self._url = url
        self._channel = channel
        self._connect_timeout = connect_timeout
        self._reconnect_base = reconnect_base_seconds
        self._client: aioredis.Redis | None = None
        self._pubsub: Any = None
        self._reader_task: asyncio.Task[None] | None = None
        self._degraded = False

    @property
    def is_degraded(self) -> bool:
        return self._degraded

    async def connect(self) -> None:
        if self._running:
            return
        await super().connect()
        if await self._open_channel():
            _logger.info("event_bus.connected", backend="redis", channel=self._channel)
        self._reader_task = asyncio.create_task(
            self._read_loop(), name="event-bus-redis-reader"
        )
        self._reader_task.add_done_callback(exception_logger(_logger, "event_bus.task_died"))

    async def publish(self, event: JobEvent) -> None:
        if not self._running:
            _logger.debug("event_bus.publish_dropped", job_id=event.job_id, reason="not_connected")
            return
        if not await self.send(event):
            self._deliver(event)

    async def send(self, event: JobEvent) -> bool:
        """Publish to the broker only.

        Returns:
            False when the bus is degraded or the broker refused the event;
            nothing is delivered locally in that case.
        """
        if self._degraded or self._client is None:
            return False
        try:
            await self._client.publish(self._channel, event.to_wire())
        except (RedisError, OSError) as e:
            _logger.warning(
                "event_bus.publish_failed",
                job_id=event.job_id,
                event_type=event.type.value,
                error=str(e),
            )
            return False
        return True

    async def close(self) -> None:
        if self._reader_task is not None:
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
            self._reader_task = None
        await self._close_client()
        await super().close()

    async def _open_channel(self) -> bool:
        """Connect and subscribe; on failure mark the bus degraded."""
        try:
            self._client = aioredis.from_url(
                self._url,
                decode_responses=True,
                socket_connect_timeout=self._connect_timeout,
            )
            await self._client.ping()
            self._pubsub = self._client.pubsub(ignore_subscribe_messages=True)
            await self._pubsub.subscribe(self._channel)
        except (RedisError, OSError) as e:
            self._degraded = True
            _logger.warning(
                "event_bus.redis_unavailable",
                channel=self._channel,
                error=str(e),
            )
            await self._close_client()
            return False
        self._degraded = False
        return True

    def _reconnect_delay(self, failures: int) -> float:
        return min(self._reconnect_base * 2 ** (failures - 1), _RECONNECT_MAX_SECONDS)

    async def _read_loop(self) -> None:
        """Fan channel messages out locally; reconnect while the broker is down.

        Returns only when the subscription ends without an error.
        """
        failures = 0 if self._pubsub is not None else 1
        while True:
            if self._pubsub is None:
                await asyncio.sleep(self._reconnect_delay(failures))
                if not await self._open_channel():
                    failures += 1
                    continue
                _logger.info(
                    "event_bus.redis_reconnected", channel=self._channel, attempts=failures,
                )
                failures = 0
            try:
                await self._listen()
                return
            except (RedisError, OSError) as e:
                self._degraded = True
                _logger.error("event_bus.redis_connection_lost", error=str(e))
                await self._close_client()
                failures = 1

    async def _listen(self) -> None:
        async for message in self._pubsub.listen():
            if message.get("type") != "message":
                continue
            try:
                event = JobEvent.from_wire(message["data"])
            except ValidationError as e:
                _logger.warning(
                    "event_bus.malformed_event",
                    channel=self._channel,
                    error_count=e.error_count(),
                )
                continue
            self._deliver(event)

    async def _close_client(self) -> None:
        if self._pubsub is not None:
            try:
                await self._pubsub.unsubscribe(self._channel)
                await self._pubsub.aclose()
            except (RedisError, OSError):
                _logger.debug("event_bus.pubsub_close_failed", exc_info=True)
            self._pubsub = None
        if self._client is not None:
            try:
                await self._client.aclose()
            except (RedisError, OSError):
                _logger.debug("event_bus.client_close_failed", exc_info=True)
            self._client = None


class _Subscriber:
    """Internal subscriber state."""

    __slots__ = (
        "callback",
        "event_filter",
        "queue",
        "wakeup",
        "pump",
        "strikes",
        "dropped",
        "durable",
        "disabled",
    )

    def __init__(
        self,
        callback: EventCallback,
        event_filter: EventFilter,
        queue: deque[JobEvent],
        *,
        durable: bool = False,
    ) -> None:
        self.callback = callback
        self.event_filter = event_filter
        self.queue = queue
        self.wakeup = asyncio.Event()
        self.pump: asyncio.Task[None] | None = None
        self.strikes: int = 0
        self.dropped: int = 0
        self.durable = durable
        self.disabled = False


__all__ = ["EventBus", "RedisEventBus"]
