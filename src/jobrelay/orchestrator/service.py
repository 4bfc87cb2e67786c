"""Orchestrator composition root.

Builds the event bus, job store, launcher, lifecycle manager, log inspector
and stale-job reaper from an ``OrchestratorConfig`` and owns their
start/shutdown order. The HTTP API and the CLI both talk to an
``Orchestrator`` rather than to the components directly.
"""

from __future__ import annotations

import asyncio
import sqlite3
from typing import Any

from jobrelay.core.logging import get_logger
from jobrelay.orchestrator.config import OrchestratorConfig
from jobrelay.orchestrator.event_bus import EventBus, RedisEventBus
from jobrelay.orchestrator.inspector import CrashDetector, ExternalLogInspector
from jobrelay.orchestrator.launcher import EcsWorkerLauncher, WorkerLauncher
from jobrelay.orchestrator.lifecycle import JobLifecycleManager, ReadinessGate, entity_ref_ready
from jobrelay.orchestrator.logs import CloudWatchLogSink, LogSink
from jobrelay.orchestrator.reaper import StaleJobReaper
from jobrelay.orchestrator.store import JobStore
from jobrelay.orchestrator.stream import DisconnectProbe, JobStream
from jobrelay.orchestrator.types import JobEvent

_logger = get_logger("orchestrator")

_RECORD_ATTEMPTS = 3
_RECORD_RETRY_SECONDS = 0.05


def build_event_bus(config: OrchestratorConfig) -> EventBus:
    if config.redis.enabled:
        return RedisEventBus(
            config.redis.url,
            channel=config.redis.channel,
            max_queue_size=config.stream.subscriber_queue_size,
            connect_timeout=config.redis.connect_timeout_seconds,
            reconnect_base_seconds=config.redis.reconnect_base_seconds,
        )
    return EventBus(max_queue_size=config.stream.subscriber_queue_size)


class Orchestrator:
    """Wires the orchestrator components together.

    Every collaborator can be injected (tests pass fakes for the launcher
    and log sink); anything not given is built from ``config``.

    Usage::

        async with Orchestrator(config) as orch:
            task = await orch.lifecycle.create_task(spec)
            job = await orch.lifecycle.start_job(task.id)
    """

    def __init__(
        self,
        config: OrchestratorConfig,
        *,
        bus: EventBus | None = None,
        store: JobStore | None = None,
        launcher: WorkerLauncher | None = None,
        log_sink: LogSink | None = None,
        readiness_gate: ReadinessGate = entity_ref_ready,
        crash_detector: CrashDetector | None = None,
    ) -> None:
        self.config = config
        self.bus = bus or build_event_bus(config)
        self.store = store or JobStore(config.store.db_path)
        self.launcher: WorkerLauncher = launcher or EcsWorkerLauncher(
            config.launcher,
            redis_url=config.redis.url if config.redis.enabled else None,
        )
        self.log_sink: LogSink = log_sink or CloudWatchLogSink(region=config.launcher.region)
        self.lifecycle = JobLifecycleManager(
            self.store,
            self.launcher,
            readiness_gate=readiness_gate,
            wait_for_started_event=config.launcher.wait_for_started_event,
        )
        self.inspector = ExternalLogInspector(
            self.lifecycle, self.log_sink, config.inspector, crash_detector=crash_detector,
        )
        self.reaper = StaleJobReaper(self.lifecycle, config.reaper)
        self._recorder_id: str | None = None
        self._events_unrecorded = 0
        self._started = False

    @property
    def is_started(self) -> bool:
        return self._started

    async def start(self, *, background: bool = True) -> None:
        """Open the store, connect the bus and (optionally) start the sweeps."""
        if self._started:
            return
        await self.store.open()
        await self.bus.connect()
        self._recorder_id = self.bus.subscribe(self._record_event, durable=True)
        if background:
            if self.config.inspector.enabled:
                await self.inspector.start()
            if self.config.reaper.enabled:
                await self.reaper.start()
        self._started = True
        _logger.info(
            "orchestrator.started",
            bus_degraded=self.bus.is_degraded,
            inspector=self.inspector.is_running,
            reaper=self.reaper.is_running,
        )

    async def shutdown(self) -> None:
        if not self._started:
            return
        await self.reaper.stop()
        await self.inspector.stop()
        if self._recorder_id is not None:
            self.bus.unsubscribe(self._recorder_id)
            self._recorder_id = None
        await self.bus.close()
        await self.store.close()
        self._started = False
        _logger.info("orchestrator.stopped")

    async def __aenter__(self) -> Orchestrator:
        await self.start()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.shutdown()

    async def publish(self, event: JobEvent) -> None:
        """Publish a worker event received over HTTP instead of Redis."""
        await self.bus.publish(event)

    def open_stream(
        self,
        job_id: str | None = None,
        *,
        is_disconnected: DisconnectProbe | None = None,
    ) -> JobStream:
        return JobStream(
            self.bus,
            job_id,
            keepalive_seconds=self.config.stream.keepalive_seconds,
            max_queue_size=self.config.stream.max_queue_size,
            is_disconnected=is_disconnected,
        )

    def health(self) -> dict[str, Any]:
        return {
            "status": "ok" if self._started else "stopped",
            "bus_connected": self.bus.is_connected,
            "bus_degraded": self.bus.is_degraded,
            "subscribers": self.bus.subscriber_count,
            "subscribers_disabled": self.bus.disabled_subscriber_count,
            "events_unrecorded": self._events_unrecorded,
            "inspector_running": self.inspector.is_running,
            "inspector_degraded": self.inspector.is_degraded,
            "reaper_running": self.reaper.is_running,
            "reaper_degraded": self.reaper.is_degraded,
        }

    async def _record_event(self, event: JobEvent) -> None:
        """Fold a bus event into job state, retrying transient store errors.

        The recorder is a durable subscriber: an event that still fails after
        the retries is counted and re-raised for the bus to log, and the next
        event is processed as usual.
        """
        for attempt in range(1, _RECORD_ATTEMPTS + 1):
            try:
                await self.lifecycle.record_event(event)
                return
            except sqlite3.OperationalError as e:
                if attempt == _RECORD_ATTEMPTS:
                    self._events_unrecorded += 1
                    raise
                _logger.warning(
                    "orchestrator.record_retry",
                    job_id=event.job_id,
                    event_type=event.type.value,
                    attempt=attempt,
                    error=str(e),
                )
                await asyncio.sleep(_RECORD_RETRY_SECONDS * attempt)
            except Exception:
                self._events_unrecorded += 1
                raise


__all__ = ["Orchestrator", "build_event_bus"]
