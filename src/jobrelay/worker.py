"""Worker-side session: the contract a remote worker honours with the orchestrator.

A launched worker reads its identity from the environment, publishes
progress events, and calls ``checkpoint()`` between steps. Pause is
cooperative: the orchestrator only flips the job status, and the worker
notices on its next checkpoint and holds there (polling at a bounded
interval, for a bounded time) until the job is resumed or cancelled.

Usage::

    settings = WorkerSettings.from_env()
    async with open_session(settings) as session:
        await session.started(liveUrl=url)
        for step in plan:
            await session.checkpoint()
            await session.step(**run(step))
        await session.completed(output=result)
"""

from __future__ import annotations

import asyncio
import os
import time
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from contextlib import asynccontextmanager
from typing import Any, Protocol

import httpx
from pydantic import BaseModel, Field

from jobrelay.core.constants import WORKER_MAX_PAUSE_SECONDS, WORKER_STATUS_POLL_SECONDS
from jobrelay.core.logging import get_logger
from jobrelay.orchestrator.event_bus import RedisEventBus
from jobrelay.orchestrator.types import JobEvent, JobEventType, JobStatus

_logger = get_logger("worker")

PAUSE_ATTENTION_MESSAGE = (
    "Task paused. Complete any manual actions in the browser and click Resume."
)
PAUSE_TIMEOUT_MESSAGE = "Timed out waiting for user intervention"


class WorkerStopped(Exception):
    """Raised by ``checkpoint()`` when the job should no longer run.

    ``status`` is the job status that stopped the worker, or None when the
    job no longer exists.
    """

    def __init__(self, message: str, *, status: JobStatus | None = None) -> None:
        super().__init__(message)
        self.status = status


class PauseTimeoutError(WorkerStopped):
    """The job stayed paused longer than the worker is willing to wait."""


class JobStatusSource(Protocol):
    async def get_status(self, job_id: str) -> JobStatus | None: ...


class EventPublisher(Protocol):
    async def publish(self, event: JobEvent) -> None: ...


class WorkerSettings(BaseModel):
    """Worker identity and endpoints, as set by the launcher."""

    job_id: str
    task_id: str | None = None
    entity_ref: str | None = None
    override_saved: bool = False
    redis_url: str | None = None
    api_url: str | None = None
    poll_interval_seconds: float = Field(default=WORKER_STATUS_POLL_SECONDS, gt=0)
    max_pause_seconds: float = Field(default=WORKER_MAX_PAUSE_SECONDS, gt=0)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> WorkerSettings:
        env = os.environ if environ is None else environ
        return cls(
            job_id=env["JOB_ID"],
            task_id=env.get("TASK_ID") or None,
            entity_ref=env.get("ENTITY_REF") or None,
            override_saved=env.get("OVERRIDE_SAVED", "false").lower() == "true",
            redis_url=env.get("REDIS_URL") or None,
            api_url=env.get("JOBRELAY_API_URL") or None,
        )


class HttpOrchestratorClient:
    """Talks to the orchestrator API: job status, event ingress, result updates."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)

    async def get_status(self, job_id: str) -> JobStatus | None:
        response = await self._client.get(f"/api/jobs/{job_id}")
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return JobStatus(response.json()["status"])

    async def publish(self, event: JobEvent) -> None:
        response = await self._client.post(
            "/api/events", content=event.to_wire(), headers={"Content-Type": "application/json"},
        )
        response.raise_for_status()

    async def update_result(
        self,
        job_id: str,
        *,
        chat_messages: list[dict[str, Any]] | None = None,
        steps: list[dict[str, Any]] | None = None,
    ) -> None:
        payload: dict[str, Any] = {}
        if chat_messages is not None:
            payload["chatMessages"] = chat_messages
        if steps is not None:
            payload["steps"] = steps
        response = await self._client.patch(f"/api/jobs/{job_id}/result", json=payload)
        response.raise_for_status()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> HttpOrchestratorClient:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.aclose()


class BrokerPublisher:
    """Publishes through the broker, falling back to the API's event ingress.

    The fallback takes every event the broker does not: all of them while
    the bus is degraded, and any single publish the broker refuses.
    """

    def __init__(self, bus: RedisEventBus, fallback: EventPublisher) -> None:
        self._bus = bus
        self._fallback = fallback

    async def publish(self, event: JobEvent) -> None:
        if await self._bus.send(event):
            return
        _logger.debug("worker.publish_via_api", job_id=event.job_id, event_type=event.type.value)
        await self._fallback.publish(event)


class WorkerSession:
    """Publishes a job's events and enforces cooperative pause/cancel.

    Args:
        job_id: The job this worker executes.
        status_source: Where to read the authoritative job status.
        publisher: Where to publish events (event bus or HTTP ingress).
        poll_interval_seconds: Status poll interval while paused.
        max_pause_seconds: Give up (and fail the job) after this long paused.
    """

    def __init__(
        self,
        job_id: str,
        status_source: JobStatusSource,
        publisher: EventPublisher,
        *,
        poll_interval_seconds: float = WORKER_STATUS_POLL_SECONDS,
        max_pause_seconds: float = WORKER_MAX_PAUSE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.job_id = job_id
        self._status_source = status_source
        self._publisher = publisher
        self._poll_interval = poll_interval_seconds
        self._max_pause = max_pause_seconds
        self._clock = clock
        self._sleep = sleep
        self._logger = _logger.bind(job_id=job_id)

    async def emit(self, event_type: JobEventType, **data: Any) -> None:
        """Publish one event. Publishing is best-effort and never raises."""
        event = JobEvent(type=event_type, job_id=self.job_id, data=data)
        try:
            await self._publisher.publish(event)
        except (httpx.HTTPError, OSError) as e:
            self._logger.warning("worker.publish_failed", event_type=event_type.value, error=str(e))

    async def started(self, **data: Any) -> None:
        await self.emit(JobEventType.STARTED, **data)

    async def progress(self, message: str, **data: Any) -> None:
        await self.emit(JobEventType.PROGRESS, message=message, **data)

    async def step(self, **data: Any) -> None:
        await self.emit(JobEventType.STEP, **data)

    async def screenshot(self, url: str, **data: Any) -> None:
        await self.emit(JobEventType.SCREENSHOT, url=url, **data)

    async def requires_attention(self, message: str, **data: Any) -> None:
        await self.emit(JobEventType.REQUIRES_ATTENTION, message=message, **data)

    async def completed(self, **data: Any) -> None:
        await self.emit(JobEventType.COMPLETED, **data)

    async def failed(self, error: str, **data: Any) -> None:
        await self.emit(JobEventType.FAILED, error=error, **data)

    async def checkpoint(self) -> None:
        """Return when the job may continue; hold while it is paused.

        Raises:
            WorkerStopped: The job was cancelled, deleted or finished elsewhere.
            PauseTimeoutError: The job stayed paused past ``max_pause_seconds``.
                A ``failed`` event has already been published.
        """
        status = await self._read_status()
        if status is JobStatus.PAUSED:
            await self._hold_while_paused()
            return
        self._raise_if_stopped(status)

    async def _hold_while_paused(self) -> None:
        self._logger.info("worker.paused")
        await self.requires_attention(PAUSE_ATTENTION_MESSAGE)
        paused_at = self._clock()
        while self._clock() - paused_at < self._max_pause:
            await self._sleep(self._poll_interval)
            status = await self._read_status()
            if status is JobStatus.PAUSED or status is _UNKNOWN:
                continue
            self._raise_if_stopped(status)
            self._logger.info("worker.resumed", paused_seconds=round(self._clock() - paused_at, 1))
            return
        await self.failed(PAUSE_TIMEOUT_MESSAGE)
        raise PauseTimeoutError(PAUSE_TIMEOUT_MESSAGE, status=JobStatus.PAUSED)

    async def _read_status(self) -> JobStatus | None | _Unknown:
        try:
            return await self._status_source.get_status(self.job_id)
        except (httpx.HTTPError, OSError) as e:
            self._logger.warning("worker.status_unavailable", error=str(e))
            return _UNKNOWN

    def _raise_if_stopped(self, status: JobStatus | None | _Unknown) -> None:
        if status is _UNKNOWN:
            return
        if status is None:
            raise WorkerStopped(f"Job {self.job_id} no longer exists")
        if status in (JobStatus.CANCELLED, JobStatus.FAILED, JobStatus.COMPLETED):
            self._logger.info("worker.stopping", status=status.value)
            raise WorkerStopped(f"Job {self.job_id} is {status.value}", status=status)


class _Unknown:
    """Status could not be read; keep going and ask again later."""


_UNKNOWN = _Unknown()


@asynccontextmanager
async def open_session(
    settings: WorkerSettings,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> AsyncIterator[WorkerSession]:
    """Build a session from launcher-provided settings.

    Events go to Redis when ``REDIS_URL`` is set and the broker takes them,
    otherwise to the API's event ingress. Status always comes from the API.
    """
    if not settings.api_url:
        raise ValueError("JOBRELAY_API_URL is required for job status polling")
    client = HttpOrchestratorClient(settings.api_url, transport=transport)
    bus: RedisEventBus | None = None
    publisher: EventPublisher = client
    if settings.redis_url:
        bus = RedisEventBus(settings.redis_url)
        await bus.connect()
        if bus.is_degraded:
            _logger.warning("worker.broker_unavailable", job_id=settings.job_id, fallback="api")
        publisher = BrokerPublisher(bus, client)
    try:
        yield WorkerSession(
            settings.job_id,
            client,
            publisher,
            poll_interval_seconds=settings.poll_interval_seconds,
            max_pause_seconds=settings.max_pause_seconds,
        )
    finally:
        if bus is not None:
            await bus.close()
        await client.aclose()


__all__ = [
    "BrokerPublisher",
    "EventPublisher",
    "HttpOrchestratorClient",
    "JobStatusSource",
    "PauseTimeoutError",
    "WorkerSession",
    "WorkerSettings",
    "WorkerStopped",
    "open_session",
]
