"""Live stream multiplexer: per-client SSE views over the event bus.

Each connected client gets its own bus subscription and its own bounded
frame queue, so delivery to one client never waits on another. The stream
yields ready-to-write ``text/event-stream`` frames::

    data: {"type": "connected", "jobId": "..."}

    data: {"type": "step", "jobId": "...", "timestamp": ..., "data": {...}}

    : keepalive

and releases its subscription as soon as the client goes away.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass

from jobrelay.core.constants import STREAM_KEEPALIVE_SECONDS, STREAM_QUEUE_SIZE
from jobrelay.core.logging import get_logger
from jobrelay.orchestrator.event_bus import EventBus
from jobrelay.orchestrator.types import JobEvent

_logger = get_logger("orchestrator.stream")

DisconnectProbe = Callable[[], Awaitable[bool]]


@dataclass(frozen=True)
class SSEFrame:
    """One text/event-stream frame: a data line or a comment."""

    data: str | None = None
    comment: str | None = None

    def format(self) -> str:
        """Format as SSE wire format."""
        if self.comment is not None:
            return f": {self.comment}\n\n"
        lines = [f"data: {line}" for line in (self.data or "").split("\n")]
        return "\n".join(lines) + "\n\n"


KEEPALIVE_FRAME = SSEFrame(comment="keepalive").format()


def connected_frame(job_id: str | None) -> str:
    return SSEFrame(data=json.dumps({"type": "connected", "jobId": job_id})).format()


class JobStream:
    """A single client's live view of one job (or of every job).

    Usage::

        stream = JobStream(bus, job_id, is_disconnected=request.is_disconnected)
        return StreamingResponse(stream.frames(), media_type="text/event-stream")

    The subscription exists from construction until ``close()``; ``frames()``
    always closes in its ``finally`` so a cancelled or abandoned generator
    unsubscribes deterministically.
    """

    def __init__(
        self,
        bus: EventBus,
        job_id: str | None = None,
        *,
        keepalive_seconds: float = STREAM_KEEPALIVE_SECONDS,
        max_queue_size: int = STREAM_QUEUE_SIZE,
        is_disconnected: DisconnectProbe | None = None,
    ) -> None:
        self.job_id = job_id
        self._bus = bus
        self._keepalive_seconds = keepalive_seconds
        self._is_disconnected = is_disconnected
        self._queue: asyncio.Queue[str] = asyncio.Queue(maxsize=max_queue_size)
        self._dropped = 0
        self._sub_id: str | None = bus.subscribe(
            self._on_event,
            event_filter=self._matches if job_id is not None else None,
        )
        _logger.info(
            "stream.opened",
            job_id=job_id,
            subscribers=bus.subscriber_count,
        )

    @property
    def is_open(self) -> bool:
        return self._sub_id is not None

    def _matches(self, event: JobEvent) -> bool:
        return event.job_id == self.job_id

    def _on_event(self, event: JobEvent) -> None:
        frame = SSEFrame(data=event.to_wire()).format()
        if self._queue.full():
            self._queue.get_nowait()
            self._dropped += 1
        self._queue.put_nowait(frame)

    async def frames(self) -> AsyncIterator[str]:
        """Yield SSE frames until the client disconnects."""
        try:
            yield connected_frame(self.job_id)
            while self.is_open:
                try:
                    frame = await asyncio.wait_for(
                        self._queue.get(), timeout=self._keepalive_seconds
                    )
                except TimeoutError:
                    if await self._client_gone():
                        break
                    yield KEEPALIVE_FRAME
                    continue
                yield frame
                if await self._client_gone():
                    break
        finally:
            self.close()

    def __aiter__(self) -> AsyncIterator[str]:
        return self.frames()

    async def _client_gone(self) -> bool:
        if self._is_disconnected is None:
            return False
        return await self._is_disconnected()

    def close(self) -> None:
        """Release the bus subscription. Idempotent."""
        if self._sub_id is None:
            return
        self._bus.unsubscribe(self._sub_id)
        self._sub_id = None
        _logger.info(
            "stream.closed",
            job_id=self.job_id,
            dropped=self._dropped,
            subscribers=self._bus.subscriber_count,
        )


__all__ = ["JobStream", "KEEPALIVE_FRAME", "SSEFrame", "connected_frame"]
