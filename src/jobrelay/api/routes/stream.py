"""Server-Sent Events endpoints and HTTP event ingress."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse

from jobrelay.api.app import get_orchestrator
from jobrelay.core.logging import get_logger
from jobrelay.orchestrator.service import Orchestrator
from jobrelay.orchestrator.types import JobEvent

_logger = get_logger("api.stream")

router = APIRouter(prefix="/api", tags=["Streaming"])

_SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def _stream_response(
    orchestrator: Orchestrator, job_id: str | None, request: Request,
) -> StreamingResponse:
    stream = orchestrator.open_stream(job_id, is_disconnected=request.is_disconnected)
    return StreamingResponse(
        stream.frames(),
        media_type="text/event-stream",
        headers=_SSE_HEADERS,
    )


@router.get("/jobs/{job_id}/events")
async def stream_job_events(
    job_id: str,
    request: Request,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> StreamingResponse:
    """Live events for one job. 404 for an unknown job."""
    await orchestrator.lifecycle.get_job(job_id)
    return _stream_response(orchestrator, job_id, request)


@router.get("/events")
async def stream_events(
    request: Request,
    job_id: str | None = Query(default=None, alias="jobId"),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> StreamingResponse:
    """Live events for one job (``?jobId=``) or for every job."""
    return _stream_response(orchestrator, job_id, request)


@router.post("/events", status_code=202)
async def publish_event(
    event: JobEvent,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> dict[str, str]:
    """Ingress for workers that cannot reach the event broker directly."""
    await orchestrator.publish(event)
    _logger.debug("stream.event_ingested", job_id=event.job_id, event_type=event.type.value)
    return {"status": "accepted"}
