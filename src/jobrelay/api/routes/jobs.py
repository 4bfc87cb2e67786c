"""Job control endpoints: status, pause/resume/cancel, delete, results, logs."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel, ConfigDict, Field

from jobrelay.api.app import get_orchestrator
from jobrelay.orchestrator.inspector import Inspection
from jobrelay.orchestrator.service import Orchestrator
from jobrelay.orchestrator.types import Job

router = APIRouter(prefix="/api/jobs", tags=["Job Control"])


class JobActionResponse(BaseModel):
    """Response from job actions (pause/resume/cancel)."""

    job_id: str
    status: str
    message: str

    @classmethod
    def from_job(cls, job: Job, message: str) -> JobActionResponse:
        return cls(job_id=job.id, status=job.status.value, message=message)


class UpdateResultRequest(BaseModel):
    """Worker-side persistence of the transcript and step list."""

    model_config = ConfigDict(populate_by_name=True)

    chat_messages: list[dict[str, Any]] | None = Field(default=None, alias="chatMessages")
    steps: list[dict[str, Any]] | None = None
    data: dict[str, Any] | None = Field(
        default=None, description="Extra keys merged into the job result"
    )


@router.get("/{job_id}", response_model=Job)
async def get_job(
    job_id: str,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> Job:
    """Current job record. Workers poll this to notice pause and cancel."""
    return await orchestrator.lifecycle.get_job(job_id)


@router.post("/{job_id}/pause", response_model=JobActionResponse)
async def pause_job(
    job_id: str,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> JobActionResponse:
    job = await orchestrator.lifecycle.pause(job_id)
    return JobActionResponse.from_job(job, "Job paused; the worker will hold at its next check")


@router.post("/{job_id}/resume", response_model=JobActionResponse)
async def resume_job(
    job_id: str,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> JobActionResponse:
    job = await orchestrator.lifecycle.resume(job_id)
    return JobActionResponse.from_job(job, "Job resumed")


@router.post("/{job_id}/cancel", response_model=JobActionResponse)
async def cancel_job(
    job_id: str,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> JobActionResponse:
    job = await orchestrator.lifecycle.cancel(job_id)
    return JobActionResponse.from_job(job, "Job cancelled")


@router.delete("/{job_id}", status_code=204)
async def delete_job(
    job_id: str,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> Response:
    """Delete a job. 409 while it is running."""
    await orchestrator.lifecycle.delete_job(job_id)
    return Response(status_code=204)


@router.patch("/{job_id}/result", response_model=Job)
async def update_job_result(
    job_id: str,
    request: UpdateResultRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> Job:
    return await orchestrator.lifecycle.update_job_result(
        job_id,
        chat_messages=request.chat_messages,
        steps=request.steps,
        data=request.data,
    )


@router.get("/{job_id}/logs", response_model=Inspection)
async def get_job_logs(
    job_id: str,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> Inspection:
    """Read the worker's logs and apply the inspector's verdict."""
    job = await orchestrator.lifecycle.get_job(job_id)
    return await orchestrator.inspector.inspect(job)
