"""Task endpoints: create, list, inspect and delete tasks; start jobs."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Response
from pydantic import BaseModel, Field

from jobrelay.api.app import get_orchestrator
from jobrelay.orchestrator.service import Orchestrator
from jobrelay.orchestrator.types import Job, Task, TaskSpec

router = APIRouter(prefix="/api/tasks", tags=["Tasks"])


class StartJobRequest(BaseModel):
    """Request to start the next job for a task."""

    override_saved: bool = Field(
        default=False,
        description="Re-run every step instead of resuming from saved progress",
    )


@router.post("", response_model=Task, status_code=201)
async def create_task(
    spec: TaskSpec,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> Task:
    return await orchestrator.lifecycle.create_task(spec)


@router.get("", response_model=list[Task])
async def list_tasks(
    org_id: str | None = Query(default=None, alias="orgId"),
    limit: int = Query(default=100, ge=1, le=1000),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> list[Task]:
    return await orchestrator.lifecycle.list_tasks(org_id=org_id, limit=limit)


@router.get("/{task_id}", response_model=Task)
async def get_task(
    task_id: str,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> Task:
    return await orchestrator.lifecycle.get_task(task_id)


@router.delete("/{task_id}", status_code=204)
async def delete_task(
    task_id: str,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> Response:
    """Delete a task and its job history. 409 while a job is still active."""
    await orchestrator.lifecycle.delete_task(task_id)
    return Response(status_code=204)


@router.get("/{task_id}/jobs", response_model=list[Job])
async def list_task_jobs(
    task_id: str,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> list[Job]:
    return await orchestrator.lifecycle.list_jobs(task_id)


@router.post("/{task_id}/jobs", response_model=Job, status_code=201)
async def start_job(
    task_id: str,
    request: StartJobRequest | None = None,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> Job:
    """Start the task's next job.

    Raises:
        404 unknown task, 412 task not ready, 409 a job is already active,
        502 the worker could not be launched (the job is recorded as failed).
    """
    override = request.override_saved if request is not None else False
    return await orchestrator.lifecycle.start_job(task_id, override_saved=override)
