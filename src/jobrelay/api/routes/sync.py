"""Sync-job endpoints: launch bulk imports and follow their progress."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from jobrelay.api.app import get_orchestrator
from jobrelay.orchestrator.inspector import Inspection
from jobrelay.orchestrator.reaper import STALE_JOB_MESSAGE
from jobrelay.orchestrator.service import Orchestrator
from jobrelay.orchestrator.types import SyncJob
from jobrelay.utils.time import seconds_since

router = APIRouter(prefix="/api/sync-jobs", tags=["Sync Jobs"])


class StartSyncJobRequest(BaseModel):
    org_id: str
    jurisdiction_id: str
    session_cookie: str | None = Field(
        default=None,
        description="Portal session cookie handed to the worker. Never stored.",
    )


class CompleteSyncJobRequest(BaseModel):
    records_found: int | None = Field(default=None, ge=0)


class FailSyncJobRequest(BaseModel):
    error_message: str = Field(min_length=1)


@router.post("", response_model=SyncJob, status_code=201)
async def start_sync_job(
    request: StartSyncJobRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> SyncJob:
    return await orchestrator.lifecycle.start_sync_job(
        request.org_id,
        request.jurisdiction_id,
        session_cookie=request.session_cookie,
    )


@router.get("", response_model=list[SyncJob])
async def list_sync_jobs(
    org_id: str | None = Query(default=None, alias="orgId"),
    jurisdiction_id: str | None = Query(default=None, alias="jurisdictionId"),
    limit: int = Query(default=20, ge=1, le=200),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> list[SyncJob]:
    return await orchestrator.lifecycle.list_sync_jobs(
        org_id=org_id, jurisdiction_id=jurisdiction_id, limit=limit,
    )


@router.get("/active", response_model=SyncJob | None)
async def get_active_sync_job(
    org_id: str = Query(alias="orgId"),
    jurisdiction_id: str = Query(alias="jurisdictionId"),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> SyncJob | None:
    """The pending or running sync job, or null.

    A running sync job past the reaper ceiling is failed before answering.
    """
    sync_job = await orchestrator.lifecycle.get_active_sync_job(org_id, jurisdiction_id)
    if sync_job is None:
        return None
    age = seconds_since(sync_job.started_at)
    if age is not None and age > orchestrator.config.reaper.sync_job_timeout_seconds:
        await orchestrator.lifecycle.fail_sync_job(sync_job.id, STALE_JOB_MESSAGE)
        return None
    return sync_job


@router.get("/{sync_job_id}", response_model=SyncJob)
async def get_sync_job(
    sync_job_id: str,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> SyncJob:
    return await orchestrator.lifecycle.get_sync_job(sync_job_id)


@router.post("/{sync_job_id}/complete", response_model=SyncJob)
async def complete_sync_job(
    sync_job_id: str,
    request: CompleteSyncJobRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> SyncJob:
    return await orchestrator.lifecycle.complete_sync_job(
        sync_job_id, records_found=request.records_found,
    )


@router.post("/{sync_job_id}/fail", response_model=SyncJob)
async def fail_sync_job(
    sync_job_id: str,
    request: FailSyncJobRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> SyncJob:
    await orchestrator.lifecycle.fail_sync_job(sync_job_id, request.error_message)
    return await orchestrator.lifecycle.get_sync_job(sync_job_id)


@router.get("/{sync_job_id}/logs", response_model=Inspection)
async def get_sync_job_logs(
    sync_job_id: str,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> Inspection:
    sync_job = await orchestrator.lifecycle.get_sync_job(sync_job_id)
    return await orchestrator.inspector.inspect_sync_job(sync_job)
