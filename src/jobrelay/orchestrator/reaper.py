"""Stale-job reaper: fails running or queued jobs past a hard ceiling.

The last line of defence after the inspector: catches workers that keep
logging but never finish, workers that died before publishing ``started``
(aged from ``created_at``), and anything the inspector could not judge.
Verdicts go through ``JobLifecycleManager.fail_inferred`` so a job that
finished in the meantime is left alone.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from jobrelay.core.logging import ExecutionContext, get_logger, with_context
from jobrelay.orchestrator.config import ReaperConfig
from jobrelay.orchestrator.lifecycle import JobLifecycleManager
from jobrelay.orchestrator.periodic import PeriodicSweeper
from jobrelay.orchestrator.types import FailureOrigin, JobStatus
from jobrelay.utils.time import seconds_since, utc_now

_logger = get_logger("orchestrator.reaper")

STALE_JOB_MESSAGE = "Job timed out or was stopped externally"


class ReapResult(BaseModel):
    """Job and sync job IDs failed by one sweep."""

    jobs: list[str] = Field(default_factory=list)
    sync_jobs: list[str] = Field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.jobs) + len(self.sync_jobs)


class StaleJobReaper(PeriodicSweeper):
    name = "reaper"

    def __init__(self, lifecycle: JobLifecycleManager, config: ReaperConfig) -> None:
        super().__init__(interval_seconds=config.interval_seconds, logger=_logger)
        self._lifecycle = lifecycle
        self._config = config

    async def sweep(self, *, now: datetime | None = None) -> ReapResult:
        now = now or utc_now()
        result = ReapResult()

        for job in await self._lifecycle.active_jobs():
            if job.status == JobStatus.QUEUED:
                age = seconds_since(job.created_at, now=now)
            else:
                age = seconds_since(job.started_at, now=now)
            if age is None or age <= self._config.job_timeout_seconds:
                continue
            with with_context(ExecutionContext(job_id=job.id, task_id=job.task_id)):
                if await self._lifecycle.fail_inferred(
                    job.id, STALE_JOB_MESSAGE, origin=FailureOrigin.TIMEOUT,
                ):
                    result.jobs.append(job.id)
                    _logger.warning(
                        "reaper.job_reaped", status=job.status.value, age_seconds=round(age),
                    )

        for sync_job in await self._lifecycle.running_sync_jobs():
            age = seconds_since(sync_job.started_at, now=now)
            if age is None or age <= self._config.sync_job_timeout_seconds:
                continue
            if await self._lifecycle.fail_sync_job(sync_job.id, STALE_JOB_MESSAGE):
                result.sync_jobs.append(sync_job.id)
                _logger.warning(
                    "reaper.sync_job_reaped", sync_job_id=sync_job.id, age_seconds=round(age),
                )

        if result.total:
            _logger.info("reaper.sweep_done", reaped=result.total)
        return result


__all__ = ["STALE_JOB_MESSAGE", "ReapResult", "StaleJobReaper"]
