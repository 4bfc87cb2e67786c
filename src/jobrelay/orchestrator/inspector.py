"""External log inspector: infers worker death from the remote log sink.

Workers normally report their own outcome on the event bus. When they
cannot (crash before connecting, OOM kill, lost bus messages) the inspector
reads the head of the worker's log stream and decides:

- fatal crash markers in the text: failed, whatever the elapsed time
- no log lines and running longer than the grace window: failed
- log stream unreadable and running longer than the grace window: failed
- anything else: alive, or undetermined while still inside the window

Verdicts are applied through ``JobLifecycleManager.fail_inferred`` so they
lose any race with a terminal event. The inspector never publishes to the
event bus and never raises out of a sweep for a single bad job.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from jobrelay.core.logging import ExecutionContext, get_logger, with_context
from jobrelay.orchestrator.config import InspectorConfig
from jobrelay.orchestrator.exceptions import LogFetchError
from jobrelay.orchestrator.lifecycle import JobLifecycleManager
from jobrelay.orchestrator.logs import LogSink
from jobrelay.orchestrator.periodic import PeriodicSweeper
from jobrelay.orchestrator.types import FailureOrigin, Job, JobStatus, LogLine, SyncJob
from jobrelay.utils.time import seconds_since, utc_now

_logger = get_logger("orchestrator.inspector")

CrashDetector = Callable[[str], str | None]
"""Maps concatenated log text to a crash reason, or None when healthy."""


def marker_crash_detector(markers: Iterable[str]) -> CrashDetector:
    """Build a detector that matches any of ``markers`` as a substring."""
    patterns = tuple(markers)

    def detect(text: str) -> str | None:
        for marker in patterns:
            if marker in text:
                return f"crash marker '{marker}' found in logs"
        return None

    return detect


class InspectionVerdict(str, Enum):
    ALIVE = "alive"
    FAILED = "failed"
    UNDETERMINED = "undetermined"


class Inspection(BaseModel):
    """Outcome of one look at a worker's logs."""

    job_id: str
    verdict: InspectionVerdict
    reason: str | None = None
    logs: list[LogLine] = Field(default_factory=list)
    elapsed_seconds: float | None = Field(
        default=None, description="Time since the worker started"
    )
    applied: bool = Field(
        default=False,
        description="True when this inspection moved the job to failed",
    )


class ExternalLogInspector(PeriodicSweeper):
    """Periodically inspects quiet running jobs and running sync jobs.

    Usage::

        inspector = ExternalLogInspector(lifecycle, sink, config)
        await inspector.start()            # background sweeps
        result = await inspector.inspect(job)   # on demand
        await inspector.stop()
    """

    name = "inspector"

    def __init__(
        self,
        lifecycle: JobLifecycleManager,
        sink: LogSink,
        config: InspectorConfig,
        *,
        crash_detector: CrashDetector | None = None,
    ) -> None:
        super().__init__(interval_seconds=config.interval_seconds, logger=_logger)
        self._lifecycle = lifecycle
        self._sink = sink
        self._config = config
        self._detect_crash = crash_detector or marker_crash_detector(config.crash_markers)

    async def inspect(
        self, job: Job, *, apply: bool = True, now: datetime | None = None,
    ) -> Inspection:
        """Read the job's logs and, if ``apply``, act on a failed verdict."""
        with with_context(ExecutionContext(job_id=job.id, task_id=job.task_id)):
            started = job.started_at or job.created_at
            inspection = await self._evaluate(
                job.id, job.log_group, job.log_stream, seconds_since(started, now=now),
            )
            if (
                apply
                and inspection.verdict == InspectionVerdict.FAILED
                and job.status in (JobStatus.RUNNING, JobStatus.QUEUED)
            ):
                inspection.applied = await self._lifecycle.fail_inferred(
                    job.id, inspection.reason or "Worker died", origin=FailureOrigin.INFERRED,
                )
                if inspection.applied:
                    _logger.warning("inspector.job_failed", reason=inspection.reason)
            return inspection

    async def inspect_sync_job(
        self, sync_job: SyncJob, *, apply: bool = True, now: datetime | None = None,
    ) -> Inspection:
        started = sync_job.started_at or sync_job.created_at
        inspection = await self._evaluate(
            sync_job.id, sync_job.log_group, sync_job.log_stream, seconds_since(started, now=now),
        )
        if apply and inspection.verdict == InspectionVerdict.FAILED and not sync_job.is_terminal:
            inspection.applied = await self._lifecycle.fail_sync_job(
                sync_job.id, inspection.reason or "Worker died",
            )
        return inspection

    async def sweep(self) -> list[Inspection]:
        """Inspect every running job that has been quiet on the bus."""
        now = utc_now()
        results: list[Inspection] = []
        for job in await self._lifecycle.active_jobs():
            if job.status != JobStatus.RUNNING:
                continue
            quiet = seconds_since(job.last_event_at or job.started_at, now=now)
            if quiet is not None and quiet < self._config.quiet_seconds:
                continue
            try:
                results.append(await self.inspect(job, now=now))
            except Exception:
                _logger.exception("inspector.inspect_failed", job_id=job.id)
        for sync_job in await self._lifecycle.running_sync_jobs():
            try:
                results.append(await self.inspect_sync_job(sync_job, now=now))
            except Exception:
                _logger.exception("inspector.inspect_failed", sync_job_id=sync_job.id)
        failed = sum(1 for r in results if r.applied)
        if results:
            _logger.debug("inspector.sweep_done", inspected=len(results), failed=failed)
        return results

    async def _evaluate(
        self,
        job_id: str,
        log_group: str | None,
        log_stream: str | None,
        elapsed: float | None,
    ) -> Inspection:
        past_grace = elapsed is not None and elapsed > self._config.grace_seconds

        logs: list[LogLine] = []
        if log_group and log_stream:
            try:
                logs = await self._sink.fetch(
                    log_group, log_stream, limit=self._config.max_log_lines,
                )
            except LogFetchError as e:
                _logger.debug("inspector.fetch_failed", job_id=job_id, error=str(e))
                if past_grace:
                    return Inspection(
                        job_id=job_id,
                        verdict=InspectionVerdict.FAILED,
                        reason="Worker died: log stream not found",
                        elapsed_seconds=elapsed,
                    )
                return Inspection(
                    job_id=job_id,
                    verdict=InspectionVerdict.UNDETERMINED,
                    reason="log stream not available yet",
                    elapsed_seconds=elapsed,
                )

        if logs:
            crash = self._detect_crash("\n".join(line.message for line in logs))
            if crash is not None:
                return Inspection(
                    job_id=job_id,
                    verdict=InspectionVerdict.FAILED,
                    reason=f"Worker died: {crash}",
                    logs=logs,
                    elapsed_seconds=elapsed,
                )
            return Inspection(
                job_id=job_id,
                verdict=InspectionVerdict.ALIVE,
                logs=logs,
                elapsed_seconds=elapsed,
            )

        if past_grace:
            return Inspection(
                job_id=job_id,
                verdict=InspectionVerdict.FAILED,
                reason="Worker died: no logs produced",
                elapsed_seconds=elapsed,
            )
        return Inspection(
            job_id=job_id,
            verdict=InspectionVerdict.UNDETERMINED,
            reason="no logs yet",
            elapsed_seconds=elapsed,
        )


__all__ = [
    "CrashDetector",
    "ExternalLogInspector",
    "Inspection",
    "InspectionVerdict",
    "marker_crash_detector",
]
