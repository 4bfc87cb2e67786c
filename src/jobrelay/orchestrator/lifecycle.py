"""Job lifecycle manager: the single authority over task, job and sync job state.

Every status change goes through ``_transition`` and the transition table
below, under a per-job ``asyncio.Lock``. User actions (pause, resume,
cancel), worker events and the inspector/reaper verdicts all re-read the job
inside that lock before acting, so a late verdict can never overwrite a
terminal state.

``start_job`` additionally holds a per-task lock around the "no active job"
check and the insert, which (together with the store's partial unique index)
keeps at most one non-terminal job per task. The launch then re-reads the
new job under its job lock, so a cancel or delete that lands in between wins.
"""

from __future__ import annotations

import asyncio
import inspect
import weakref
from collections.abc import Awaitable, Callable
from typing import Any

from jobrelay.core.constants import MAX_RESULT_STEPS
from jobrelay.core.logging import ExecutionContext, get_logger, with_context
from jobrelay.orchestrator.exceptions import (
    ConflictError,
    InvalidStateError,
    LaunchFailedError,
    NotFoundError,
    PreconditionFailedError,
)
from jobrelay.orchestrator.launcher import WorkerLauncher
from jobrelay.orchestrator.store import JobStore
from jobrelay.orchestrator.types import (
    FailureOrigin,
    Job,
    JobEvent,
    JobEventType,
    JobStatus,
    LaunchRequest,
    SyncJob,
    SyncJobStatus,
    Task,
    TaskSpec,
    TaskStatus,
)
from jobrelay.utils.time import utc_now

_logger = get_logger("orchestrator.lifecycle")

ReadinessGate = Callable[[Task], bool | Awaitable[bool]]

_JOB_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({
        JobStatus.QUEUED, JobStatus.RUNNING, JobStatus.FAILED, JobStatus.CANCELLED,
    }),
    JobStatus.QUEUED: frozenset({
        JobStatus.RUNNING, JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED,
    }),
    JobStatus.RUNNING: frozenset({
        JobStatus.PAUSED, JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED,
    }),
    # A paused worker may still report its own outcome (e.g. it gave up
    # waiting for the user).
    JobStatus.PAUSED: frozenset({
        JobStatus.RUNNING, JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED,
    }),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}

_TASK_STATUS_FOR_JOB: dict[JobStatus, TaskStatus] = {
    JobStatus.PENDING: TaskStatus.IN_PROGRESS,
    JobStatus.QUEUED: TaskStatus.IN_PROGRESS,
    JobStatus.RUNNING: TaskStatus.IN_PROGRESS,
    JobStatus.PAUSED: TaskStatus.IN_PROGRESS,
    JobStatus.COMPLETED: TaskStatus.COMPLETED,
    JobStatus.FAILED: TaskStatus.FAILED,
    JobStatus.CANCELLED: TaskStatus.CANCELLED,
}

_INFERABLE_STATUSES = frozenset({JobStatus.RUNNING, JobStatus.QUEUED})
_ACTIVE_SYNC_STATUSES = (SyncJobStatus.PENDING, SyncJobStatus.RUNNING)


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    """Whether ``current -> target`` is a legal job transition."""
    return target in _JOB_TRANSITIONS[current]


def entity_ref_ready(task: Task) -> bool:
    """Default readiness gate: the task must point at a business entity."""
    return task.entity_ref is not None


class JobLifecycleManager:
    """Creates tasks and jobs, validates transitions and persists them.

    Args:
        store: Opened ``JobStore``.
        launcher: Remote worker launcher.
        readiness_gate: Predicate (sync or async) deciding whether a task's
            prerequisite data is complete enough to start a job.
        wait_for_started_event: Leave launched jobs ``queued`` until the
            worker publishes ``started``.
    """

    def __init__(
        self,
        store: JobStore,
        launcher: WorkerLauncher,
        *,
        readiness_gate: ReadinessGate = entity_ref_ready,
        wait_for_started_event: bool = False,
    ) -> None:
        self._store = store
        self._launcher = launcher
        self._readiness_gate = readiness_gate
        self._wait_for_started = wait_for_started_event
        # Entries vanish once no coroutine holds or waits on the lock
        self._job_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )
        self._task_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def _job_lock(self, job_id: str) -> asyncio.Lock:
        return self._job_locks.setdefault(job_id, asyncio.Lock())

    def _task_lock(self, key: str) -> asyncio.Lock:
        return self._task_locks.setdefault(key, asyncio.Lock())

    # ─── Tasks ────────────────────────────────────────────────────────

    async def create_task(self, spec: TaskSpec) -> Task:
        task = Task(**spec.model_dump())
        await self._store.insert_task(task)
        _logger.info("task.created", task_id=task.id, org_id=task.org_id)
        return task

    async def get_task(self, task_id: str) -> Task:
        task = await self._store.get_task(task_id)
        if task is None:
            raise NotFoundError(f"Task '{task_id}' not found")
        return task

    async def list_tasks(self, *, org_id: str | None = None, limit: int = 100) -> list[Task]:
        return await self._store.list_tasks(org_id=org_id, limit=limit)

    async def delete_task(self, task_id: str) -> None:
        """Delete a task and its job history.

        Raises:
            NotFoundError: Unknown task.
            ConflictError: The task still has a non-terminal job.
        """
        async with self._task_lock(task_id):
            await self.get_task(task_id)
            active = await self._store.active_job_for_task(task_id)
            if active is not None:
                raise ConflictError(
                    f"Task '{task_id}' has an active job ({active.status.value}); "
                    "cancel it first"
                )
            await self._store.delete_task(task_id)
        _logger.info("task.deleted", task_id=task_id)

    # ─── Jobs ─────────────────────────────────────────────────────────

    async def start_job(self, task_id: str, *, override_saved: bool = False) -> Job:
        """Create the task's next job and launch a worker for it.

        Raises:
            NotFoundError: Unknown task, or the job was deleted before its
                worker launched.
            PreconditionFailedError: The readiness gate refused the task.
            ConflictError: The task already has a non-terminal job.
            LaunchFailedError: The worker could not be launched. The job is
                left ``failed`` with ``failure_origin="launch"``.

        A job cancelled before its worker launched is returned as is, and no
        worker is started for it.
        """
        async with self._task_lock(task_id):
            task = await self.get_task(task_id)
            if not await self._is_ready(task):
                raise PreconditionFailedError(
                    f"Task '{task_id}' is not ready: prerequisite data is incomplete"
                )
            active = await self._store.active_job_for_task(task_id)
            if active is not None:
                raise ConflictError(
                    f"Task '{task_id}' already has job #{active.job_number} "
                    f"({active.status.value})"
                )
            number = await self._store.allocate_job_number(task_id)
            job = Job(task_id=task_id, job_number=number)
            await self._store.insert_job(job)
            task.status = TaskStatus.IN_PROGRESS
            task.last_job_number = number
            task.updated_at = utc_now()
            await self._store.save_task(task)

        _logger.info(
            "job.created",
            job_id=job.id,
            task_id=task_id,
            job_number=number,
            override_saved=override_saved,
        )

        with with_context(ExecutionContext(job_id=job.id, task_id=task_id)):
            return await self._launch(job.id, task, override_saved=override_saved)

    async def _launch(self, job_id: str, task: Task, *, override_saved: bool) -> Job:
        async with self._job_lock(job_id):
            job = await self._store.get_job(job_id)
            if job is None or job.status != JobStatus.PENDING:
                _logger.info("job.launch_skipped", status=job.status.value if job else None)
                if job is None:
                    raise NotFoundError(f"Job '{job_id}' was deleted before it launched")
                return job
            request = LaunchRequest(
                job_id=job.id,
                task_id=task.id,
                entity_ref=task.entity_ref,
                override_saved=override_saved,
            )
            try:
                handle = await self._launcher.launch(request)
            except LaunchFailedError as e:
                await self._fail_launch(job, str(e))
                raise
            except Exception as e:
                await self._fail_launch(job, f"{type(e).__name__}: {e}")
                raise LaunchFailedError(str(e)) from e

            job.execution_ref = handle.execution_ref
            job.log_group = handle.log_group
            job.log_stream = handle.log_stream
            target = JobStatus.QUEUED if self._wait_for_started else JobStatus.RUNNING
            return await self._transition(job, target)

    async def _fail_launch(self, job: Job, reason: str) -> None:
        _logger.error("job.launch_failed", job_id=job.id, task_id=job.task_id, error=reason)
        await self._transition(
            job,
            JobStatus.FAILED,
            error_message=f"Failed to launch worker: {reason}",
            failure_origin=FailureOrigin.LAUNCH,
        )

    async def pause(self, job_id: str) -> Job:
        """Mark a running job paused. The worker notices on its next status poll."""
        async with self._job_lock(job_id):
            job = await self.get_job(job_id)
            if job.status != JobStatus.RUNNING:
                raise InvalidStateError(
                    f"Job '{job_id}' is {job.status.value}, only running jobs can be paused",
                    current=job.status.value,
                )
            return await self._transition(job, JobStatus.PAUSED)

    async def resume(self, job_id: str) -> Job:
        async with self._job_lock(job_id):
            job = await self.get_job(job_id)
            if job.status != JobStatus.PAUSED:
                raise InvalidStateError(
                    f"Job '{job_id}' is {job.status.value}, only paused jobs can be resumed",
                    current=job.status.value,
                )
            return await self._transition(job, JobStatus.RUNNING)

    async def cancel(self, job_id: str) -> Job:
        """Cancel a non-terminal job and ask the platform to stop its worker.

        The cancellation is recorded even when the remote stop fails.
        """
        async with self._job_lock(job_id):
            job = await self.get_job(job_id)
            if job.is_terminal:
                raise InvalidStateError(
                    f"Job '{job_id}' is already {job.status.value}",
                    current=job.status.value,
                )
            job = await self._transition(job, JobStatus.CANCELLED)
        await self._stop_worker(job, reason="Cancelled by user")
        return job

    async def delete_job(self, job_id: str) -> None:
        async with self._job_lock(job_id):
            job = await self.get_job(job_id)
            if job.status == JobStatus.RUNNING:
                raise InvalidStateError(
                    f"Job '{job_id}' is running; cancel or pause it before deleting",
                    current=job.status.value,
                )
            await self._store.delete_job(job_id)
        _logger.info("job.deleted", job_id=job_id, task_id=job.task_id)

    async def get_job(self, job_id: str) -> Job:
        job = await self._store.get_job(job_id)
        if job is None:
            raise NotFoundError(f"Job '{job_id}' not found")
        return job

    async def list_jobs(self, task_id: str) -> list[Job]:
        await self.get_task(task_id)
        return await self._store.list_jobs(task_id=task_id)

    async def active_jobs(self, *, limit: int = 1000) -> list[Job]:
        """Jobs the inspector and reaper are responsible for."""
        return await self._store.list_jobs(statuses=_INFERABLE_STATUSES, limit=limit)

    async def update_job_result(
        self,
        job_id: str,
        *,
        chat_messages: list[dict[str, Any]] | None = None,
        steps: list[dict[str, Any]] | None = None,
        data: dict[str, Any] | None = None,
    ) -> Job:
        """Merge worker-persisted progress into ``Job.result``.

        Status is untouched, so this is allowed in any state.
        """
        async with self._job_lock(job_id):
            job = await self.get_job(job_id)
            result = dict(job.result)
            if data:
                result.update(data)
            if chat_messages is not None:
                result["chat_messages"] = chat_messages
            if steps is not None:
                result["steps"] = steps[-MAX_RESULT_STEPS:]
            job.result = result
            await self._store.save_job(job)
            return job

    # ─── Worker events ────────────────────────────────────────────────

    async def record_event(self, event: JobEvent) -> Job | None:
        """Fold a worker event into the job it belongs to.

        Events are best-effort: unknown jobs, events for terminal jobs and
        events implying an illegal transition are logged and ignored.
        """
        with with_context(ExecutionContext(job_id=event.job_id)):
            return await self._fold_into_job(event)

    async def _fold_into_job(self, event: JobEvent) -> Job | None:
        async with self._job_lock(event.job_id):
            job = await self._store.get_job(event.job_id)
            if job is None:
                _logger.debug(
                    "job.event_unknown_job", job_id=event.job_id, event_type=event.type.value,
                )
                return None
            if job.is_terminal:
                _logger.debug(
                    "job.event_after_terminal",
                    job_id=job.id,
                    event_type=event.type.value,
                    status=job.status.value,
                )
                return job

            job.last_event_at = utc_now()
            job.result = _fold_event(job.result, event)

            target: JobStatus | None = None
            changes: dict[str, Any] = {}
            if event.type == JobEventType.STARTED and job.status in (
                JobStatus.PENDING, JobStatus.QUEUED,
            ):
                target = JobStatus.RUNNING
            elif event.type == JobEventType.COMPLETED:
                target = JobStatus.COMPLETED
            elif event.type == JobEventType.FAILED:
                target = JobStatus.FAILED
                changes = {
                    "error_message": str(
                        event.data.get("error") or event.data.get("message")
                        or "Worker reported failure"
                    ),
                    "failure_origin": FailureOrigin.REPORTED,
                }

            if target is None:
                await self._store.save_job(job)
                return job
            if not can_transition(job.status, target):
                _logger.warning(
                    "job.event_rejected",
                    job_id=job.id,
                    event_type=event.type.value,
                    status=job.status.value,
                )
                await self._store.save_job(job)
                return job
            return await self._transition(job, target, **changes)

    async def fail_inferred(
        self,
        job_id: str,
        reason: str,
        *,
        origin: FailureOrigin = FailureOrigin.INFERRED,
    ) -> bool:
        """Fail a job on behalf of the inspector or reaper.

        Re-checks under the job lock that the job is still running or queued;
        otherwise this is a no-op.

        Returns:
            True if the job was failed by this call.
        """
        async with self._job_lock(job_id):
            job = await self._store.get_job(job_id)
            if job is None or job.status not in _INFERABLE_STATUSES:
                _logger.debug(
                    "job.inferred_failure_skipped",
                    job_id=job_id,
                    status=job.status.value if job else None,
                )
                return False
            job = await self._transition(
                job, JobStatus.FAILED, error_message=reason, failure_origin=origin,
            )
        await self._stop_worker(job, reason=reason)
        return True

    # ─── Sync jobs ────────────────────────────────────────────────────

    async def start_sync_job(
        self,
        org_id: str,
        jurisdiction_id: str,
        *,
        session_cookie: str | None = None,
    ) -> SyncJob:
        """Launch a bulk-import worker for one organisation and jurisdiction.

        Raises:
            ConflictError: A sync job is already pending or running.
            LaunchFailedError: The worker could not be launched.
        """
        async with self._task_lock(f"sync:{org_id}:{jurisdiction_id}"):
            active = await self.get_active_sync_job(org_id, jurisdiction_id)
            if active is not None:
                raise ConflictError(
                    f"Sync job '{active.id}' is already {active.status.value}"
                )
            sync_job = SyncJob(org_id=org_id, jurisdiction_id=jurisdiction_id)
            await self._store.insert_sync_job(sync_job)
            _logger.info("sync_job.created", sync_job_id=sync_job.id, org_id=org_id)

            try:
                handle = await self._launcher.launch_sync(
                    sync_job.id,
                    org_id=org_id,
                    jurisdiction_id=jurisdiction_id,
                    session_cookie=session_cookie,
                )
            except LaunchFailedError as e:
                sync_job.status = SyncJobStatus.FAILED
                sync_job.error_message = f"Failed to launch worker: {e}"
                sync_job.completed_at = utc_now()
                await self._store.save_sync_job(sync_job)
                _logger.error("sync_job.launch_failed", sync_job_id=sync_job.id, error=str(e))
                raise

            sync_job.status = SyncJobStatus.RUNNING
            sync_job.started_at = utc_now()
            sync_job.execution_ref = handle.execution_ref
            sync_job.log_group = handle.log_group
            sync_job.log_stream = handle.log_stream
            await self._store.save_sync_job(sync_job)
            _logger.info("sync_job.running", sync_job_id=sync_job.id)
            return sync_job

    async def complete_sync_job(
        self, sync_job_id: str, *, records_found: int | None = None,
    ) -> SyncJob:
        async with self._job_lock(sync_job_id):
            sync_job = await self.get_sync_job(sync_job_id)
            if sync_job.is_terminal:
                raise InvalidStateError(
                    f"Sync job '{sync_job_id}' is already {sync_job.status.value}",
                    current=sync_job.status.value,
                )
            sync_job.status = SyncJobStatus.COMPLETED
            sync_job.records_found = records_found
            sync_job.completed_at = utc_now()
            await self._store.save_sync_job(sync_job)
            _logger.info("sync_job.completed", sync_job_id=sync_job_id, records_found=records_found)
            return sync_job

    async def fail_sync_job(self, sync_job_id: str, reason: str) -> bool:
        """Fail a sync job unless it already finished. Returns True if failed here."""
        async with self._job_lock(sync_job_id):
            sync_job = await self._store.get_sync_job(sync_job_id)
            if sync_job is None or sync_job.is_terminal:
                return False
            sync_job.status = SyncJobStatus.FAILED
            sync_job.error_message = reason
            sync_job.completed_at = utc_now()
            await self._store.save_sync_job(sync_job)
            _logger.warning("sync_job.failed", sync_job_id=sync_job_id, reason=reason)
        if sync_job.execution_ref:
            await self._stop_execution(sync_job.execution_ref, reason=reason)
        return True

    async def get_sync_job(self, sync_job_id: str) -> SyncJob:
        sync_job = await self._store.get_sync_job(sync_job_id)
        if sync_job is None:
            raise NotFoundError(f"Sync job '{sync_job_id}' not found")
        return sync_job

    async def list_sync_jobs(
        self,
        *,
        org_id: str | None = None,
        jurisdiction_id: str | None = None,
        limit: int = 20,
    ) -> list[SyncJob]:
        return await self._store.list_sync_jobs(
            org_id=org_id, jurisdiction_id=jurisdiction_id, limit=limit,
        )

    async def get_active_sync_job(self, org_id: str, jurisdiction_id: str) -> SyncJob | None:
        jobs = await self._store.list_sync_jobs(
            org_id=org_id,
            jurisdiction_id=jurisdiction_id,
            statuses=_ACTIVE_SYNC_STATUSES,
            limit=1,
        )
        return jobs[0] if jobs else None

    async def running_sync_jobs(self, *, limit: int = 1000) -> list[SyncJob]:
        return await self._store.list_sync_jobs(statuses=[SyncJobStatus.RUNNING], limit=limit)

    # ─── Internals ────────────────────────────────────────────────────

    async def _is_ready(self, task: Task) -> bool:
        verdict = self._readiness_gate(task)
        if inspect.isawaitable(verdict):
            verdict = await verdict
        return bool(verdict)

    async def _transition(self, job: Job, target: JobStatus, **changes: Any) -> Job:
        """Apply a validated status change and persist it.

        Callers hold the job lock and pass a job read inside it.
        """
        if not can_transition(job.status, target):
            raise InvalidStateError(
                f"Job '{job.id}' cannot go from {job.status.value} to {target.value}",
                current=job.status.value,
            )
        previous = job.status
        now = utc_now()
        job.status = target
        for key, value in changes.items():
            setattr(job, key, value)
        if target == JobStatus.RUNNING and job.started_at is None:
            job.started_at = now
        if target.is_terminal:
            job.completed_at = now
            if target != JobStatus.FAILED:
                job.error_message = None
                job.failure_origin = None
        await self._store.save_job(job)
        _logger.info(
            "job.transition",
            job_id=job.id,
            task_id=job.task_id,
            from_status=previous.value,
            to_status=target.value,
            failure_origin=job.failure_origin.value if job.failure_origin else None,
        )
        if job.failure_origin != FailureOrigin.LAUNCH:
            await self._mirror_task_status(job)
        return job

    async def _mirror_task_status(self, job: Job) -> None:
        """Reflect the latest job's status on its task."""
        async with self._task_lock(job.task_id):
            task = await self._store.get_task(job.task_id)
            if task is None or task.last_job_number != job.job_number:
                return
            status = _TASK_STATUS_FOR_JOB[job.status]
            if task.status == status:
                return
            task.status = status
            task.updated_at = utc_now()
            await self._store.save_task(task)

    async def _stop_worker(self, job: Job, *, reason: str) -> None:
        if job.execution_ref:
            await self._stop_execution(job.execution_ref, reason=reason)

    async def _stop_execution(self, execution_ref: str, *, reason: str) -> None:
        try:
            await self._launcher.stop(execution_ref, reason=reason)
        except Exception:
            _logger.warning("job.stop_failed", execution_ref=execution_ref, exc_info=True)


def _fold_event(result: dict[str, Any], event: JobEvent) -> dict[str, Any]:
    """Return ``result`` with the event's payload merged in."""
    folded = dict(result)
    data = event.data
    live_url = data.get("liveUrl") or data.get("live_url")
    if live_url:
        folded["live_url"] = live_url
    if event.type == JobEventType.PROGRESS:
        folded["progress"] = data
    elif event.type == JobEventType.STEP:
        steps = [*folded.get("steps", []), data]
        folded["steps"] = steps[-MAX_RESULT_STEPS:]
    elif event.type == JobEventType.SCREENSHOT:
        folded["last_screenshot"] = data.get("url") or data.get("screenshot") or data
    elif event.type == JobEventType.REQUIRES_ATTENTION:
        folded["attention"] = {**data, "timestamp": event.timestamp}
    elif event.type == JobEventType.COMPLETED:
        folded["output"] = data.get("output", data)
        folded.pop("attention", None)
    elif event.type == JobEventType.FAILED:
        folded["error"] = data
    return folded


__all__ = [
    "JobLifecycleManager",
    "ReadinessGate",
    "can_transition",
    "entity_ref_ready",
]
