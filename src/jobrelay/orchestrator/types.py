"""Shared data types for the jobrelay orchestrator.

Tasks, jobs, sync jobs and job events are Pydantic v2 models so they
serialize directly for the HTTP API, the Redis wire format and the SQLite
store. Status enums inherit from ``str`` so they compare and serialize as
plain strings.
"""

from __future__ import annotations

import time
import uuid
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from jobrelay.utils.time import utc_now


def new_id() -> str:
    return str(uuid.uuid4())


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class JobStatus(str, Enum):
    """Lifecycle status of a single execution attempt."""

    PENDING = "pending"
    QUEUED = "queued"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


class SyncJobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class FailureOrigin(str, Enum):
    """Who decided a job failed.

    ``reported`` comes from the worker's own ``failed`` event, ``inferred``
    from the log inspector, ``timeout`` from the reaper and ``launch`` from a
    refused worker launch.
    """

    REPORTED = "reported"
    INFERRED = "inferred"
    TIMEOUT = "timeout"
    LAUNCH = "launch"


class JobEventType(str, Enum):
    STARTED = "started"
    PROGRESS = "progress"
    STEP = "step"
    SCREENSHOT = "screenshot"
    COMPLETED = "completed"
    FAILED = "failed"
    REQUIRES_ATTENTION = "requires_attention"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})
ACTIVE_STATUSES = frozenset({
    JobStatus.PENDING, JobStatus.QUEUED, JobStatus.RUNNING, JobStatus.PAUSED,
})
SYNC_TERMINAL_STATUSES = frozenset({SyncJobStatus.COMPLETED, SyncJobStatus.FAILED})


class TaskSpec(BaseModel):
    """Request to create a task."""

    org_id: str = Field(description="Owning organisation")
    jurisdiction_id: str = Field(description="Target jurisdiction (portal)")
    name: str = Field(min_length=1, max_length=256)
    description: str | None = None
    entity_ref: str | None = Field(
        default=None,
        description="Business entity the task operates on (e.g. a tax return id)",
    )
    metadata: dict[str, Any] = Field(default_factory=dict)


class Task(BaseModel):
    """A user-level unit of work attempted by one or more jobs."""

    id: str = Field(default_factory=new_id)
    org_id: str
    jurisdiction_id: str
    name: str
    description: str | None = None
    entity_ref: str | None = None
    status: TaskStatus = TaskStatus.PENDING
    metadata: dict[str, Any] = Field(default_factory=dict)
    last_job_number: int = Field(
        default=0,
        ge=0,
        description="Highest job number ever allocated; survives job deletion",
    )
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class Job(BaseModel):
    """One execution attempt of a task on a remote worker."""

    id: str = Field(default_factory=new_id)
    task_id: str
    job_number: int = Field(ge=1)
    status: JobStatus = JobStatus.PENDING
    execution_ref: str | None = Field(default=None, description="Remote platform handle")
    log_group: str | None = None
    log_stream: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    last_event_at: datetime | None = None
    result: dict[str, Any] = Field(default_factory=dict)
    error_message: str | None = None
    failure_origin: FailureOrigin | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class SyncJob(BaseModel):
    """Bulk-import run: no pause/resume, only pending -> running -> done."""

    id: str = Field(default_factory=new_id)
    org_id: str
    jurisdiction_id: str
    status: SyncJobStatus = SyncJobStatus.PENDING
    execution_ref: str | None = None
    log_group: str | None = None
    log_stream: str | None = None
    records_found: int | None = None
    created_at: datetime = Field(default_factory=utc_now)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error_message: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in SYNC_TERMINAL_STATUSES


class JobEvent(BaseModel):
    """Ephemeral worker event: ``{type, jobId, timestamp, data}`` on the wire.

    ``timestamp`` is epoch milliseconds, matching what browser workers emit.
    Older workers prefix the type with ``job:``; the prefix is stripped.
    """

    model_config = ConfigDict(populate_by_name=True)

    type: JobEventType
    job_id: str = Field(alias="jobId")
    timestamp: float = Field(default_factory=lambda: time.time() * 1000.0)
    data: dict[str, Any] = Field(default_factory=dict)

    @field_validator("type", mode="before")
    @classmethod
    def _strip_prefix(cls, value: Any) -> Any:
        if isinstance(value, str) and value.startswith("job:"):
            return value[len("job:"):]
        return value

    def to_wire(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_wire(cls, raw: str | bytes) -> JobEvent:
        return cls.model_validate_json(raw)


class LaunchRequest(BaseModel):
    """What a worker needs to know about its job at launch."""

    job_id: str
    task_id: str
    entity_ref: str | None = None
    override_saved: bool = Field(
        default=False,
        description="Re-run every step instead of resuming from saved progress",
    )


class LaunchHandle(BaseModel):
    """Returned by a launcher; used later for log lookup and stop requests."""

    execution_ref: str
    log_group: str | None = None
    log_stream: str | None = None


class LogLine(BaseModel):
    timestamp: float | None = Field(default=None, description="Epoch milliseconds")
    message: str = ""


__all__ = [
    "ACTIVE_STATUSES",
    "FailureOrigin",
    "Job",
    "JobEvent",
    "JobEventType",
    "JobStatus",
    "LaunchHandle",
    "LaunchRequest",
    "LogLine",
    "SYNC_TERMINAL_STATUSES",
    "SyncJob",
    "SyncJobStatus",
    "TERMINAL_STATUSES",
    "Task",
    "TaskSpec",
    "TaskStatus",
    "new_id",
]
