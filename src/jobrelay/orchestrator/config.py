"""Configuration models for the jobrelay orchestrator.

Pydantic v2 models for the event bus connection, job store, worker launcher,
log inspector, stale-job reaper and live streams. ``load_config`` reads a
YAML file; every field has a default so an empty file (or none) is valid.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, model_validator

from jobrelay.core import constants
from jobrelay.core.logging import get_logger

_logger = get_logger("orchestrator.config")


class RedisConfig(BaseModel):
    """Redis pub/sub connection for the event bus."""

    enabled: bool = Field(
        default=True,
        description="Use Redis for the event bus. When False, events only "
        "flow within this process (workers must publish through the API).",
    )
    url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis connection URL",
    )
    channel: str = Field(
        default=constants.JOB_EVENTS_CHANNEL,
        description="Single pub/sub channel carrying every job's events",
    )
    connect_timeout_seconds: float = Field(
        default=5.0,
        gt=0,
        description="Timeout for the initial broker connection",
    )
    reconnect_base_seconds: float = Field(
        default=1.0,
        gt=0,
        description="First delay before reconnecting to a lost broker; "
        "doubles per failed attempt, capped at 60s",
    )


class StoreConfig(BaseModel):
    """SQLite job store location."""

    db_path: Path = Field(
        default=Path("~/.jobrelay/jobs.db"),
        description="SQLite database for tasks, jobs and sync jobs. "
        "Tilde is expanded at runtime.",
    )


class LauncherConfig(BaseModel):
    """AWS ECS settings for launching workers."""

    region: str = Field(default="eu-west-2", description="AWS region for ECS and CloudWatch")
    cluster: str = Field(default="jobrelay", description="ECS cluster name")
    task_definition: str = Field(
        default="browser-task",
        description="Task definition for per-task browser workers",
    )
    container_name: str = Field(
        default="browser-task",
        description="Container to override within the browser task definition",
    )
    log_group: str = Field(
        default="/ecs/browser-task",
        description="CloudWatch log group the browser container writes to",
    )
    sync_task_definition: str = Field(default="tax-sync")
    sync_container_name: str = Field(default="tax-sync")
    sync_log_group: str = Field(default="/ecs/tax-sync")
    log_stream_prefix: str = Field(
        default="ecs",
        description="awslogs-stream-prefix configured on the containers",
    )
    subnets: list[str] = Field(default_factory=list)
    security_groups: list[str] = Field(default_factory=list)
    assign_public_ip: bool = Field(default=True)
    api_url: str | None = Field(
        default=None,
        description="Orchestrator API base URL handed to workers for status polling",
    )
    secret_env: list[str] = Field(
        default_factory=lambda: ["BROWSER_USE_API_KEY"],
        description="Names of environment variables copied from the orchestrator "
        "into the worker container. Values are never logged.",
    )
    extra_environment: dict[str, str] = Field(
        default_factory=dict,
        description="Static environment passed to every worker",
    )
    launch_timeout_seconds: float = Field(
        default=constants.LAUNCH_TIMEOUT_SECONDS,
        gt=0,
        le=300,
        description="Bound on the run_task call, independent of job lifetime",
    )
    wait_for_started_event: bool = Field(
        default=False,
        description="Leave launched jobs in 'queued' until the worker publishes "
        "'started' instead of marking them 'running' immediately.",
    )


class InspectorConfig(BaseModel):
    """External log inspector tuning."""

    enabled: bool = True
    interval_seconds: float = Field(
        default=30.0,
        ge=1.0,
        description="Interval between inspection sweeps",
    )
    grace_seconds: float = Field(
        default=constants.LOG_GRACE_SECONDS,
        ge=0.0,
        description="Running time tolerated with no logs, or no log stream, "
        "before the worker is presumed dead",
    )
    quiet_seconds: float = Field(
        default=constants.LOG_QUIET_SECONDS,
        ge=0.0,
        description="Only jobs with no bus event for this long are inspected by the sweep",
    )
    max_log_lines: int = Field(default=constants.MAX_LOG_LINES, ge=1, le=10000)
    crash_markers: list[str] = Field(
        default_factory=lambda: [
            "ELIFECYCLE",
            "exit code 1",
            "SyntaxError",
            "Cannot find module",
            "ModuleNotFoundError",
            "Traceback (most recent call last)",
        ],
        description="Substrings that mark a worker as crashed. Matching is "
        "deliberately permissive; a false positive costs a re-run.",
    )


class ReaperConfig(BaseModel):
    """Stale-job reaper tuning."""

    enabled: bool = True
    interval_seconds: float = Field(default=60.0, ge=1.0)
    job_timeout_seconds: float = Field(
        default=constants.STALE_JOB_TIMEOUT_SECONDS,
        ge=1.0,
        description="Running jobs started longer ago than this are failed",
    )
    sync_job_timeout_seconds: float = Field(default=constants.STALE_JOB_TIMEOUT_SECONDS, ge=1.0)


class StreamConfig(BaseModel):
    """Live stream (SSE) settings."""

    keepalive_seconds: float = Field(
        default=constants.STREAM_KEEPALIVE_SECONDS,
        gt=0,
        description="Idle interval before a ': keepalive' comment frame",
    )
    max_queue_size: int = Field(
        default=constants.STREAM_QUEUE_SIZE,
        ge=1,
        description="Frames buffered per client before the oldest are dropped",
    )
    subscriber_queue_size: int = Field(
        default=constants.SUBSCRIBER_QUEUE_SIZE,
        ge=1,
        description="Events buffered per bus subscriber before drop-oldest",
    )


class OrchestratorConfig(BaseModel):
    """Top-level configuration for a jobrelay orchestrator process."""

    redis: RedisConfig = Field(default_factory=RedisConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    launcher: LauncherConfig = Field(default_factory=LauncherConfig)
    inspector: InspectorConfig = Field(default_factory=InspectorConfig)
    reaper: ReaperConfig = Field(default_factory=ReaperConfig)
    stream: StreamConfig = Field(default_factory=StreamConfig)
    log_level: Literal["debug", "info", "warning", "error"] = Field(default="info")
    log_format: Literal["console", "json"] = Field(default="console")
    log_file: Path | None = Field(
        default=None,
        description="Rotating log file. None means stderr/stdout only.",
    )
    config_file: Path | None = Field(
        default=None,
        description="YAML file this config was loaded from (set by load_config)",
    )

    @model_validator(mode="after")
    def _reaper_outlasts_inspector(self) -> OrchestratorConfig:
        """The reaper must not race the inspector's grace window."""
        grace = self.inspector.grace_seconds
        for name, timeout in (
            ("job_timeout_seconds", self.reaper.job_timeout_seconds),
            ("sync_job_timeout_seconds", self.reaper.sync_job_timeout_seconds),
        ):
            if timeout <= grace * 2:
                raise ValueError(
                    f"reaper.{name}={timeout} must be more than twice "
                    f"inspector.grace_seconds={grace}"
                )
        return self


def load_config(config_file: Path | None) -> OrchestratorConfig:
    """Load OrchestratorConfig from YAML, or return defaults."""
    if config_file and config_file.exists():
        with open(config_file) as f:
            data = yaml.safe_load(f) or {}
        config = OrchestratorConfig.model_validate(data)
        config.config_file = config_file.resolve()
        _logger.debug("config.loaded", path=str(config.config_file))
        return config
    if config_file is not None:
        _logger.warning("config.file_missing", path=str(config_file))
    return OrchestratorConfig()


__all__ = [
    "InspectorConfig",
    "LauncherConfig",
    "OrchestratorConfig",
    "ReaperConfig",
    "RedisConfig",
    "StoreConfig",
    "StreamConfig",
    "load_config",
]
