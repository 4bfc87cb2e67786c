"""Worker launcher: starts one isolated remote execution per job.

The launcher is a thin adapter over the remote platform. It never reads or
writes job state; it returns a ``LaunchHandle`` or raises
``LaunchFailedError`` and lets the lifecycle manager record the outcome.

``EcsWorkerLauncher`` runs Fargate tasks through boto3. boto3 is blocking,
so every call goes through ``asyncio.to_thread`` under ``asyncio.wait_for``.
"""

from __future__ import annotations

import asyncio
import os
from typing import Any, Protocol

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from jobrelay.core.logging import get_logger
from jobrelay.orchestrator.config import LauncherConfig
from jobrelay.orchestrator.exceptions import LaunchFailedError
from jobrelay.orchestrator.types import LaunchHandle, LaunchRequest

_logger = get_logger("orchestrator.launcher")


class WorkerLauncher(Protocol):
    """Anything that can start and stop remote workers."""

    async def launch(self, request: LaunchRequest) -> LaunchHandle: ...

    async def launch_sync(
        self,
        sync_job_id: str,
        *,
        org_id: str,
        jurisdiction_id: str,
        session_cookie: str | None = None,
    ) -> LaunchHandle: ...

    async def stop(self, execution_ref: str, *, reason: str) -> None: ...


class EcsWorkerLauncher:
    """Launch workers as ECS Fargate tasks.

    Each container receives its job identity through environment overrides::

        JOB_ID, TASK_ID, ENTITY_REF, OVERRIDE_SAVED, REDIS_URL, JOBRELAY_API_URL

    plus any secret variables named in ``LauncherConfig.secret_env``, copied
    from the orchestrator's own environment. The log stream follows the
    ``awslogs`` driver layout ``{prefix}/{container}/{ecs_task_id}``.
    """

    def __init__(
        self,
        config: LauncherConfig,
        *,
        redis_url: str | None = None,
        client: Any = None,
    ) -> None:
        self._config = config
        self._redis_url = redis_url
        self._client = client or boto3.client("ecs", region_name=config.region)

    async def launch(self, request: LaunchRequest) -> LaunchHandle:
        environment = {
            "JOB_ID": request.job_id,
            "TASK_ID": request.task_id,
            "ENTITY_REF": request.entity_ref or "",
            "OVERRIDE_SAVED": "true" if request.override_saved else "false",
        }
        environment.update(self._shared_environment())
        return await self._run_task(
            job_id=request.job_id,
            task_definition=self._config.task_definition,
            container_name=self._config.container_name,
            log_group=self._config.log_group,
            environment=environment,
        )

    async def launch_sync(
        self,
        sync_job_id: str,
        *,
        org_id: str,
        jurisdiction_id: str,
        session_cookie: str | None = None,
    ) -> LaunchHandle:
        environment = {
            "SYNC_JOB_ID": sync_job_id,
            "ORG_ID": org_id,
            "JURISDICTION_ID": jurisdiction_id,
        }
        if session_cookie:
            environment["SESSION_COOKIE"] = session_cookie
        environment.update(self._shared_environment())
        return await self._run_task(
            job_id=sync_job_id,
            task_definition=self._config.sync_task_definition,
            container_name=self._config.sync_container_name,
            log_group=self._config.sync_log_group,
            environment=environment,
        )

    async def stop(self, execution_ref: str, *, reason: str) -> None:
        """Ask ECS to stop a task. Failures are logged, never raised."""
        try:
            await asyncio.wait_for(
                asyncio.to_thread(
                    self._client.stop_task,
                    cluster=self._config.cluster,
                    task=execution_ref,
                    reason=reason[:255],
                ),
                timeout=self._config.launch_timeout_seconds,
            )
        except (ClientError, BotoCoreError, TimeoutError) as e:
            _logger.warning(
                "launcher.stop_failed",
                execution_ref=execution_ref,
                error=str(e) or type(e).__name__,
            )
            return
        _logger.info("launcher.stopped", execution_ref=execution_ref, reason=reason)

    def _shared_environment(self) -> dict[str, str]:
        env = dict(self._config.extra_environment)
        if self._redis_url:
            env["REDIS_URL"] = self._redis_url
        if self._config.api_url:
            env["JOBRELAY_API_URL"] = self._config.api_url
        for name in self._config.secret_env:
            value = os.environ.get(name)
            if value is None:
                _logger.warning("launcher.secret_env_missing", name=name)
                continue
            env[name] = value
        return env

    async def _run_task(
        self,
        *,
        job_id: str,
        task_definition: str,
        container_name: str,
        log_group: str,
        environment: dict[str, str],
    ) -> LaunchHandle:
        params: dict[str, Any] = {
            "cluster": self._config.cluster,
            "taskDefinition": task_definition,
            "launchType": "FARGATE",
            "count": 1,
            "networkConfiguration": {
                "awsvpcConfiguration": {
                    "subnets": self._config.subnets,
                    "securityGroups": self._config.security_groups,
                    "assignPublicIp": "ENABLED" if self._config.assign_public_ip else "DISABLED",
                },
            },
            "overrides": {
                "containerOverrides": [
                    {
                        "name": container_name,
                        "environment": [
                            {"name": k, "value": v} for k, v in environment.items()
                        ],
                    },
                ],
            },
        }
        _logger.info(
            "launcher.launching",
            job_id=job_id,
            task_definition=task_definition,
            cluster=self._config.cluster,
        )
        try:
            response = await asyncio.wait_for(
                asyncio.to_thread(self._client.run_task, **params),
                timeout=self._config.launch_timeout_seconds,
            )
        except TimeoutError as e:
            raise LaunchFailedError(
                f"Worker launch timed out after {self._config.launch_timeout_seconds}s"
            ) from e
        except (ClientError, BotoCoreError) as e:
            raise LaunchFailedError(f"Worker launch refused: {e}") from e

        tasks = response.get("tasks") or []
        if not tasks or not tasks[0].get("taskArn"):
            failures = response.get("failures") or []
            reason = "; ".join(
                f.get("reason", "unknown") for f in failures
            ) or "no task returned"
            raise LaunchFailedError(f"Worker launch refused: {reason}")

        task_arn: str = tasks[0]["taskArn"]
        ecs_task_id = task_arn.rsplit("/", 1)[-1]
        handle = LaunchHandle(
            execution_ref=task_arn,
            log_group=log_group,
            log_stream=f"{self._config.log_stream_prefix}/{container_name}/{ecs_task_id}",
        )
        _logger.info(
            "launcher.launched",
            job_id=job_id,
            execution_ref=task_arn,
            log_stream=handle.log_stream,
        )
        return handle


__all__ = ["EcsWorkerLauncher", "WorkerLauncher"]
