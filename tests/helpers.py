"""Shared test helpers for jobrelay tests."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

from jobrelay.orchestrator.exceptions import LogFetchError
from jobrelay.orchestrator.types import JobEvent, JobEventType, LaunchHandle, LaunchRequest, LogLine


async def wait_until(condition: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll ``condition`` until it holds; fail the test after ``timeout``."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not condition():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.005)


def make_event(
    event_type: JobEventType | str = JobEventType.PROGRESS,
    job_id: str = "job-1",
    **data: Any,
) -> JobEvent:
    return JobEvent(type=event_type, job_id=job_id, data=data)


class FakeLauncher:
    """In-memory WorkerLauncher that records every call."""

    def __init__(self) -> None:
        self.launched: list[LaunchRequest] = []
        self.sync_launched: list[dict[str, Any]] = []
        self.stopped: list[tuple[str, str]] = []
        self.fail_with: Exception | None = None
        self._count = 0

    def _handle(self, container: str) -> LaunchHandle:
        self._count += 1
        ecs_id = f"exec{self._count:04d}"
        return LaunchHandle(
            execution_ref=f"arn:aws:ecs:eu-west-2:123456789012:task/jobrelay/{ecs_id}",
            log_group=f"/ecs/{container}",
            log_stream=f"ecs/{container}/{ecs_id}",
        )

    async def launch(self, request: LaunchRequest) -> LaunchHandle:
        if self.fail_with is not None:
            raise self.fail_with
        self.launched.append(request)
        return self._handle("browser-task")

    async def launch_sync(
        self,
        sync_job_id: str,
        *,
        org_id: str,
        jurisdiction_id: str,
        session_cookie: str | None = None,
    ) -> LaunchHandle:
        if self.fail_with is not None:
            raise self.fail_with
        self.sync_launched.append({
            "sync_job_id": sync_job_id,
            "org_id": org_id,
            "jurisdiction_id": jurisdiction_id,
            "session_cookie": session_cookie,
        })
        return self._handle("tax-sync")

    async def stop(self, execution_ref: str, *, reason: str) -> None:
        self.stopped.append((execution_ref, reason))


class FakeLogSink:
    """In-memory LogSink keyed by log stream name."""

    def __init__(self) -> None:
        self.lines: dict[str, list[LogLine]] = {}
        self.errors: dict[str, Exception] = {}
        self.fetches: list[str] = []

    def write(self, log_stream: str, *messages: str) -> None:
        self.lines.setdefault(log_stream, []).extend(
            LogLine(timestamp=1_700_000_000_000 + i, message=m) for i, m in enumerate(messages)
        )

    def missing(self, log_stream: str) -> None:
        self.errors[log_stream] = LogFetchError(
            "ResourceNotFoundException: The specified log stream does not exist."
        )

    async def fetch(self, log_group: str, log_stream: str, *, limit: int) -> list[LogLine]:
        self.fetches.append(log_stream)
        if log_stream in self.errors:
            raise self.errors[log_stream]
        return self.lines.get(log_stream, [])[:limit]
