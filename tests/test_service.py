"""Tests for jobrelay.orchestrator.service module.

Covers the event recorder that folds bus events into job state: it survives
any number of failed events, retries transient store errors, and reports
what it could not record through ``health()``.
"""

from __future__ import annotations

import asyncio
import sqlite3

import pytest

from jobrelay.orchestrator.service import Orchestrator
from jobrelay.orchestrator.types import JobEvent, JobEventType, JobStatus
from tests.helpers import make_event, wait_until


async def _status_becomes(orchestrator: Orchestrator, job_id: str, status: JobStatus) -> None:
    for _ in range(400):
        if (await orchestrator.lifecycle.get_job(job_id)).status == status:
            return
        await asyncio.sleep(0.005)
    raise AssertionError(f"job {job_id} never became {status.value}")


class TestEventRecorder:
    @pytest.mark.asyncio
    async def test_recorder_survives_repeated_failures(
        self, orchestrator: Orchestrator, make_spec, monkeypatch: pytest.MonkeyPatch,
    ):
        task = await orchestrator.lifecycle.create_task(make_spec())
        job = await orchestrator.lifecycle.start_job(task.id)
        record_event = orchestrator.lifecycle.record_event
        calls: list[JobEvent] = []

        async def broken_for_a_while(event: JobEvent):
            calls.append(event)
            if len(calls) <= 12:
                raise RuntimeError("disk I/O error")
            return await record_event(event)

        monkeypatch.setattr(orchestrator.lifecycle, "record_event", broken_for_a_while)
        for step in range(12):
            await orchestrator.publish(make_event(JobEventType.STEP, job_id=job.id, step=step))
        await orchestrator.publish(make_event(JobEventType.COMPLETED, job_id=job.id))

        await wait_until(lambda: len(calls) == 13)
        await _status_becomes(orchestrator, job.id, JobStatus.COMPLETED)
        health = orchestrator.health()
        assert health["events_unrecorded"] == 12
        assert health["subscribers_disabled"] == 0

    @pytest.mark.asyncio
    async def test_locked_database_is_retried(
        self, orchestrator: Orchestrator, make_spec, monkeypatch: pytest.MonkeyPatch,
    ):
        task = await orchestrator.lifecycle.create_task(make_spec())
        job = await orchestrator.lifecycle.start_job(task.id)
        record_event = orchestrator.lifecycle.record_event
        attempts: list[JobEvent] = []

        async def locked_twice(event: JobEvent):
            attempts.append(event)
            if len(attempts) <= 2:
                raise sqlite3.OperationalError("database is locked")
            return await record_event(event)

        monkeypatch.setattr(orchestrator.lifecycle, "record_event", locked_twice)
        await orchestrator.publish(make_event(JobEventType.COMPLETED, job_id=job.id))

        await _status_becomes(orchestrator, job.id, JobStatus.COMPLETED)
        assert len(attempts) == 3
        assert orchestrator.health()["events_unrecorded"] == 0

    @pytest.mark.asyncio
    async def test_persistent_lock_is_counted(
        self, orchestrator: Orchestrator, make_spec, monkeypatch: pytest.MonkeyPatch,
    ):
        task = await orchestrator.lifecycle.create_task(make_spec())
        job = await orchestrator.lifecycle.start_job(task.id)
        attempts: list[JobEvent] = []

        async def always_locked(event: JobEvent):
            attempts.append(event)
            raise sqlite3.OperationalError("database is locked")

        monkeypatch.setattr(orchestrator.lifecycle, "record_event", always_locked)
        await orchestrator.publish(make_event(JobEventType.COMPLETED, job_id=job.id))

        await wait_until(lambda: orchestrator.health()["events_unrecorded"] == 1)
        assert len(attempts) == 3
        assert (await orchestrator.lifecycle.get_job(job.id)).status == JobStatus.RUNNING
