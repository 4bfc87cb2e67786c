"""Pytest fixtures for jobrelay tests."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Callable, Generator
from pathlib import Path
from typing import Any

import pytest
import structlog

from jobrelay.cli import helpers as cli_helpers
from jobrelay.orchestrator.config import (
    InspectorConfig,
    OrchestratorConfig,
    ReaperConfig,
    RedisConfig,
    StoreConfig,
)
from jobrelay.orchestrator.lifecycle import JobLifecycleManager
from jobrelay.orchestrator.service import Orchestrator
from jobrelay.orchestrator.store import JobStore
from jobrelay.orchestrator.types import TaskSpec

from tests.helpers import FakeLauncher, FakeLogSink


@pytest.fixture(autouse=True)
def reset_logging_state() -> Generator[None, None, None]:
    """Reset structlog, root handlers and CLI option state around each test."""
    cli_helpers.reset_settings()
    structlog.reset_defaults()

    root_logger = logging.getLogger()
    original_handlers = root_logger.handlers[:]
    original_level = root_logger.level

    yield

    cli_helpers.reset_settings()
    structlog.reset_defaults()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    for handler in original_handlers:
        root_logger.addHandler(handler)
    root_logger.setLevel(original_level)


@pytest.fixture
def make_spec() -> Callable[..., TaskSpec]:
    """Factory for task specs that pass the default readiness gate."""

    def _make(**overrides: Any) -> TaskSpec:
        fields: dict[str, Any] = {
            "org_id": "org-1",
            "jurisdiction_id": "uk-hmrc",
            "name": "File VAT return",
            "entity_ref": "return-2024-q1",
        }
        fields.update(overrides)
        return TaskSpec(**fields)

    return _make


@pytest.fixture
def launcher() -> FakeLauncher:
    return FakeLauncher()


@pytest.fixture
def log_sink() -> FakeLogSink:
    return FakeLogSink()


@pytest.fixture
async def store(tmp_path: Path) -> AsyncIterator[JobStore]:
    """An opened JobStore on a throwaway database."""
    job_store = JobStore(tmp_path / "jobs.db")
    await job_store.open()
    yield job_store
    await job_store.close()


@pytest.fixture
def lifecycle(store: JobStore, launcher: FakeLauncher) -> JobLifecycleManager:
    return JobLifecycleManager(store, launcher)


@pytest.fixture
def orchestrator_config(tmp_path: Path) -> OrchestratorConfig:
    """In-process bus, throwaway store, no background sweeps."""
    return OrchestratorConfig(
        redis=RedisConfig(enabled=False),
        store=StoreConfig(db_path=tmp_path / "orchestrator.db"),
        inspector=InspectorConfig(enabled=False),
        reaper=ReaperConfig(enabled=False),
    )


@pytest.fixture
def orchestrator_factory(
    orchestrator_config: OrchestratorConfig,
    launcher: FakeLauncher,
    log_sink: FakeLogSink,
) -> Callable[..., Orchestrator]:
    """Build (but not start) an Orchestrator wired to the fakes."""

    def _make(**kwargs: Any) -> Orchestrator:
        return Orchestrator(orchestrator_config, launcher=launcher, log_sink=log_sink, **kwargs)

    return _make


@pytest.fixture
async def orchestrator(
    orchestrator_factory: Callable[..., Orchestrator],
) -> AsyncIterator[Orchestrator]:
    orch = orchestrator_factory()
    await orch.start(background=False)
    yield orch
    await orch.shutdown()
