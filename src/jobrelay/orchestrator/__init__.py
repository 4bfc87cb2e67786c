"""Job orchestration core: event bus, live streams, launcher, lifecycle, inspector, reaper."""

from jobrelay.orchestrator.config import OrchestratorConfig, load_config
from jobrelay.orchestrator.event_bus import EventBus, RedisEventBus
from jobrelay.orchestrator.exceptions import (
    ConflictError,
    InvalidStateError,
    LaunchFailedError,
    LogFetchError,
    NotFoundError,
    OrchestratorError,
    PreconditionFailedError,
)
from jobrelay.orchestrator.inspector import ExternalLogInspector, Inspection, InspectionVerdict
from jobrelay.orchestrator.lifecycle import JobLifecycleManager
from jobrelay.orchestrator.reaper import StaleJobReaper
from jobrelay.orchestrator.service import Orchestrator
from jobrelay.orchestrator.store import JobStore
from jobrelay.orchestrator.stream import JobStream

__all__ = [
    "ConflictError",
    "EventBus",
    "ExternalLogInspector",
    "Inspection",
    "InspectionVerdict",
    "InvalidStateError",
    "JobLifecycleManager",
    "JobStore",
    "JobStream",
    "LaunchFailedError",
    "LogFetchError",
    "NotFoundError",
    "Orchestrator",
    "OrchestratorConfig",
    "OrchestratorError",
    "PreconditionFailedError",
    "RedisEventBus",
    "StaleJobReaper",
    "load_config",
]
