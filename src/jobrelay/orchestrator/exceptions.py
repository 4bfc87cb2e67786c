"""Exception hierarchy for the jobrelay orchestrator.

All orchestrator exceptions inherit from OrchestratorError so API handlers
can catch broadly and map narrowly (see ``jobrelay.api.app``). Inspector and
reaper verdicts are state transitions, not exceptions; they never raise these.
"""

from __future__ import annotations


class OrchestratorError(Exception):
    """Base exception for all orchestrator errors."""


class NotFoundError(OrchestratorError):
    """Raised when a task, job or sync job does not exist."""


class PreconditionFailedError(OrchestratorError):
    """Raised when a task's prerequisite data is not ready for a job.

    Recoverable by the user completing the prerequisite (e.g. finishing the
    substance form) and starting again.
    """


class ConflictError(OrchestratorError):
    """Raised when a task already has a non-terminal job.

    Recoverable by waiting for the active job to finish or cancelling it.
    """


class InvalidStateError(OrchestratorError):
    """Raised when a requested transition is illegal from the current status.

    Usually a race between a user action and a worker or reaper verdict.
    """

    def __init__(self, message: str, *, current: str | None = None) -> None:
        super().__init__(message)
        self.current = current


class LaunchFailedError(OrchestratorError):
    """Raised by a launcher when the remote platform refuses or times out.

    The launcher never touches job state; the lifecycle manager records the
    failure on the job and re-raises.
    """


class LogFetchError(OrchestratorError):
    """Raised by a log sink when a stream cannot be read (e.g. not created yet)."""


__all__ = [
    "ConflictError",
    "InvalidStateError",
    "LaunchFailedError",
    "LogFetchError",
    "NotFoundError",
    "OrchestratorError",
    "PreconditionFailedError",
]
