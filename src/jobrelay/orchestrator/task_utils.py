"""Helpers for background asyncio.Task lifecycles in the orchestrator.

Bus pumps, the Redis reader and the periodic sweeps all run as detached
tasks; their done-callbacks route through here so a crashed loop is logged
instead of vanishing with an unretrieved exception.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

from jobrelay.core.logging import RelayLogger


def log_task_exception(
    task: asyncio.Task[Any],
    logger: RelayLogger,
    event: str,
    *,
    level: str = "error",
) -> BaseException | None:
    """Log why a finished task died. Returns the exception, if there was one."""
    exc = None if task.cancelled() else task.exception()
    if exc is None:
        return None
    emit = logger.warning if level == "warning" else logger.error
    emit(event, error=str(exc), error_type=type(exc).__name__, task_name=task.get_name())
    return exc


def exception_logger(
    logger: RelayLogger, event: str, *, level: str = "error"
) -> Callable[[asyncio.Task[Any]], None]:
    """Build a done-callback that logs the task's exception under ``event``."""

    def _callback(task: asyncio.Task[Any]) -> None:
        log_task_exception(task, logger, event, level=level)

    return _callback


__all__ = ["exception_logger", "log_task_exception"]
