"""Base class for the orchestrator's periodic sweeps.

The inspector and the reaper both run one ``sweep()`` per interval on their
own task, with a circuit breaker and exponential backoff when sweeps keep
failing. A sweep that raises never stops the loop.
"""

from __future__ import annotations

import asyncio
import contextlib
from typing import Any

from jobrelay.core.logging import RelayLogger
from jobrelay.orchestrator.task_utils import log_task_exception

BREAKER_THRESHOLD = 5
MAX_BACKOFF_SECONDS = 300.0


class PeriodicSweeper:
    """Runs ``sweep()`` every ``interval_seconds`` until stopped.

    Subclasses implement ``sweep`` and set ``name`` (used in log events).
    """

    name = "sweeper"

    def __init__(self, *, interval_seconds: float, logger: RelayLogger) -> None:
        self._interval = interval_seconds
        self._logger = logger
        self._task: asyncio.Task[None] | None = None
        self._failure_streak = 0
        self._degraded = False

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def is_degraded(self) -> bool:
        """True once BREAKER_THRESHOLD sweeps in a row have failed."""
        return self._degraded

    async def sweep(self) -> Any:
        raise NotImplementedError

    async def start(self) -> None:
        """Start the periodic loop. Idempotent."""
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._run_forever(), name=f"{self.name}-loop")
        self._task.add_done_callback(self._on_loop_exit)
        self._logger.info(f"{self.name}.started", interval=self._interval)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._logger.info(f"{self.name}.stopped")

    def _on_loop_exit(self, task: asyncio.Task[None]) -> None:
        if log_task_exception(task, self._logger, f"{self.name}.loop_crashed") is not None:
            self._degraded = True

    async def _run_forever(self) -> None:
        while True:
            try:
                await self.sweep()
            except asyncio.CancelledError:
                raise
            except Exception:
                delay = self._note_failure()
            else:
                delay = self._note_success()
            await asyncio.sleep(delay)

    def _note_success(self) -> float:
        if self._failure_streak:
            self._logger.info(f"{self.name}.recovered", failed_sweeps=self._failure_streak)
        self._failure_streak = 0
        self._degraded = False
        return self._interval

    def _note_failure(self) -> float:
        """Log the failed sweep and return how long to wait before the next one."""
        self._failure_streak += 1
        self._logger.exception(f"{self.name}.sweep_failed", failed_sweeps=self._failure_streak)
        overshoot = self._failure_streak - BREAKER_THRESHOLD
        if overshoot < 0:
            return self._interval
        if not self._degraded:
            self._degraded = True
            self._logger.error(f"{self.name}.degraded", failed_sweeps=self._failure_streak)
        return min(self._interval * 2**overshoot, MAX_BACKOFF_SECONDS)


__all__ = ["BREAKER_THRESHOLD", "MAX_BACKOFF_SECONDS", "PeriodicSweeper"]
