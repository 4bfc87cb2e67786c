"""Structured logging for jobrelay.

Wraps structlog with jobrelay-specific context (job_id, task_id, component)
and redaction of credentials. Workers receive session cookies and API keys
through their launch environment, so anything that looks like a secret is
masked before it reaches a handler.

Example usage:
    from jobrelay.core.logging import get_logger, configure_logging, with_context

    configure_logging(level="DEBUG", format="console")

    logger = get_logger("orchestrator.lifecycle")
    logger.info("job.started", job_id="...", job_number=2)

    with with_context(ExecutionContext(job_id="...", task_id="...")):
        logger.info("job.paused")  # includes job_id and task_id
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Literal

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

SENSITIVE_PATTERNS = frozenset({
    "api_key",
    "apikey",
    "token",
    "secret",
    "password",
    "credential",
    "cookie",
    "authorization",
})

_REDACTED = "***REDACTED***"


@dataclass(frozen=True)
class ExecutionContext:
    """Correlation identifiers merged into every log entry while active.

    Attributes:
        job_id: Job being operated on, if any.
        task_id: Owning task of the job, if known.
        component: Component performing the operation.
    """

    job_id: str | None = None
    task_id: str | None = None
    component: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            key: value
            for key, value in (
                ("job_id", self.job_id),
                ("task_id", self.task_id),
                ("component", self.component),
            )
            if value is not None
        }


_current_context: ContextVar[ExecutionContext | None] = ContextVar(
    "jobrelay_execution_context", default=None
)


def get_current_context() -> ExecutionContext | None:
    """Return the active ExecutionContext, or None outside with_context()."""
    return _current_context.get()


@contextmanager
def with_context(ctx: ExecutionContext) -> Iterator[ExecutionContext]:
    """Bind ctx for the duration of the block (asyncio-task local)."""
    token = _current_context.set(ctx)
    try:
        yield ctx
    finally:
        _current_context.reset(token)


def _is_sensitive(key: str) -> bool:
    lowered = key.lower()
    return any(pattern in lowered for pattern in SENSITIVE_PATTERNS)


def _sanitize_value(key: str, value: Any) -> Any:
    if _is_sensitive(key):
        return _REDACTED
    if isinstance(value, dict):
        return {k: _sanitize_value(str(k), v) for k, v in value.items()}
    return value


def _sanitize_event_dict(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Processor that masks values whose key looks like a credential."""
    return {key: _sanitize_value(key, value) for key, value in event_dict.items()}


def _add_timestamp(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    event_dict["timestamp"] = datetime.now(UTC).isoformat()
    return event_dict


def _add_context(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Merge the active ExecutionContext without overriding explicit keys."""
    ctx = _current_context.get()
    if ctx is not None:
        for key, value in ctx.to_dict().items():
            event_dict.setdefault(key, value)
    return event_dict


class RelayLogger:
    """Component logger that always resolves the current structlog config.

    Loggers are commonly created at import time, before configure_logging()
    runs, so the underlying structlog logger is fetched per call.
    """

    def __init__(self, component: str, **initial_context: Any) -> None:
        self.component = component
        self._bound: dict[str, Any] = {**initial_context, "component": component}

    def bind(self, **context: Any) -> RelayLogger:
        """Return a new logger with additional bound context."""
        child = RelayLogger(self.component)
        child._bound = {**self._bound, **context}
        return child

    def _emit(self, method: str, event: str, kw: dict[str, Any]) -> None:
        target = structlog.stdlib.get_logger().bind(**self._bound)
        getattr(target, method)(event, **kw)

    def debug(self, event: str, **kw: Any) -> None:
        self._emit("debug", event, kw)

    def info(self, event: str, **kw: Any) -> None:
        self._emit("info", event, kw)

    def warning(self, event: str, **kw: Any) -> None:
        self._emit("warning", event, kw)

    def error(self, event: str, **kw: Any) -> None:
        self._emit("error", event, kw)

    def exception(self, event: str, **kw: Any) -> None:
        """Log with traceback. Call from inside an except block."""
        self._emit("exception", event, kw)


def _build_processors(
    renderer: Processor,
    include_timestamps: bool,
) -> list[Processor]:
    processors: list[Processor] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        _sanitize_event_dict,
        _add_context,
    ]
    if include_timestamps:
        processors.append(_add_timestamp)
    processors.extend([
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        renderer,
    ])
    return processors


def configure_logging(
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO",
    format: Literal["json", "console"] = "console",  # noqa: A002
    file_path: Path | None = None,
    max_file_size_mb: int = 50,
    backup_count: int = 5,
    include_timestamps: bool = True,
) -> None:
    """Configure structlog and the stdlib root logger.

    Call once at process startup. ``console`` renders colored lines to
    stderr; ``json`` renders one JSON object per line to ``file_path`` when
    given (rotating), otherwise to stdout.
    """
    log_level = getattr(logging, level.upper())

    handlers: list[logging.Handler] = []
    if format == "console":
        handlers.append(logging.StreamHandler(sys.stderr))
    if file_path is not None:
        file_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(
            RotatingFileHandler(
                file_path,
                maxBytes=max_file_size_mb * 1024 * 1024,
                backupCount=backup_count,
                encoding="utf-8",
            )
        )
    elif format == "json":
        handlers.append(logging.StreamHandler(sys.stdout))

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    for handler in handlers:
        handler.setLevel(log_level)
        root_logger.addHandler(handler)

    renderer: Processor
    if format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())

    # cache_logger_on_first_use=False so import-time loggers pick up this config
    structlog.configure(
        processors=_build_processors(renderer, include_timestamps),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )


def get_logger(component: str, **initial_context: Any) -> RelayLogger:
    """Get a logger bound to ``component`` (e.g. ``"orchestrator.reaper"``)."""
    return RelayLogger(component, **initial_context)


__all__ = [
    "ExecutionContext",
    "RelayLogger",
    "SENSITIVE_PATTERNS",
    "configure_logging",
    "get_current_context",
    "get_logger",
    "with_context",
]
