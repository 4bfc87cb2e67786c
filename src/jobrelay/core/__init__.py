"""Cross-cutting infrastructure: logging and shared constants."""

from jobrelay.core.logging import ExecutionContext, configure_logging, get_logger, with_context

__all__ = ["ExecutionContext", "configure_logging", "get_logger", "with_context"]
