"""Shared CLI state and helpers.

Global options (``--config``, ``--log-level``, ``--log-format``,
``--log-file``) are parsed by the app callback before any command runs and
kept in one module-level ``CliSettings`` instance. Commands read the
effective orchestrator config through ``load_cli_config()``, which applies
those overrides on top of the YAML file.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Literal

import typer
from pydantic import ValidationError
from rich.console import Console

from jobrelay.core.logging import configure_logging
from jobrelay.orchestrator.config import OrchestratorConfig, load_config

DEFAULT_CONFIG_FILE = Path("~/.jobrelay/config.yaml")


@dataclass
class CliSettings:
    """Options collected from the global CLI callback."""

    config_file: Path | None = None
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] | None = None
    log_format: Literal["json", "console"] | None = None
    log_file: Path | None = None
    logging_configured: bool = False


_settings = CliSettings()


def get_settings() -> CliSettings:
    return _settings


def reset_settings() -> None:
    """Reset CLI state (primarily for testing)."""
    global _settings
    _settings = CliSettings()


def resolve_config_path(config_file: Path | None = None) -> Path:
    return (config_file or _settings.config_file or DEFAULT_CONFIG_FILE).expanduser()


def load_cli_config(console: Console) -> OrchestratorConfig:
    """Load the effective config: YAML file, then CLI logging overrides.

    Raises:
        typer.Exit: If the config file is invalid.
    """
    try:
        config = load_config(resolve_config_path())
    except (ValidationError, ValueError, OSError) as e:
        console.print(f"[red]Error loading config:[/red] {e}")
        raise typer.Exit(1) from None
    if _settings.log_level:
        config.log_level = _settings.log_level.lower()  # type: ignore[assignment]
    if _settings.log_format:
        config.log_format = _settings.log_format
    if _settings.log_file:
        config.log_file = _settings.log_file
    return config


def configure_cli_logging(config: OrchestratorConfig) -> None:
    """Configure structlog from the effective config. Only once per session."""
    if _settings.logging_configured:
        return
    configure_logging(
        level=config.log_level.upper(),  # type: ignore[arg-type]
        format=config.log_format,
        file_path=config.log_file,
    )
    _settings.logging_configured = True


__all__ = [
    "CliSettings",
    "DEFAULT_CONFIG_FILE",
    "configure_cli_logging",
    "get_settings",
    "load_cli_config",
    "reset_settings",
    "resolve_config_path",
]
