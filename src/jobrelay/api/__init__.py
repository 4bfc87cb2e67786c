"""HTTP API for the jobrelay orchestrator."""

from jobrelay.api.app import create_app, get_orchestrator

__all__ = ["create_app", "get_orchestrator"]
