"""FastAPI application factory for the jobrelay orchestrator API.

Serves task and job control, worker event ingress, live job streams and
sync-job endpoints on top of a single ``Orchestrator``.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from jobrelay import __version__
from jobrelay.core.logging import get_logger
from jobrelay.orchestrator.exceptions import (
    ConflictError,
    InvalidStateError,
    LaunchFailedError,
    NotFoundError,
    OrchestratorError,
    PreconditionFailedError,
)
from jobrelay.orchestrator.service import Orchestrator

_logger = get_logger("api")

# Module-level orchestrator reference for dependency injection
_orchestrator: Orchestrator | None = None

_STATUS_FOR_ERROR: dict[type[OrchestratorError], int] = {
    NotFoundError: 404,
    PreconditionFailedError: 412,
    ConflictError: 409,
    InvalidStateError: 409,
    LaunchFailedError: 502,
}


def get_orchestrator() -> Orchestrator:
    """Get the configured orchestrator.

    Raises:
        RuntimeError: If the app was not built with create_app()
    """
    if _orchestrator is None:
        raise RuntimeError("Orchestrator not configured. Use create_app() with an orchestrator.")
    return _orchestrator


async def _orchestrator_error_handler(request: Request, exc: Exception) -> JSONResponse:
    status_code = 500
    for error_type, code in _STATUS_FOR_ERROR.items():
        if isinstance(exc, error_type):
            status_code = code
            break
    content: dict[str, Any] = {"detail": str(exc), "error": type(exc).__name__}
    if isinstance(exc, InvalidStateError) and exc.current is not None:
        content["current_status"] = exc.current
    if status_code >= 500:
        _logger.error("api.request_failed", path=request.url.path, error=str(exc))
    return JSONResponse(status_code=status_code, content=content)


def create_app(
    orchestrator: Orchestrator,
    *,
    title: str = "jobrelay",
    cors_origins: list[str] | None = None,
    manage_lifecycle: bool = True,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        orchestrator: The orchestrator every route talks to.
        title: API title for OpenAPI docs.
        cors_origins: Allowed CORS origins (defaults to all).
        manage_lifecycle: Start the orchestrator on app startup and shut it
            down on app shutdown.

    Returns:
        Configured FastAPI application
    """
    global _orchestrator
    _orchestrator = orchestrator

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        if manage_lifecycle:
            await orchestrator.start()
        try:
            yield
        finally:
            if manage_lifecycle:
                await orchestrator.shutdown()

    app = FastAPI(
        title=title,
        version=__version__,
        description="Job orchestration and live event streaming for remote browser workers",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(OrchestratorError, _orchestrator_error_handler)

    from jobrelay.api.routes import router
    app.include_router(router)

    @app.get("/health", tags=["System"])
    async def health_check() -> dict[str, Any]:
        """Service health, including event bus and sweeper state."""
        return {
            **orchestrator.health(),
            "version": __version__,
            "service": "jobrelay",
        }

    return app


__all__ = ["create_app", "get_orchestrator"]
