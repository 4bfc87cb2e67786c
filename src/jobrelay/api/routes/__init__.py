"""API routes. All routes are prefixed with /api."""

from fastapi import APIRouter

from jobrelay.api.routes import jobs, stream, sync, tasks

router = APIRouter()
router.include_router(tasks.router)
router.include_router(jobs.router)
router.include_router(stream.router)
router.include_router(sync.router)

__all__ = ["router"]
