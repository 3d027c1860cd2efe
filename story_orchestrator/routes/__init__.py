"""FastAPI API endpoints under /api.

Endpoint groups: settings (health, settings), stories (story documents),
session (load a story for a chat, report chat events, run commands).
"""

from fastapi import APIRouter

from .session import router as session_router
from .settings import router as settings_router
from .stories import router as stories_router

router = APIRouter()
router.include_router(settings_router)
router.include_router(stories_router)
router.include_router(session_router)
