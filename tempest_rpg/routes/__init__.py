"""FastAPI API endpoints under /api.

Endpoint groups: health and tiers, per-player session (character, chat,
skills, restart) and per-player tools (appraisal, radar, entity analysis,
mailbox, battles). Everything player-scoped lives under
/api/players/{username}/.
"""

from fastapi import APIRouter

from .session import router as session_router
from .settings import router as settings_router
from .tools import router as tools_router

router = APIRouter()
router.include_router(settings_router)
router.include_router(session_router)
router.include_router(tools_router)
