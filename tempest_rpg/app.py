import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from tempest_rpg.config import Settings, load_settings
from tempest_rpg.llm import Backend, HttpBackend
from tempest_rpg.pipeline import SmartDispatcher
from tempest_rpg.routes import router
from tempest_rpg.storage import GameStore, JsonGameStore

logger = logging.getLogger(__name__)


def create_app(
    settings: Settings | None = None,
    backend: Backend | None = None,
    store: GameStore | None = None,
) -> FastAPI:
    settings = settings or load_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        for session in list(app.state.sessions.values()):
            await session.close()

    app = FastAPI(title="Tempest RPG", lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store or JsonGameStore(settings.data_dir)
    app.state.backend = backend or HttpBackend(
        provider_url=settings.provider_url,
        provider_format=settings.provider_format,
        timeout=settings.llm_timeout,
    )
    # One dispatcher per process: tier pointer and key offset are shared by all players.
    app.state.dispatcher = SmartDispatcher(
        settings.model_tiers,
        settings.credentials,
        cooldown=settings.tier_cooldown_seconds,
    )
    app.state.sessions = {}
    if not settings.credentials:
        logger.warning("No API_KEY configured; every backend call will fall back")
    app.include_router(router, prefix="/api")
    return app
