"""FastAPI application factory."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from tapbattle.config import get_settings
from tapbattle.database import close_db, init_db
from tapbattle.health.router import router as health_router
from tapbattle.ledger.router import router as ledger_router
from tapbattle.middleware import setup_middleware
from tapbattle.redis_client import close_redis, init_redis
from tapbattle.rooms.router import router as rooms_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup and shutdown lifecycle."""
    settings = get_settings()
    await init_db(settings.database_url)
    await init_redis(settings.redis_url)
    logger.info("Tap Battle API started (%s)", settings.environment)

    yield

    await close_db()
    await close_redis()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Tap Battle API",
        description="Room lifecycle and settlement backend for the Tap Battle mini-app",
        version=settings.app_version,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    setup_middleware(app, settings)
    app.include_router(health_router, tags=["Health"])
    app.include_router(rooms_router)
    app.include_router(ledger_router)

    return app


app = create_app()
