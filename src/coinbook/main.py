"""FastAPI application factory."""

import asyncio
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from coinbook.achievements.router import router as achievements_router
from coinbook.achievements.seed import seed_achievements
from coinbook.admin.router import router as admin_router
from coinbook.classification.router import router as classification_router
from coinbook.config import get_settings
from coinbook.database import close_db, get_session, init_db
from coinbook.guidance.router import router as guidance_router
from coinbook.health.router import router as health_router
from coinbook.middleware import setup_middleware
from coinbook.progress.cache import progress_cache, purge_periodically
from coinbook.rankings.router import router as rankings_router
from coinbook.redis_client import close_redis, get_redis, init_redis
from coinbook.webhooks.router import router as webhooks_router
from coinbook.ws.bridge import PubSubBridge
from coinbook.ws.router import router as ws_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup and shutdown lifecycle."""
    settings = get_settings()
    await init_db(settings.database_url)
    await init_redis(settings.redis_url)

    # Seed achievement definitions, coin types and flavor config (idempotent)
    try:
        async for db in get_session():
            await seed_achievements(db)
            break
    except Exception:
        logger.warning("Achievement seeding failed (tables may not exist yet)", exc_info=True)

    # Start the Redis pub/sub -> WebSocket bridge
    bridge = PubSubBridge(get_redis())
    bridge_task = asyncio.create_task(bridge.start())

    # Reclaim progress summaries nobody has read for a while
    purge_task = asyncio.create_task(
        purge_periodically(progress_cache, settings.progress_cache_purge_interval_seconds)
    )

    yield

    await bridge.stop()
    for task in (bridge_task, purge_task):
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    await close_db()
    await close_redis()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Coinbook API",
        description="Gamification backplane for the jerky storefront: rankings, coins and flavor profiles",
        version=settings.app_version,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    setup_middleware(app, settings)
    app.include_router(health_router, tags=["Health"])
    app.include_router(rankings_router)
    app.include_router(achievements_router)
    app.include_router(classification_router)
    app.include_router(guidance_router)
    app.include_router(webhooks_router)
    app.include_router(admin_router)
    app.include_router(ws_router)

    return app


app = create_app()
