"""
FastAPI application entry point for the StokReal tier engine.

Authentication is handled by upstream middleware that sets
request.state.user_id. The tier scheduler runs in-process when
ENABLE_TIER_SCHEDULER is true and a database is configured.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from stokreal import __version__
from stokreal.api.routes import tier
from stokreal.config.tier_settings import get_tier_settings
from stokreal.jobs.tier_scheduler import TierScheduler
from stokreal.services.tier_notifications import get_tier_notifier

# Configure structured logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def _build_scheduler() -> Optional[TierScheduler]:
    settings = get_tier_settings()
    if not settings.scheduler_enabled:
        logger.info("Tier scheduler disabled")
        return None
    try:
        return TierScheduler(settings=settings, notifier=get_tier_notifier(settings))
    except ValueError as e:
        logger.warning("Tier scheduler not started", extra={"error": str(e)})
        return None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    logger.info("Starting StokReal tier engine", extra={"version": __version__})
    scheduler = _build_scheduler()
    if scheduler is not None:
        scheduler.start()
    app.state.tier_scheduler = scheduler

    yield

    if scheduler is not None:
        scheduler.stop()
    logger.info("Shutting down StokReal tier engine")


def create_app() -> FastAPI:
    app = FastAPI(
        title="StokReal Tier Engine",
        version=__version__,
        lifespan=lifespan,
    )
    app.include_router(tier.router)
    app.include_router(tier.internal_router)

    @app.get("/health", tags=["health"])
    def health():
        return {"status": "ok"}

    return app


app = create_app()
