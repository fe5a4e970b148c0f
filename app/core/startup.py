import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from app.core.config import settings

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # ── Startup ──────────────────────────────────────────────────────────
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if not settings.STRIPE_WEBHOOK_SECRET:
        log.warning("⚠️  STRIPE_WEBHOOK_SECRET not set — webhook endpoint will reject every event.")
    if not settings.STRIPE_SECRET_KEY:
        log.warning("⚠️  STRIPE_SECRET_KEY not set — checkout runs in mock mode.")

    from app.services.scheduler import setup_scheduler, scheduler
    setup_scheduler()
    if settings.SCHEDULER_ENABLED and not scheduler.running:
        scheduler.start()
        log.info("🚀 APScheduler started.")

    yield  # Application runs here

    # ── Shutdown ─────────────────────────────────────────────────────────
    if scheduler.running:
        scheduler.shutdown()
        log.info("🛑 APScheduler shut down.")
    log.info(f"{settings.PROJECT_NAME} shutting down.")
