"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from app.api import webhooks
from app.config import get_settings

settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    from app.database import create_tables
    from app.services.webhook_dispatcher import close_dispatcher, get_dispatcher
    from app.services.webhook_retry import WebhookRetryWorker

    if settings.auto_create_tables:
        await create_tables()

    # With the celery backend, beat runs the retry sweep instead
    worker = None
    if settings.webhook_queue_backend == "inprocess":
        worker = WebhookRetryWorker(get_dispatcher())
        await worker.start(settings.webhook_retry_poll_seconds)

    yield

    if worker:
        await worker.stop()
    await close_dispatcher()


app = FastAPI(
    title=settings.app_name,
    version="0.1.0",
    description="Outbound webhook delivery for Vetify clinics",
    lifespan=lifespan,
)

app.include_router(webhooks.router, prefix="/api/v1")


@app.get("/health")
async def health():
    return {"status": "ok", "app": settings.app_name}
