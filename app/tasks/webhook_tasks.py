"""Webhook delivery tasks."""

import asyncio
import logging
from typing import Optional

from app.tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(name="app.tasks.webhook_tasks.deliver_webhook_task")
def deliver_webhook_task(
    endpoint_id: str,
    event_type: str,
    payload: dict,
    attempt: int = 1,
    retry_of: Optional[str] = None,
) -> dict:
    """Run one delivery attempt. Retries are picked up by the sweep, not by Celery."""
    from app.services.webhook_queue import DeliveryJob

    job = DeliveryJob(endpoint_id, event_type, payload, attempt, retry_of)
    result = asyncio.run(_deliver(job))
    return result.to_dict()


@celery_app.task(name="app.tasks.webhook_tasks.sweep_webhook_retries_task")
def sweep_webhook_retries_task() -> int:
    queued = asyncio.run(_sweep())
    if queued:
        logger.info(f"Webhook retry sweep queued {queued} attempt(s)")
    return queued


def _worker_dispatcher():
    """Fresh engine per run: each task gets its own event loop, so pooled connections can't be shared."""
    from sqlalchemy.pool import NullPool

    from app.config import get_settings
    from app.database import build_engine, build_sessionmaker
    from app.services.webhook_dispatcher import build_dispatcher

    settings = get_settings()
    engine = build_engine(settings.database_url, poolclass=NullPool)
    return engine, build_dispatcher(session_factory=build_sessionmaker(engine), settings=settings)


async def _deliver(job):
    engine, dispatcher = _worker_dispatcher()
    try:
        return await dispatcher.run_job(job)
    finally:
        await dispatcher.aclose()
        await engine.dispose()


async def _sweep() -> int:
    from app.services.webhook_retry import WebhookRetryWorker

    engine, dispatcher = _worker_dispatcher()
    try:
        return await WebhookRetryWorker(dispatcher).run_due()
    finally:
        await dispatcher.aclose()
        await engine.dispose()
