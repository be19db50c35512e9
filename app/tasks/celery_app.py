"""Celery application — webhook deliveries and the retry sweep run here when the celery backend is on."""

from celery import Celery

from app.config import get_settings

settings = get_settings()

celery_app = Celery(
    "vetify_webhooks",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=["app.tasks.webhook_tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,
    beat_schedule={
        "sweep-webhook-retries": {
            "task": "app.tasks.webhook_tasks.sweep_webhook_retries_task",
            "schedule": settings.webhook_retry_poll_seconds,
        },
    },
)
