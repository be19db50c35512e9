"""SQLAlchemy models — portable across SQLite and PostgreSQL."""

import uuid
from datetime import datetime, timezone


def utcnow():
    return datetime.now(timezone.utc)


def new_uuid():
    return str(uuid.uuid4())


from app.models.webhook import DeliveryStatus, WebhookDeliveryLog, WebhookEndpoint  # noqa: E402

__all__ = ["DeliveryStatus", "WebhookDeliveryLog", "WebhookEndpoint", "new_uuid", "utcnow"]
