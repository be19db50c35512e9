"""Webhook models: tenant endpoints and the per-attempt delivery log."""

import json
from enum import Enum

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text

from app.database import Base
from app.models import new_uuid, utcnow


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"
    SKIPPED = "skipped"


class WebhookEndpoint(Base):
    """Tenant-configured destination subscribed to one or more events."""

    __tablename__ = "webhook_endpoints"

    id = Column(String(36), primary_key=True, default=new_uuid)
    tenant_id = Column(String(36), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    url = Column(String(2048), nullable=False)
    secret = Column(String(64), nullable=False)  # whsec_ + 48 hex, never shown after creation
    events = Column(Text, default="[]")  # JSON list of event names
    is_active = Column(Boolean, default=True)
    # Health
    consecutive_failures = Column(Integer, default=0)
    last_delivery_at = Column(DateTime(timezone=True), nullable=True)
    last_success_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    @property
    def event_list(self) -> list[str]:
        events = self.events
        if isinstance(events, str):
            try:
                events = json.loads(events)
            except (json.JSONDecodeError, TypeError):
                events = []
        return list(events or [])

    def is_subscribed(self, event_type: str) -> bool:
        return event_type in self.event_list


class WebhookDeliveryLog(Base):
    """One row per HTTP attempt, not per logical event."""

    __tablename__ = "webhook_delivery_logs"

    id = Column(String(36), primary_key=True, default=new_uuid)
    webhook_id = Column(
        String(36),
        ForeignKey("webhook_endpoints.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    event_type = Column(String(100), nullable=False)
    payload = Column(Text, default="{}")  # JSON snapshot of {event, timestamp, data}
    attempt = Column(Integer, default=1)
    status = Column(String(20), default=DeliveryStatus.PENDING.value)  # pending|delivered|failed|skipped
    http_status_code = Column(Integer, nullable=True)
    response_body = Column(Text, nullable=True)
    error = Column(Text, nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    # Retry bookkeeping
    scheduled_for = Column(DateTime(timezone=True), nullable=True, index=True)
    retry_dispatched_at = Column(DateTime(timezone=True), nullable=True)  # claimed by a sweep
    retry_completed_at = Column(DateTime(timezone=True), nullable=True)  # next attempt has run
    created_at = Column(DateTime(timezone=True), default=utcnow)

    @property
    def payload_data(self) -> dict:
        try:
            return json.loads(self.payload or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}
