"""Persistence for webhook endpoints and delivery logs.

Every call opens its own session so concurrent deliveries never share one.
Health counters are changed with SQL expressions, not read-modify-write.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.webhook import DeliveryStatus, WebhookDeliveryLog, WebhookEndpoint


class WebhookStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    # ── Endpoints ────────────────────────────────────────
    async def get_endpoint(self, endpoint_id: str) -> Optional[WebhookEndpoint]:
        async with self.session_factory() as db:
            return await db.get(WebhookEndpoint, endpoint_id)

    async def find_subscribed(self, tenant_id: str, event_type: str) -> list[WebhookEndpoint]:
        """Active endpoints of a tenant that subscribe to ``event_type``."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(WebhookEndpoint).where(
                    WebhookEndpoint.tenant_id == tenant_id,
                    WebhookEndpoint.is_active.is_(True),
                )
            )
            return [ep for ep in result.scalars().all() if ep.is_subscribed(event_type)]

    async def is_endpoint_active(self, endpoint_id: str) -> bool:
        async with self.session_factory() as db:
            result = await db.execute(
                select(WebhookEndpoint.is_active).where(WebhookEndpoint.id == endpoint_id)
            )
            return bool(result.scalar_one_or_none())

    async def record_success(self, endpoint_id: str, at: datetime) -> None:
        async with self.session_factory() as db:
            await db.execute(
                update(WebhookEndpoint)
                .where(WebhookEndpoint.id == endpoint_id)
                .values(consecutive_failures=0, last_delivery_at=at, last_success_at=at)
            )
            await db.commit()

    async def record_failure(self, endpoint_id: str, at: datetime) -> None:
        async with self.session_factory() as db:
            await db.execute(
                update(WebhookEndpoint)
                .where(WebhookEndpoint.id == endpoint_id)
                .values(
                    consecutive_failures=WebhookEndpoint.consecutive_failures + 1,
                    last_delivery_at=at,
                )
            )
            await db.commit()

    async def disable_endpoint(self, endpoint_id: str, min_failures: int) -> bool:
        """Deactivate if still active and at or over ``min_failures``. True if this call did it."""
        async with self.session_factory() as db:
            result = await db.execute(
                update(WebhookEndpoint)
                .where(
                    WebhookEndpoint.id == endpoint_id,
                    WebhookEndpoint.is_active.is_(True),
                    WebhookEndpoint.consecutive_failures >= min_failures,
                )
                .values(is_active=False)
            )
            await db.commit()
            return result.rowcount == 1

    # ── Delivery logs ────────────────────────────────────
    async def create_log(
        self,
        endpoint_id: str,
        event_type: str,
        payload: str,
        attempt: int,
    ) -> WebhookDeliveryLog:
        """Insert the pending row for an attempt. ``payload`` is the exact body being sent."""
        log = WebhookDeliveryLog(
            webhook_id=endpoint_id,
            event_type=event_type,
            payload=payload,
            attempt=attempt,
            status=DeliveryStatus.PENDING.value,
        )
        async with self.session_factory() as db:
            db.add(log)
            await db.commit()
        return log

    async def finish_log(self, log_id: str, status: DeliveryStatus, **fields) -> bool:
        """Move a pending row to a terminal status. Rows already finished are left alone."""
        if status == DeliveryStatus.PENDING:
            raise ValueError("finish_log needs a terminal status")
        async with self.session_factory() as db:
            result = await db.execute(
                update(WebhookDeliveryLog)
                .where(
                    WebhookDeliveryLog.id == log_id,
                    WebhookDeliveryLog.status == DeliveryStatus.PENDING.value,
                )
                .values(status=status.value, **fields)
            )
            await db.commit()
            return result.rowcount == 1

    async def get_log(self, log_id: str) -> Optional[WebhookDeliveryLog]:
        async with self.session_factory() as db:
            return await db.get(WebhookDeliveryLog, log_id)

    async def due_retries(
        self,
        now: datetime,
        max_attempt: int,
        limit: int = 100,
        stale_before: Optional[datetime] = None,
    ) -> list[WebhookDeliveryLog]:
        """Failed rows whose next attempt is due and not yet picked up.

        A claim older than ``stale_before`` counts as abandoned (the worker
        that took it died) and the row is offered again.
        """
        async with self.session_factory() as db:
            result = await db.execute(
                select(WebhookDeliveryLog)
                .where(
                    WebhookDeliveryLog.status == DeliveryStatus.FAILED.value,
                    WebhookDeliveryLog.scheduled_for.is_not(None),
                    WebhookDeliveryLog.scheduled_for <= now,
                    WebhookDeliveryLog.retry_completed_at.is_(None),
                    self._unclaimed(stale_before),
                    WebhookDeliveryLog.attempt < max_attempt,
                )
                .order_by(WebhookDeliveryLog.scheduled_for)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def claim_retry(self, log_id: str, now: datetime, stale_before: Optional[datetime] = None) -> bool:
        """Mark a due row as dispatched. Only one worker wins the claim."""
        async with self.session_factory() as db:
            result = await db.execute(
                update(WebhookDeliveryLog)
                .where(
                    WebhookDeliveryLog.id == log_id,
                    WebhookDeliveryLog.retry_completed_at.is_(None),
                    self._unclaimed(stale_before),
                )
                .values(retry_dispatched_at=now)
            )
            await db.commit()
            return result.rowcount == 1

    async def release_retry(self, log_id: str) -> None:
        """Give a claimed row back so the next sweep picks it up again."""
        async with self.session_factory() as db:
            await db.execute(
                update(WebhookDeliveryLog)
                .where(
                    WebhookDeliveryLog.id == log_id,
                    WebhookDeliveryLog.retry_completed_at.is_(None),
                )
                .values(retry_dispatched_at=None)
            )
            await db.commit()

    async def complete_retry(self, log_id: str, at: datetime) -> None:
        async with self.session_factory() as db:
            await db.execute(
                update(WebhookDeliveryLog)
                .where(WebhookDeliveryLog.id == log_id)
                .values(retry_completed_at=at)
            )
            await db.commit()

    @staticmethod
    def _unclaimed(stale_before: Optional[datetime]):
        if stale_before is None:
            return WebhookDeliveryLog.retry_dispatched_at.is_(None)
        return or_(
            WebhookDeliveryLog.retry_dispatched_at.is_(None),
            WebhookDeliveryLog.retry_dispatched_at <= stale_before,
        )
