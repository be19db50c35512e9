"""Webhook dispatch service — delivers events to tenant endpoints with retry, HMAC signing and an audit log."""

import json
import logging
import uuid
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Optional, Union

import httpx

from app.config import Settings, get_settings
from app.models import utcnow
from app.models.webhook import DeliveryStatus
from app.services.webhook_events import TEST_EVENT, WebhookEvent, parse_event
from app.services.webhook_health import WebhookHealthController
from app.services.webhook_queue import (
    CeleryDeliveryQueue,
    DeliveryJob,
    DeliveryQueue,
    InProcessDeliveryQueue,
)
from app.services.webhook_signature import sign_payload
from app.services.webhook_store import WebhookStore

logger = logging.getLogger(__name__)

# Delay before attempts 1..4, in seconds: immediate, 1 min, 5 min, 30 min
RETRY_DELAYS = (0, 60, 300, 1800)
MAX_RETRY_ATTEMPTS = len(RETRY_DELAYS)

TRUNCATION_MARKER = "... (truncated)"
WEBHOOK_NOT_FOUND = "Webhook not found"
WEBHOOK_DISABLED = "Webhook is disabled"
REQUEST_TIMED_OUT = "Request timed out"


@dataclass
class DeliveryResult:
    success: bool
    http_status_code: Optional[int] = None
    response_body: Optional[str] = None
    error: Optional[str] = None
    delivered_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        data = {k: v for k, v in asdict(self).items() if v is not None}
        if self.delivered_at is not None:
            data["delivered_at"] = self.delivered_at.isoformat()
        return data


def retry_delay(attempt: int) -> Optional[timedelta]:
    """Delay before ``attempt`` (1-based); None once the ladder is exhausted."""
    if attempt < 1 or attempt > MAX_RETRY_ATTEMPTS:
        return None
    return timedelta(seconds=RETRY_DELAYS[attempt - 1])


def truncate_body(body: str, limit: int = 10000) -> str:
    if len(body) > limit:
        return body[:limit] + TRUNCATION_MARKER
    return body


def serialize_payload(payload: dict) -> str:
    """The exact string that is signed, sent and logged."""
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False, default=str)


def build_payload(event_type: str, data: dict, now: datetime) -> dict:
    timestamp = now.isoformat(timespec="milliseconds").replace("+00:00", "Z")
    # Round-trip so non-JSON values (datetimes, UUIDs) are fixed as strings before queueing
    return json.loads(serialize_payload({"event": event_type, "timestamp": timestamp, "data": data}))


class WebhookDispatcher:
    """Turns domain events into signed, audited HTTP deliveries.

    The dispatcher keeps no state between attempts: retries are driven by the
    ``scheduled_for`` column on failed log rows (see ``WebhookRetryWorker``).
    """

    def __init__(
        self,
        store: WebhookStore,
        http_client: httpx.AsyncClient,
        queue: DeliveryQueue,
        health: Optional[WebhookHealthController] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
        new_delivery_id: Callable[[], str] = lambda: str(uuid.uuid4()),
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.http_client = http_client
        self.queue = queue
        self.health = health or WebhookHealthController(
            store, threshold=self.settings.webhook_max_consecutive_failures
        )
        self.clock = clock
        self.new_delivery_id = new_delivery_id

    # ── Entry point for domain code ─────────────────────
    async def trigger_event(
        self,
        tenant_id: str,
        event_type: Union[str, WebhookEvent],
        data: dict[str, Any],
    ) -> int:
        """Queue a delivery to every subscribed endpoint. Never raises.

        Returns the number of deliveries handed to the queue.
        """
        event = parse_event(event_type)
        if event is None:
            logger.warning(f"Invalid webhook event type: {event_type}")
            return 0

        try:
            endpoints = await self.store.find_subscribed(tenant_id, event.value)
            if not endpoints:
                return 0
            payload = build_payload(event.value, data, self.clock())
        except Exception as e:
            logger.error(f"Error triggering webhook event {event.value} for tenant {tenant_id}: {e}")
            return 0

        queued = 0
        for ep in endpoints:
            try:
                await self.queue.enqueue(DeliveryJob(ep.id, event.value, payload))
                queued += 1
            except Exception as e:
                logger.error(f"Failed to queue {event.value} for webhook {ep.id}: {e}")
        return queued

    async def run_job(self, job: DeliveryJob) -> DeliveryResult:
        try:
            result = await self.deliver(job.endpoint_id, job.event_type, job.payload, job.attempt)
        except Exception:
            if job.retry_of:
                await self._release_retry(job.retry_of)
            raise
        if job.retry_of:
            try:
                await self.store.complete_retry(job.retry_of, self.clock())
            except Exception as e:
                # The claim goes stale and a later sweep sends this attempt again
                logger.error(f"Failed to mark retry of delivery {job.retry_of} complete: {e}")
        return result

    async def _release_retry(self, log_id: str) -> None:
        try:
            await self.store.release_retry(log_id)
        except Exception as e:
            logger.error(f"Failed to release retry claim on delivery {log_id}: {e}")

    # ── Delivery ────────────────────────────────────────
    async def deliver(
        self,
        endpoint_id: str,
        event_type: Union[str, WebhookEvent],
        payload: dict,
        attempt: int = 1,
    ) -> DeliveryResult:
        """Perform one delivery attempt and record it."""
        if isinstance(event_type, WebhookEvent):
            event_type = event_type.value
        return await self._attempt(endpoint_id, event_type, payload, attempt, track=True)

    async def send_test_webhook(self, endpoint_id: str) -> DeliveryResult:
        """Deliver a ``test.ping`` right away. No retries, no effect on endpoint health."""
        payload = build_payload(
            TEST_EVENT,
            {"message": f"This is a test webhook from {self.settings.webhook_product}", "test": True},
            self.clock(),
        )
        return await self._attempt(endpoint_id, TEST_EVENT, payload, 1, track=False)

    async def _attempt(
        self,
        endpoint_id: str,
        event_type: str,
        payload: dict,
        attempt: int,
        track: bool,
    ) -> DeliveryResult:
        endpoint = await self.store.get_endpoint(endpoint_id)
        if endpoint is None:
            return DeliveryResult(success=False, error=WEBHOOK_NOT_FOUND)
        if not endpoint.is_active:
            return DeliveryResult(success=False, error=WEBHOOK_DISABLED)

        body = serialize_payload(payload)
        timestamp = int(self.clock().timestamp())
        signature = sign_payload(body, endpoint.secret, timestamp)
        headers = self._headers(event_type, signature, self.new_delivery_id(), timestamp)

        log = await self.store.create_log(endpoint_id, event_type, body, attempt)

        # Disabled by a concurrent failure after we loaded it
        if not await self.store.is_endpoint_active(endpoint_id):
            await self.store.finish_log(log.id, DeliveryStatus.SKIPPED, error=WEBHOOK_DISABLED)
            return DeliveryResult(success=False, error=WEBHOOK_DISABLED)

        try:
            resp = await self.http_client.post(
                endpoint.url,
                content=body.encode("utf-8"),
                headers=headers,
                timeout=self.settings.webhook_timeout_seconds,
            )
        except httpx.TimeoutException:
            result = DeliveryResult(success=False, error=REQUEST_TIMED_OUT)
        except Exception as exc:
            result = DeliveryResult(success=False, error=str(exc) or type(exc).__name__)
        else:
            result = DeliveryResult(
                success=resp.is_success,
                http_status_code=resp.status_code,
                response_body=truncate_body(resp.text, self.settings.webhook_response_body_limit),
            )
            if result.success:
                result.delivered_at = self.clock()

        # Request already sent: the caller gets the result even if recording it fails
        try:
            if result.success:
                await self._record_success(endpoint_id, log.id, result, track)
            else:
                await self._record_failure(endpoint_id, log.id, event_type, attempt, result, track)
        except Exception as e:
            logger.error(f"Failed to record delivery {log.id} to webhook {endpoint_id} (attempt {attempt}): {e}")
        return result

    def _headers(self, event_type: str, signature: str, delivery_id: str, timestamp: int) -> dict:
        prefix = self.settings.webhook_header_prefix
        return {
            "Content-Type": "application/json",
            f"{prefix}-Signature": signature,
            f"{prefix}-Event": event_type,
            f"{prefix}-Delivery-Id": delivery_id,
            f"{prefix}-Timestamp": str(timestamp),
            "User-Agent": self.settings.webhook_user_agent,
        }

    async def _record_success(self, endpoint_id: str, log_id: str, result: DeliveryResult, track: bool):
        await self.store.finish_log(
            log_id,
            DeliveryStatus.DELIVERED,
            http_status_code=result.http_status_code,
            response_body=result.response_body,
            delivered_at=result.delivered_at,
        )
        if track:
            await self.store.record_success(endpoint_id, result.delivered_at)
        logger.info(f"Webhook {endpoint_id} delivered (HTTP {result.http_status_code})")

    async def _record_failure(
        self,
        endpoint_id: str,
        log_id: str,
        event_type: str,
        attempt: int,
        result: DeliveryResult,
        track: bool,
    ):
        now = self.clock()
        fields: dict[str, Any] = {
            "http_status_code": result.http_status_code,
            "response_body": result.response_body,
            "error": result.error,
        }
        next_delay = retry_delay(attempt + 1) if track else None
        if next_delay is not None:
            fields["scheduled_for"] = now + next_delay
        await self.store.finish_log(log_id, DeliveryStatus.FAILED, **fields)

        reason = result.error or f"HTTP {result.http_status_code}"
        logger.warning(f"Webhook {endpoint_id} delivery of {event_type} failed (attempt {attempt}): {reason}")
        if not track:
            return

        await self.store.record_failure(endpoint_id, now)
        await self.health.check_and_disable(endpoint_id)

    async def aclose(self) -> None:
        if isinstance(self.queue, InProcessDeliveryQueue):
            await self.queue.drain()
        await self.http_client.aclose()


def build_dispatcher(
    session_factory=None,
    http_client: Optional[httpx.AsyncClient] = None,
    settings: Optional[Settings] = None,
) -> WebhookDispatcher:
    """Wire a dispatcher from settings; queue backend is ``inprocess`` or ``celery``."""
    settings = settings or get_settings()
    if session_factory is None:
        from app.database import async_session

        session_factory = async_session

    if settings.webhook_queue_backend == "celery":
        queue = CeleryDeliveryQueue()
    else:
        queue = InProcessDeliveryQueue()

    dispatcher = WebhookDispatcher(
        store=WebhookStore(session_factory),
        http_client=http_client or httpx.AsyncClient(timeout=settings.webhook_timeout_seconds),
        queue=queue,
        settings=settings,
    )
    if isinstance(queue, InProcessDeliveryQueue):
        queue.bind(dispatcher.run_job)
    return dispatcher


_dispatcher: Optional[WebhookDispatcher] = None


def get_dispatcher() -> WebhookDispatcher:
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = build_dispatcher()
    return _dispatcher


async def close_dispatcher() -> None:
    global _dispatcher
    if _dispatcher is not None:
        await _dispatcher.aclose()
        _dispatcher = None


async def trigger_webhook_event(
    tenant_id: str,
    event_type: Union[str, WebhookEvent],
    data: dict[str, Any],
) -> int:
    """Fire-and-forget hook for domain code (pet created, sale completed, ...)."""
    return await get_dispatcher().trigger_event(tenant_id, event_type, data)
