"""Retry worker — re-delivers failed attempts once their ``scheduled_for`` time is due.

All retry state lives on the delivery log rows, so pending retries survive a
restart. A row is claimed before its next attempt is queued so two workers
never send the same attempt twice; a job that errors gives the claim back,
and a claim nobody settles within ``claim_timeout`` is offered again.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional

from app.services.webhook_dispatcher import MAX_RETRY_ATTEMPTS, WebhookDispatcher
from app.services.webhook_queue import DeliveryJob

logger = logging.getLogger(__name__)


class WebhookRetryWorker:
    def __init__(
        self,
        dispatcher: WebhookDispatcher,
        batch_size: int = 100,
        claim_timeout: Optional[float] = None,
    ):
        self.dispatcher = dispatcher
        self.store = dispatcher.store
        self.batch_size = batch_size
        if claim_timeout is None:
            claim_timeout = dispatcher.settings.webhook_retry_claim_timeout_seconds
        self.claim_timeout = timedelta(seconds=claim_timeout)
        self._task: Optional[asyncio.Task] = None
        self._running = False

    async def run_due(self, now: Optional[datetime] = None) -> int:
        """Queue every due retry once. Returns how many attempts were queued."""
        now = now or self.dispatcher.clock()
        stale_before = now - self.claim_timeout
        due = await self.store.due_retries(
            now, MAX_RETRY_ATTEMPTS, limit=self.batch_size, stale_before=stale_before
        )

        queued = 0
        for log in due:
            if not await self.store.claim_retry(log.id, now, stale_before):
                continue
            job = DeliveryJob(log.webhook_id, log.event_type, log.payload_data, log.attempt + 1, retry_of=log.id)
            try:
                await self.dispatcher.queue.enqueue(job)
            except Exception as e:
                logger.error(f"Failed to queue retry {job.attempt}/{MAX_RETRY_ATTEMPTS} for webhook {log.webhook_id}: {e}")
                try:
                    await self.store.release_retry(log.id)
                except Exception as release_error:
                    logger.error(f"Failed to release retry claim on delivery {log.id}: {release_error}")
                continue
            queued += 1
        return queued

    async def start(self, interval: float = 15.0) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop(interval))
        logger.info("Webhook retry worker started")

    async def _loop(self, interval: float) -> None:
        while self._running:
            try:
                await self.run_due()
            except Exception as e:
                logger.error(f"Error processing webhook retries: {e}")
            await asyncio.sleep(interval)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
