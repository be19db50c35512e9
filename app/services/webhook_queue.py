"""Delivery queue — hands webhook jobs off so the triggering request never waits on them."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass
from typing import Optional, Protocol

logger = logging.getLogger(__name__)


@dataclass
class DeliveryJob:
    endpoint_id: str
    event_type: str
    payload: dict
    attempt: int = 1
    # Failed log row this attempt retries; its claim is settled when the job ends
    retry_of: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


JobRunner = Callable[[DeliveryJob], Awaitable[object]]


class DeliveryQueue(Protocol):
    async def enqueue(self, job: DeliveryJob) -> None: ...


class InProcessDeliveryQueue:
    """Runs each job as its own asyncio task on the current loop.

    Tasks are kept referenced until they finish; failures are logged and
    the persisted log rows stay the source of truth for retries.
    """

    def __init__(self, runner: Optional[JobRunner] = None):
        self.runner = runner
        self._tasks: set[asyncio.Task] = set()

    def bind(self, runner: JobRunner) -> None:
        self.runner = runner

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def enqueue(self, job: DeliveryJob) -> None:
        if self.runner is None:
            raise RuntimeError("InProcessDeliveryQueue has no runner bound")
        task = asyncio.create_task(self._run(job))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, job: DeliveryJob) -> None:
        try:
            await self.runner(job)
        except Exception as e:
            logger.error(f"Delivery to webhook {job.endpoint_id} failed (attempt {job.attempt}): {e}")

    async def drain(self) -> None:
        """Wait for every queued job, including ones enqueued while waiting."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


class CeleryDeliveryQueue:
    """Pushes jobs to the Celery ``deliver_webhook_task``."""

    async def enqueue(self, job: DeliveryJob) -> None:
        from app.tasks.webhook_tasks import deliver_webhook_task

        deliver_webhook_task.delay(job.endpoint_id, job.event_type, job.payload, job.attempt, job.retry_of)
