"""Auto-disable endpoints that keep failing."""

import logging

from app.services.webhook_store import WebhookStore

logger = logging.getLogger(__name__)

MAX_CONSECUTIVE_FAILURES = 10


class WebhookHealthController:
    """Flips ``is_active`` off once an endpoint reaches the failure threshold.

    Runs after every failed attempt, so an endpoint can be disabled in the
    middle of a retry ladder. Re-enabling is always an explicit tenant action.
    """

    def __init__(self, store: WebhookStore, threshold: int = MAX_CONSECUTIVE_FAILURES):
        self.store = store
        self.threshold = threshold

    async def check_and_disable(self, endpoint_id: str) -> bool:
        endpoint = await self.store.get_endpoint(endpoint_id)
        if endpoint is None or not endpoint.is_active:
            return False
        if (endpoint.consecutive_failures or 0) < self.threshold:
            return False

        disabled = await self.store.disable_endpoint(endpoint_id, self.threshold)
        if disabled:
            logger.warning(
                f"Webhook {endpoint_id} disabled after {self.threshold} consecutive failures"
            )
        return disabled
