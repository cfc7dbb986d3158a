"""
Credit Notifications
====================
Fire-and-forget `credits.added` event to NOTIFY_WEBHOOK_URL once a payment
has been reconciled, so the messaging side can tell the user their balance
changed. Delivery is best effort: the reconciliation has already committed
and a failed notification is only logged.
"""

import asyncio
from typing import Optional, Set

import httpx
import structlog

from billing.models import ReconciliationResult, utcnow

logger = structlog.get_logger().bind(component="credit_notifier")

CREDITS_ADDED = "credits.added"


class CreditNotifier:

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        timeout_seconds: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.webhook_url = webhook_url
        self.timeout_seconds = timeout_seconds
        self._transport = transport
        self._pending: Set[asyncio.Task] = set()

    def notify_credits_added(self, result: ReconciliationResult, correlation_id: str) -> Optional[asyncio.Task]:
        """Schedule the notification and return immediately."""
        if not self.webhook_url:
            return None
        task = asyncio.create_task(self._send(result, correlation_id))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _send(self, result: ReconciliationResult, correlation_id: str) -> None:
        log = logger.bind(correlation_id=correlation_id, account_id=result.account_id)
        event = {
            "type": CREDITS_ADDED,
            "account_id": result.account_id,
            "credits_added": result.credits_added,
            "new_balance": result.new_balance,
            "processor": result.processor.value,
            "payment_id": result.payment_id,
            "occurred_at": utcnow().isoformat(),
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
                response = await client.post(self.webhook_url, json=event)
                response.raise_for_status()
            log.info("credits_notification_sent")
        except httpx.HTTPError as e:
            log.warning("credits_notification_failed", error=str(e))

    async def drain(self) -> None:
        """Wait for in-flight notifications (shutdown and tests)."""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
