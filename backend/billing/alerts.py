"""
Operator Alerts
===============
Paid orders that cannot be credited automatically (unreadable reference,
unknown account) are acknowledged to the processor and escalated here.

An alert is persisted first, then logged at critical level, then forwarded
to ALERT_WEBHOOK_URL if one is configured. Forwarding failures are logged
and never fail the webhook; persistence failures propagate so the
processor redelivers and the alert is not lost.

Alerts are keyed by (processor, payment_id, alert_type). A redelivered
notification for the same lost payment returns the alert already on
record and is not forwarded again.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple

import httpx
import structlog

from billing.models import OperatorAlert, Processor, utcnow

logger = structlog.get_logger().bind(component="operator_alerts")


class IAlertRepository(ABC):
    """Alert storage interface"""

    @abstractmethod
    async def save(self, alert: OperatorAlert) -> Tuple[OperatorAlert, bool]:
        """Store the alert unless one with the same dedupe key exists.

        Returns the alert on record and whether this call created it.
        """
        pass

    @abstractmethod
    async def list_alerts(self, include_acknowledged: bool = False, limit: int = 100) -> List[OperatorAlert]:
        pass

    @abstractmethod
    async def acknowledge(self, alert_id: str) -> Optional[OperatorAlert]:
        pass


class InMemoryAlertRepository(IAlertRepository):

    def __init__(self):
        self._alerts: Dict[str, OperatorAlert] = {}
        self._keys: Dict[Tuple[Processor, str, str], str] = {}
        self._lock = asyncio.Lock()

    async def save(self, alert: OperatorAlert) -> Tuple[OperatorAlert, bool]:
        async with self._lock:
            existing_id = self._keys.get(alert.dedupe_key)
            if existing_id is not None:
                return self._alerts[existing_id], False
            self._alerts[alert.alert_id] = alert
            self._keys[alert.dedupe_key] = alert.alert_id
            return alert, True

    async def list_alerts(self, include_acknowledged: bool = False, limit: int = 100) -> List[OperatorAlert]:
        async with self._lock:
            alerts = [a for a in self._alerts.values() if include_acknowledged or not a.acknowledged]
        alerts.sort(key=lambda a: a.created_at, reverse=True)
        return alerts[:limit]

    async def acknowledge(self, alert_id: str) -> Optional[OperatorAlert]:
        async with self._lock:
            alert = self._alerts.get(alert_id)
            if alert is None:
                return None
            if not alert.acknowledged:
                alert = alert.model_copy(update={"acknowledged": True, "acknowledged_at": utcnow()})
                self._alerts[alert_id] = alert
            return alert


class AlertService:
    """Persist, log and forward operator alerts."""

    def __init__(
        self,
        repository: IAlertRepository,
        webhook_url: Optional[str] = None,
        timeout_seconds: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.repository = repository
        self.webhook_url = webhook_url
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    async def raise_alert(self, alert: OperatorAlert) -> OperatorAlert:
        stored, created = await self.repository.save(alert)
        if not created:
            logger.warning(
                "operator_alert_repeated",
                alert_id=stored.alert_id,
                alert_type=stored.alert_type,
                processor=stored.processor.value,
                payment_id=stored.payment_id,
                correlation_id=alert.correlation_id,
                acknowledged=stored.acknowledged,
            )
            return stored

        logger.critical(
            "operator_alert",
            alert_id=alert.alert_id,
            alert_type=alert.alert_type,
            processor=alert.processor.value,
            payment_id=alert.payment_id,
            correlation_id=alert.correlation_id,
            message=alert.message,
            metadata=alert.metadata,
        )
        if self.webhook_url:
            await self._forward(alert)
        return alert

    async def _forward(self, alert: OperatorAlert) -> None:
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
                response = await client.post(self.webhook_url, json=alert.model_dump(mode="json"))
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error("operator_alert_forward_failed", alert_id=alert.alert_id, error=str(e))

    async def list_alerts(self, include_acknowledged: bool = False, limit: int = 100) -> List[OperatorAlert]:
        return await self.repository.list_alerts(include_acknowledged=include_acknowledged, limit=limit)

    async def acknowledge(self, alert_id: str) -> Optional[OperatorAlert]:
        alert = await self.repository.acknowledge(alert_id)
        if alert is not None:
            logger.info("operator_alert_acknowledged", alert_id=alert_id)
        return alert
