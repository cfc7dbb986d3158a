"""
Service wiring: one place that turns configuration into the object graph
the HTTP layer uses. Tests build the same graph around in-memory stores
and an httpx.MockTransport.
"""

from dataclasses import dataclass
from typing import Dict, Optional

import httpx

from billing.alerts import AlertService, IAlertRepository, InMemoryAlertRepository
from billing.gateway import OrderGateway
from billing.models import Processor
from billing.notifications import CreditNotifier
from billing.processors import ProcessorClient, ProcessorCredentials, build_clients, credentials_from_config
from billing.store import ICreditStore, InMemoryCreditStore
from billing.webhooks import WebhookProcessor


@dataclass
class BillingServices:
    credentials: Dict[Processor, ProcessorCredentials]
    clients: Dict[Processor, ProcessorClient]
    store: ICreditStore
    alerts: AlertService
    notifier: CreditNotifier
    webhooks: WebhookProcessor
    gateway: OrderGateway

    @classmethod
    def from_config(
        cls,
        cfg,
        store: Optional[ICreditStore] = None,
        alert_repository: Optional[IAlertRepository] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "BillingServices":
        credentials = credentials_from_config(cfg)
        clients = build_clients(credentials, transport=transport)
        store = store or InMemoryCreditStore()
        alerts = AlertService(
            alert_repository or InMemoryAlertRepository(),
            webhook_url=cfg.ALERT_WEBHOOK_URL,
            timeout_seconds=cfg.PROCESSOR_TIMEOUT_SECONDS,
            transport=transport,
        )
        notifier = CreditNotifier(
            cfg.NOTIFY_WEBHOOK_URL,
            timeout_seconds=cfg.PROCESSOR_TIMEOUT_SECONDS,
            transport=transport,
        )
        webhooks = WebhookProcessor(
            credentials,
            clients,
            store,
            alerts,
            notifier=notifier,
            production=cfg.is_production,
        )
        return cls(
            credentials=credentials,
            clients=clients,
            store=store,
            alerts=alerts,
            notifier=notifier,
            webhooks=webhooks,
            gateway=OrderGateway(clients, cfg),
        )
