"""
Webhook Processor
=================
Runs one webhook delivery through the full pipeline:

    Received -> Verified -> Parsed -> Classified -> Deduplicated
             -> Reconciling -> Reconciled | Failed

Each delivery is independent and stateless; recovery from transient
failures is the processor's redelivery, never an internal retry loop.

| outcome / error                         | HTTP |
|-----------------------------------------|------|
| IGNORED, ALREADY_RECONCILED, RECONCILED | 200  |
| UNATTRIBUTED (operator alert raised)    | 200  |
| AuthenticationError, ParseError         | 400  |
| TransientStoreError, PaymentLookupError | 500  |
| ProcessorNotConfiguredError             | 503  |
"""

import uuid
from typing import Dict, Mapping, Optional

import structlog

from billing.alerts import AlertService
from billing.errors import AccountNotFoundError, ProcessorNotConfiguredError, ReferenceDecodeError
from billing.events import ConektaEventParser, EventParser, MercadoPagoEventParser, load_json
from billing.models import (
    OperatorAlert,
    PaymentEvent,
    Processor,
    ReconciliationOutcome,
    ReconciliationResult,
)
from billing.notifications import CreditNotifier
from billing.processors import ProcessorClient, ProcessorCredentials
from billing.reconciler import CreditReconciler
from billing.signatures import SignatureVerifier, get_verifier
from billing.store import ICreditStore

logger = structlog.get_logger().bind(component="webhook_processor")


class WebhookProcessor:

    def __init__(
        self,
        credentials: Dict[Processor, ProcessorCredentials],
        clients: Dict[Processor, ProcessorClient],
        store: ICreditStore,
        alerts: AlertService,
        notifier: Optional[CreditNotifier] = None,
        production: bool = False,
    ):
        self.credentials = credentials
        self.verifiers: Dict[Processor, SignatureVerifier] = {
            p: get_verifier(p, creds.webhook_secret, production=production)
            for p, creds in credentials.items()
        }
        self.parsers: Dict[Processor, EventParser] = {
            Processor.CONEKTA: ConektaEventParser(),
            Processor.MERCADOPAGO: MercadoPagoEventParser(clients[Processor.MERCADOPAGO]),
        }
        self.reconciler = CreditReconciler(store)
        self.alerts = alerts
        self.notifier = notifier

    def _get_logger(self, correlation_id: str, processor: Processor):
        return logger.bind(correlation_id=correlation_id, processor=processor.value)

    async def handle(
        self,
        processor: Processor,
        raw_body: bytes,
        headers: Mapping[str, str],
        correlation_id: Optional[str] = None,
    ) -> ReconciliationResult:
        """
        Process one delivery.

        Raises:
            ProcessorNotConfiguredError: processor credentials missing (503).
            AuthenticationError / ParseError: reject without mutation (400).
            TransientStoreError / PaymentLookupError: retryable (500).
        """
        correlation_id = correlation_id or str(uuid.uuid4())
        log = self._get_logger(correlation_id, processor)

        creds = self.credentials.get(processor)
        if creds is None or not creds.configured:
            log.error("webhook_processor_not_configured")
            raise ProcessorNotConfiguredError(f"Payment processor {processor.value} is not configured")

        payload = load_json(raw_body)
        verification = self.verifiers[processor].check(raw_body, headers, payload)
        log.info("webhook_received", event_type=payload.get("type"), verification=verification.value)

        event = await self.parsers[processor].parse(payload)
        log = log.bind(payment_id=event.processor_payment_id)

        if not event.is_actionable:
            log.info("webhook_ignored", event_type=event.processor_event_type, reason=event.ignore_reason)
            return ReconciliationResult(
                outcome=ReconciliationOutcome.IGNORED,
                processor=processor,
                payment_id=event.processor_payment_id or None,
            )

        try:
            result = await self.reconciler.reconcile(event, correlation_id)
        except ReferenceDecodeError as e:
            alert = await self._raise_alert(event, correlation_id, "reference_malformed", e.message,
                                            reference=e.reference)
            return self._unattributed(event, alert)
        except AccountNotFoundError as e:
            alert = await self._raise_alert(event, correlation_id, "account_not_found", e.message,
                                            account_id=e.account_id, reference=event.order_reference)
            return self._unattributed(event, alert, account_id=e.account_id)

        if result.outcome == ReconciliationOutcome.RECONCILED and self.notifier is not None:
            self.notifier.notify_credits_added(result, correlation_id)
        return result

    async def _raise_alert(self, event: PaymentEvent, correlation_id: str, alert_type: str, message: str, **extra) -> OperatorAlert:
        metadata = {
            "amount": str(event.amount),
            "currency": event.currency,
            "payer_email": event.payer.email,
            **{k: v for k, v in extra.items() if v is not None},
        }
        alert = OperatorAlert(
            alert_type=alert_type,
            processor=event.processor,
            payment_id=event.processor_payment_id,
            correlation_id=correlation_id,
            message=f"Paid order could not be credited: {message}",
            metadata=metadata,
        )
        return await self.alerts.raise_alert(alert)

    @staticmethod
    def _unattributed(event: PaymentEvent, alert: OperatorAlert, account_id: Optional[str] = None) -> ReconciliationResult:
        return ReconciliationResult(
            outcome=ReconciliationOutcome.UNATTRIBUTED,
            processor=event.processor,
            payment_id=event.processor_payment_id,
            account_id=account_id,
            alert_id=alert.alert_id,
        )
