"""
Idempotency Guard + Credit Reconciler
=====================================
The core state transition of the subsystem:

    Actionable event -> Deduplicated -> Reconciling -> Reconciled | Failed

The guard's lookup is a cheap fast path for the common redelivery case.
It is not what makes reconciliation safe: the store's `reconcile` repeats
the check inside its own atomic unit, so two deliveries that both pass the
guard still produce exactly one increment.
"""

from typing import Optional

import structlog

from billing import reference
from billing.models import (
    PaymentEvent,
    Processor,
    ReconciliationOutcome,
    ReconciliationResult,
    TransactionReceipt,
)
from billing.store import ICreditStore

logger = structlog.get_logger().bind(component="credit_reconciler")


class IdempotencyGuard:
    """Has this processor payment already been credited?"""

    def __init__(self, store: ICreditStore):
        self.store = store

    async def is_reconciled(self, processor: Processor, payment_id: str) -> Optional[TransactionReceipt]:
        return await self.store.get_receipt(processor, payment_id)


class CreditReconciler:

    def __init__(self, store: ICreditStore):
        self.store = store
        self.guard = IdempotencyGuard(store)

    async def reconcile(self, event: PaymentEvent, correlation_id: str = "") -> ReconciliationResult:
        """
        Credit the account named by the event's Order Reference.

        Raises:
            ReferenceDecodeError: reference missing or malformed; nothing written.
            AccountNotFoundError: decoded account does not exist; nothing written.
            TransientStoreError: store failure; nothing written, safe to retry.
        """
        log = logger.bind(
            processor=event.processor.value,
            payment_id=event.processor_payment_id,
            correlation_id=correlation_id,
        )

        existing = await self.guard.is_reconciled(event.processor, event.processor_payment_id)
        if existing is not None:
            log.info("payment_already_reconciled", account_id=existing.account_id)
            return ReconciliationResult(
                outcome=ReconciliationOutcome.ALREADY_RECONCILED,
                processor=event.processor,
                payment_id=event.processor_payment_id,
                account_id=existing.account_id,
            )

        ref = reference.decode(event.order_reference)
        receipt = TransactionReceipt.from_event(event, ref.account_id, ref.credits_purchased)

        created, balance = await self.store.reconcile(receipt)
        if not created:
            # Lost the race to a concurrent delivery of the same payment
            log.info("payment_already_reconciled", account_id=ref.account_id, concurrent=True)
            return ReconciliationResult(
                outcome=ReconciliationOutcome.ALREADY_RECONCILED,
                processor=event.processor,
                payment_id=event.processor_payment_id,
                account_id=ref.account_id,
                new_balance=balance,
            )

        log.info("payment_reconciled",
                 account_id=ref.account_id,
                 credits_added=ref.credits_purchased,
                 new_balance=balance,
                 amount=str(event.amount),
                 currency=event.currency)
        return ReconciliationResult(
            outcome=ReconciliationOutcome.RECONCILED,
            processor=event.processor,
            payment_id=event.processor_payment_id,
            account_id=ref.account_id,
            credits_added=ref.credits_purchased,
            new_balance=balance,
        )
