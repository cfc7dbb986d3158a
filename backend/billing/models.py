"""
Billing Domain Models
=====================
Typed records flowing through webhook reconciliation:

- PaymentEvent: transient, processor-supplied notification (never persisted as-is)
- TransactionReceipt: durable, append-only record keyed by processor payment id
- OperatorAlert: operator-visible record of a paid order that could not be credited
- BankTransferOrder: what the Order Creation Gateway hands back to the client
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional, Tuple

from pydantic import BaseModel, Field, computed_field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# ENUMS
# =============================================================================

class Processor(str, Enum):
    CONEKTA = "conekta"
    MERCADOPAGO = "mercadopago"


class EventClass(str, Enum):
    """Result of classifying a parsed notification"""
    ACTIONABLE = "actionable"
    IGNORABLE = "ignorable"


class ReconciliationOutcome(str, Enum):
    """Terminal states of a webhook delivery that is acknowledged with 2xx"""
    IGNORED = "ignored"
    ALREADY_RECONCILED = "already_reconciled"
    RECONCILED = "reconciled"
    UNATTRIBUTED = "unattributed"


class AlertSeverity(str, Enum):
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


# =============================================================================
# PAYMENT EVENT
# =============================================================================

class CustomerInfo(BaseModel):
    """Payer display info as reported by the processor"""
    name: str = ""
    email: str = "not provided"
    phone: str = "not provided"


class PaymentEvent(BaseModel):
    """Parsed, classified payment notification"""
    processor: Processor
    processor_event_type: str
    processor_payment_id: str
    status: str
    order_reference: Optional[str] = None
    amount: Decimal = Decimal("0")
    currency: str = "MXN"
    payment_method: str = "unknown"
    payer: CustomerInfo = Field(default_factory=CustomerInfo)
    occurred_at: Optional[datetime] = None
    classification: EventClass = EventClass.ACTIONABLE
    ignore_reason: Optional[str] = None

    @computed_field
    @property
    def is_actionable(self) -> bool:
        return self.classification == EventClass.ACTIONABLE


# =============================================================================
# TRANSACTION RECEIPT
# =============================================================================

class TransactionReceipt(BaseModel):
    """
    Append-only proof that a processor payment has been credited.

    At most one receipt exists per (processor, order_id), ever. Created in the
    same atomic unit that increments the account balance; never updated.
    """
    processor: Processor
    order_id: str
    account_id: str
    credits_purchased: int
    amount: Decimal
    currency: str
    payment_method: str
    status: str
    customer_info: CustomerInfo = Field(default_factory=CustomerInfo)
    created_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def from_event(cls, event: PaymentEvent, account_id: str, credits: int) -> "TransactionReceipt":
        return cls(
            processor=event.processor,
            order_id=event.processor_payment_id,
            account_id=account_id,
            credits_purchased=credits,
            amount=event.amount,
            currency=event.currency,
            payment_method=event.payment_method,
            status=event.status,
            customer_info=event.payer,
            created_at=event.occurred_at or utcnow(),
        )


class ReconciliationResult(BaseModel):
    outcome: ReconciliationOutcome
    processor: Processor
    payment_id: Optional[str] = None
    account_id: Optional[str] = None
    credits_added: int = 0
    new_balance: Optional[int] = None
    alert_id: Optional[str] = None


# =============================================================================
# OPERATOR ALERTS
# =============================================================================

class OperatorAlert(BaseModel):
    """A paid order that needs manual reconciliation"""
    alert_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    alert_type: str  # "reference_malformed", "account_not_found"
    severity: AlertSeverity = AlertSeverity.CRITICAL
    processor: Processor
    payment_id: str
    correlation_id: str
    message: str
    metadata: dict = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    acknowledged: bool = False
    acknowledged_at: Optional[datetime] = None

    @property
    def dedupe_key(self) -> Tuple[Processor, str, str]:
        """One alert per payment and failure kind, however often it is redelivered"""
        return self.processor, self.payment_id, self.alert_type


# =============================================================================
# ORDER CREATION
# =============================================================================

class BankTransferOrder(BaseModel):
    """Bank-transfer (SPEI) details returned to the paying client"""
    processor: Processor
    order_id: str
    reference: str
    clabe: str
    bank: str
    amount_due: Decimal
    currency: str
    credits: int
    expires_at: datetime
