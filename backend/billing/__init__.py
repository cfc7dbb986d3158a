# billing/__init__.py
from billing.errors import (
    AccountNotFoundError,
    AuthenticationError,
    BillingError,
    GatewayError,
    ParseError,
    PaymentLookupError,
    ProcessorNotConfiguredError,
    ReferenceDecodeError,
    TransientStoreError,
)
from billing.models import (
    OperatorAlert,
    PaymentEvent,
    Processor,
    ReconciliationOutcome,
    ReconciliationResult,
    TransactionReceipt,
)
from billing.services import BillingServices

__all__ = [
    "AccountNotFoundError",
    "AuthenticationError",
    "BillingError",
    "BillingServices",
    "GatewayError",
    "OperatorAlert",
    "ParseError",
    "PaymentEvent",
    "PaymentLookupError",
    "Processor",
    "ProcessorNotConfiguredError",
    "ReconciliationOutcome",
    "ReconciliationResult",
    "ReferenceDecodeError",
    "TransactionReceipt",
    "TransientStoreError",
]
