"""
Billing Errors
==============
Exception taxonomy for webhook ingestion and credit reconciliation.

Every error carries a machine code and the HTTP status the webhook/API
boundary answers with. Errors that represent money received but not
attributable (`acknowledge=True`) are answered with 2xx so the processor
stops retrying, and are escalated to operators instead.
"""

from typing import Any, Dict, Optional


class ErrorCodes:
    """Standard error codes"""
    # Request authenticity / shape
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    INVALID_PAYLOAD = "INVALID_PAYLOAD"
    VALIDATION_ERROR = "VALIDATION_ERROR"

    # Reconciliation
    REFERENCE_MALFORMED = "REFERENCE_MALFORMED"
    ACCOUNT_NOT_FOUND = "ACCOUNT_NOT_FOUND"

    # Infrastructure
    PROCESSOR_NOT_CONFIGURED = "PROCESSOR_NOT_CONFIGURED"
    STORE_UNAVAILABLE = "STORE_UNAVAILABLE"
    PAYMENT_LOOKUP_FAILED = "PAYMENT_LOOKUP_FAILED"
    GATEWAY_ERROR = "GATEWAY_ERROR"
    GATEWAY_TIMEOUT = "GATEWAY_TIMEOUT"
    UNAUTHORIZED = "UNAUTHORIZED"
    NOT_FOUND = "NOT_FOUND"


class BillingError(Exception):
    """Base class for all billing errors"""

    code: str = "BILLING_ERROR"
    status_code: int = 500
    acknowledge: bool = False

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        self.message = message
        self.context = context or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class AuthenticationError(BillingError):
    """Webhook signature missing, malformed or not matching."""
    code = ErrorCodes.INVALID_SIGNATURE
    status_code = 400


class ParseError(BillingError):
    """Body is not JSON or lacks a field the envelope requires."""
    code = ErrorCodes.INVALID_PAYLOAD
    status_code = 400


class ProcessorNotConfiguredError(BillingError):
    code = ErrorCodes.PROCESSOR_NOT_CONFIGURED
    status_code = 503


class ReferenceDecodeError(BillingError):
    """
    Order Reference missing or malformed.

    `reason` is always "malformed"; the attribute exists so callers can
    branch on it without parsing messages.
    """
    code = ErrorCodes.REFERENCE_MALFORMED
    status_code = 200
    acknowledge = True

    MALFORMED = "malformed"

    def __init__(self, message: str, reference: Optional[str] = None, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, context)
        self.reason = self.MALFORMED
        self.reference = reference


class AccountNotFoundError(BillingError):
    """A paid order decoded to an account that does not exist."""
    code = ErrorCodes.ACCOUNT_NOT_FOUND
    status_code = 200
    acknowledge = True

    def __init__(self, account_id: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(f"Account not found: {account_id}", context)
        self.account_id = account_id


class TransientStoreError(BillingError):
    """Data store unreachable or timed out; safe to retry from scratch."""
    code = ErrorCodes.STORE_UNAVAILABLE
    status_code = 500

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        super().__init__(message)
        self.original_error = original_error


class PaymentLookupError(BillingError):
    """Follow-up fetch of a payment from the processor failed."""
    code = ErrorCodes.PAYMENT_LOOKUP_FAILED
    status_code = 500


class GatewayError(BillingError):
    """Order creation rejected by, or unreachable at, the processor."""
    code = ErrorCodes.GATEWAY_ERROR
    status_code = 502

    def __init__(self, message: str, details: Optional[Any] = None, timeout: bool = False):
        super().__init__(message)
        self.details = details
        if timeout:
            self.code = ErrorCodes.GATEWAY_TIMEOUT
            self.status_code = 504

    def to_dict(self) -> dict:
        body = super().to_dict()
        if self.details is not None:
            body["details"] = self.details
        return body


class OrderValidationError(BillingError):
    code = ErrorCodes.VALIDATION_ERROR
    status_code = 400


class UnauthorizedError(BillingError):
    code = ErrorCodes.UNAUTHORIZED
    status_code = 401


class NotFoundError(BillingError):
    code = ErrorCodes.NOT_FOUND
    status_code = 404
