"""
Webhook Event Parser
====================
Turns a raw webhook body into a typed, classified PaymentEvent.

Envelope shapes are a tagged union resolved by processor (the URL the
notification arrived on) and then by the `type` discriminant:

- conekta      {type, data: {object: <order>}}   payload trusted inline
- mercadopago  {type, data: {id: <payment id>}}  follow-up lookup required

Unparsable bodies raise ParseError (answered 400). Unknown types and
non-approved statuses are returned as IGNORABLE events (answered 200).
"""

import json
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional, Protocol, Union

import structlog
from pydantic import BaseModel, ValidationError

from billing.errors import ParseError
from billing.models import CustomerInfo, EventClass, PaymentEvent, Processor

logger = structlog.get_logger().bind(component="event_parser")

CONEKTA_PAID_TYPE = "order.paid"
CONEKTA_PAID_STATUS = "paid"
MERCADOPAGO_PAYMENT_TYPE = "payment"
MERCADOPAGO_APPROVED_STATUS = "approved"


class PaymentLookup(Protocol):
    async def get_payment(self, payment_id: str) -> Optional[dict]:
        ...


def load_json(raw_body: bytes) -> dict:
    """Decode a webhook body; anything but a JSON object is a ParseError."""
    try:
        payload = json.loads(raw_body or b"")
    except (ValueError, UnicodeDecodeError) as e:
        raise ParseError(f"Invalid JSON payload: {e}") from e
    if not isinstance(payload, dict):
        raise ParseError("Webhook payload must be a JSON object")
    return payload


# =============================================================================
# ENVELOPES
# =============================================================================

class ConektaOrder(BaseModel):
    id: str
    payment_status: Optional[str] = None
    amount: int = 0  # cents
    currency: str = "MXN"
    # display-only or optional blocks; shape is checked where they are read
    metadata: Any = None
    customer_info: Any = None
    charges: Any = None
    created_at: Optional[int] = None


class ConektaData(BaseModel):
    object: ConektaOrder


class ConektaEnvelope(BaseModel):
    id: Optional[str] = None
    type: str
    data: ConektaData


class MercadoPagoData(BaseModel):
    id: Union[str, int]


class MercadoPagoEnvelope(BaseModel):
    type: str
    action: Optional[str] = None
    data: MercadoPagoData


class MercadoPagoPayer(BaseModel):
    first_name: Any = None
    last_name: Any = None
    email: Any = None
    phone: Any = None


class MercadoPagoPayment(BaseModel):
    id: Union[str, int]
    status: str
    external_reference: Optional[str] = None
    transaction_amount: Optional[float] = None
    currency_id: Optional[str] = None
    payment_type_id: Optional[str] = None
    date_created: Optional[str] = None
    payer: Any = None


def _ignorable(processor: Processor, event_type: str, reason: str, payment_id: str = "", status: str = "") -> PaymentEvent:
    return PaymentEvent(
        processor=processor,
        processor_event_type=event_type,
        processor_payment_id=payment_id,
        status=status,
        classification=EventClass.IGNORABLE,
        ignore_reason=reason,
    )


def _decimal(value: Any) -> Decimal:
    try:
        return Decimal(str(value)) if value is not None else Decimal("0")
    except InvalidOperation:
        return Decimal("0")


def _text(value: Any, default: str = "") -> str:
    """Payer fields are display-only; coerce scalars and drop anything else."""
    if isinstance(value, bool) or value is None:
        return default
    if isinstance(value, (str, int, float)):
        return str(value).strip() or default
    return default


def _mapping(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


# =============================================================================
# PARSERS
# =============================================================================

class EventParser:
    """Base parser; one subclass per processor envelope shape."""

    processor: Processor

    @staticmethod
    def event_type(payload: dict) -> str:
        event_type = payload.get("type")
        if not isinstance(event_type, str) or not event_type:
            raise ParseError("Webhook payload is missing its event type")
        return event_type

    async def parse(self, payload: dict) -> PaymentEvent:
        raise NotImplementedError


class ConektaEventParser(EventParser):
    processor = Processor.CONEKTA

    async def parse(self, payload: dict) -> PaymentEvent:
        event_type = self.event_type(payload)
        if event_type != CONEKTA_PAID_TYPE:
            return _ignorable(self.processor, event_type, f"unhandled event type {event_type}")

        try:
            envelope = ConektaEnvelope.model_validate(payload)
        except ValidationError as e:
            raise ParseError(f"Malformed {event_type} payload: {e.error_count()} validation error(s)") from e

        order = envelope.data.object
        status = order.payment_status or ""
        if status != CONEKTA_PAID_STATUS:
            return _ignorable(self.processor, event_type, f"payment status {status or 'missing'}", order.id, status)

        method = "unknown"
        charges = _mapping(order.charges).get("data")
        if isinstance(charges, list) and charges:
            method = _text(_mapping(_mapping(charges[0]).get("payment_method")).get("type"), method)

        reference = _mapping(order.metadata).get("accountRef")
        customer = _mapping(order.customer_info)
        return PaymentEvent(
            processor=self.processor,
            processor_event_type=event_type,
            processor_payment_id=order.id,
            status=status,
            order_reference=str(reference) if reference is not None else None,
            amount=_decimal(order.amount) / 100,
            currency=order.currency or "MXN",
            payment_method=method,
            payer=CustomerInfo(
                name=_text(customer.get("name")),
                email=_text(customer.get("email"), "not provided"),
                phone=_text(customer.get("phone"), "not provided"),
            ),
            occurred_at=datetime.fromtimestamp(order.created_at, tz=timezone.utc) if order.created_at else None,
        )


class MercadoPagoEventParser(EventParser):
    processor = Processor.MERCADOPAGO

    def __init__(self, lookup: PaymentLookup):
        self._lookup = lookup

    async def parse(self, payload: dict) -> PaymentEvent:
        event_type = self.event_type(payload)
        if event_type != MERCADOPAGO_PAYMENT_TYPE:
            return _ignorable(self.processor, event_type, f"unhandled event type {event_type}")

        try:
            envelope = MercadoPagoEnvelope.model_validate(payload)
        except ValidationError as e:
            raise ParseError(f"Malformed {event_type} notification: {e.error_count()} validation error(s)") from e

        payment_id = str(envelope.data.id)
        raw_payment = await self._lookup.get_payment(payment_id)
        if raw_payment is None:
            return _ignorable(self.processor, event_type, "payment unknown to processor", payment_id)

        try:
            payment = MercadoPagoPayment.model_validate(raw_payment)
        except ValidationError as e:
            raise ParseError(f"Processor returned a malformed payment {payment_id}") from e

        logger.info("payment_fetched", payment_id=payment_id, status=payment.status)
        if payment.status != MERCADOPAGO_APPROVED_STATUS:
            return _ignorable(self.processor, event_type, f"payment status {payment.status}", payment_id, payment.status)

        payer = MercadoPagoPayer.model_validate(_mapping(payment.payer))
        return PaymentEvent(
            processor=self.processor,
            processor_event_type=event_type,
            processor_payment_id=str(payment.id),
            status=payment.status,
            order_reference=payment.external_reference,
            amount=_decimal(payment.transaction_amount),
            currency=payment.currency_id or "MXN",
            payment_method=payment.payment_type_id or "unknown",
            payer=CustomerInfo(
                name=f"{_text(payer.first_name)} {_text(payer.last_name)}".strip(),
                email=_text(payer.email, "not provided"),
                phone=_text(_mapping(payer.phone).get("number"), "not provided"),
            ),
            occurred_at=_parse_iso(payment.date_created),
        )
