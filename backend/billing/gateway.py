"""
Order Creation Gateway
======================
Creates a bank-transfer (SPEI) order at a processor and hands the CLABE
back to the paying client.

The Order Reference built here is the only link between the money that
eventually arrives and the account it belongs to; it rides in the
processor's metadata / external_reference and comes back in the webhook.
Processor errors are surfaced as GatewayError with the processor's own
message. Nothing is retried.
"""

from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Optional

import structlog

from billing import reference
from billing.errors import GatewayError, OrderValidationError, ProcessorNotConfiguredError
from billing.models import BankTransferOrder, Processor
from billing.processors import ConektaClient, MercadoPagoClient, ProcessorClient

logger = structlog.get_logger().bind(component="order_gateway")

CENTS = Decimal("0.01")
PLACEHOLDER_PHONE = "+525555555555"  # Conekta requires a phone number
DEFAULT_BANK = "STP"


def _obj(value) -> dict:
    return value if isinstance(value, dict) else {}


def _first(value) -> dict:
    return _obj(value[0]) if isinstance(value, list) and value else {}


def amount_due(credits: int, price_per_credit: Decimal, tax_multiplier: Decimal) -> Decimal:
    return (Decimal(credits) * price_per_credit * tax_multiplier).quantize(CENTS, rounding=ROUND_HALF_UP)


class OrderGateway:

    def __init__(self, clients: Dict[Processor, ProcessorClient], cfg):
        self.clients = clients
        self.config = cfg

    def _client(self, processor: Processor) -> ProcessorClient:
        client = self.clients.get(processor)
        if client is None or not client.credentials.configured:
            raise ProcessorNotConfiguredError(f"Payment processor {processor.value} is not configured")
        return client

    def _validate_credits(self, credits) -> int:
        if isinstance(credits, bool) or not isinstance(credits, int) or credits <= 0:
            raise OrderValidationError("credits must be a positive integer")
        if credits > self.config.MAX_CREDITS_PER_ORDER:
            raise OrderValidationError(f"credits must not exceed {self.config.MAX_CREDITS_PER_ORDER} per order")
        return credits

    async def create_order(
        self,
        processor: Processor,
        account_id: str,
        credits: int,
        payer_email: str,
        payer_name: Optional[str] = None,
    ) -> BankTransferOrder:
        """
        Raises:
            OrderValidationError: bad credit count or account id.
            ProcessorNotConfiguredError: processor has no API credential.
            GatewayError: processor rejected the order, was unreachable or timed out.
        """
        client = self._client(processor)
        credits = self._validate_credits(credits)
        try:
            ref = reference.encode(account_id, credits)
        except ValueError as e:
            raise OrderValidationError(str(e)) from e

        total = amount_due(credits, self.config.PRICE_PER_CREDIT, self.config.TAX_MULTIPLIER)
        expires_at = datetime.now(timezone.utc) + timedelta(hours=self.config.ORDER_EXPIRY_HOURS)
        description = f"{credits} Créditos para {self.config.APP_NAME}"

        log = logger.bind(processor=processor.value, account_id=account_id, credits=credits)
        log.info("order_creating", amount_due=str(total))

        if isinstance(client, ConektaClient):
            order = await self._create_conekta_order(
                client, ref, credits, total, expires_at, description, payer_email, payer_name
            )
        elif isinstance(client, MercadoPagoClient):
            order = await self._create_mercadopago_payment(
                client, ref, credits, total, expires_at, description, payer_email, payer_name
            )
        else:
            raise ProcessorNotConfiguredError(f"Payment processor {processor.value} cannot create orders")

        log.info("order_created", order_id=order.order_id, expires_at=order.expires_at.isoformat())
        return order

    async def _create_conekta_order(self, client, ref, credits, total, expires_at, description, payer_email, payer_name):
        payload = {
            "currency": self.config.CURRENCY,
            "customer_info": {
                "name": payer_name or payer_email,
                "email": payer_email,
                "phone": PLACEHOLDER_PHONE,
            },
            "line_items": [{
                "name": description,
                "unit_price": int(total * 100),
                "quantity": 1,
            }],
            "metadata": {
                "accountRef": ref,
                "credits": str(credits),
            },
            "charges": [{
                "payment_method": {
                    "type": "spei",
                    "expires_at": int(expires_at.timestamp()),
                },
            }],
        }
        result = await client.create_order(payload)

        method = _obj(_first(_obj(result.get("charges")).get("data")).get("payment_method"))
        if not isinstance(method.get("clabe"), str) or not method["clabe"]:
            logger.error("order_missing_clabe", processor=Processor.CONEKTA.value, order_id=result.get("id"))
            raise GatewayError("Processor response did not include SPEI payment details", details=result)

        return BankTransferOrder(
            processor=Processor.CONEKTA,
            order_id=str(result.get("id", "")),
            reference=ref,
            clabe=method["clabe"],
            bank=str(method.get("bank") or DEFAULT_BANK),
            amount_due=total,
            currency=self.config.CURRENCY,
            credits=credits,
            expires_at=expires_at,
        )

    async def _create_mercadopago_payment(self, client, ref, credits, total, expires_at, description, payer_email, payer_name):
        payer = {"email": payer_email}
        if payer_name:
            payer["first_name"] = payer_name
        payload = {
            "transaction_amount": float(total),
            "description": description,
            "payment_method_id": "spei",
            "payer": payer,
            "external_reference": ref,
            "notification_url": self.config.callback_url(Processor.MERCADOPAGO.value),
            "date_of_expiration": expires_at.isoformat(timespec="milliseconds"),
        }
        result = await client.create_payment(payload, idempotency_key=ref)

        transaction_data = _obj(_obj(result.get("point_of_interaction")).get("transaction_data"))
        clabe = _obj(transaction_data.get("bank_transfer")).get("clabe")
        if not isinstance(clabe, str) or not clabe:
            logger.error("order_missing_clabe", processor=Processor.MERCADOPAGO.value, order_id=result.get("id"))
            raise GatewayError("Processor response did not include SPEI payment details", details=result)

        bank_payer = _first(_obj(transaction_data.get("bank_info")).get("payer"))
        return BankTransferOrder(
            processor=Processor.MERCADOPAGO,
            order_id=str(result.get("id", "")),
            reference=ref,
            clabe=clabe,
            bank=str(bank_payer.get("account_name") or DEFAULT_BANK),
            amount_due=total,
            currency=self.config.CURRENCY,
            credits=credits,
            expires_at=expires_at,
        )
