"""Signing helpers, payload builders and a fake processor API for tests."""

import hashlib
import hmac
import json
from collections import defaultdict
from typing import Dict, List, Optional, Tuple

import httpx

CONEKTA_SECRET = "whsec_conekta_test"
MERCADOPAGO_SECRET = "whsec_mercadopago_test"
ALERT_URL = "https://alerts.test/hook"
NOTIFY_URL = "https://notify.test/hook"
ADMIN_TOKEN = "admin-secret"


def _hmac(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def sign_conekta(body: bytes, secret: str = CONEKTA_SECRET, ts: str = "1700000000") -> str:
    return f"ts={ts},v1={_hmac(secret, ts.encode() + b'.' + body)}"


def sign_mercadopago(data_id: str, request_id: str, secret: str = MERCADOPAGO_SECRET, ts: str = "1700000000000") -> str:
    manifest = f"id:{data_id.lower()};request-id:{request_id};ts:{ts};".encode()
    return f"ts={ts},v1={_hmac(secret, manifest)}"


def conekta_order_paid(order_id: str, reference: Optional[str], status: str = "paid", amount: int = 75400) -> dict:
    metadata = {"credits": "10"}
    if reference is not None:
        metadata["accountRef"] = reference
    return {
        "id": "evt_" + order_id,
        "type": "order.paid",
        "data": {
            "object": {
                "id": order_id,
                "payment_status": status,
                "amount": amount,
                "currency": "MXN",
                "metadata": metadata,
                "customer_info": {"name": "Ana López", "email": "ana@example.com", "phone": "+525512345678"},
                "charges": {"data": [{"payment_method": {"type": "spei"}}]},
                "created_at": 1700000000,
            }
        },
    }


def mercadopago_notification(payment_id: str, event_type: str = "payment") -> dict:
    return {"type": event_type, "action": "payment.updated", "data": {"id": payment_id}}


def mercadopago_payment(payment_id: str, external_reference: Optional[str], status: str = "approved") -> dict:
    return {
        "id": payment_id,
        "status": status,
        "external_reference": external_reference,
        "transaction_amount": 377.0,
        "currency_id": "MXN",
        "payment_type_id": "bank_transfer",
        "date_created": "2024-05-01T12:00:00.000-04:00",
        "payer": {
            "first_name": "Luis",
            "last_name": "Pérez",
            "email": "luis@example.com",
            "phone": {"number": "5512345678"},
        },
    }


def conekta_order_created(order_id: str = "ord_2tUigJ8DgBhbp6w5D") -> dict:
    return {
        "id": order_id,
        "amount": 75400,
        "currency": "MXN",
        "charges": {
            "data": [{
                "payment_method": {
                    "type": "spei",
                    "clabe": "646180111812345678",
                    "bank": "STP",
                },
            }],
        },
    }


def mercadopago_payment_created(payment_id: int = 1317123456) -> dict:
    return {
        "id": payment_id,
        "status": "pending",
        "transaction_amount": 754.0,
        "point_of_interaction": {
            "transaction_data": {
                "bank_transfer": {"clabe": "646180999900000001"},
                "bank_info": {"payer": [{"account_name": "STP"}]},
            }
        },
    }


def _respond(status: int, body) -> httpx.Response:
    if isinstance(body, (bytes, str)):
        return httpx.Response(status, content=body, headers={"content-type": "text/html"})
    return httpx.Response(status, json=body)


class FakeProcessorAPI:
    """Routes httpx.MockTransport requests for both processors and the outbound hooks."""

    def __init__(self):
        self.payments: Dict[str, dict] = {}
        self.requests: List[httpx.Request] = []
        self.posted: Dict[str, List[dict]] = defaultdict(list)
        self.lookup_status: Optional[int] = None
        self.conekta_response: Tuple[int, dict] = (200, conekta_order_created())
        self.mercadopago_response: Tuple[int, dict] = (201, mercadopago_payment_created())
        self.raise_error: Optional[Exception] = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.raise_error is not None:
            raise self.raise_error

        host, path = request.url.host, request.url.path
        if host == "api.mercadopago.com":
            if request.method == "GET" and path.startswith("/v1/payments/"):
                if self.lookup_status is not None:
                    return httpx.Response(self.lookup_status, json={"message": "internal_error"})
                payment_id = path.rsplit("/", 1)[1]
                if payment_id not in self.payments:
                    return httpx.Response(404, json={"message": "Payment not found"})
                return _respond(200, self.payments[payment_id])
            self.posted[host].append(json.loads(request.content))
            status, body = self.mercadopago_response
            return _respond(status, body)

        if host == "api.conekta.io":
            self.posted[host].append(json.loads(request.content))
            status, body = self.conekta_response
            return _respond(status, body)

        self.posted[host].append(json.loads(request.content))
        return httpx.Response(200, json={"ok": True})

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)
