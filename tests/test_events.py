import asyncio
from decimal import Decimal

import pytest

from billing.errors import ParseError
from billing.events import ConektaEventParser, MercadoPagoEventParser, load_json
from billing.models import EventClass, Processor
from helpers import conekta_order_paid, mercadopago_notification, mercadopago_payment


class StubLookup:
    def __init__(self, payments):
        self.payments = payments
        self.calls = []

    async def get_payment(self, payment_id):
        self.calls.append(payment_id)
        return self.payments.get(payment_id)


def test_load_json_rejects_garbage():
    with pytest.raises(ParseError):
        load_json(b"{not json")
    with pytest.raises(ParseError):
        load_json(b"[1, 2, 3]")
    with pytest.raises(ParseError):
        load_json(b"")
    assert load_json(b'{"type": "payment"}') == {"type": "payment"}


def test_conekta_paid_order_is_actionable():
    event = asyncio.run(ConektaEventParser().parse(conekta_order_paid("ord_1", "A__10__1700000000000")))

    assert event.processor == Processor.CONEKTA
    assert event.is_actionable
    assert event.processor_payment_id == "ord_1"
    assert event.order_reference == "A__10__1700000000000"
    assert event.amount == Decimal("754")
    assert event.payment_method == "spei"
    assert event.payer.email == "ana@example.com"
    assert event.occurred_at is not None


@pytest.mark.parametrize("status", ["pending_payment", "declined", "expired"])
def test_conekta_unpaid_status_is_ignorable(status):
    event = asyncio.run(ConektaEventParser().parse(conekta_order_paid("ord_1", "A__10", status=status)))
    assert event.classification == EventClass.IGNORABLE
    assert not event.is_actionable
    assert event.processor_payment_id == "ord_1"


def test_conekta_other_event_type_is_ignorable_without_payload():
    event = asyncio.run(ConektaEventParser().parse({"type": "order.created"}))
    assert event.classification == EventClass.IGNORABLE
    assert "order.created" in event.ignore_reason


def test_conekta_paid_without_metadata_still_parses():
    payload = conekta_order_paid("ord_1", None)
    payload["data"]["object"].pop("metadata")
    event = asyncio.run(ConektaEventParser().parse(payload))
    assert event.is_actionable
    assert event.order_reference is None


@pytest.mark.parametrize("payload", [
    {"type": "order.paid"},
    {"type": "order.paid", "data": {}},
    {"type": "order.paid", "data": {"object": {"payment_status": "paid"}}},
    {"data": {"object": {"id": "ord_1"}}},
    {"type": 42},
])
def test_conekta_missing_fields_raise_parse_error(payload):
    with pytest.raises(ParseError):
        asyncio.run(ConektaEventParser().parse(payload))


def test_mercadopago_approved_payment_is_fetched_and_actionable():
    lookup = StubLookup({"123": mercadopago_payment("123", "A__10__1700000000000")})
    event = asyncio.run(MercadoPagoEventParser(lookup).parse(mercadopago_notification("123")))

    assert lookup.calls == ["123"]
    assert event.is_actionable
    assert event.processor == Processor.MERCADOPAGO
    assert event.processor_payment_id == "123"
    assert event.order_reference == "A__10__1700000000000"
    assert event.amount == Decimal("377.0")
    assert event.payer.name == "Luis Pérez"
    assert event.payer.phone == "5512345678"
    assert event.payment_method == "bank_transfer"


def test_mercadopago_numeric_data_id():
    lookup = StubLookup({"987": mercadopago_payment("987", "A__1")})
    event = asyncio.run(MercadoPagoEventParser(lookup).parse({"type": "payment", "data": {"id": 987}}))
    assert lookup.calls == ["987"]
    assert event.is_actionable


@pytest.mark.parametrize("status", ["pending", "in_process", "rejected", "cancelled"])
def test_mercadopago_non_approved_is_ignorable(status):
    lookup = StubLookup({"123": mercadopago_payment("123", "A__10", status=status)})
    event = asyncio.run(MercadoPagoEventParser(lookup).parse(mercadopago_notification("123")))
    assert event.classification == EventClass.IGNORABLE
    assert event.status == status


def test_mercadopago_unknown_payment_is_ignorable():
    event = asyncio.run(MercadoPagoEventParser(StubLookup({})).parse(mercadopago_notification("404")))
    assert event.classification == EventClass.IGNORABLE


def test_mercadopago_other_type_skips_lookup():
    lookup = StubLookup({})
    event = asyncio.run(MercadoPagoEventParser(lookup).parse(mercadopago_notification("1", event_type="merchant_order")))
    assert event.classification == EventClass.IGNORABLE
    assert lookup.calls == []


def test_mercadopago_missing_data_id_raises_parse_error():
    with pytest.raises(ParseError):
        asyncio.run(MercadoPagoEventParser(StubLookup({})).parse({"type": "payment", "data": {}}))


def test_mercadopago_malformed_payment_raises_parse_error():
    lookup = StubLookup({"123": {"id": "123"}})
    with pytest.raises(ParseError):
        asyncio.run(MercadoPagoEventParser(lookup).parse(mercadopago_notification("123")))


def test_conekta_non_string_payer_fields_do_not_block_credit():
    payload = conekta_order_paid("ord_p1", "A__10__1700000000000")
    order = payload["data"]["object"]
    order["customer_info"] = {"name": ["Ana"], "email": None, "phone": 5512345678}
    order["charges"] = {"data": ["spei"]}

    event = asyncio.run(ConektaEventParser().parse(payload))

    assert event.is_actionable
    assert event.payer.phone == "5512345678"
    assert event.payer.name == ""
    assert event.payer.email == "not provided"
    assert event.payment_method == "unknown"


def test_conekta_null_blocks_still_parse():
    payload = conekta_order_paid("ord_p2", "A__10__1700000000000")
    order = payload["data"]["object"]
    order["customer_info"] = None
    order["charges"] = None

    event = asyncio.run(ConektaEventParser().parse(payload))
    assert event.is_actionable
    assert event.order_reference == "A__10__1700000000000"
    assert event.payer.email == "not provided"


def test_mercadopago_non_string_payer_fields_do_not_block_credit():
    payment = mercadopago_payment("123", "A__10__1700000000000")
    payment["payer"] = {"first_name": 42, "last_name": {"x": 1}, "email": "luis@example.com", "phone": {"number": 12345678}}
    lookup = StubLookup({"123": payment})

    event = asyncio.run(MercadoPagoEventParser(lookup).parse(mercadopago_notification("123")))

    assert event.is_actionable
    assert event.payer.phone == "12345678"
    assert event.payer.name == "42"


def test_mercadopago_missing_payer_block():
    payment = mercadopago_payment("123", "A__10__1700000000000")
    payment["payer"] = None
    event = asyncio.run(MercadoPagoEventParser(StubLookup({"123": payment})).parse(mercadopago_notification("123")))
    assert event.is_actionable
    assert event.payer.name == ""
