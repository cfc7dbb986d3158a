import asyncio
from decimal import Decimal

import asyncpg
import pytest

from billing.errors import AccountNotFoundError, TransientStoreError
from billing.models import OperatorAlert, Processor, TransactionReceipt
from database import Database, PostgresAlertRepository, PostgresCreditStore


class FakeTransaction:
    def __init__(self, conn):
        self.conn = conn

    async def __aenter__(self):
        self.conn.transactions.append("begin")
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.conn.transactions.append("rollback" if exc_type else "commit")
        return False


class FakeConnection:
    """Answers fetchval/fetchrow from a queue of scripted results, in call order."""

    def __init__(self, results):
        self.results = list(results)
        self.queries = []
        self.transactions = []

    def transaction(self):
        return FakeTransaction(self)

    async def _next(self, query, args):
        self.queries.append((" ".join(query.split()), args))
        result = self.results.pop(0)
        if isinstance(result, BaseException):
            raise result
        return result

    async def fetchval(self, query, *args):
        return await self._next(query, args)

    async def fetchrow(self, query, *args):
        return await self._next(query, args)


class FakeAcquire:
    def __init__(self, conn):
        self.conn = conn

    async def __aenter__(self):
        return self.conn

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakePool:
    def __init__(self, conn):
        self.conn = conn

    def acquire(self):
        return FakeAcquire(self.conn)


@pytest.fixture
def fake_db(monkeypatch):
    def install(*results):
        conn = FakeConnection(results)
        monkeypatch.setattr(Database, "_pool", FakePool(conn))
        return conn

    return install


def receipt(account_id="A"):
    return TransactionReceipt(
        processor=Processor.MERCADOPAGO,
        order_id="pay_123",
        account_id=account_id,
        credits_purchased=10,
        amount=Decimal("754.00"),
        currency="MXN",
        payment_method="bank_transfer",
        status="approved",
    )


def test_first_delivery_inserts_receipt_and_credits(fake_db):
    conn = fake_db("pay_123", 15)

    created, balance = asyncio.run(PostgresCreditStore().reconcile(receipt()))

    assert (created, balance) == (True, 15)
    assert conn.transactions == ["begin", "commit"]
    insert, update = conn.queries
    assert "ON CONFLICT (processor, order_id) DO NOTHING" in insert[0]
    assert insert[1][:4] == ("mercadopago", "pay_123", "A", 10)
    assert update[0].startswith("UPDATE accounts")
    assert update[1] == (10, "A")


def test_existing_receipt_skips_credit(fake_db):
    conn = fake_db(None, 15)

    created, balance = asyncio.run(PostgresCreditStore().reconcile(receipt()))

    assert (created, balance) == (False, 15)
    assert len(conn.queries) == 2
    assert not any(q.startswith("UPDATE accounts") for q, _ in conn.queries)
    assert conn.transactions == ["begin", "commit"]


def test_foreign_key_violation_is_account_not_found(fake_db):
    conn = fake_db(asyncpg.ForeignKeyViolationError("violates foreign key constraint"))

    with pytest.raises(AccountNotFoundError) as exc_info:
        asyncio.run(PostgresCreditStore().reconcile(receipt("ghost")))

    assert exc_info.value.account_id == "ghost"
    assert conn.transactions == ["begin", "rollback"]


def test_missing_account_on_update_rolls_back(fake_db):
    conn = fake_db("pay_123", None)

    with pytest.raises(AccountNotFoundError):
        asyncio.run(PostgresCreditStore().reconcile(receipt("ghost")))

    assert conn.transactions == ["begin", "rollback"]


def test_connection_loss_is_transient(fake_db):
    fake_db(asyncpg.PostgresConnectionError("connection lost"))

    with pytest.raises(TransientStoreError):
        asyncio.run(PostgresCreditStore().reconcile(receipt()))


def test_alert_save_reports_existing_alert(fake_db):
    alert = OperatorAlert(
        alert_type="account_not_found",
        processor=Processor.CONEKTA,
        payment_id="ord_1",
        correlation_id="corr-2",
        message="Paid order could not be credited",
    )
    existing = {
        "alert_id": "6f1c2b0e-8d7a-4c1e-9a53-2b1f6f1d9c00",
        "alert_type": "account_not_found",
        "severity": "critical",
        "processor": "conekta",
        "payment_id": "ord_1",
        "correlation_id": "corr-1",
        "message": "Paid order could not be credited",
        "metadata": "{}",
        "created_at": alert.created_at,
        "acknowledged": False,
        "acknowledged_at": None,
    }
    conn = fake_db(None, existing)

    stored, created = asyncio.run(PostgresAlertRepository().save(alert))

    assert created is False
    assert stored.alert_id == existing["alert_id"]
    assert stored.correlation_id == "corr-1"
    assert "ON CONFLICT (processor, payment_id, alert_type) DO NOTHING" in conn.queries[0][0]
