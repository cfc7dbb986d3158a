"""
Database Module
===============
PostgreSQL persistence for credit reconciliation.

This module provides:
- AsyncPG connection pool with startup migrations
- PostgresCreditStore: accounts + transaction receipts
- PostgresAlertRepository: operator alerts

The reconcile unit of work is one transaction. The receipt insert
(`ON CONFLICT DO NOTHING`) is the linearization point: the primary key on
(processor, order_id) lets exactly one of N concurrent deliveries insert,
and the others observe the existing row and become no-ops.

pip install asyncpg
"""

import asyncio
import json
import uuid
from contextlib import asynccontextmanager
from typing import List, Optional, Tuple

import asyncpg
import structlog

from billing.alerts import IAlertRepository
from billing.errors import AccountNotFoundError, TransientStoreError
from billing.models import CustomerInfo, OperatorAlert, Processor, TransactionReceipt
from billing.store import ICreditStore
from config import config

logger = structlog.get_logger().bind(component="database")

# Connection loss, pool exhaustion, timeouts and serialization conflicts are
# all safe to retry from scratch.
TRANSIENT_ERRORS = (
    asyncpg.PostgresConnectionError,
    asyncpg.InterfaceError,
    asyncpg.CannotConnectNowError,
    asyncpg.TooManyConnectionsError,
    asyncpg.QueryCanceledError,
    asyncpg.DeadlockDetectedError,
    asyncpg.SerializationError,
    OSError,
    asyncio.TimeoutError,
)


# =============================================================================
# CONNECTION POOL
# =============================================================================

class Database:
    """Async database connection pool manager"""

    _pool: Optional[asyncpg.Pool] = None
    _initialized: bool = False

    @classmethod
    async def initialize(cls):
        """Initialize the connection pool"""
        if cls._initialized:
            return

        try:
            cls._pool = await asyncpg.create_pool(
                config.DATABASE_URL,
                min_size=config.DB_MIN_POOL_SIZE,
                max_size=config.DB_MAX_POOL_SIZE,
                command_timeout=config.DB_COMMAND_TIMEOUT,
            )
            cls._initialized = True
            logger.info("database_pool_initialized")

            await cls._run_migrations()

        except Exception as e:
            logger.error("database_init_failed", error=str(e))
            raise

    @classmethod
    async def close(cls):
        """Close the connection pool"""
        if cls._pool:
            await cls._pool.close()
            cls._pool = None
            cls._initialized = False
            logger.info("database_pool_closed")

    @classmethod
    @asynccontextmanager
    async def acquire(cls):
        """Acquire a connection, mapping connectivity failures to TransientStoreError"""
        try:
            if not cls._pool:
                await cls.initialize()
            async with cls._pool.acquire() as conn:
                yield conn
        except asyncpg.DataError:
            raise
        except TRANSIENT_ERRORS as e:
            logger.error("database_unavailable", error=str(e), error_type=type(e).__name__)
            raise TransientStoreError("Data store unavailable", original_error=e) from e

    @classmethod
    async def _run_migrations(cls):
        """Run database migrations"""
        migrations = [
            # Accounts (owned by the account service; credits mutated here only by reconcile)
            """
            CREATE TABLE IF NOT EXISTS accounts (
                account_id TEXT PRIMARY KEY,
                credits INTEGER NOT NULL DEFAULT 0 CHECK (credits >= 0),
                created_at TIMESTAMPTZ DEFAULT NOW(),
                updated_at TIMESTAMPTZ DEFAULT NOW()
            )
            """,

            # Append-only receipts, one per processor payment
            """
            CREATE TABLE IF NOT EXISTS transaction_receipts (
                processor VARCHAR(20) NOT NULL,
                order_id TEXT NOT NULL,
                account_id TEXT NOT NULL REFERENCES accounts(account_id),
                credits_purchased INTEGER NOT NULL CHECK (credits_purchased > 0),
                amount NUMERIC(12, 2) NOT NULL,
                currency VARCHAR(3) NOT NULL,
                payment_method VARCHAR(50) NOT NULL,
                status VARCHAR(20) NOT NULL,
                customer_info JSONB NOT NULL DEFAULT '{}',
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                PRIMARY KEY (processor, order_id)
            )
            """,

            # Operator alerts
            """
            CREATE TABLE IF NOT EXISTS operator_alerts (
                alert_id UUID PRIMARY KEY,
                alert_type VARCHAR(50) NOT NULL,
                severity VARCHAR(10) NOT NULL,
                processor VARCHAR(20) NOT NULL,
                payment_id TEXT NOT NULL,
                correlation_id TEXT NOT NULL,
                message TEXT NOT NULL,
                metadata JSONB NOT NULL DEFAULT '{}',
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                acknowledged BOOLEAN NOT NULL DEFAULT FALSE,
                acknowledged_at TIMESTAMPTZ
            )
            """,

            "CREATE INDEX IF NOT EXISTS idx_receipts_account ON transaction_receipts(account_id, created_at DESC)",
            "CREATE INDEX IF NOT EXISTS idx_alerts_open ON operator_alerts(created_at DESC) WHERE NOT acknowledged",
            "CREATE UNIQUE INDEX IF NOT EXISTS uq_alerts_payment ON operator_alerts(processor, payment_id, alert_type)",
        ]

        async with cls.acquire() as conn:
            for migration in migrations:
                try:
                    await conn.execute(migration)
                except asyncpg.DuplicateObjectError as e:
                    logger.warning("migration_warning", error=str(e))

        logger.info("database_migrations_complete")


# =============================================================================
# CREDIT STORE
# =============================================================================

def _receipt_from_row(row) -> TransactionReceipt:
    customer_info = row["customer_info"]
    if isinstance(customer_info, str):
        customer_info = json.loads(customer_info)
    return TransactionReceipt(
        processor=Processor(row["processor"]),
        order_id=row["order_id"],
        account_id=row["account_id"],
        credits_purchased=row["credits_purchased"],
        amount=row["amount"],
        currency=row["currency"],
        payment_method=row["payment_method"],
        status=row["status"],
        customer_info=CustomerInfo(**customer_info),
        created_at=row["created_at"],
    )


class PostgresCreditStore(ICreditStore):

    async def get_receipt(self, processor: Processor, order_id: str) -> Optional[TransactionReceipt]:
        async with Database.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM transaction_receipts WHERE processor = $1 AND order_id = $2",
                processor.value,
                order_id,
            )
        return _receipt_from_row(row) if row else None

    async def reconcile(self, receipt: TransactionReceipt) -> Tuple[bool, Optional[int]]:
        async with Database.acquire() as conn:
            try:
                async with conn.transaction():
                    inserted = await conn.fetchval(
                        """
                        INSERT INTO transaction_receipts
                        (processor, order_id, account_id, credits_purchased, amount, currency,
                         payment_method, status, customer_info, created_at)
                        VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                        ON CONFLICT (processor, order_id) DO NOTHING
                        RETURNING order_id
                        """,
                        receipt.processor.value,
                        receipt.order_id,
                        receipt.account_id,
                        receipt.credits_purchased,
                        receipt.amount,
                        receipt.currency,
                        receipt.payment_method,
                        receipt.status,
                        receipt.customer_info.model_dump_json(),
                        receipt.created_at,
                    )
                    if inserted is None:
                        balance = await conn.fetchval(
                            """
                            SELECT a.credits FROM transaction_receipts r
                            JOIN accounts a ON a.account_id = r.account_id
                            WHERE r.processor = $1 AND r.order_id = $2
                            """,
                            receipt.processor.value,
                            receipt.order_id,
                        )
                        return False, balance

                    balance = await conn.fetchval(
                        """
                        UPDATE accounts
                        SET credits = credits + $1, updated_at = NOW()
                        WHERE account_id = $2
                        RETURNING credits
                        """,
                        receipt.credits_purchased,
                        receipt.account_id,
                    )
                    if balance is None:
                        raise AccountNotFoundError(receipt.account_id)
                    return True, balance
            except asyncpg.ForeignKeyViolationError as e:
                # The receipt FK rejects unknown accounts before the UPDATE runs
                raise AccountNotFoundError(receipt.account_id) from e

    async def get_balance(self, account_id: str) -> Optional[int]:
        async with Database.acquire() as conn:
            return await conn.fetchval("SELECT credits FROM accounts WHERE account_id = $1", account_id)

    async def list_receipts(self, account_id: str, limit: int = 50) -> List[TransactionReceipt]:
        async with Database.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM transaction_receipts
                WHERE account_id = $1
                ORDER BY created_at DESC
                LIMIT $2
                """,
                account_id,
                limit,
            )
        return [_receipt_from_row(row) for row in rows]

    async def create_account(self, account_id: str, credits: int = 0) -> None:
        async with Database.acquire() as conn:
            await conn.execute(
                "INSERT INTO accounts (account_id, credits) VALUES ($1, $2) ON CONFLICT (account_id) DO NOTHING",
                account_id,
                credits,
            )

    async def ping(self) -> bool:
        try:
            async with Database.acquire() as conn:
                return await conn.fetchval("SELECT 1") == 1
        except TransientStoreError:
            return False


# =============================================================================
# OPERATOR ALERTS
# =============================================================================

def _alert_from_row(row) -> OperatorAlert:
    metadata = row["metadata"]
    if isinstance(metadata, str):
        metadata = json.loads(metadata)
    return OperatorAlert(
        alert_id=str(row["alert_id"]),
        alert_type=row["alert_type"],
        severity=row["severity"],
        processor=Processor(row["processor"]),
        payment_id=row["payment_id"],
        correlation_id=row["correlation_id"],
        message=row["message"],
        metadata=metadata,
        created_at=row["created_at"],
        acknowledged=row["acknowledged"],
        acknowledged_at=row["acknowledged_at"],
    )


class PostgresAlertRepository(IAlertRepository):

    async def save(self, alert: OperatorAlert) -> Tuple[OperatorAlert, bool]:
        async with Database.acquire() as conn:
            inserted = await conn.fetchval(
                """
                INSERT INTO operator_alerts
                (alert_id, alert_type, severity, processor, payment_id, correlation_id,
                 message, metadata, created_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                ON CONFLICT (processor, payment_id, alert_type) DO NOTHING
                RETURNING alert_id
                """,
                alert.alert_id,
                alert.alert_type,
                alert.severity.value,
                alert.processor.value,
                alert.payment_id,
                alert.correlation_id,
                alert.message,
                json.dumps(alert.metadata),
                alert.created_at,
            )
            if inserted is not None:
                return alert, True
            row = await conn.fetchrow(
                "SELECT * FROM operator_alerts WHERE processor = $1 AND payment_id = $2 AND alert_type = $3",
                alert.processor.value,
                alert.payment_id,
                alert.alert_type,
            )
        return _alert_from_row(row), False

    async def list_alerts(self, include_acknowledged: bool = False, limit: int = 100) -> List[OperatorAlert]:
        where_clause = "" if include_acknowledged else "WHERE NOT acknowledged"
        async with Database.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT * FROM operator_alerts
                {where_clause}
                ORDER BY created_at DESC
                LIMIT $1
                """,
                limit,
            )
        return [_alert_from_row(row) for row in rows]

    async def acknowledge(self, alert_id: str) -> Optional[OperatorAlert]:
        try:
            alert_uuid = uuid.UUID(alert_id)
        except ValueError:
            return None
        async with Database.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE operator_alerts
                SET acknowledged = TRUE, acknowledged_at = COALESCE(acknowledged_at, NOW())
                WHERE alert_id = $1
                RETURNING *
                """,
                alert_uuid,
            )
        return _alert_from_row(row) if row else None


# =============================================================================
# INITIALIZATION
# =============================================================================

async def init_database():
    """Initialize database on app startup"""
    await Database.initialize()


async def close_database():
    """Close database on app shutdown"""
    await Database.close()
