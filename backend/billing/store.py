"""
Credit Store
============
Persistence interface for account balances and transaction receipts.

`reconcile` is the one write path and it is all-or-nothing: the receipt
insert and the balance increment commit together, or neither does. The
receipt key (processor, order_id) is the linearization point, so when N
deliveries of one payment race, exactly one of them gets `created=True`.

Implementations:
- InMemoryCreditStore: tests and local development
- database.PostgresCreditStore: production (asyncpg)
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple

from billing.errors import AccountNotFoundError
from billing.models import Processor, TransactionReceipt


class ICreditStore(ABC):
    """Account balance + receipt storage interface"""

    @abstractmethod
    async def get_receipt(self, processor: Processor, order_id: str) -> Optional[TransactionReceipt]:
        pass

    @abstractmethod
    async def reconcile(self, receipt: TransactionReceipt) -> Tuple[bool, Optional[int]]:
        """
        Atomically record `receipt` and credit its account.

        Returns:
            (created, balance). `created` is False when a receipt for the same
            (processor, order_id) already existed; the balance is then left
            untouched and the current balance is returned.

        Raises:
            AccountNotFoundError: nothing was written.
            TransientStoreError: store unreachable; nothing was written.
        """

    @abstractmethod
    async def get_balance(self, account_id: str) -> Optional[int]:
        pass

    @abstractmethod
    async def list_receipts(self, account_id: str, limit: int = 50) -> List[TransactionReceipt]:
        pass

    @abstractmethod
    async def create_account(self, account_id: str, credits: int = 0) -> None:
        pass

    async def ping(self) -> bool:
        return True


class InMemoryCreditStore(ICreditStore):
    """Single-lock store; the lock is the transaction boundary."""

    def __init__(self, accounts: Optional[Dict[str, int]] = None):
        self._balances: Dict[str, int] = dict(accounts or {})
        self._receipts: Dict[Tuple[Processor, str], TransactionReceipt] = {}
        self._lock = asyncio.Lock()

    async def get_receipt(self, processor: Processor, order_id: str) -> Optional[TransactionReceipt]:
        async with self._lock:
            return self._receipts.get((processor, order_id))

    async def reconcile(self, receipt: TransactionReceipt) -> Tuple[bool, Optional[int]]:
        key = (receipt.processor, receipt.order_id)
        async with self._lock:
            if key in self._receipts:
                existing = self._receipts[key]
                return False, self._balances.get(existing.account_id)
            if receipt.account_id not in self._balances:
                raise AccountNotFoundError(receipt.account_id)
            self._receipts[key] = receipt
            self._balances[receipt.account_id] += receipt.credits_purchased
            return True, self._balances[receipt.account_id]

    async def get_balance(self, account_id: str) -> Optional[int]:
        async with self._lock:
            return self._balances.get(account_id)

    async def list_receipts(self, account_id: str, limit: int = 50) -> List[TransactionReceipt]:
        async with self._lock:
            receipts = [r for r in self._receipts.values() if r.account_id == account_id]
        receipts.sort(key=lambda r: r.created_at, reverse=True)
        return receipts[:limit]

    async def create_account(self, account_id: str, credits: int = 0) -> None:
        async with self._lock:
            self._balances.setdefault(account_id, credits)

    @property
    def receipt_count(self) -> int:
        return len(self._receipts)
