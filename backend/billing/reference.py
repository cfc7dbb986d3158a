"""
Order Reference Codec
=====================
Packs {account id, credits purchased, creation time} into the single opaque
string a processor carries back to us in its metadata / external_reference
field:

    "<account_id>__<credits>__<created_at_epoch_millis>"

No escaping is attempted. Account identifiers must never contain the
delimiter; `encode` refuses them rather than producing an ambiguous string.
"""

import time
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import Optional

from billing.errors import ReferenceDecodeError

DELIMITER = "__"


@dataclass(frozen=True)
class OrderReference:
    account_id: str
    credits_purchased: int
    created_at_ms: Optional[int] = None


def _now_ms() -> int:
    return int(time.time() * 1000)


def encode(account_id: str, credits_purchased: int, now_ms: Optional[int] = None) -> str:
    if not account_id or DELIMITER in account_id:
        raise ValueError(f"account id must be non-empty and must not contain {DELIMITER!r}")
    if isinstance(credits_purchased, bool) or not isinstance(credits_purchased, int) or credits_purchased <= 0:
        raise ValueError("credits_purchased must be a positive integer")
    stamp = _now_ms() if now_ms is None else now_ms
    return f"{account_id}{DELIMITER}{credits_purchased}{DELIMITER}{stamp}"


def _parse_credits(raw: str) -> Optional[int]:
    try:
        value = Decimal(raw.strip())
    except (InvalidOperation, AttributeError):
        return None
    if not value.is_finite() or value <= 0 or value != value.to_integral_value():
        return None
    return int(value)


def decode(reference: Optional[str], max_age: Optional[timedelta] = None, now_ms: Optional[int] = None) -> OrderReference:
    """
    Decode an Order Reference.

    The embedded timestamp is informational unless `max_age` is given, in
    which case references older than it (or without a readable timestamp)
    are rejected.

    Raises:
        ReferenceDecodeError: reference empty, fewer than 2 parts, empty
            account id, or credits not a positive whole number.
    """
    if not reference:
        raise ReferenceDecodeError("Order reference is empty", reference=reference)

    parts = reference.split(DELIMITER)
    if len(parts) < 2:
        raise ReferenceDecodeError("Order reference has fewer than 2 parts", reference=reference)

    account_id = parts[0]
    if not account_id:
        raise ReferenceDecodeError("Order reference has an empty account id", reference=reference)

    credits = _parse_credits(parts[1])
    if credits is None:
        raise ReferenceDecodeError(f"Order reference credits are not a positive number: {parts[1]!r}", reference=reference)

    created_at_ms = None
    if len(parts) > 2 and parts[2].isdigit():
        created_at_ms = int(parts[2])

    if max_age is not None:
        if created_at_ms is None:
            raise ReferenceDecodeError("Order reference has no timestamp to check its age", reference=reference)
        current = _now_ms() if now_ms is None else now_ms
        if current - created_at_ms > max_age.total_seconds() * 1000:
            raise ReferenceDecodeError("Order reference is older than the allowed maximum age", reference=reference)

    return OrderReference(account_id=account_id, credits_purchased=credits, created_at_ms=created_at_ms)
