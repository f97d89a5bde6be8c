"""Sign resolution: which way each ledger category moves a bank balance.

Every balance-affecting code path (statement reads, balance adjustments and
the reconciliation audit) goes through :func:`resolve`, so the sign table
below is the only place the conventions are written down.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from decimal import Decimal
from typing import Annotated, Any

from pydantic import BeforeValidator

from ledger.errors import InvalidInputError, UnknownAllocationTypeError

logger = logging.getLogger(__name__)

TRANSFER = "transfer"
DIRECT_INCOME = "direct-income"
DIRECT_EXPENSE = "direct-expense"
DIRECT_SALE = "direct-sale"
DIRECT_PURCHASE = "direct-purchase"
STANDALONE_PAYMENT = "standalone-payment"
PAYMENT_ALLOCATION = "payment-allocation"

# Canonical order; also the tie-break rank for events sharing date and created_at
ALL_CATEGORIES = (
    TRANSFER,
    DIRECT_INCOME,
    DIRECT_EXPENSE,
    DIRECT_SALE,
    DIRECT_PURCHASE,
    STANDALONE_PAYMENT,
    PAYMENT_ALLOCATION,
)
DIRECT_CATEGORIES = (DIRECT_INCOME, DIRECT_EXPENSE, DIRECT_SALE, DIRECT_PURCHASE)
PAYMENT_CATEGORIES = (STANDALONE_PAYMENT, PAYMENT_ALLOCATION)

PAID = "paid"
PENDING = "pending"
STATUSES = (PENDING, PAID)

RECEIPT = "receipt"
PAYMENT = "payment"
PAYMENT_TYPES = (PAYMENT, RECEIPT)

CURRENT_BALANCE = "current-balance"
RECEIVABLE = "receivable"
PAYABLE = "payable"
ALLOCATION_TYPES = ("sale", "purchase", "expense", "income", CURRENT_BALANCE)

_DIRECT_SIGNS = {
    DIRECT_INCOME: 1,
    DIRECT_EXPENSE: -1,
    DIRECT_SALE: 1,
    DIRECT_PURCHASE: -1,
}
_ALLOCATION_SIGNS = {"sale": 1, "income": 1, "purchase": -1, "expense": -1}
_BALANCE_TYPE_SIGNS = {RECEIVABLE: 1, PAYABLE: -1}
_PAYMENT_TYPE_SIGNS = {RECEIPT: 1, PAYMENT: -1}

ZERO = Decimal(0)


def to_decimal(value: Any) -> Decimal:  # noqa: ANN401
    """Convert DB/JSON numerics to Decimal without float artefacts."""
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


Money = Annotated[Decimal, BeforeValidator(to_decimal)]


def _payment_type_sign(payment_type: Any) -> int:  # noqa: ANN401
    try:
        return _PAYMENT_TYPE_SIGNS[payment_type]
    except KeyError:
        msg = f"Unsupported payment type: {payment_type!r}"
        raise InvalidInputError(msg) from None


def _allocation_sign(record: Mapping[str, Any], *, strict: bool) -> int:
    allocation_type = record.get("allocation_type")
    if allocation_type in _ALLOCATION_SIGNS:
        return _ALLOCATION_SIGNS[allocation_type]
    if allocation_type == CURRENT_BALANCE:
        balance_type = record.get("balance_type")
        if balance_type not in _BALANCE_TYPE_SIGNS:
            msg = f"current-balance allocation needs balance_type, got {balance_type!r}"
            raise InvalidInputError(msg)
        return _BALANCE_TYPE_SIGNS[balance_type]

    if strict:
        msg = f"Unknown allocation type: {allocation_type!r}"
        raise UnknownAllocationTypeError(msg)
    logger.warning(
        "Unknown allocation type %r on allocation %s; using payment type %r",
        allocation_type,
        record.get("id"),
        record.get("payment_type"),
    )
    return _payment_type_sign(record.get("payment_type"))


def resolve(
    category: str,
    record: Mapping[str, Any],
    perspective_account_id: int,
    *,
    strict: bool = False,
) -> Decimal:
    """Return the signed contribution of ``record`` to one account's balance.

    Args:
        category: One of ``ALL_CATEGORIES``
        record: Sign-relevant fields; ``amount`` is always a magnitude
        perspective_account_id: Account whose balance is being computed
        strict: Reject unknown allocation types instead of falling back to
            the payment type sign

    Returns:
        Signed amount; zero when the record does not touch the account
    """
    amount = abs(to_decimal(record.get("amount")))

    if category == TRANSFER:
        if record.get("from_account_id") == perspective_account_id:
            return -amount
        if record.get("to_account_id") == perspective_account_id:
            return amount
        return ZERO

    if category not in ALL_CATEGORIES:
        msg = f"Unsupported ledger category: {category}"
        raise InvalidInputError(msg)

    account_id = record.get("account_id")
    if account_id is not None and account_id != perspective_account_id:
        return ZERO

    if category in _DIRECT_SIGNS:
        if record.get("status") != PAID or int(record.get("allocation_count") or 0):
            return ZERO
        return amount * _DIRECT_SIGNS[category]

    if category == STANDALONE_PAYMENT:
        return amount * _payment_type_sign(record.get("payment_type"))

    return amount * _allocation_sign(record, strict=strict)
