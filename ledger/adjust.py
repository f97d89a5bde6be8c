"""Balance adjustment engine.

Every change to ``accounts.current_balance`` goes through this module. A
mutation describes the record before and after the change as snapshots;
the engine reverses what the old values contributed, applies what the new
values contribute and writes the resulting deltas inside the caller's
transaction.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import TYPE_CHECKING, Any, NamedTuple

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import bindparam, text

from ledger.balance import quantize_money
from ledger.errors import AdjustmentError, InvalidInputError
from ledger.signs import (
    CURRENT_BALANCE,
    DIRECT_EXPENSE,
    DIRECT_INCOME,
    DIRECT_PURCHASE,
    DIRECT_SALE,
    PAID,
    PAYABLE,
    RECEIVABLE,
    Money,
    resolve,
    to_decimal,
)

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from sqlalchemy.engine import Connection

logger = logging.getLogger(__name__)


class Snapshot(BaseModel):
    """Sign-relevant state of one record at one point in its lifecycle.

    ``counter_account_id`` is only used by transfers (the receiving leg);
    ``fields`` carries category specific inputs such as ``payment_type``.
    """

    model_config = ConfigDict(frozen=True)

    amount: Money
    status: str = PAID
    account_id: int | None = None
    counter_account_id: int | None = None
    fields: dict[str, Any] = Field(default_factory=dict)

    def is_posted(self) -> bool:
        return self.status == PAID and self.account_id is not None

    def affected_accounts(self) -> tuple[int, ...]:
        accounts = (self.account_id, self.counter_account_id)
        return tuple(a for a in accounts if a is not None)

    def record(self) -> dict[str, Any]:
        return {
            "amount": self.amount,
            "status": self.status,
            "account_id": self.account_id,
            "from_account_id": self.account_id,
            "to_account_id": self.counter_account_id,
            "allocation_count": 0,
            **self.fields,
        }


class Adjustment(NamedTuple):
    account_id: int
    delta: Decimal
    reason: str


def net_adjustments(adjustments: Iterable[Adjustment]) -> list[Adjustment]:
    """Sum deltas per account (first-seen order) and drop zeros."""
    totals: dict[int, Decimal] = {}
    for adjustment in adjustments:
        totals[adjustment.account_id] = (
            totals.get(adjustment.account_id, Decimal(0)) + adjustment.delta
        )
    return [
        Adjustment(account_id, delta, "net")
        for account_id, delta in totals.items()
        if delta != 0
    ]


def compute_adjustments(
    category: str,
    old: Snapshot | None,
    new: Snapshot | None,
    *,
    net: bool = True,
    strict: bool = False,
) -> list[Adjustment]:
    """Compute balance deltas for a record moving from ``old`` to ``new``.

    Args:
        category: Ledger category of the record
        old: State before the mutation; ``None`` on create
        new: State after the mutation; ``None`` on delete
        net: Merge deltas on the same account into one
        strict: Reject unknown allocation types

    Returns:
        Adjustments in application order
    """
    adjustments: list[Adjustment] = []

    if old is not None and old.is_posted():
        record = old.record()
        for account_id in old.affected_accounts():
            contribution = resolve(category, record, account_id, strict=strict)
            adjustments.append(Adjustment(account_id, -contribution, "reversal"))

    if new is not None and new.is_posted():
        record = new.record()
        for account_id in new.affected_accounts():
            contribution = resolve(category, record, account_id, strict=strict)
            adjustments.append(Adjustment(account_id, contribution, "application"))

    if net:
        return net_adjustments(adjustments)
    return adjustments


_IMPACT_SIGNS = {
    "income": 1,
    "sale": 1,
    "expense": -1,
    "purchase": -1,
    DIRECT_INCOME: 1,
    DIRECT_SALE: 1,
    DIRECT_EXPENSE: -1,
    DIRECT_PURCHASE: -1,
}


def payment_adjustment_impact(
    category: str, payment_amount_delta: Any, *, balance_type: str | None = None  # noqa: ANN401
) -> Decimal:
    """Bank impact of a settlement payment whose amount changed.

    Income and sale deltas pass through; expense and purchase deltas are
    negated. Standing-balance allocations follow their balance type.
    """
    delta = Decimal(str(payment_amount_delta))
    if category == CURRENT_BALANCE:
        if balance_type == RECEIVABLE:
            return delta
        if balance_type == PAYABLE:
            return -delta
        msg = f"current-balance allocation needs balance_type, got {balance_type!r}"
        raise InvalidInputError(msg)
    try:
        return delta * _IMPACT_SIGNS[category]
    except KeyError:
        msg = f"Unsupported payment category: {category}"
        raise InvalidInputError(msg) from None


def apply_adjustments(conn: Connection, adjustments: Sequence[Adjustment]) -> None:
    """Apply deltas to persisted balances inside the caller's transaction.

    Locks the affected rows in id order (PostgreSQL) and verifies every
    account before updating any of them.

    Raises:
        AdjustmentError: If an account is missing or deleted
    """
    pending = [a for a in adjustments if a.delta != 0]
    if not pending:
        return

    account_ids = sorted({a.account_id for a in pending})
    lock = " FOR UPDATE" if conn.dialect.name == "postgresql" else ""
    stmt = text(
        "SELECT id, current_balance FROM accounts "
        "WHERE id IN :ids AND deleted_at IS NULL "
        f"ORDER BY id{lock}"
    ).bindparams(bindparam("ids", expanding=True))
    found = {
        row.id: to_decimal(row.current_balance)
        for row in conn.execute(stmt, {"ids": account_ids})
    }

    missing = [account_id for account_id in account_ids if account_id not in found]
    if missing:
        logger.error(
            "Balance adjustment aborted: accounts=%s missing or deleted "
            "operation=apply_adjustments deltas=%s",
            missing,
            [(a.account_id, str(a.delta), a.reason) for a in pending],
        )
        msg = f"Cannot adjust balance of missing or deleted account(s): {missing}"
        raise AdjustmentError(msg)

    for adjustment in sorted(pending, key=lambda a: a.account_id):
        if conn.dialect.name == "postgresql":
            result = conn.execute(
                text("""
                    UPDATE accounts
                    SET current_balance = current_balance + :delta
                    WHERE id = :id AND deleted_at IS NULL
                """),
                {"delta": adjustment.delta, "id": adjustment.account_id},
            )
        else:
            # SQLite adds NUMERIC columns as binary floats; write the exact sum
            balance = quantize_money(found[adjustment.account_id] + adjustment.delta)
            found[adjustment.account_id] = balance
            result = conn.execute(
                text("""
                    UPDATE accounts
                    SET current_balance = :balance
                    WHERE id = :id AND deleted_at IS NULL
                """),
                {"balance": balance, "id": adjustment.account_id},
            )
        if result.rowcount != 1:
            msg = f"Balance update touched {result.rowcount} rows for account {adjustment.account_id}"
            raise AdjustmentError(msg)
        logger.debug(
            "Adjusted account %s by %s (%s)",
            adjustment.account_id,
            adjustment.delta,
            adjustment.reason,
        )


def apply_balance_adjustment(conn: Connection, account_id: int, delta: Any) -> None:  # noqa: ANN401
    apply_adjustments(conn, [Adjustment(account_id, Decimal(str(delta)), "manual")])
