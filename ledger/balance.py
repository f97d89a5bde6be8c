"""Running balance and inflow/outflow totals over an ordered event stream."""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict

from ledger.events import LedgerEvent
from ledger.signs import ZERO, Money, to_decimal

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

_CENT = Decimal("0.01")


def quantize_money(value: Any) -> Decimal:  # noqa: ANN401
    """Round to cents, half up."""
    return to_decimal(value).quantize(_CENT, rounding=ROUND_HALF_UP)


class StatementLine(LedgerEvent):
    """A ledger event with the account balance right after it."""

    running_balance: Money


class Summary(BaseModel):
    model_config = ConfigDict(frozen=True)

    opening_balance: Money
    total_inflow: Money
    total_outflow: Money
    closing_balance: Money
    count: int


def summarize(events: Iterable[LedgerEvent]) -> tuple[Decimal, Decimal]:
    """Return (total inflow, total outflow) as positive magnitudes."""
    inflow = ZERO
    outflow = ZERO
    for event in events:
        if event.amount > 0:
            inflow += event.amount
        elif event.amount < 0:
            outflow -= event.amount
    return inflow, outflow


def compute_running_balance(
    opening_balance: Any,  # noqa: ANN401
    events: Sequence[LedgerEvent],
) -> tuple[list[StatementLine], Summary]:
    """Walk ``events`` once, attaching the balance after each one.

    Args:
        opening_balance: Balance before the first event
        events: Events already in canonical statement order

    Returns:
        Tuple of (lines, summary); values stay unrounded
    """
    balance = to_decimal(opening_balance)
    opening = balance
    lines: list[StatementLine] = []
    for event in events:
        balance += event.amount
        lines.append(StatementLine(**event.model_dump(), running_balance=balance))

    inflow, outflow = summarize(events)
    summary = Summary(
        opening_balance=opening,
        total_inflow=inflow,
        total_outflow=outflow,
        closing_balance=balance,
        count=len(lines),
    )
    return lines, summary
