"""Tests for record variants and category filters."""

from __future__ import annotations

from datetime import UTC, date, datetime
from decimal import Decimal

import pytest

from ledger.errors import InvalidInputError
from ledger.events import (
    AllocationRecord,
    DirectExpenseRecord,
    StandalonePaymentRecord,
    TransferRecord,
    category_label,
    expand_category_filter,
)
from ledger.signs import ALL_CATEGORIES


def test_empty_filter_selects_every_category() -> None:
    assert expand_category_filter(None) == ALL_CATEGORIES
    assert expand_category_filter([]) == ALL_CATEGORIES
    assert expand_category_filter(["all"]) == ALL_CATEGORIES


def test_aliases_expand_in_canonical_order() -> None:
    selected = expand_category_filter(["payments", "Expense", "transfer"])
    assert selected == (
        "transfer",
        "direct-expense",
        "standalone-payment",
        "payment-allocation",
    )


def test_unknown_category_filter_rejected() -> None:
    with pytest.raises(InvalidInputError, match="refunds"):
        expand_category_filter(["refunds"])


def test_transfer_record_signs_each_leg() -> None:
    record = TransferRecord(
        id=1,
        date="2024-03-01",
        created_at="2024-03-01T09:00:00",
        amount="75.00",
        from_account_id=1,
        to_account_id=2,
        counterpart="Savings",
    )
    outgoing = record.to_event(1)
    incoming = record.to_event(2)

    assert outgoing.amount == Decimal("-75.00")
    assert outgoing.direction == "outflow"
    assert incoming.amount == Decimal("75.00")
    assert incoming.direction == "inflow"
    # No transfer number stored: reference falls back to the category prefix
    assert outgoing.reference == "BT-1"


def test_naive_created_at_is_read_as_utc() -> None:
    record = DirectExpenseRecord(
        id=4,
        date=date(2024, 1, 2),
        created_at=datetime(2024, 1, 2, 8, 30),  # noqa: DTZ001
        amount=Decimal(20),
        account_id=1,
        status="paid",
    )
    assert record.created_at.tzinfo is UTC
    event = record.to_event(1)
    assert event.description == category_label("direct-expense")
    assert event.origin_type == "direct-expense"


def test_allocation_record_carries_payment_linkage() -> None:
    record = AllocationRecord(
        id=11,
        date="2024-01-10",
        created_at="2024-01-10T10:00:00+00:00",
        amount="500",
        account_id=1,
        payment_id=3,
        payment_reference="PY-2024-0003",
        payment_type="receipt",
        allocation_type="sale",
        origin_id=9,
    )
    event = record.to_event(1)

    assert event.amount == Decimal(500)
    assert event.reference == "PY-2024-0003"
    assert event.payment_id == 3
    assert event.payment_reference == "PY-2024-0003"
    assert event.origin_id == 9
    assert event.origin_type == "sale"


def test_standalone_payment_links_to_itself() -> None:
    record = StandalonePaymentRecord(
        id=5,
        date="2024-02-01",
        created_at="2024-02-01T00:00:00Z",
        amount="30",
        reference="PY-2024-0005",
        account_id=1,
        payment_type="payment",
    )
    event = record.to_event(1)

    assert event.amount == Decimal(-30)
    assert event.payment_id == 5
    assert event.payment_reference == "PY-2024-0005"


def test_sort_key_orders_by_date_then_created_at() -> None:
    early = DirectExpenseRecord(
        id=9,
        date="2024-01-01",
        created_at="2024-01-01T12:00:00Z",
        amount="1",
        account_id=1,
        status="paid",
    ).to_event(1)
    late = TransferRecord(
        id=1,
        date="2024-01-01",
        created_at="2024-01-01T13:00:00Z",
        amount="1",
        from_account_id=2,
        to_account_id=1,
    ).to_event(1)

    assert sorted([late, early], key=lambda e: e.sort_key()) == [early, late]
