"""Ledger-contributing record variants and the computed statement event."""

from __future__ import annotations

import datetime as dt
from collections.abc import Iterable
from functools import lru_cache
from pathlib import Path
from typing import Any, ClassVar, NamedTuple, cast

import yaml
from pydantic import BaseModel, ConfigDict, field_validator

from ledger.errors import InvalidInputError
from ledger.signs import (
    ALL_CATEGORIES,
    DIRECT_EXPENSE,
    DIRECT_INCOME,
    DIRECT_PURCHASE,
    DIRECT_SALE,
    PAYMENT_ALLOCATION,
    STANDALONE_PAYMENT,
    TRANSFER,
    Money,
    resolve,
)

CATEGORY_RANK = {category: rank for rank, category in enumerate(ALL_CATEGORIES)}


class DocumentSource(NamedTuple):
    """Where a settleable document lives and how its columns are named."""

    kind: str
    category: str
    table: str
    amount_column: str
    date_column: str
    reference_column: str | None
    allocation_column: str


DOCUMENT_SOURCES = {
    "income": DocumentSource(
        "income", DIRECT_INCOME, "incomes", "amount", "date", None, "income_id"
    ),
    "expense": DocumentSource(
        "expense", DIRECT_EXPENSE, "expenses", "amount", "date", None, "expense_id"
    ),
    "sale": DocumentSource(
        "sale",
        DIRECT_SALE,
        "sales",
        "net_receivable",
        "invoice_date",
        "invoice_number",
        "sale_id",
    ),
    "purchase": DocumentSource(
        "purchase",
        DIRECT_PURCHASE,
        "purchases",
        "net_payable",
        "invoice_date",
        "invoice_number",
        "purchase_id",
    ),
}
SOURCES_BY_CATEGORY = {source.category: source for source in DOCUMENT_SOURCES.values()}


@lru_cache(maxsize=1)
def _load_category_catalog() -> dict[str, Any]:
    """Load category labels and filter aliases from YAML (cached)."""
    catalog_path = Path(__file__).parent / "categories.yaml"
    result = yaml.safe_load(catalog_path.read_text(encoding="utf-8"))
    return cast(dict[str, Any], result)


def category_label(category: str) -> str:
    categories = cast(dict[str, Any], _load_category_catalog()["categories"])
    entry = categories.get(category) or {}
    return cast(str, entry.get("label", category))


def _reference_prefix(category: str) -> str:
    categories = cast(dict[str, Any], _load_category_catalog()["categories"])
    entry = categories.get(category) or {}
    return cast(str, entry.get("reference_prefix", "TXN"))


def expand_category_filter(categories: Iterable[str] | None) -> tuple[str, ...]:
    """Resolve category names and aliases to canonical categories.

    Returns all categories when the filter is empty. Order follows
    ``ALL_CATEGORIES`` regardless of input order.

    Raises:
        InvalidInputError: If a name is neither a category nor an alias
    """
    if not categories:
        return ALL_CATEGORIES

    aliases = cast(dict[str, list[str]], _load_category_catalog()["aliases"])
    selected: set[str] = set()
    for raw in categories:
        name = raw.strip().lower()
        if name in ("", "all"):
            return ALL_CATEGORIES
        if name in CATEGORY_RANK:
            selected.add(name)
        elif name in aliases:
            selected.update(aliases[name])
        else:
            msg = f"Unsupported category filter: {raw}"
            raise InvalidInputError(msg)
    return tuple(c for c in ALL_CATEGORIES if c in selected)


def _as_utc(value: dt.datetime) -> dt.datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=dt.UTC)


class LedgerEvent(BaseModel):
    """One statement line before running balances, signed for one account."""

    model_config = ConfigDict(frozen=True)

    category: str
    id: int
    date: dt.date
    created_at: dt.datetime
    reference: str
    description: str
    amount: Money
    counterpart: str | None = None
    origin_id: int | None = None
    origin_type: str | None = None
    payment_id: int | None = None
    payment_reference: str | None = None

    @field_validator("created_at")
    @classmethod
    def _created_at_utc(cls, value: dt.datetime) -> dt.datetime:
        return _as_utc(value)

    @property
    def direction(self) -> str:
        if self.amount > 0:
            return "inflow"
        if self.amount < 0:
            return "outflow"
        return "neutral"

    def sort_key(self) -> tuple[dt.date, dt.datetime, int, int]:
        return (self.date, self.created_at, CATEGORY_RANK[self.category], self.id)


class LedgerRecord(BaseModel):
    """Common interface of every row that can move a bank balance.

    Subclasses declare ``category`` and the fields the sign resolver needs;
    the aggregator only talks to ``signed_amount`` and ``display_fields``.
    """

    model_config = ConfigDict(frozen=True)

    category: ClassVar[str]

    id: int
    date: dt.date
    created_at: dt.datetime
    amount: Money
    reference: str | None = None
    description: str | None = None
    counterpart: str | None = None

    @field_validator("created_at")
    @classmethod
    def _created_at_utc(cls, value: dt.datetime) -> dt.datetime:
        return _as_utc(value)

    def sign_fields(self) -> dict[str, Any]:
        return {"id": self.id, "amount": self.amount}

    def signed_amount(self, perspective_account_id: int, *, strict: bool = False) -> Money:
        return resolve(
            self.category, self.sign_fields(), perspective_account_id, strict=strict
        )

    def display_fields(self) -> dict[str, Any]:
        return {
            "reference": self.reference or f"{_reference_prefix(self.category)}-{self.id}",
            "description": self.description or category_label(self.category),
            "counterpart": self.counterpart,
            "origin_id": self.id,
            "origin_type": self.category,
        }

    def to_event(self, perspective_account_id: int, *, strict: bool = False) -> LedgerEvent:
        return LedgerEvent(
            category=self.category,
            id=self.id,
            date=self.date,
            created_at=self.created_at,
            amount=self.signed_amount(perspective_account_id, strict=strict),
            **self.display_fields(),
        )


class TransferRecord(LedgerRecord):
    category: ClassVar[str] = TRANSFER

    from_account_id: int
    to_account_id: int

    def sign_fields(self) -> dict[str, Any]:
        return {
            **super().sign_fields(),
            "from_account_id": self.from_account_id,
            "to_account_id": self.to_account_id,
        }


class DirectRecord(LedgerRecord):
    account_id: int
    status: str
    allocation_count: int = 0

    def sign_fields(self) -> dict[str, Any]:
        return {
            **super().sign_fields(),
            "account_id": self.account_id,
            "status": self.status,
            "allocation_count": self.allocation_count,
        }


class DirectIncomeRecord(DirectRecord):
    category: ClassVar[str] = DIRECT_INCOME


class DirectExpenseRecord(DirectRecord):
    category: ClassVar[str] = DIRECT_EXPENSE


class DirectSaleRecord(DirectRecord):
    category: ClassVar[str] = DIRECT_SALE


class DirectPurchaseRecord(DirectRecord):
    category: ClassVar[str] = DIRECT_PURCHASE


class StandalonePaymentRecord(LedgerRecord):
    category: ClassVar[str] = STANDALONE_PAYMENT

    account_id: int
    payment_type: str

    def sign_fields(self) -> dict[str, Any]:
        return {
            **super().sign_fields(),
            "account_id": self.account_id,
            "payment_type": self.payment_type,
        }

    def display_fields(self) -> dict[str, Any]:
        fields = super().display_fields()
        fields["payment_id"] = self.id
        fields["payment_reference"] = fields["reference"]
        return fields


class AllocationRecord(LedgerRecord):
    """A payment allocation, dated and booked on its parent payment."""

    category: ClassVar[str] = PAYMENT_ALLOCATION

    account_id: int
    payment_id: int
    payment_reference: str | None = None
    payment_type: str | None = None
    allocation_type: str
    balance_type: str | None = None
    origin_id: int | None = None

    def sign_fields(self) -> dict[str, Any]:
        return {
            **super().sign_fields(),
            "account_id": self.account_id,
            "payment_type": self.payment_type,
            "allocation_type": self.allocation_type,
            "balance_type": self.balance_type,
        }

    def display_fields(self) -> dict[str, Any]:
        reference = self.payment_reference or f"PY-{self.payment_id}"
        return {
            "reference": reference,
            "description": self.description
            or f"{category_label(self.category)} ({self.allocation_type})",
            "counterpart": self.counterpart,
            "origin_id": self.origin_id,
            "origin_type": self.allocation_type,
            "payment_id": self.payment_id,
            "payment_reference": reference,
        }


RECORD_TYPES: dict[str, type[LedgerRecord]] = {
    record_type.category: record_type
    for record_type in (
        TransferRecord,
        DirectIncomeRecord,
        DirectExpenseRecord,
        DirectSaleRecord,
        DirectPurchaseRecord,
        StandalonePaymentRecord,
        AllocationRecord,
    )
}
