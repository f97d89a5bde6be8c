"""Transaction mutations that move bank balances.

Documents (income, expense, sale, purchase), bank transfers and payments
are written here. None of these functions touch ``current_balance``
directly: each one describes the record before and after the change and
hands the snapshots to :mod:`ledger.adjust`, inside the caller's
transaction.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, ValidationError
from sqlalchemy import text

from ledger.accounts import get_account, lock_accounts
from ledger.adjust import (
    Adjustment,
    Snapshot,
    apply_adjustments,
    compute_adjustments,
    net_adjustments,
    payment_adjustment_impact,
)
from ledger.aggregate import parse_date
from ledger.db import utc_now
from ledger.errors import InvalidInputError, NotFoundError, UnknownAllocationTypeError
from ledger.events import DOCUMENT_SOURCES, DocumentSource
from ledger.signs import (
    ALLOCATION_TYPES,
    CURRENT_BALANCE,
    PAID,
    PAYMENT,
    PAYMENT_ALLOCATION,
    PAYMENT_TYPES,
    PENDING,
    RECEIPT,
    STANDALONE_PAYMENT,
    STATUSES,
    TRANSFER,
    ZERO,
    Money,
    resolve,
    to_decimal,
)

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping
    from datetime import date

    from sqlalchemy.engine import Connection, RowMapping

logger = logging.getLogger(__name__)

UNSETTLED = "unsettled"
DIRECT_PAID = "direct-paid"
ALLOCATION_SETTLED = "allocation-settled"

_UNSET: Any = object()


def _require_date(value: date | str | None, field: str = "date") -> date:
    parsed = parse_date(value, field=field)
    if parsed is None:
        msg = f"{field} is required"
        raise InvalidInputError(msg)
    return parsed


def _positive(value: Any, field: str = "amount") -> Decimal:  # noqa: ANN401
    try:
        amount = to_decimal(value)
    except ArithmeticError:
        msg = f"{field} must be a number, got {value!r}"
        raise InvalidInputError(msg) from None
    if amount <= 0:
        msg = f"{field} must be positive, got {value!r}"
        raise InvalidInputError(msg)
    return amount


def _usable_account(conn: Connection, account_id: int, company_id: int) -> dict[str, Any]:
    account = get_account(conn, account_id, company_id=company_id, for_update=True)
    if not account["is_active"]:
        msg = f"Account {account_id} is inactive"
        raise InvalidInputError(msg)
    return account


def _usable_accounts(
    conn: Connection,
    account_ids: list[int],
    company_id: int,
    *,
    also_lock: tuple[int, ...] = (),
) -> dict[int, dict[str, Any]]:
    # One ordered lock over every account the mutation will touch
    accounts = lock_accounts(conn, [*account_ids, *also_lock], company_id=company_id)
    for account_id in account_ids:
        if not accounts[account_id]["is_active"]:
            msg = f"Account {account_id} is inactive"
            raise InvalidInputError(msg)
    return accounts


def _next_number(
    conn: Connection, table: str, column: str, prefix: str, company_id: int, on: date
) -> str:
    """Next ``PREFIX-YYYY-NNNN`` number; deleted rows keep their numbers."""
    count = conn.execute(
        text(
            f"SELECT COUNT(*) FROM {table} "  # noqa: S608
            f"WHERE company_id = :company_id AND {column} LIKE :pattern"
        ),
        {"company_id": company_id, "pattern": f"{prefix}-{on.year}-%"},
    ).scalar_one()
    return f"{prefix}-{on.year}-{int(count) + 1:04d}"


# Documents


def _source(kind: str) -> DocumentSource:
    try:
        return DOCUMENT_SOURCES[kind]
    except KeyError:
        msg = f"Unsupported document kind: {kind}"
        raise InvalidInputError(msg) from None


def _load_document(
    conn: Connection, source: DocumentSource, document_id: int, company_id: int
) -> RowMapping:
    row = (
        conn.execute(
            text(
                f"SELECT id, company_id, account_id, status, "  # noqa: S608
                f"{source.amount_column} AS amount, remaining_amount "
                f"FROM {source.table} WHERE id = :id AND deleted_at IS NULL"
            ),
            {"id": document_id},
        )
        .mappings()
        .first()
    )
    if row is None or row["company_id"] != company_id:
        msg = f"{source.kind.capitalize()} {document_id} not found"
        raise NotFoundError(msg)
    return row


def _allocated_total(
    conn: Connection, source: DocumentSource, document_id: int
) -> tuple[int, Decimal]:
    row = conn.execute(
        text(
            "SELECT COUNT(*) AS n, COALESCE(SUM(pa.paid_amount), 0) AS total "  # noqa: S608
            "FROM payment_allocations pa "
            "JOIN payments p ON p.id = pa.payment_id "
            f"WHERE pa.{source.allocation_column} = :id AND p.deleted_at IS NULL"
        ),
        {"id": document_id},
    ).one()
    return int(row.n), to_decimal(row.total)


def _state_of(conn: Connection, source: DocumentSource, row: RowMapping) -> str:
    count, _ = _allocated_total(conn, source, row["id"])
    if count:
        return ALLOCATION_SETTLED
    if row["status"] == PAID:
        return DIRECT_PAID
    return UNSETTLED


def settlement_state(
    conn: Connection, kind: str, document_id: int, *, company_id: int
) -> str:
    """Return ``unsettled``, ``direct-paid`` or ``allocation-settled``."""
    source = _source(kind)
    row = _load_document(conn, source, document_id, company_id)
    return _state_of(conn, source, row)


def _document_snapshot(row: Mapping[str, Any]) -> Snapshot:
    return Snapshot(
        amount=row["amount"], status=row["status"], account_id=row["account_id"]
    )


def create_document(
    conn: Connection,
    kind: str,
    *,
    company_id: int,
    amount: Any,  # noqa: ANN401
    date: date | str,
    status: str = PENDING,
    account_id: int | None = None,
    contact_id: int | None = None,
    reference: str | None = None,
    notes: str | None = None,
) -> int:
    """Create an income, expense, sale or purchase.

    A document created as paid with an account is a direct settlement and
    moves that account's balance immediately.

    Returns:
        New document id
    """
    source = _source(kind)
    value = _positive(amount)
    on = _require_date(date)
    if status not in STATUSES:
        msg = f"Unsupported status: {status}"
        raise InvalidInputError(msg)
    if account_id is not None:
        _usable_account(conn, account_id, company_id)

    params: dict[str, Any] = {
        "company_id": company_id,
        "account_id": account_id,
        "contact_id": contact_id,
        "amount": value,
        "remaining_amount": ZERO if status == PAID else value,
        "status": status,
        "date": on.isoformat(),
        "notes": notes,
        "created_at": utc_now(),
    }
    columns = {
        "company_id": ":company_id",
        "account_id": ":account_id",
        "contact_id": ":contact_id",
        source.amount_column: ":amount",
        "remaining_amount": ":remaining_amount",
        "status": ":status",
        source.date_column: ":date",
        "notes": ":notes",
        "created_at": ":created_at",
    }
    if source.reference_column:
        columns[source.reference_column] = ":reference"
        params["reference"] = reference

    document_id = conn.execute(
        text(
            f"INSERT INTO {source.table} ({', '.join(columns)}) "  # noqa: S608
            f"VALUES ({', '.join(columns.values())}) RETURNING id"
        ),
        params,
    ).scalar_one()

    new = Snapshot(amount=value, status=status, account_id=account_id)
    apply_adjustments(conn, compute_adjustments(source.category, None, new))
    logger.info("Created %s %s (%s)", kind, document_id, status)
    return int(document_id)


def update_document(  # noqa: PLR0913
    conn: Connection,
    kind: str,
    document_id: int,
    *,
    company_id: int,
    amount: Any = None,  # noqa: ANN401
    status: str | None = None,
    account_id: int | None = _UNSET,
    date: date | str | None = None,
    notes: str | None = None,
) -> list[Adjustment]:
    """Edit a document and rebalance the affected account(s).

    Documents settled through payment allocations keep their status and
    account; only the amount may change, and never below what has been
    allocated.

    Returns:
        Adjustments that were applied
    """
    source = _source(kind)
    row = _load_document(conn, source, document_id, company_id)
    state = _state_of(conn, source, row)
    new_amount = _positive(amount) if amount is not None else to_decimal(row["amount"])

    if state == ALLOCATION_SETTLED:
        if status is not None and status != row["status"]:
            msg = f"{kind} {document_id} is settled by payment allocations"
            raise InvalidInputError(msg)
        if account_id is not _UNSET and account_id != row["account_id"]:
            msg = f"{kind} {document_id} is settled by payment allocations"
            raise InvalidInputError(msg)
        _, allocated = _allocated_total(conn, source, document_id)
        if new_amount < allocated:
            msg = f"amount {new_amount} is below the allocated {allocated}"
            raise InvalidInputError(msg)
        remaining = new_amount - allocated
        new_status = PAID if remaining <= 0 else PENDING
        new_account = row["account_id"]
        adjustments: list[Adjustment] = []
    else:
        new_status = status if status is not None else row["status"]
        if new_status not in STATUSES:
            msg = f"Unsupported status: {new_status}"
            raise InvalidInputError(msg)
        new_account = row["account_id"] if account_id is _UNSET else account_id
        if new_account is not None and new_account != row["account_id"]:
            previous = () if row["account_id"] is None else (row["account_id"],)
            _usable_accounts(conn, [new_account], company_id, also_lock=previous)
        remaining = ZERO if new_status == PAID else new_amount
        new = Snapshot(amount=new_amount, status=new_status, account_id=new_account)
        adjustments = compute_adjustments(
            source.category, _document_snapshot(row), new
        )

    apply_adjustments(conn, adjustments)

    params: dict[str, Any] = {
        "id": document_id,
        "amount": new_amount,
        "remaining_amount": remaining,
        "status": new_status,
        "account_id": new_account,
    }
    assignments = [
        f"{source.amount_column} = :amount",
        "remaining_amount = :remaining_amount",
        "status = :status",
        "account_id = :account_id",
    ]
    if date is not None:
        assignments.append(f"{source.date_column} = :date")
        params["date"] = _require_date(date).isoformat()
    if notes is not None:
        assignments.append("notes = :notes")
        params["notes"] = notes
    conn.execute(
        text(f"UPDATE {source.table} SET {', '.join(assignments)} WHERE id = :id"),  # noqa: S608
        params,
    )
    return adjustments


def delete_document(
    conn: Connection, kind: str, document_id: int, *, company_id: int
) -> list[Adjustment]:
    """Soft delete a document, reversing a direct settlement.

    Raises:
        InvalidInputError: If payment allocations still point at it
    """
    source = _source(kind)
    row = _load_document(conn, source, document_id, company_id)
    if _state_of(conn, source, row) == ALLOCATION_SETTLED:
        msg = f"{kind} {document_id} has payment allocations; delete the payment first"
        raise InvalidInputError(msg)

    adjustments = compute_adjustments(source.category, _document_snapshot(row), None)
    apply_adjustments(conn, adjustments)
    conn.execute(
        text(f"UPDATE {source.table} SET deleted_at = :now WHERE id = :id"),  # noqa: S608
        {"now": utc_now(), "id": document_id},
    )
    logger.info("Deleted %s %s", kind, document_id)
    return adjustments


# Transfers


def _load_transfer(conn: Connection, transfer_id: int, company_id: int) -> RowMapping:
    row = (
        conn.execute(
            text("""
                SELECT id, company_id, from_account_id, to_account_id, amount
                FROM bank_transfers
                WHERE id = :id AND deleted_at IS NULL
            """),
            {"id": transfer_id},
        )
        .mappings()
        .first()
    )
    if row is None or row["company_id"] != company_id:
        msg = f"Transfer {transfer_id} not found"
        raise NotFoundError(msg)
    return row


def _transfer_snapshot(row: Mapping[str, Any]) -> Snapshot:
    return Snapshot(
        amount=row["amount"],
        account_id=row["from_account_id"],
        counter_account_id=row["to_account_id"],
    )


def create_transfer(
    conn: Connection,
    *,
    company_id: int,
    from_account_id: int,
    to_account_id: int,
    amount: Any,  # noqa: ANN401
    date: date | str,
    description: str | None = None,
    reference_number: str | None = None,
) -> int:
    """Move money between two accounts of the same company.

    Raises:
        InvalidInputError: Same account on both legs, or the source
            account's current balance does not cover the amount
    """
    if from_account_id == to_account_id:
        msg = "Cannot transfer to the same account"
        raise InvalidInputError(msg)
    value = _positive(amount)
    on = _require_date(date)

    accounts = _usable_accounts(conn, [from_account_id, to_account_id], company_id)
    source = accounts[from_account_id]
    if source["current_balance"] < value:
        msg = (
            f"Insufficient balance in account {from_account_id}: "
            f"{source['current_balance']} < {value}"
        )
        raise InvalidInputError(msg)

    transfer_number = _next_number(
        conn, "bank_transfers", "transfer_number", "BT", company_id, on
    )
    transfer_id = conn.execute(
        text("""
            INSERT INTO bank_transfers (
                company_id, transfer_number, from_account_id, to_account_id,
                date, amount, description, reference_number, created_at
            )
            VALUES (
                :company_id, :transfer_number, :from_account_id, :to_account_id,
                :date, :amount, :description, :reference_number, :created_at
            )
            RETURNING id
        """),
        {
            "company_id": company_id,
            "transfer_number": transfer_number,
            "from_account_id": from_account_id,
            "to_account_id": to_account_id,
            "date": on.isoformat(),
            "amount": value,
            "description": description,
            "reference_number": reference_number,
            "created_at": utc_now(),
        },
    ).scalar_one()

    new = Snapshot(
        amount=value, account_id=from_account_id, counter_account_id=to_account_id
    )
    apply_adjustments(conn, compute_adjustments(TRANSFER, None, new))
    logger.info("Created transfer %s (%s)", transfer_id, transfer_number)
    return int(transfer_id)


def update_transfer(
    conn: Connection,
    transfer_id: int,
    *,
    company_id: int,
    amount: Any = None,  # noqa: ANN401
    date: date | str | None = None,
    description: str | None = None,
) -> list[Adjustment]:
    row = _load_transfer(conn, transfer_id, company_id)
    old = _transfer_snapshot(row)
    new_amount = _positive(amount) if amount is not None else old.amount

    locked = lock_accounts(conn, [row["from_account_id"], row["to_account_id"]])
    source = locked[row["from_account_id"]]
    available = source["current_balance"] + old.amount
    if new_amount > available:
        msg = (
            f"Insufficient balance in account {row['from_account_id']}: "
            f"{available} < {new_amount}"
        )
        raise InvalidInputError(msg)

    new = old.model_copy(update={"amount": new_amount})
    adjustments = compute_adjustments(TRANSFER, old, new)
    apply_adjustments(conn, adjustments)

    params: dict[str, Any] = {"id": transfer_id, "amount": new_amount}
    assignments = ["amount = :amount"]
    if date is not None:
        assignments.append("date = :date")
        params["date"] = _require_date(date).isoformat()
    if description is not None:
        assignments.append("description = :description")
        params["description"] = description
    conn.execute(
        text(f"UPDATE bank_transfers SET {', '.join(assignments)} WHERE id = :id"),  # noqa: S608
        params,
    )
    return adjustments


def delete_transfer(
    conn: Connection, transfer_id: int, *, company_id: int
) -> list[Adjustment]:
    row = _load_transfer(conn, transfer_id, company_id)
    adjustments = compute_adjustments(TRANSFER, _transfer_snapshot(row), None)
    apply_adjustments(conn, adjustments)
    conn.execute(
        text("UPDATE bank_transfers SET deleted_at = :now WHERE id = :id"),
        {"now": utc_now(), "id": transfer_id},
    )
    logger.info("Deleted transfer %s", transfer_id)
    return adjustments


# Payments


class AllocationInput(BaseModel):
    """One line of a payment: which document (or standing balance) it settles."""

    model_config = ConfigDict(frozen=True)

    allocation_type: str
    amount: Money
    document_id: int | None = None
    balance_type: str | None = None


def _coerce_allocation(item: AllocationInput | Mapping[str, Any]) -> AllocationInput:
    if isinstance(item, AllocationInput):
        allocation = item
    else:
        try:
            allocation = AllocationInput(**dict(item))
        except ValidationError as e:
            msg = f"Invalid allocation: {e.errors()[0]['msg']}"
            raise InvalidInputError(msg) from e
    if allocation.allocation_type not in ALLOCATION_TYPES:
        msg = f"Unknown allocation type: {allocation.allocation_type!r}"
        raise UnknownAllocationTypeError(msg)
    if allocation.allocation_type == CURRENT_BALANCE:
        if allocation.document_id is not None:
            msg = "current-balance allocations do not reference a document"
            raise InvalidInputError(msg)
    elif allocation.document_id is None:
        msg = f"{allocation.allocation_type} allocation needs document_id"
        raise InvalidInputError(msg)
    _positive(allocation.amount, "allocation amount")
    return allocation


def _allocation_fields(row: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "allocation_type": row["allocation_type"],
        "balance_type": row.get("balance_type"),
        "payment_type": row.get("payment_type"),
    }


def _net_of(allocations: Iterable[Mapping[str, Any]], *, strict: bool) -> Decimal:
    """Receivable minus payable across allocation lines."""
    return sum(
        (
            resolve(PAYMENT_ALLOCATION, dict(a), 0, strict=strict)
            for a in allocations
        ),
        ZERO,
    )


def _settle_document(
    conn: Connection, allocation: AllocationInput, document_id: int, company_id: int
) -> Decimal:
    """Reduce the document's remaining amount; return its full amount."""
    source = DOCUMENT_SOURCES[allocation.allocation_type]
    row = _load_document(conn, source, document_id, company_id)
    if _state_of(conn, source, row) == DIRECT_PAID:
        msg = f"{source.kind} {row['id']} is already paid directly"
        raise InvalidInputError(msg)

    remaining = to_decimal(row["remaining_amount"])
    if allocation.amount > remaining:
        msg = (
            f"Allocation {allocation.amount} exceeds remaining {remaining} "
            f"on {source.kind} {row['id']}"
        )
        raise InvalidInputError(msg)
    remaining -= allocation.amount
    conn.execute(
        text(
            f"UPDATE {source.table} "  # noqa: S608
            "SET remaining_amount = :remaining, status = :status WHERE id = :id"
        ),
        {
            "remaining": remaining,
            "status": PAID if remaining <= 0 else PENDING,
            "id": row["id"],
        },
    )
    return to_decimal(row["amount"])


def create_payment(  # noqa: PLR0913
    conn: Connection,
    *,
    company_id: int,
    account_id: int,
    date: date | str,
    allocations: Iterable[AllocationInput | Mapping[str, Any]] = (),
    payment_type: str | None = None,
    amount: Any = None,  # noqa: ANN401
    contact_id: int | None = None,
    description: str | None = None,
) -> int:
    """Record a payment, either itemized over allocations or standalone.

    With allocations the payment type and amount are derived from the
    receivable minus payable net, and each allocated document's remaining
    amount decreases. Without allocations ``payment_type`` and ``amount``
    are required.

    Returns:
        New payment id
    """
    on = _require_date(date)
    _usable_account(conn, account_id, company_id)
    items = [_coerce_allocation(item) for item in allocations]

    if items:
        net = _net_of((item.model_dump() for item in items), strict=True)
        payment_type = RECEIPT if net >= 0 else PAYMENT
        total = abs(net)
    else:
        if payment_type not in PAYMENT_TYPES:
            msg = f"Unsupported payment type: {payment_type!r}"
            raise InvalidInputError(msg)
        total = _positive(amount)

    payment_number = _next_number(
        conn, "payments", "payment_number", "PY", company_id, on
    )
    now = utc_now()
    payment_id = conn.execute(
        text("""
            INSERT INTO payments (
                company_id, payment_number, contact_id, account_id,
                payment_type, amount, date, description, created_at
            )
            VALUES (
                :company_id, :payment_number, :contact_id, :account_id,
                :payment_type, :amount, :date, :description, :created_at
            )
            RETURNING id
        """),
        {
            "company_id": company_id,
            "payment_number": payment_number,
            "contact_id": contact_id,
            "account_id": account_id,
            "payment_type": payment_type,
            "amount": total,
            "date": on.isoformat(),
            "description": description,
            "created_at": now,
        },
    ).scalar_one()

    adjustments: list[Adjustment] = []
    for item in items:
        links = dict.fromkeys(("sale_id", "purchase_id", "expense_id", "income_id"))
        document_amount = item.amount
        if item.document_id is not None:
            document_amount = _settle_document(
                conn, item, item.document_id, company_id
            )
            links[DOCUMENT_SOURCES[item.allocation_type].allocation_column] = (
                item.document_id
            )
        conn.execute(
            text("""
                INSERT INTO payment_allocations (
                    payment_id, allocation_type, sale_id, purchase_id,
                    expense_id, income_id, balance_type, amount, paid_amount,
                    created_at
                )
                VALUES (
                    :payment_id, :allocation_type, :sale_id, :purchase_id,
                    :expense_id, :income_id, :balance_type, :amount, :paid_amount,
                    :created_at
                )
            """),
            {
                "payment_id": payment_id,
                "allocation_type": item.allocation_type,
                **links,
                "balance_type": item.balance_type,
                "amount": document_amount,
                "paid_amount": item.amount,
                "created_at": now,
            },
        )
        snapshot = Snapshot(
            amount=item.amount,
            account_id=account_id,
            fields={**_allocation_fields(item.model_dump()), "payment_type": payment_type},
        )
        adjustments += compute_adjustments(
            PAYMENT_ALLOCATION, None, snapshot, net=False, strict=True
        )

    if not items:
        snapshot = Snapshot(
            amount=total, account_id=account_id, fields={"payment_type": payment_type}
        )
        adjustments = compute_adjustments(STANDALONE_PAYMENT, None, snapshot)

    apply_adjustments(conn, net_adjustments(adjustments))
    logger.info(
        "Created payment %s (%s, %s allocations)", payment_id, payment_number, len(items)
    )
    return int(payment_id)


def _load_payment(conn: Connection, payment_id: int, company_id: int) -> RowMapping:
    row = (
        conn.execute(
            text("""
                SELECT id, company_id, account_id, payment_type, amount
                FROM payments
                WHERE id = :id AND deleted_at IS NULL
            """),
            {"id": payment_id},
        )
        .mappings()
        .first()
    )
    if row is None or row["company_id"] != company_id:
        msg = f"Payment {payment_id} not found"
        raise NotFoundError(msg)
    return row


def _payment_allocations(conn: Connection, payment_id: int) -> list[RowMapping]:
    return list(
        conn.execute(
            text("""
                SELECT id, payment_id, allocation_type, sale_id, purchase_id,
                       expense_id, income_id, balance_type, paid_amount
                FROM payment_allocations
                WHERE payment_id = :payment_id
                ORDER BY id
            """),
            {"payment_id": payment_id},
        )
        .mappings()
        .all()
    )


def _refresh_payment_total(conn: Connection, payment_id: int) -> None:
    rows = _payment_allocations(conn, payment_id)
    net = _net_of(
        ({**_allocation_fields(row), "amount": row["paid_amount"]} for row in rows),
        strict=False,
    )
    conn.execute(
        text(
            "UPDATE payments SET amount = :amount, payment_type = :payment_type "
            "WHERE id = :id"
        ),
        {
            "amount": abs(net),
            "payment_type": RECEIPT if net >= 0 else PAYMENT,
            "id": payment_id,
        },
    )


def update_allocation(
    conn: Connection,
    allocation_id: int,
    *,
    company_id: int,
    paid_amount: Any,  # noqa: ANN401
) -> list[Adjustment]:
    """Change how much of a payment goes to one allocation line.

    The bank impact of the change follows
    :func:`ledger.adjust.payment_adjustment_impact`.
    """
    row = (
        conn.execute(
            text("""
                SELECT pa.id, pa.payment_id, pa.allocation_type, pa.balance_type,
                       pa.sale_id, pa.purchase_id, pa.expense_id, pa.income_id,
                       pa.paid_amount, p.account_id, p.company_id
                FROM payment_allocations pa
                JOIN payments p ON p.id = pa.payment_id
                WHERE pa.id = :id AND p.deleted_at IS NULL
            """),
            {"id": allocation_id},
        )
        .mappings()
        .first()
    )
    if row is None or row["company_id"] != company_id:
        msg = f"Allocation {allocation_id} not found"
        raise NotFoundError(msg)

    new_paid = _positive(paid_amount, "paid_amount")
    old_paid = to_decimal(row["paid_amount"])
    delta = new_paid - old_paid
    if delta == 0:
        return []

    impact = payment_adjustment_impact(
        row["allocation_type"], delta, balance_type=row["balance_type"]
    )

    source = DOCUMENT_SOURCES.get(row["allocation_type"])
    if source is not None:
        document = _load_document(
            conn, source, row[source.allocation_column], company_id
        )
        remaining = to_decimal(document["remaining_amount"]) - delta
        if remaining < 0:
            msg = f"paid_amount {new_paid} exceeds what {source.kind} {document['id']} owes"
            raise InvalidInputError(msg)
        conn.execute(
            text(
                f"UPDATE {source.table} "  # noqa: S608
                "SET remaining_amount = :remaining, status = :status WHERE id = :id"
            ),
            {
                "remaining": remaining,
                "status": PAID if remaining <= 0 else PENDING,
                "id": document["id"],
            },
        )

    adjustments = [Adjustment(row["account_id"], impact, "allocation-change")]
    apply_adjustments(conn, adjustments)
    conn.execute(
        text("UPDATE payment_allocations SET paid_amount = :paid WHERE id = :id"),
        {"paid": new_paid, "id": allocation_id},
    )
    _refresh_payment_total(conn, row["payment_id"])
    return adjustments


def delete_payment(
    conn: Connection, payment_id: int, *, company_id: int
) -> list[Adjustment]:
    """Soft delete a payment and undo everything it settled.

    Allocation rows are removed and each allocated document gets its
    remaining amount back and returns to pending.
    """
    payment = _load_payment(conn, payment_id, company_id)
    rows = _payment_allocations(conn, payment_id)

    adjustments: list[Adjustment] = []
    if rows:
        for row in rows:
            snapshot = Snapshot(
                amount=row["paid_amount"],
                account_id=payment["account_id"],
                fields={
                    **_allocation_fields(row),
                    "payment_type": payment["payment_type"],
                },
            )
            adjustments += compute_adjustments(
                PAYMENT_ALLOCATION, snapshot, None, net=False
            )
            source = DOCUMENT_SOURCES.get(row["allocation_type"])
            document_id = row[source.allocation_column] if source else None
            if source is not None and document_id is not None:
                conn.execute(
                    text(
                        f"UPDATE {source.table} "  # noqa: S608
                        "SET remaining_amount = remaining_amount + :paid, "
                        "status = :status WHERE id = :id"
                    ),
                    {"paid": row["paid_amount"], "status": PENDING, "id": document_id},
                )
        conn.execute(
            text("DELETE FROM payment_allocations WHERE payment_id = :payment_id"),
            {"payment_id": payment_id},
        )
    else:
        snapshot = Snapshot(
            amount=payment["amount"],
            account_id=payment["account_id"],
            fields={"payment_type": payment["payment_type"]},
        )
        adjustments = compute_adjustments(STANDALONE_PAYMENT, snapshot, None)

    adjustments = net_adjustments(adjustments)
    apply_adjustments(conn, adjustments)
    conn.execute(
        text("UPDATE payments SET deleted_at = :now WHERE id = :id"),
        {"now": utc_now(), "id": payment_id},
    )
    logger.info("Deleted payment %s (%s allocations)", payment_id, len(rows))
    return adjustments
