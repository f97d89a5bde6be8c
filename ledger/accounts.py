"""Bank account lifecycle: create, look up, (de)activate, soft delete."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from sqlalchemy import bindparam, text

from ledger.balance import quantize_money
from ledger.db import utc_now
from ledger.errors import InvalidInputError, NotFoundError
from ledger.signs import to_decimal

if TYPE_CHECKING:
    from collections.abc import Iterable

    from sqlalchemy.engine import Connection, RowMapping

logger = logging.getLogger(__name__)

_ACCOUNT_COLUMNS = """
    id, company_id, account_name, account_type, opening_balance,
    current_balance, is_active, deleted_at
"""


def _account_from_row(row: RowMapping) -> dict[str, Any]:
    # Columns are NUMERIC(18,2); SQLite may hand back floats
    return {
        "id": row["id"],
        "company_id": row["company_id"],
        "account_name": row["account_name"],
        "account_type": row["account_type"],
        "opening_balance": quantize_money(to_decimal(row["opening_balance"])),
        "current_balance": quantize_money(to_decimal(row["current_balance"])),
        "is_active": bool(row["is_active"]),
    }


def create_account(
    conn: Connection,
    *,
    company_id: int,
    account_name: str,
    account_type: str = "bank",
    opening_balance: Any = 0,  # noqa: ANN401
) -> int:
    """Create an account whose current balance starts at its opening balance.

    Returns:
        New account id
    """
    if not account_name or not account_name.strip():
        msg = "account_name is required"
        raise InvalidInputError(msg)

    opening = to_decimal(opening_balance)
    now = utc_now()
    account_id = conn.execute(
        text("""
            INSERT INTO accounts (
                company_id, account_name, account_type, opening_balance,
                current_balance, is_active, created_at, updated_at
            )
            VALUES (
                :company_id, :account_name, :account_type, :opening_balance,
                :opening_balance, :is_active, :now, :now
            )
            RETURNING id
        """),
        {
            "company_id": company_id,
            "account_name": account_name.strip(),
            "account_type": account_type,
            "opening_balance": opening,
            "is_active": True,
            "now": now,
        },
    ).scalar_one()
    logger.info("Created account %s for company %s", account_id, company_id)
    return int(account_id)


def get_account(
    conn: Connection,
    account_id: int,
    *,
    company_id: int | None = None,
    for_update: bool = False,
) -> dict[str, Any]:
    """Load a live account, optionally scoped to a company.

    Args:
        conn: Database connection
        account_id: Account to load
        company_id: Reject accounts owned by another company when set
        for_update: Lock the row on PostgreSQL

    Raises:
        NotFoundError: If the account is missing, deleted or out of scope
    """
    lock = " FOR UPDATE" if for_update and conn.dialect.name == "postgresql" else ""
    row = (
        conn.execute(
            text(
                f"SELECT {_ACCOUNT_COLUMNS} FROM accounts "  # noqa: S608
                f"WHERE id = :id AND deleted_at IS NULL{lock}"
            ),
            {"id": account_id},
        )
        .mappings()
        .first()
    )
    if row is None or (company_id is not None and row["company_id"] != company_id):
        msg = f"Account {account_id} not found"
        raise NotFoundError(msg)
    return _account_from_row(row)


def lock_accounts(
    conn: Connection, account_ids: Iterable[int], *, company_id: int | None = None
) -> dict[int, dict[str, Any]]:
    """Load and lock several live accounts with one statement.

    Rows are locked in id order (PostgreSQL), so two mutations touching the
    same pair of accounts queue behind each other instead of deadlocking.

    Raises:
        NotFoundError: If any account is missing, deleted or out of scope
    """
    ids = sorted(set(account_ids))
    if not ids:
        return {}
    lock = " FOR UPDATE" if conn.dialect.name == "postgresql" else ""
    stmt = text(
        f"SELECT {_ACCOUNT_COLUMNS} FROM accounts "  # noqa: S608
        f"WHERE id IN :ids AND deleted_at IS NULL ORDER BY id{lock}"
    ).bindparams(bindparam("ids", expanding=True))
    rows = conn.execute(stmt, {"ids": ids}).mappings().all()

    found = {
        row["id"]: _account_from_row(row)
        for row in rows
        if company_id is None or row["company_id"] == company_id
    }
    missing = [account_id for account_id in ids if account_id not in found]
    if missing:
        msg = f"Account {missing[0]} not found"
        raise NotFoundError(msg)
    return found


def list_accounts(
    conn: Connection, *, company_id: int, include_inactive: bool = False
) -> list[dict[str, Any]]:
    rows = (
        conn.execute(
            text(
                f"SELECT {_ACCOUNT_COLUMNS} FROM accounts "  # noqa: S608
                "WHERE company_id = :company_id AND deleted_at IS NULL "
                "ORDER BY account_name, id"
            ),
            {"company_id": company_id},
        )
        .mappings()
        .all()
    )
    accounts = [_account_from_row(row) for row in rows]
    if include_inactive:
        return accounts
    return [account for account in accounts if account["is_active"]]


def set_account_active(
    conn: Connection, account_id: int, *, company_id: int, active: bool
) -> None:
    get_account(conn, account_id, company_id=company_id)
    conn.execute(
        text(
            "UPDATE accounts SET is_active = :active, updated_at = :now WHERE id = :id"
        ),
        {"active": active, "now": utc_now(), "id": account_id},
    )


def delete_account(conn: Connection, account_id: int, *, company_id: int) -> None:
    """Soft delete; the row stays for history but leaves every query."""
    get_account(conn, account_id, company_id=company_id)
    now = utc_now()
    conn.execute(
        text("UPDATE accounts SET deleted_at = :now, updated_at = :now WHERE id = :id"),
        {"now": now, "id": account_id},
    )
    logger.info("Deleted account %s", account_id)
