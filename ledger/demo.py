"""SQLite schema and demo fixtures for offline/deterministic demonstrations."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import TYPE_CHECKING, Any

from sqlalchemy import text

from ledger.accounts import create_account
from ledger.db import create_ledger_engine
from ledger.postings import (
    create_document,
    create_payment,
    create_transfer,
    delete_payment,
    update_document,
)

if TYPE_CHECKING:
    from sqlalchemy import Connection
    from sqlalchemy.engine import Engine

logger = logging.getLogger(__name__)

DEMO_COMPANY_ID = 1
FIXTURES_DIR = Path(__file__).parent.parent / "fixtures" / "demo"

# Same shape as schema.sql, in SQLite dialect
_SQLITE_TABLES = [
    """
    CREATE TABLE IF NOT EXISTS accounts (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        company_id INTEGER NOT NULL,
        account_name TEXT NOT NULL,
        account_type TEXT NOT NULL DEFAULT 'bank',
        opening_balance NUMERIC(18,2) NOT NULL DEFAULT 0,
        current_balance NUMERIC(18,2) NOT NULL DEFAULT 0,
        is_active BOOLEAN NOT NULL DEFAULT 1,
        deleted_at TEXT,
        created_at TEXT NOT NULL DEFAULT (datetime('now')),
        updated_at TEXT NOT NULL DEFAULT (datetime('now'))
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS contacts (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        company_id INTEGER NOT NULL,
        name TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS bank_transfers (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        company_id INTEGER NOT NULL,
        transfer_number TEXT NOT NULL,
        from_account_id INTEGER NOT NULL REFERENCES accounts(id),
        to_account_id INTEGER NOT NULL REFERENCES accounts(id),
        date DATE NOT NULL,
        amount NUMERIC(18,2) NOT NULL CHECK (amount > 0),
        description TEXT,
        reference_number TEXT,
        deleted_at TEXT,
        created_at TEXT NOT NULL DEFAULT (datetime('now')),
        CHECK (from_account_id <> to_account_id),
        UNIQUE (company_id, transfer_number)
    )
    """,
    *[
        f"""
    CREATE TABLE IF NOT EXISTS {table} (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        company_id INTEGER NOT NULL,
        account_id INTEGER REFERENCES accounts(id),
        contact_id INTEGER REFERENCES contacts(id),
        amount NUMERIC(18,2) NOT NULL CHECK (amount > 0),
        remaining_amount NUMERIC(18,2) NOT NULL DEFAULT 0,
        status TEXT NOT NULL DEFAULT 'pending' CHECK (status IN ('pending', 'paid')),
        date DATE NOT NULL,
        notes TEXT,
        deleted_at TEXT,
        created_at TEXT NOT NULL DEFAULT (datetime('now'))
    )
    """
        for table in ("incomes", "expenses")
    ],
    *[
        f"""
    CREATE TABLE IF NOT EXISTS {table} (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        company_id INTEGER NOT NULL,
        account_id INTEGER REFERENCES accounts(id),
        contact_id INTEGER REFERENCES contacts(id),
        invoice_number TEXT,
        invoice_date DATE NOT NULL,
        {amount_column} NUMERIC(18,2) NOT NULL CHECK ({amount_column} > 0),
        remaining_amount NUMERIC(18,2) NOT NULL DEFAULT 0,
        status TEXT NOT NULL DEFAULT 'pending' CHECK (status IN ('pending', 'paid')),
        notes TEXT,
        deleted_at TEXT,
        created_at TEXT NOT NULL DEFAULT (datetime('now'))
    )
    """
        for table, amount_column in (
            ("sales", "net_receivable"),
            ("purchases", "net_payable"),
        )
    ],
    """
    CREATE TABLE IF NOT EXISTS payments (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        company_id INTEGER NOT NULL,
        payment_number TEXT NOT NULL,
        contact_id INTEGER REFERENCES contacts(id),
        account_id INTEGER NOT NULL REFERENCES accounts(id),
        payment_type TEXT NOT NULL CHECK (payment_type IN ('payment', 'receipt')),
        amount NUMERIC(18,2) NOT NULL CHECK (amount >= 0),
        date DATE NOT NULL,
        description TEXT,
        deleted_at TEXT,
        created_at TEXT NOT NULL DEFAULT (datetime('now')),
        UNIQUE (company_id, payment_number)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS payment_allocations (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        payment_id INTEGER NOT NULL REFERENCES payments(id) ON DELETE CASCADE,
        allocation_type TEXT NOT NULL,
        sale_id INTEGER REFERENCES sales(id),
        purchase_id INTEGER REFERENCES purchases(id),
        expense_id INTEGER REFERENCES expenses(id),
        income_id INTEGER REFERENCES incomes(id),
        balance_type TEXT CHECK (balance_type IN ('receivable', 'payable')),
        amount NUMERIC(18,2) NOT NULL DEFAULT 0,
        paid_amount NUMERIC(18,2) NOT NULL CHECK (paid_amount > 0),
        created_at TEXT NOT NULL DEFAULT (datetime('now'))
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS reconcile_runs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        company_id INTEGER NOT NULL,
        success BOOLEAN NOT NULL,
        result TEXT NOT NULL,
        started_at TEXT NOT NULL,
        finished_at TEXT NOT NULL
    )
    """,
]

_SQLITE_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_accounts_company ON accounts(company_id)",
    "CREATE INDEX IF NOT EXISTS idx_transfers_from_date"
    " ON bank_transfers(from_account_id, date)",
    "CREATE INDEX IF NOT EXISTS idx_transfers_to_date"
    " ON bank_transfers(to_account_id, date)",
    "CREATE INDEX IF NOT EXISTS idx_incomes_account_date ON incomes(account_id, date)",
    "CREATE INDEX IF NOT EXISTS idx_expenses_account_date"
    " ON expenses(account_id, date)",
    "CREATE INDEX IF NOT EXISTS idx_sales_account_date"
    " ON sales(account_id, invoice_date)",
    "CREATE INDEX IF NOT EXISTS idx_purchases_account_date"
    " ON purchases(account_id, invoice_date)",
    "CREATE INDEX IF NOT EXISTS idx_payments_account_date"
    " ON payments(account_id, date)",
    "CREATE INDEX IF NOT EXISTS idx_allocations_payment"
    " ON payment_allocations(payment_id)",
]


def create_sqlite_schema(conn: Connection) -> None:
    """Create the ledger tables on a SQLite connection."""
    conn.execute(text("PRAGMA foreign_keys = ON"))
    for ddl in _SQLITE_TABLES:
        conn.execute(text(ddl))
    for index_sql in _SQLITE_INDEXES:
        conn.execute(text(index_sql))


def create_demo_engine(database_url: str = "sqlite:///:memory:") -> Engine:
    """Create a SQLite engine with the ledger schema applied."""
    # Set deterministic environment
    os.environ.setdefault("TZ", "UTC")

    engine = create_ledger_engine(database_url)
    with engine.begin() as conn:
        create_sqlite_schema(conn)
    return engine


def _read_fixture(name: str) -> list[dict[str, Any]]:
    path = FIXTURES_DIR / name
    if not path.exists():
        return []
    return json.loads(path.read_text(encoding="utf-8"))  # type: ignore[no-any-return]


def _replay(  # noqa: C901
    conn: Connection,
    posting: dict[str, Any],
    *,
    company_id: int,
    keys: dict[str, int],
) -> None:
    op = posting["op"]

    def ref(name: str) -> int | None:
        key = posting.get(name)
        return keys[key] if key is not None else None

    if op == "document":
        keys[posting["key"]] = create_document(
            conn,
            posting["kind"],
            company_id=company_id,
            amount=posting["amount"],
            date=posting["date"],
            status=posting.get("status", "pending"),
            account_id=ref("account"),
            contact_id=ref("contact"),
            reference=posting.get("reference"),
            notes=posting.get("notes"),
        )
    elif op == "update_document":
        update_document(
            conn,
            posting["kind"],
            keys[posting["document"]],
            company_id=company_id,
            amount=posting.get("amount"),
            status=posting.get("status"),
        )
    elif op == "transfer":
        transfer_id = create_transfer(
            conn,
            company_id=company_id,
            from_account_id=keys[posting["from"]],
            to_account_id=keys[posting["to"]],
            amount=posting["amount"],
            date=posting["date"],
            description=posting.get("description"),
        )
        if "key" in posting:
            keys[posting["key"]] = transfer_id
    elif op == "payment":
        allocations = [
            {
                "allocation_type": item["allocation_type"],
                "amount": item["amount"],
                "document_id": keys[item["document"]] if "document" in item else None,
                "balance_type": item.get("balance_type"),
            }
            for item in posting.get("allocations", [])
        ]
        payment_id = create_payment(
            conn,
            company_id=company_id,
            account_id=keys[posting["account"]],
            date=posting["date"],
            allocations=allocations,
            payment_type=posting.get("payment_type"),
            amount=posting.get("amount"),
            contact_id=ref("contact"),
            description=posting.get("description"),
        )
        if "key" in posting:
            keys[posting["key"]] = payment_id
    elif op == "delete_payment":
        delete_payment(conn, keys[posting["payment"]], company_id=company_id)
    else:
        msg = f"Unknown demo posting op: {op}"
        raise ValueError(msg)


def load_demo_fixtures(
    conn: Connection, *, company_id: int = DEMO_COMPANY_ID
) -> dict[str, int]:
    """Load demo accounts and contacts, then replay postings through the ledger.

    Returns:
        Mapping of fixture keys to created row ids
    """
    keys: dict[str, int] = {}

    for account in _read_fixture("accounts.json"):
        keys[account["key"]] = create_account(
            conn,
            company_id=company_id,
            account_name=account["account_name"],
            account_type=account.get("account_type", "bank"),
            opening_balance=account.get("opening_balance", "0"),
        )

    for contact in _read_fixture("contacts.json"):
        keys[contact["key"]] = conn.execute(
            text(
                "INSERT INTO contacts (company_id, name) "
                "VALUES (:company_id, :name) RETURNING id"
            ),
            {"company_id": company_id, "name": contact["name"]},
        ).scalar_one()

    postings = _read_fixture("postings.json")
    for posting in postings:
        _replay(conn, posting, company_id=company_id, keys=keys)

    logger.info("Loaded demo fixtures: %s postings", len(postings))
    return keys
