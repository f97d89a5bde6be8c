"""Tests for account lookups and row locking."""

from types import SimpleNamespace
from typing import Any

import pytest
from sqlalchemy import event
from sqlalchemy.engine import Engine

from ledger.accounts import delete_account, lock_accounts
from ledger.errors import NotFoundError
from ledger.postings import (
    create_document,
    create_transfer,
    update_document,
    update_transfer,
)
from tests.utils.ledger_helper import assert_reconciled, seed_account


class _RecordingConnection:
    """Stands in for a PostgreSQL connection and keeps every statement."""

    dialect = SimpleNamespace(name="postgresql")

    def __init__(self, rows: list[dict[str, Any]]) -> None:
        self.rows = rows
        self.statements: list[tuple[str, dict[str, Any]]] = []

    def execute(self, stmt: Any, params: dict[str, Any]) -> Any:  # noqa: ANN401
        self.statements.append((str(stmt), params))
        return SimpleNamespace(mappings=lambda: SimpleNamespace(all=lambda: self.rows))


def _account_row(account_id: int, company_id: int = 1) -> dict[str, Any]:
    return {
        "id": account_id,
        "company_id": company_id,
        "account_name": f"Account {account_id}",
        "account_type": "bank",
        "opening_balance": "0",
        "current_balance": "10.00",
        "is_active": True,
        "deleted_at": None,
    }


def _account_statements(engine: Engine) -> list[tuple[str, Any]]:
    seen: list[tuple[str, Any]] = []

    @event.listens_for(engine, "before_cursor_execute")
    def _record(  # noqa: PLR0913
        conn,  # noqa: ANN001, ARG001
        cursor,  # noqa: ANN001, ARG001
        statement: str,
        parameters: Any,  # noqa: ANN401
        context,  # noqa: ANN001, ARG001
        executemany: bool,  # noqa: ARG001, FBT001
    ) -> None:
        if "FROM accounts" in statement:
            seen.append((statement, tuple(parameters)))

    return seen


def test_lock_accounts_uses_one_ordered_statement_on_postgresql() -> None:
    conn = _RecordingConnection([_account_row(3), _account_row(7)])

    accounts = lock_accounts(conn, [7, 3, 7], company_id=1)  # type: ignore[arg-type]

    assert sorted(accounts) == [3, 7]
    [(sql, params)] = conn.statements
    assert "ORDER BY id FOR UPDATE" in sql
    assert params == {"ids": [3, 7]}


def test_lock_accounts_rejects_missing_and_foreign_accounts(engine: Engine) -> None:
    with engine.begin() as conn:
        mine = seed_account(conn, "Operating")
        theirs = seed_account(conn, "Other", company_id=2)
        gone = seed_account(conn, "Closed")
        delete_account(conn, gone, company_id=1)

        assert list(lock_accounts(conn, [mine], company_id=1)) == [mine]
        assert lock_accounts(conn, []) == {}
        with pytest.raises(NotFoundError, match=f"Account {theirs} not found"):
            lock_accounts(conn, [mine, theirs], company_id=1)
        with pytest.raises(NotFoundError, match=f"Account {gone} not found"):
            lock_accounts(conn, [gone, mine])


def test_transfer_locks_both_legs_lowest_id_first(engine: Engine) -> None:
    with engine.begin() as conn:
        low = seed_account(conn, "Operating", "100.00")
        high = seed_account(conn, "Savings", "500.00")

    seen = _account_statements(engine)
    with engine.begin() as conn:
        transfer_id = create_transfer(
            conn,
            company_id=1,
            from_account_id=high,
            to_account_id=low,
            amount="50.00",
            date="2024-02-01",
        )
    first_sql, first_params = seen[0]
    assert "ORDER BY id" in first_sql
    assert first_params == (low, high)

    seen.clear()
    with engine.begin() as conn:
        update_transfer(conn, transfer_id, company_id=1, amount="75.00")
    assert seen[0][1] == (low, high)

    with engine.connect() as conn:
        assert_reconciled(conn)


def test_document_account_move_locks_old_and_new_together(engine: Engine) -> None:
    with engine.begin() as conn:
        low = seed_account(conn, "Operating")
        high = seed_account(conn, "Savings")
        expense_id = create_document(
            conn,
            "expense",
            company_id=1,
            amount="20.00",
            date="2024-02-01",
            status="paid",
            account_id=high,
        )

    seen = _account_statements(engine)
    with engine.begin() as conn:
        update_document(conn, "expense", expense_id, company_id=1, account_id=low)

    assert seen[0][1] == (low, high)
    with engine.connect() as conn:
        assert_reconciled(conn)
