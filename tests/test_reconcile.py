"""Tests for the reconciliation checks."""

import json
from decimal import Decimal

import pytest
from sqlalchemy import text
from sqlalchemy.engine import Engine

from ledger.demo import load_demo_fixtures
from ledger.postings import create_document, create_payment
from ledger.reconcile import (
    check_allocation_types,
    check_balance_drift,
    check_dangling_allocations,
    record_reconcile_run,
    run_reconciliation,
)
from tests.utils.ledger_helper import insert_row, seed_account


@pytest.fixture
def demo(engine: Engine) -> dict[str, int]:
    with engine.begin() as conn:
        return load_demo_fixtures(conn)


def test_demo_ledger_reconciles(engine: Engine, demo: dict[str, int]) -> None:
    with engine.connect() as conn:
        result = run_reconciliation(conn, company_id=1)

    assert result["success"] is True
    assert result["total_drift"] == 0.0
    assert {row["account_id"] for row in result["by_account"]} == {
        demo["operating"],
        demo["savings"],
        demo["petty"],
    }
    for check in result["checks"].values():
        assert check["passed"] is True


def test_manual_balance_edit_is_reported_as_drift(
    engine: Engine, demo: dict[str, int], caplog: pytest.LogCaptureFixture
) -> None:
    with engine.begin() as conn:
        conn.execute(
            text("UPDATE accounts SET current_balance = 900.00 WHERE id = :id"),
            {"id": demo["operating"]},
        )

    with engine.connect() as conn:
        drift = check_balance_drift(conn, company_id=1)
        subset = check_balance_drift(
            conn, company_id=1, account_ids=[demo["savings"]]
        )

    assert drift["passed"] is False
    assert drift["total_drift"] == 30.0
    [operating] = [r for r in drift["by_account"] if r["account_id"] == demo["operating"]]
    assert operating["persisted"] == 900.0
    assert operating["expected"] == 870.0
    assert operating["drift"] == 30.0
    assert "Balance drift on account" in caplog.text
    assert subset["passed"] is True
    assert len(subset["by_account"]) == 1


def test_drift_within_tolerance_passes(engine: Engine) -> None:
    with engine.begin() as conn:
        account_id = seed_account(conn, opening="10.00")
        conn.execute(
            text("UPDATE accounts SET current_balance = 10.01 WHERE id = :id"),
            {"id": account_id},
        )
        result = check_balance_drift(conn, company_id=1)

    assert result["passed"] is True
    assert result["total_drift"] == 0.01


def test_unknown_allocation_types_reported(engine: Engine) -> None:
    with engine.begin() as conn:
        account_id = seed_account(conn)
        payment_id = create_payment(
            conn,
            company_id=1,
            account_id=account_id,
            date="2024-01-01",
            allocations=[
                {
                    "allocation_type": "current-balance",
                    "balance_type": "receivable",
                    "amount": "10",
                }
            ],
        )
        legacy = insert_row(
            conn,
            "payment_allocations",
            payment_id=payment_id,
            allocation_type="legacy-fee",
            amount="5",
            paid_amount="5",
        )

        result = check_allocation_types(conn, company_id=1)

    assert result == {"passed": False, "invalid_allocations": [legacy]}


def test_allocations_on_deleted_documents_reported(engine: Engine) -> None:
    with engine.begin() as conn:
        account_id = seed_account(conn)
        sale_id = create_document(
            conn, "sale", company_id=1, amount="50", date="2024-01-01"
        )
        payment_id = create_payment(
            conn,
            company_id=1,
            account_id=account_id,
            date="2024-01-02",
            allocations=[
                {"allocation_type": "sale", "document_id": sale_id, "amount": "50"}
            ],
        )
        assert check_dangling_allocations(conn, company_id=1)["passed"] is True

        conn.execute(
            text("UPDATE sales SET deleted_at = '2024-01-03' WHERE id = :id"),
            {"id": sale_id},
        )
        result = check_dangling_allocations(conn, company_id=1)
        allocation_id = conn.execute(
            text("SELECT id FROM payment_allocations WHERE payment_id = :id"),
            {"id": payment_id},
        ).scalar_one()

    assert result == {"passed": False, "dangling_allocations": [allocation_id]}


def test_record_reconcile_run(engine: Engine, demo: dict[str, int]) -> None:  # noqa: ARG001
    with engine.begin() as conn:
        result = run_reconciliation(conn, company_id=1)
        record_reconcile_run(conn, result, started_at="2024-03-01T00:00:00+00:00")

    with engine.connect() as conn:
        row = conn.execute(
            text("SELECT company_id, success, result FROM reconcile_runs")
        ).one()

    assert row.company_id == 1
    assert bool(row.success) is True
    stored = json.loads(row.result)
    assert stored["checks"]["balance_drift"]["passed"] is True
    assert Decimal(str(stored["total_drift"])) == 0
