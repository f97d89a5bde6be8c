"""Reconciliation checks for persisted bank balances."""

from __future__ import annotations

import json
import logging
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy import bindparam, text

from ledger.aggregate import fetch_events
from ledger.balance import quantize_money
from ledger.db import utc_now
from ledger.events import DOCUMENT_SOURCES
from ledger.signs import ALLOCATION_TYPES, CURRENT_BALANCE, to_decimal

if TYPE_CHECKING:
    from collections.abc import Sequence

    from sqlalchemy.engine import Connection

logger = logging.getLogger(__name__)

TOLERANCE = Decimal("0.01")


def check_balance_drift(
    conn: Connection,
    *,
    company_id: int,
    account_ids: Sequence[int] | None = None,
) -> dict[str, Any]:
    """Compare each persisted current balance with a full recomputation.

    The expected balance is the opening balance plus every event the
    statement aggregator returns for the account.

    Args:
        conn: Database connection
        company_id: Company whose accounts are checked
        account_ids: Optional subset of accounts

    Returns:
        Check result with passed status, total drift and per-account rows
    """
    sql = (
        "SELECT id, account_name, opening_balance, current_balance FROM accounts "
        "WHERE company_id = :company_id AND deleted_at IS NULL"
    )
    params: dict[str, Any] = {"company_id": company_id}
    stmt = text(sql + " ORDER BY id")
    if account_ids:
        stmt = text(sql + " AND id IN :ids ORDER BY id").bindparams(
            bindparam("ids", expanding=True)
        )
        params["ids"] = list(account_ids)

    by_account = []
    total_drift = Decimal("0.00")
    for row in conn.execute(stmt, params).mappings().all():
        events = fetch_events(conn, row["id"])
        expected = to_decimal(row["opening_balance"]) + (
            events.total_inflow - events.total_outflow
        )
        persisted = to_decimal(row["current_balance"])
        drift = quantize_money(persisted - expected)
        total_drift += abs(drift)

        if abs(drift) > TOLERANCE:
            logger.warning(
                "Balance drift on account %s: persisted=%s expected=%s",
                row["id"],
                persisted,
                expected,
            )
        by_account.append({
            "account_id": row["id"],
            "account_name": row["account_name"],
            "persisted": float(quantize_money(persisted)),
            "expected": float(quantize_money(expected)),
            "drift": float(drift),
            "events": events.total,
        })

    # Per-account drift must also stay within tolerance
    passed = all(abs(Decimal(str(a["drift"]))) <= TOLERANCE for a in by_account)
    return {
        "passed": passed,
        "total_drift": float(quantize_money(total_drift)),
        "tolerance": float(TOLERANCE),
        "by_account": by_account,
    }


def check_allocation_types(conn: Connection, *, company_id: int) -> dict[str, Any]:
    """Find allocations whose type would need the payment-type fallback.

    Returns:
        Check result with passed status and offending allocation ids
    """
    rows = conn.execute(
        text("""
            SELECT pa.id, pa.allocation_type, pa.balance_type
            FROM payment_allocations pa
            JOIN payments p ON p.id = pa.payment_id
            WHERE p.company_id = :company_id AND p.deleted_at IS NULL
            ORDER BY pa.id
        """),
        {"company_id": company_id},
    ).fetchall()

    invalid = [
        row.id
        for row in rows
        if row.allocation_type not in ALLOCATION_TYPES
        or (row.allocation_type == CURRENT_BALANCE and row.balance_type is None)
    ]
    return {"passed": len(invalid) == 0, "invalid_allocations": invalid}


def check_dangling_allocations(conn: Connection, *, company_id: int) -> dict[str, Any]:
    """Find allocations pointing at a missing or deleted document."""
    dangling: list[int] = []
    for source in DOCUMENT_SOURCES.values():
        rows = conn.execute(
            text(f"""
                SELECT pa.id
                FROM payment_allocations pa
                JOIN payments p ON p.id = pa.payment_id
                LEFT JOIN {source.table} d ON d.id = pa.{source.allocation_column}
                WHERE p.company_id = :company_id
                  AND p.deleted_at IS NULL
                  AND pa.allocation_type = :kind
                  AND (d.id IS NULL OR d.deleted_at IS NOT NULL)
            """),  # noqa: S608
            {"company_id": company_id, "kind": source.kind},
        ).fetchall()
        dangling.extend(row.id for row in rows)

    return {"passed": len(dangling) == 0, "dangling_allocations": sorted(dangling)}


def run_reconciliation(
    conn: Connection,
    *,
    company_id: int,
    account_ids: Sequence[int] | None = None,
) -> dict[str, Any]:
    """Run all reconciliation checks and return consolidated results.

    Args:
        conn: Database connection
        company_id: Company to reconcile
        account_ids: Optional subset of accounts for the drift check

    Returns:
        Reconciliation result with all check statuses
    """
    drift = check_balance_drift(conn, company_id=company_id, account_ids=account_ids)
    allocation_types = check_allocation_types(conn, company_id=company_id)
    dangling = check_dangling_allocations(conn, company_id=company_id)

    success = drift["passed"] and allocation_types["passed"] and dangling["passed"]

    by_account = drift.pop("by_account", [])
    total_drift = drift.get("total_drift", 0.0)

    return {
        "company_id": company_id,
        "success": success,
        "checks": {
            "balance_drift": drift,
            "allocation_types": allocation_types,
            "dangling_allocations": dangling,
        },
        "by_account": by_account,
        "total_drift": total_drift,
    }


def record_reconcile_run(
    conn: Connection, result: dict[str, Any], *, started_at: str
) -> None:
    """Append one row to the ``reconcile_runs`` audit trail."""
    conn.execute(
        text("""
            INSERT INTO reconcile_runs (
                company_id, success, result, started_at, finished_at
            )
            VALUES (:company_id, :success, :result, :started_at, :finished_at)
        """),
        {
            "company_id": result["company_id"],
            "success": bool(result["success"]),
            "result": json.dumps(result, sort_keys=True, default=str),
            "started_at": started_at,
            "finished_at": utc_now(),
        },
    )
