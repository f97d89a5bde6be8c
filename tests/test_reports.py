"""Tests for deterministic HTML + PDF statement reports."""

from __future__ import annotations

import importlib.util
from decimal import Decimal

import pytest

from ledger.balance import StatementLine, compute_running_balance
from ledger.events import LedgerEvent, category_label
from ledger.reports.render import (
    pdf_supported,
    render_statement_html,
    render_statement_html_document,
    render_statement_pdf,
)
from tests.utils.statement_html import layout_digest, summary_amounts, transaction_rows

ACCOUNT = {
    "id": 1,
    "account_name": "Operating <Main>",
    "account_type": "bank",
    "opening_balance": Decimal("1000.00"),
    "current_balance": Decimal("1300.00"),
}


def _lines() -> list[StatementLine]:
    events = [
        LedgerEvent(
            category="direct-expense",
            id=3,
            date="2024-01-05",
            created_at="2024-01-05T09:00:00Z",
            reference="EXP-3",
            description="Office rent",
            amount="-200.00",
        ),
        LedgerEvent(
            category="payment-allocation",
            id=1,
            date="2024-01-10",
            created_at="2024-01-10T09:00:00Z",
            reference="PY-2024-0001",
            description="Payment Allocation (sale)",
            amount="500.00",
            counterpart="Globex",
        ),
    ]
    lines, _ = compute_running_balance(ACCOUNT["opening_balance"], events)
    return lines


def test_html_is_deterministic() -> None:
    """Same inputs must hash the same across renders."""
    first = render_statement_html(ACCOUNT, _lines(), "Period: all dates")
    second = render_statement_html(ACCOUNT, _lines(), "Period: all dates")

    assert layout_digest(first) == layout_digest(second)
    changed = render_statement_html(ACCOUNT, _lines(), "Period: 2024")
    assert layout_digest(changed) != layout_digest(first)


def test_html_contains_rows_and_summary() -> None:
    html = render_statement_html(ACCOUNT, _lines(), "Period: 2024-01-01 to 2024-01-31")

    assert "Operating &lt;Main&gt;" in html
    assert "Period: 2024-01-01 to 2024-01-31" in html
    assert transaction_rows(html) == [
        [
            "2024-01-05",
            "EXP-3",
            category_label("direct-expense"),
            "Office rent",
            "",
            "",
            "200.00",
            "800.00",
        ],
        [
            "2024-01-10",
            "PY-2024-0001",
            category_label("payment-allocation"),
            "Payment Allocation (sale)",
            "Globex",
            "500.00",
            "",
            "1300.00",
        ],
    ]
    assert summary_amounts(html) == {
        "Opening balance": "1000.00",
        "Total inflows": "500.00",
        "Total outflows": "200.00",
        "Closing balance": "1300.00",
        "Current balance": "1300.00",
    }


def test_html_uses_period_opening_balance() -> None:
    account = {**ACCOUNT, "period_opening_balance": Decimal("812.5")}

    html = render_statement_html(account, [], "Period: from 2024-02-01")

    assert summary_amounts(html)["Opening balance"] == "812.50"
    assert summary_amounts(html)["Closing balance"] == "812.50"
    assert transaction_rows(html) == [["No transactions for this filter."]]


def test_html_document_is_utf8_bytes() -> None:
    document = render_statement_html_document(ACCOUNT, _lines(), "Period: all dates")

    assert isinstance(document, bytes)
    assert document.decode("utf-8").startswith("<!DOCTYPE html>")


@pytest.mark.skipif(not pdf_supported(), reason="WeasyPrint not installed")
def test_pdf_rendering() -> None:
    pdf = render_statement_pdf(ACCOUNT, _lines(), "Period: all dates")
    assert pdf.startswith(b"%PDF")
    assert render_statement_pdf(ACCOUNT, [], "Period: empty").startswith(b"%PDF")


def test_pdf_supported_is_false_without_weasyprint(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(importlib.util, "find_spec", lambda _name: None)
    assert pdf_supported() is False
