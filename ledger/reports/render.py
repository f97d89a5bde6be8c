"""Deterministic HTML/PDF bank statement rendering with Jinja2 templates."""

from __future__ import annotations

import importlib.util
from decimal import Decimal
from pathlib import Path
from typing import TYPE_CHECKING, Any

from jinja2 import Environment, FileSystemLoader

from ledger.balance import summarize
from ledger.events import category_label

if TYPE_CHECKING:
    from ledger.balance import StatementLine


def _get_template_env() -> Environment:
    """Get Jinja2 environment with deterministic settings."""
    template_dir = Path(__file__).parent / "templates"
    return Environment(
        loader=FileSystemLoader(template_dir),
        autoescape=True,
        trim_blocks=True,
        lstrip_blocks=True,
        keep_trailing_newline=True,
    )


def _format_amount(amount: Decimal | float | int) -> str:
    """Format amount to exactly 2 decimal places for deterministic output."""
    if isinstance(amount, float | int):
        amount = Decimal(str(amount))
    return f"{amount.quantize(Decimal('0.01')):.2f}"


def render_statement_html(
    account: dict[str, Any],
    lines: list[StatementLine],
    filter_description: str,
) -> str:
    """Generate deterministic HTML for a bank statement.

    Args:
        account: Account row; ``period_opening_balance`` overrides the
            account's opening balance when the statement starts mid-history
        lines: Statement lines in canonical order with running balances
        filter_description: Human readable period/category filter

    Returns:
        HTML string with deterministic formatting
    """
    opening = account.get("period_opening_balance", account["opening_balance"])
    closing = lines[-1].running_balance if lines else opening
    inflow, outflow = summarize(lines)

    rows = [
        {
            "date": line.date.isoformat(),
            "reference": line.reference,
            "category": category_label(line.category),
            "description": line.description,
            "counterpart": line.counterpart or "",
            "inflow": _format_amount(line.amount) if line.amount > 0 else "",
            "outflow": _format_amount(-line.amount) if line.amount < 0 else "",
            "balance": _format_amount(line.running_balance),
        }
        for line in lines
    ]

    env = _get_template_env()
    template = env.get_template("statement.html.j2")
    return template.render(
        account_name=account["account_name"],
        account_type=account["account_type"],
        account_id=account["id"],
        filter_description=filter_description,
        rows=rows,
        opening_balance=_format_amount(opening),
        total_inflow=_format_amount(inflow),
        total_outflow=_format_amount(outflow),
        closing_balance=_format_amount(closing),
        current_balance=_format_amount(account["current_balance"]),
    )


def pdf_supported() -> bool:
    """True when WeasyPrint is installed and its native libraries load."""
    if importlib.util.find_spec("weasyprint") is None:
        return False
    try:
        import weasyprint  # noqa: F401, PLC0415
    except OSError:
        # Package present but pango/cairo shared objects are missing
        return False
    return True


def render_statement_html_document(
    account: dict[str, Any],
    lines: list[StatementLine],
    filter_description: str,
) -> bytes:
    """Statement renderer producing UTF-8 HTML bytes."""
    return render_statement_html(account, lines, filter_description).encode("utf-8")


def render_statement_pdf(
    account: dict[str, Any],
    lines: list[StatementLine],
    filter_description: str,
) -> bytes:
    """Statement renderer producing PDF bytes through WeasyPrint."""
    from weasyprint import HTML  # noqa: PLC0415

    html = render_statement_html(account, lines, filter_description)
    return HTML(string=html).write_pdf()  # type: ignore[no-any-return]

