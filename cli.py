#!/usr/bin/env python3
"""CLI interface for the bank ledger reconciliation engine."""

import importlib.util
import json
import logging
import os
import platform
import sys
from pathlib import Path
from typing import Annotated, Any

import psycopg
import typer
from dotenv import load_dotenv
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from ledger.accounts import list_accounts
from ledger.config import LedgerSettings, load_settings_from_env
from ledger.db import create_ledger_engine, utc_now
from ledger.demo import DEMO_COMPANY_ID, create_demo_engine, load_demo_fixtures
from ledger.errors import InvalidInputError, LedgerError, UnauthorizedError
from ledger.reconcile import record_reconcile_run, run_reconciliation
from ledger.reports.render import (
    pdf_supported,
    render_statement_html_document,
    render_statement_pdf,
)
from ledger.statement import (
    RequestScope,
    export_statement,
    get_statement,
    get_transaction_tracking,
)

app = typer.Typer(
    name="blr",
    help="Bank ledger reconciliation - statements, balances and drift audits",
    no_args_is_help=True,
)

CompanyOption = Annotated[int, typer.Option("--company-id", help="Company scope")]
AccountOption = Annotated[int, typer.Option("--account-id", help="Bank account ID")]
FromOption = Annotated[
    str | None, typer.Option("--from", help="Start date (YYYY-MM-DD)")
]
ToOption = Annotated[str | None, typer.Option("--to", help="End date (YYYY-MM-DD)")]
UserOption = Annotated[
    str, typer.Option("--user-id", help="Requesting user recorded in the scope")
]


# Settings loaded by the callback for the running command
_active: dict[str, LedgerSettings] = {}


def _plain() -> bool:
    settings = _active.get("settings")
    return settings is not None and settings.plain_output


def _mark_success() -> str:
    """Return success indicator (emoji, or nothing when plain output is set)."""
    return "" if _plain() else "✅"


def _mark_error() -> str:
    """Return error indicator (emoji, or nothing when plain output is set)."""
    return "" if _plain() else "❌"


@app.callback()
def _load_env() -> None:
    # Skip dotenv loading in tests/CI for hermetic environments
    if os.getenv("BLR_SKIP_DOTENV") != "1":
        load_dotenv(override=False)  # Never override already-set env in CI/tests
    _active.clear()
    settings = _settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _settings() -> LedgerSettings:
    try:
        settings = load_settings_from_env()
    except ValueError as e:
        typer.echo(f"{_mark_error()} Invalid configuration: {e}", err=True)
        raise typer.Exit(2) from e
    _active["settings"] = settings
    return settings


def _engine(settings: LedgerSettings) -> Engine:
    if not settings.database_url:
        typer.echo(f"{_mark_error()} DATABASE_URL not found in environment", err=True)
        raise typer.Exit(2)
    return create_ledger_engine(settings.database_url)


def _fail(error: LedgerError, action: str) -> typer.Exit:
    """Print a domain error and pick the exit code for it."""
    typer.echo(f"{_mark_error()} {action} failed: {error}", err=True)
    if isinstance(error, InvalidInputError | UnauthorizedError):
        return typer.Exit(2)
    return typer.Exit(1)


def _emit(payload: dict[str, Any], out: str | None) -> None:
    body = json.dumps(payload, indent=2, default=str)
    if out:
        out_path = Path(out)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        out_path.write_text(body + "\n", encoding="utf-8")
        typer.echo(f"{_mark_success()} Wrote {out_path}")
    else:
        typer.echo(body)


def _echo_table(result: dict[str, Any]) -> None:
    account = result["account"]
    typer.echo(f"{account['accountName']} (#{account['id']})")
    for item in result["transactions"]:
        typer.echo(
            f"{item['date']}  {item['reference']:<16} {item['category']:<19} "
            f"{item['amount']:>12.2f} {item['runningBalance']:>12.2f}"
        )
    pagination = result["pagination"]
    typer.echo(
        f"page {pagination['page']}/{max(pagination['totalPages'], 1)} "
        f"({pagination['total']} transactions)"
    )


@app.command("init-db")
def init_db() -> None:
    """Initialize database schema from ledger/schema.sql."""
    database_url = _settings().database_url
    if not database_url:
        typer.echo(
            "Error: DATABASE_URL not set. Please set it via environment or .env file.",
            err=True,
        )
        raise typer.Exit(2)

    schema_path = Path(__file__).parent / "ledger" / "schema.sql"
    if not schema_path.exists():
        typer.echo(f"{_mark_error()} Schema file not found: {schema_path}", err=True)
        raise typer.Exit(2)

    try:
        with psycopg.connect(database_url) as conn, conn.cursor() as cur:
            cur.execute(schema_path.read_text())
            conn.commit()

        typer.echo(f"{_mark_success()} Database schema initialized successfully")
    except psycopg.Error as e:
        typer.echo(f"{_mark_error()} Database error: {e}", err=True)
        raise typer.Exit(1) from e


@app.command("accounts")
def accounts(
    company_id: CompanyOption,
    include_inactive: Annotated[
        bool, typer.Option("--all", help="Include inactive accounts")
    ] = False,
) -> None:
    """List the bank accounts of a company."""
    engine = _engine(_settings())
    try:
        with engine.connect() as conn:
            rows = list_accounts(
                conn, company_id=company_id, include_inactive=include_inactive
            )
    except SQLAlchemyError as e:
        typer.echo(f"{_mark_error()} Database error: {e}", err=True)
        raise typer.Exit(1) from e

    for row in rows:
        status = "" if row["is_active"] else " (inactive)"
        typer.echo(
            f"{row['id']:>4}  {row['account_name']:<24} {row['account_type']:<6} "
            f"{row['current_balance']:>12}{status}"
        )


@app.command("statement")
def statement(
    company_id: CompanyOption,
    account_id: AccountOption,
    from_date: FromOption = None,
    to_date: ToOption = None,
    category: Annotated[
        list[str] | None,
        typer.Option("--category", help="Category or alias; repeatable"),
    ] = None,
    page: Annotated[int, typer.Option("--page")] = 1,
    page_size: Annotated[int, typer.Option("--page-size")] = 50,
    json_out: Annotated[bool, typer.Option("--json", help="Output JSON")] = False,
    out: Annotated[str | None, typer.Option("--out", help="Write JSON here")] = None,
    user_id: UserOption = "cli",
) -> None:
    """Show one page of an account statement with running balances."""
    settings = _settings()
    engine = _engine(settings)
    try:
        result = get_statement(
            engine,
            RequestScope(company_id=company_id, user_id=user_id),
            account_id,
            date_from=from_date,
            date_to=to_date,
            categories=category,
            page=page,
            page_size=page_size,
            strict=settings.strict_allocation_types,
            fetch_workers=settings.fetch_workers,
            max_page_size=settings.max_page_size,
        )
    except LedgerError as e:
        raise _fail(e, "Statement") from e

    if json_out or out:
        _emit(result, out)
    else:
        _echo_table(result)
        summary = result["summary"]
        typer.echo(
            f"opening {summary['openingBalance']:.2f}  "
            f"in {summary['totalInflows']:.2f}  "
            f"out {summary['totalOutflows']:.2f}  "
            f"current {summary['currentBalance']:.2f}"
        )


@app.command("tracking")
def tracking(
    company_id: CompanyOption,
    account_id: AccountOption,
    from_date: FromOption = None,
    to_date: ToOption = None,
    include_payments: Annotated[
        bool, typer.Option("--payments/--no-payments", help="Include payments")
    ] = True,
    page: Annotated[int, typer.Option("--page")] = 1,
    page_size: Annotated[int, typer.Option("--page-size")] = 50,
    out: Annotated[str | None, typer.Option("--out", help="Write JSON here")] = None,
    user_id: UserOption = "cli",
) -> None:
    """Show transactions with payment linkage as JSON."""
    settings = _settings()
    engine = _engine(settings)
    try:
        result = get_transaction_tracking(
            engine,
            RequestScope(company_id=company_id, user_id=user_id),
            account_id,
            date_from=from_date,
            date_to=to_date,
            include_payments=include_payments,
            page=page,
            page_size=page_size,
            strict=settings.strict_allocation_types,
            fetch_workers=settings.fetch_workers,
            max_page_size=settings.max_page_size,
        )
    except LedgerError as e:
        raise _fail(e, "Tracking") from e

    _emit(result, out)


@app.command("export")
def export(
    company_id: CompanyOption,
    account_id: AccountOption,
    out: Annotated[str, typer.Option("--out", help="Output file")],
    from_date: FromOption = None,
    to_date: ToOption = None,
    category: Annotated[
        list[str] | None,
        typer.Option("--category", help="Category or alias; repeatable"),
    ] = None,
    fmt: Annotated[str, typer.Option("--format", help="html or pdf")] = "html",
    user_id: UserOption = "cli",
) -> None:
    """Render the full statement to an HTML or PDF document."""
    if fmt not in ("html", "pdf"):
        typer.echo(f"{_mark_error()} Invalid format. Use: html or pdf", err=True)
        raise typer.Exit(2)
    if fmt == "pdf" and not pdf_supported():
        typer.echo(
            f"{_mark_error()} WeasyPrint not available; use --format html", err=True
        )
        raise typer.Exit(1)

    settings = _settings()
    engine = _engine(settings)
    renderer = render_statement_pdf if fmt == "pdf" else render_statement_html_document
    try:
        document = export_statement(
            engine,
            RequestScope(company_id=company_id, user_id=user_id),
            account_id,
            renderer=renderer,
            date_from=from_date,
            date_to=to_date,
            categories=category,
            strict=settings.strict_allocation_types,
            fetch_workers=settings.fetch_workers,
        )
    except LedgerError as e:
        raise _fail(e, "Export") from e

    out_path = Path(out)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_bytes(document)
    typer.echo(f"{_mark_success()} Generated: {out_path}")


def _reconcile_and_record(
    engine: Engine, company_id: int, account_ids: list[int] | None
) -> dict[str, Any]:
    started_at = utc_now()
    with engine.begin() as conn:
        result = run_reconciliation(
            conn, company_id=company_id, account_ids=account_ids
        )
        record_reconcile_run(conn, result, started_at=started_at)
    return result


@app.command("reconcile")
def reconcile(
    company_id: CompanyOption,
    account_id: Annotated[
        list[int] | None,
        typer.Option("--account-id", help="Limit the drift check; repeatable"),
    ] = None,
    out: Annotated[str | None, typer.Option("--out", help="Output file")] = None,
) -> None:
    """Audit persisted balances against a full recomputation."""
    engine = _engine(_settings())
    try:
        result = _reconcile_and_record(engine, company_id, account_id)
    except (LedgerError, SQLAlchemyError) as e:
        typer.echo(f"{_mark_error()} Error during reconciliation: {e}", err=True)
        raise typer.Exit(1) from e

    _emit(result, out)
    if not result["success"]:
        typer.echo(
            f"{_mark_error()} Reconciliation failed for company {company_id}",
            err=True,
        )
        raise typer.Exit(1)
    typer.echo(f"{_mark_success()} Reconciliation passed for company {company_id}")


@app.command("demo")
def demo(
    out: Annotated[
        str,
        typer.Option("--out", help="Output directory for reports"),
    ] = "build",
) -> None:
    """Run offline demo with fixture data (SQLite in memory)."""
    os.environ["TZ"] = "UTC"

    try:
        typer.echo("🚀 Starting offline demo (SQLite + fixtures)...")
        engine = create_demo_engine()
        with engine.begin() as conn:
            keys = load_demo_fixtures(conn)
        typer.echo(f"{_mark_success()} Demo database initialized with fixtures")

        out_path = Path(out)
        out_path.mkdir(parents=True, exist_ok=True)

        result = _reconcile_and_record(engine, DEMO_COMPANY_ID, None)
        recon_file = out_path / "demo_recon.json"
        recon_file.write_text(
            json.dumps(result, indent=2, default=str) + "\n", encoding="utf-8"
        )
        typer.echo(f"{_mark_success()} Reconciliation: {recon_file}")

        scope = RequestScope(company_id=DEMO_COMPANY_ID, user_id="demo")
        pdf = pdf_supported()
        for key in ("operating", "savings", "petty"):
            html = export_statement(
                engine, scope, keys[key], renderer=render_statement_html_document
            )
            html_file = out_path / f"demo_statement_{key}.html"
            html_file.write_bytes(html)
            typer.echo(f"{_mark_success()} Statement: {html_file}")
            if pdf:
                pdf_file = out_path / f"demo_statement_{key}.pdf"
                pdf_file.write_bytes(
                    export_statement(
                        engine, scope, keys[key], renderer=render_statement_pdf
                    )
                )
                typer.echo(f"{_mark_success()} Statement: {pdf_file}")
    except (LedgerError, SQLAlchemyError) as e:
        typer.echo(f"{_mark_error()} Demo failed: {e}", err=True)
        raise typer.Exit(1) from e

    if not result["success"]:
        typer.echo(f"{_mark_error()} Reconciliation: FAILED")
        raise typer.Exit(1)
    typer.echo(
        f"{_mark_success()} Reconciliation: PASSED "
        f"(drift: {result.get('total_drift', 0):.2f})"
    )
    typer.echo(f"📂 Generated files in: {out_path.absolute()}")


def _check_dependency(module_name: str) -> bool:
    """Check if a module is available without importing it."""
    return importlib.util.find_spec(module_name) is not None


def _check_python_version() -> bool:
    """Check Python version requirement."""
    py_version = sys.version_info
    version_str = f"{py_version.major}.{py_version.minor}.{py_version.micro}"
    typer.echo(f"Python version: {version_str}")
    if py_version < (3, 11):
        typer.echo(f"{_mark_error()} Python 3.11+ required, found {version_str}")
        return False
    typer.echo(f"{_mark_success()} Python version OK")
    return True


def _check_database() -> bool:
    """Check database connection if configured."""
    database_url = _settings().database_url
    if not database_url:
        typer.echo("i  DATABASE_URL not set (OK for offline demo)")
        return True

    typer.echo(f"Database URL: {database_url[:20]}...")
    try:
        engine = create_ledger_engine(database_url)
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        typer.echo(f"{_mark_error()} Database connection failed: {e}")
        return False
    else:
        typer.echo(f"{_mark_success()} Database connection OK")
        return True


def _check_dependencies() -> bool:
    """Check Python package dependencies."""
    core = ("jinja2", "sqlalchemy", "pydantic", "yaml")
    if all(_check_dependency(name) for name in core):
        typer.echo(f"{_mark_success()} Core dependencies available")
        success = True
    else:
        typer.echo(f"{_mark_error()} Missing core dependencies")
        success = False

    if pdf_supported():
        typer.echo(f"{_mark_success()} WeasyPrint available (PDF support)")
    else:
        typer.echo("i  WeasyPrint not available (PDF disabled, HTML reports only)")

    return success


@app.command("doctor")
def doctor() -> None:
    """Run preflight checks for dependencies and configuration."""
    typer.echo("🔍 Running system preflight checks...\n")
    typer.echo(f"Platform: {platform.system()} {platform.release()}")

    checks = [
        _check_python_version(),
        _check_database(),
        _check_dependencies(),
    ]

    typer.echo()
    if all(checks):
        typer.echo(f"{_mark_success()} All checks passed! System ready for blr")
    else:
        typer.echo(f"{_mark_error()} Some checks failed. See errors above.")
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
