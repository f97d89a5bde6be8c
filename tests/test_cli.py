"""Tests for CLI commands against a file-backed SQLite ledger."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from sqlalchemy import text
from typer.testing import CliRunner

from cli import app
from ledger.demo import create_demo_engine, load_demo_fixtures

runner = CliRunner()


@pytest.fixture
def ledger_db(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> dict[str, int]:
    """Demo ledger in a SQLite file, exposed through DATABASE_URL."""
    url = f"sqlite:///{tmp_path / 'ledger.db'}"
    engine = create_demo_engine(url)
    with engine.begin() as conn:
        keys = load_demo_fixtures(conn)
    engine.dispose()

    monkeypatch.setenv("DATABASE_URL", url)
    monkeypatch.setenv("BLR_SKIP_DOTENV", "1")
    monkeypatch.setenv("BLR_PLAIN", "1")
    return keys


def test_missing_database_url_exits_2(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setenv("BLR_SKIP_DOTENV", "1")

    result = runner.invoke(app, ["statement", "--company-id", "1", "--account-id", "1"])

    assert result.exit_code == 2
    assert "DATABASE_URL not found" in result.output


def test_statement_requires_company_and_account() -> None:
    result = runner.invoke(app, ["statement"])
    assert result.exit_code == 2
    assert "Missing option" in result.output


def test_statement_json(ledger_db: dict[str, int], tmp_path: Path) -> None:
    out = tmp_path / "out" / "statement.json"

    result = runner.invoke(
        app,
        [
            "statement",
            "--company-id",
            "1",
            "--account-id",
            str(ledger_db["operating"]),
            "--from",
            "2024-02-01",
            "--out",
            str(out),
        ],
    )

    assert result.exit_code == 0, result.output
    payload = json.loads(out.read_text(encoding="utf-8"))
    assert payload["summary"]["openingBalance"] == 850.0
    assert payload["summary"]["currentBalance"] == 870.0
    assert [t["runningBalance"] for t in payload["transactions"]] == [
        750.0,
        790.0,
        870.0,
    ]


def test_statement_table_output(ledger_db: dict[str, int]) -> None:
    result = runner.invoke(
        app,
        [
            "statement",
            "--company-id",
            "1",
            "--account-id",
            str(ledger_db["petty"]),
        ],
    )

    assert result.exit_code == 0, result.output
    assert "Petty Cash" in result.output
    assert "225.00" in result.output


def test_statement_bad_date_exits_2(ledger_db: dict[str, int]) -> None:
    result = runner.invoke(
        app,
        [
            "statement",
            "--company-id",
            "1",
            "--account-id",
            str(ledger_db["operating"]),
            "--from",
            "01/02/2024",
        ],
    )

    assert result.exit_code == 2
    assert "Invalid date_from" in result.output


def test_statement_other_company_exits_1(ledger_db: dict[str, int]) -> None:
    result = runner.invoke(
        app,
        [
            "statement",
            "--company-id",
            "2",
            "--account-id",
            str(ledger_db["operating"]),
        ],
    )

    assert result.exit_code == 1
    assert "not found" in result.output


def test_tracking_writes_payment_links(ledger_db: dict[str, int], tmp_path: Path) -> None:
    out = tmp_path / "tracking.json"

    result = runner.invoke(
        app,
        [
            "tracking",
            "--company-id",
            "1",
            "--account-id",
            str(ledger_db["operating"]),
            "--out",
            str(out),
        ],
    )

    assert result.exit_code == 0, result.output
    payload = json.loads(out.read_text(encoding="utf-8"))
    references = {t["paymentReference"] for t in payload["transactions"]}
    assert {"PY-2024-0001", "PY-2024-0002"} <= references


def test_export_html(ledger_db: dict[str, int], tmp_path: Path) -> None:
    out = tmp_path / "reports" / "savings.html"

    result = runner.invoke(
        app,
        [
            "export",
            "--company-id",
            "1",
            "--account-id",
            str(ledger_db["savings"]),
            "--out",
            str(out),
        ],
    )

    assert result.exit_code == 0, result.output
    html = out.read_text(encoding="utf-8")
    assert "5312.50" in html
    assert "Period: all dates; Categories: all transactions" in html


def test_export_rejects_unknown_format(ledger_db: dict[str, int], tmp_path: Path) -> None:
    result = runner.invoke(
        app,
        [
            "export",
            "--company-id",
            "1",
            "--account-id",
            str(ledger_db["savings"]),
            "--out",
            str(tmp_path / "x.csv"),
            "--format",
            "csv",
        ],
    )
    assert result.exit_code == 2


def test_accounts_lists_company_accounts(ledger_db: dict[str, int]) -> None:  # noqa: ARG001
    result = runner.invoke(app, ["accounts", "--company-id", "1"])

    assert result.exit_code == 0, result.output
    for name in ("Operating", "Savings", "Petty Cash"):
        assert name in result.output


def test_reconcile_passes_and_records_run(
    ledger_db: dict[str, int], tmp_path: Path  # noqa: ARG001
) -> None:
    out = tmp_path / "recon.json"

    result = runner.invoke(app, ["reconcile", "--company-id", "1", "--out", str(out)])

    assert result.exit_code == 0, result.output
    assert "Reconciliation passed" in result.output
    assert json.loads(out.read_text(encoding="utf-8"))["success"] is True


def test_reconcile_drift_exits_1(ledger_db: dict[str, int], tmp_path: Path) -> None:
    engine = create_demo_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    with engine.begin() as conn:
        conn.execute(
            text("UPDATE accounts SET current_balance = 1.00 WHERE id = :id"),
            {"id": ledger_db["petty"]},
        )
    engine.dispose()

    result = runner.invoke(
        app, ["reconcile", "--company-id", "1", "--out", str(tmp_path / "r.json")]
    )

    assert result.exit_code == 1
    assert "Reconciliation failed" in result.output


def test_demo_writes_reports(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BLR_SKIP_DOTENV", "1")
    monkeypatch.setenv("BLR_PLAIN", "1")

    result = runner.invoke(app, ["demo", "--out", str(tmp_path)])

    assert result.exit_code == 0, result.output
    assert "Reconciliation: PASSED" in result.output
    assert json.loads((tmp_path / "demo_recon.json").read_text())["success"] is True
    for key in ("operating", "savings", "petty"):
        assert (tmp_path / f"demo_statement_{key}.html").exists()


@pytest.mark.parametrize(("plain", "emoji"), [("true", False), ("yes", False), ("0", True)])
def test_plain_output_follows_settings_flag(
    ledger_db: dict[str, int],  # noqa: ARG001
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    plain: str,
    emoji: bool,  # noqa: FBT001
) -> None:
    monkeypatch.setenv("BLR_PLAIN", plain)

    result = runner.invoke(
        app, ["reconcile", "--company-id", "1", "--out", str(tmp_path / "r.json")]
    )

    assert result.exit_code == 0, result.output
    assert ("✅" in result.output) is emoji


def test_unknown_log_level_exits_2(
    ledger_db: dict[str, int],  # noqa: ARG001
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("BLR_LOG_LEVEL", "chatty")

    result = runner.invoke(app, ["accounts", "--company-id", "1"])

    assert result.exit_code == 2
    assert "Invalid configuration" in result.output
