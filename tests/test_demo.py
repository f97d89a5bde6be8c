"""Tests for the bundled demo ledger."""

from decimal import Decimal

from sqlalchemy.engine import Engine

from ledger.accounts import list_accounts
from ledger.demo import load_demo_fixtures
from ledger.statement import RequestScope, get_statement


def test_demo_balances(engine: Engine) -> None:
    with engine.begin() as conn:
        keys = load_demo_fixtures(conn)
        balances = {
            account["id"]: account["current_balance"]
            for account in list_accounts(conn, company_id=1)
        }

    assert balances == {
        keys["operating"]: Decimal("870.00"),
        keys["savings"]: Decimal("5312.50"),
        keys["petty"]: Decimal("225.00"),
    }


def test_demo_operating_statement(engine: Engine, scope: RequestScope) -> None:
    with engine.begin() as conn:
        keys = load_demo_fixtures(conn)

    statement = get_statement(engine, scope, keys["operating"])

    assert [t["runningBalance"] for t in statement["transactions"]] == [
        650.0,
        1150.0,
        850.0,
        750.0,
        790.0,
        870.0,
    ]
    assert statement["summary"]["openingBalance"] == 1000.0
    assert statement["summary"]["currentBalance"] == 870.0
