"""Test configuration and fixtures."""

import sqlite3
from decimal import Decimal

import pytest
from sqlalchemy.engine import Engine

from ledger.demo import create_demo_engine
from ledger.statement import RequestScope

# Register Decimal adapter for SQLite tests (exact decimal text, no float rounding)
sqlite3.register_adapter(Decimal, str)

COMPANY_ID = 1


@pytest.fixture
def engine() -> Engine:
    """In-memory SQLite with the ledger schema."""
    return create_demo_engine()


@pytest.fixture
def scope() -> RequestScope:
    return RequestScope(company_id=COMPANY_ID, user_id=42)
