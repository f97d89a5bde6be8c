"""Engine construction shared by the CLI, the demo and the tests."""

from __future__ import annotations

import sqlite3
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import Engine, create_engine
from sqlalchemy.pool import StaticPool


def create_ledger_engine(database_url: str) -> Engine:
    """Create SQLAlchemy engine with correct psycopg driver.

    In-memory SQLite URLs share one connection across threads so that a
    schema created on one connection is visible to every later one.
    """
    if database_url.startswith("postgresql://"):
        database_url = database_url.replace("postgresql://", "postgresql+psycopg://", 1)

    if database_url.startswith("sqlite"):
        # Exact decimal text, no float rounding
        sqlite3.register_adapter(Decimal, str)
        if ":memory:" in database_url or database_url.rstrip("/") == "sqlite:":
            return create_engine(
                database_url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        return create_engine(database_url, connect_args={"check_same_thread": False})

    return create_engine(database_url)


def utc_now() -> str:
    return datetime.now(UTC).isoformat()
