"""Ledger aggregation: one query per category, merged into a single stream.

Each category contributes rows through a parameterized SELECT. Rows are
validated into the record variant registered for the category, signed for
the requested account and merged with a stable sort. Direct documents that
carry allocation rows on a live payment are dropped by a NOT EXISTS
anti-join, so a settled document is counted through exactly one path.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import date
from decimal import Decimal
from typing import TYPE_CHECKING, Any, NamedTuple

from pydantic import BaseModel, ConfigDict, ValidationError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from ledger.balance import summarize
from ledger.errors import AggregationError, InvalidInputError
from ledger.events import (
    RECORD_TYPES,
    SOURCES_BY_CATEGORY,
    LedgerEvent,
    expand_category_filter,
)
from ledger.signs import (
    PAID,
    PAYMENT_ALLOCATION,
    STANDALONE_PAYMENT,
    TRANSFER,
    ZERO,
    Money,
)

if TYPE_CHECKING:
    from collections.abc import Iterable

    from sqlalchemy.engine import Connection, Engine

logger = logging.getLogger(__name__)


class _CategoryQuery(NamedTuple):
    sql: str
    date_expr: str


_TRANSFER_SQL = """
    SELECT t.id, t.date, t.created_at, t.amount,
           t.transfer_number AS reference, t.description,
           t.from_account_id, t.to_account_id,
           CASE WHEN t.from_account_id = :account_id
                THEN ta.account_name ELSE fa.account_name END AS counterpart
    FROM bank_transfers t
    JOIN accounts fa ON fa.id = t.from_account_id
    JOIN accounts ta ON ta.id = t.to_account_id
    WHERE t.deleted_at IS NULL
      AND (t.from_account_id = :account_id OR t.to_account_id = :account_id)
"""

_DOCUMENT_SQL = """
    SELECT d.id, d.{date_column} AS date, d.created_at,
           d.{amount_column} AS amount, {reference_expr} AS reference,
           d.notes AS description, d.account_id, d.status,
           0 AS allocation_count, c.name AS counterpart
    FROM {table} d
    LEFT JOIN contacts c ON c.id = d.contact_id
    WHERE d.account_id = :account_id
      AND d.deleted_at IS NULL
      AND d.status = '{paid}'
      AND NOT EXISTS (
          SELECT 1 FROM payment_allocations pa
          JOIN payments p ON p.id = pa.payment_id
          WHERE pa.{allocation_column} = d.id AND p.deleted_at IS NULL
      )
"""

_STANDALONE_SQL = """
    SELECT p.id, p.date, p.created_at, p.amount,
           p.payment_number AS reference, p.description,
           p.account_id, p.payment_type, c.name AS counterpart
    FROM payments p
    LEFT JOIN contacts c ON c.id = p.contact_id
    WHERE p.account_id = :account_id
      AND p.deleted_at IS NULL
      AND NOT EXISTS (
          SELECT 1 FROM payment_allocations pa WHERE pa.payment_id = p.id
      )
"""

# Allocations are booked on their payment's date and creation time
_ALLOCATION_SQL = """
    SELECT pa.id, p.date, p.created_at, pa.paid_amount AS amount,
           p.account_id, p.id AS payment_id,
           p.payment_number AS payment_reference, p.payment_type,
           pa.allocation_type, pa.balance_type,
           COALESCE(pa.sale_id, pa.purchase_id, pa.expense_id, pa.income_id)
               AS origin_id,
           c.name AS counterpart
    FROM payment_allocations pa
    JOIN payments p ON p.id = pa.payment_id
    LEFT JOIN contacts c ON c.id = p.contact_id
    WHERE p.account_id = :account_id AND p.deleted_at IS NULL
"""


def _document_query(category: str) -> _CategoryQuery:
    source = SOURCES_BY_CATEGORY[category]
    reference_expr = (
        f"d.{source.reference_column}" if source.reference_column else "NULL"
    )
    sql = _DOCUMENT_SQL.format(
        date_column=source.date_column,
        amount_column=source.amount_column,
        reference_expr=reference_expr,
        table=source.table,
        allocation_column=source.allocation_column,
        paid=PAID,
    )
    return _CategoryQuery(sql, f"d.{source.date_column}")


CATEGORY_QUERIES: dict[str, _CategoryQuery] = {
    TRANSFER: _CategoryQuery(_TRANSFER_SQL, "t.date"),
    **{category: _document_query(category) for category in SOURCES_BY_CATEGORY},
    STANDALONE_PAYMENT: _CategoryQuery(_STANDALONE_SQL, "p.date"),
    PAYMENT_ALLOCATION: _CategoryQuery(_ALLOCATION_SQL, "p.date"),
}


class EventPage(BaseModel):
    """One page of the merged stream plus what the caller needs around it.

    ``carried_amount`` is the signed total of the events before the page;
    ``total_inflow``/``total_outflow`` cover the whole filtered window.
    """

    model_config = ConfigDict(frozen=True)

    events: list[LedgerEvent]
    total: int
    page: int
    page_size: int | None
    carried_amount: Money = ZERO
    total_inflow: Money = ZERO
    total_outflow: Money = ZERO


def parse_date(value: date | str | None, *, field: str) -> date | None:
    if value is None or isinstance(value, date):
        return value
    try:
        return date.fromisoformat(value)
    except ValueError:
        msg = f"Invalid {field}: {value!r}. Use YYYY-MM-DD"
        raise InvalidInputError(msg) from None


def validate_window(
    date_from: date | str | None,
    date_to: date | str | None,
    page: int,
    page_size: int | None,
) -> tuple[date | None, date | None]:
    """Validate a date range and paging values.

    Raises:
        InvalidInputError: On malformed dates, an inverted range or bad paging
    """
    start = parse_date(date_from, field="date_from")
    end = parse_date(date_to, field="date_to")
    if start is not None and end is not None and start > end:
        msg = f"Invalid date range: {start} is after {end}"
        raise InvalidInputError(msg)
    if page < 1:
        msg = f"page must be >= 1, got {page}"
        raise InvalidInputError(msg)
    if page_size is not None and page_size < 1:
        msg = f"page_size must be >= 1, got {page_size}"
        raise InvalidInputError(msg)
    return start, end


def _fetch_category(
    conn: Connection,
    category: str,
    account_id: int,
    *,
    date_from: date | None,
    date_to: date | None,
    strict: bool,
) -> list[LedgerEvent]:
    query = CATEGORY_QUERIES[category]
    sql = query.sql
    params: dict[str, Any] = {"account_id": account_id}
    # Only bind the bounds that are set; untyped NULL params trip PostgreSQL
    if date_from is not None:
        sql += f" AND {query.date_expr} >= :date_from"
        params["date_from"] = date_from.isoformat()
    if date_to is not None:
        sql += f" AND {query.date_expr} <= :date_to"
        params["date_to"] = date_to.isoformat()

    record_type = RECORD_TYPES[category]
    try:
        rows = conn.execute(text(sql), params).mappings().all()
        records = [record_type.model_validate(dict(row)) for row in rows]
    except (SQLAlchemyError, ValidationError) as e:
        logger.exception(
            "Ledger fetch failed: account=%s category=%s operation=fetch_events",
            account_id,
            category,
        )
        msg = f"Failed to fetch {category} events for account {account_id}"
        raise AggregationError(msg) from e

    return [record.to_event(account_id, strict=strict) for record in records]


def merge_events(
    batches: Iterable[list[LedgerEvent]],
    *,
    page: int = 1,
    page_size: int | None = None,
) -> EventPage:
    """Concatenate category batches, sort canonically and cut one page."""
    ordered = sorted(
        (event for batch in batches for event in batch),
        key=LedgerEvent.sort_key,
    )
    inflow, outflow = summarize(ordered)

    if page_size is None:
        window = ordered
        carried = ZERO
    else:
        offset = (page - 1) * page_size
        window = ordered[offset : offset + page_size]
        carried = sum((event.amount for event in ordered[:offset]), ZERO)

    return EventPage(
        events=window,
        total=len(ordered),
        page=page,
        page_size=page_size,
        carried_amount=carried,
        total_inflow=inflow,
        total_outflow=outflow,
    )


def fetch_events(
    conn: Connection,
    account_id: int,
    *,
    date_from: date | str | None = None,
    date_to: date | str | None = None,
    categories: Iterable[str] | None = None,
    page: int = 1,
    page_size: int | None = None,
    strict: bool = False,
) -> EventPage:
    """Fetch the ordered ledger stream of one account.

    Args:
        conn: Database connection
        account_id: Account whose statement is built
        date_from: Inclusive lower bound on the event date
        date_to: Inclusive upper bound on the event date
        categories: Category names or aliases; all categories when empty
        page: 1-based page number
        page_size: Events per page; ``None`` returns everything
        strict: Reject unknown allocation types instead of falling back

    Returns:
        EventPage with the requested window and the unpaginated total

    Raises:
        InvalidInputError: On a bad date range, category or paging value
        AggregationError: If any category fetch fails
    """
    start, end = validate_window(date_from, date_to, page, page_size)
    selected = expand_category_filter(categories)

    batches = [
        _fetch_category(
            conn, category, account_id, date_from=start, date_to=end, strict=strict
        )
        for category in selected
    ]
    return merge_events(batches, page=page, page_size=page_size)


def fetch_events_concurrently(
    engine: Engine,
    account_id: int,
    *,
    date_from: date | str | None = None,
    date_to: date | str | None = None,
    categories: Iterable[str] | None = None,
    page: int = 1,
    page_size: int | None = None,
    strict: bool = False,
    max_workers: int = 4,
) -> EventPage:
    """Same as :func:`fetch_events`, one pooled connection per category."""
    start, end = validate_window(date_from, date_to, page, page_size)
    selected = expand_category_filter(categories)

    def _run(category: str) -> list[LedgerEvent]:
        with engine.connect() as conn:
            return _fetch_category(
                conn, category, account_id, date_from=start, date_to=end, strict=strict
            )

    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        # Iterating map() re-raises the first failure; nothing is merged then
        batches = list(pool.map(_run, selected))

    return merge_events(batches, page=page, page_size=page_size)


def net_amount(page: EventPage) -> Decimal:
    return page.total_inflow - page.total_outflow
