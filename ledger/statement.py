"""Statement service: paginated statements, exports and payment tracking."""

from __future__ import annotations

import logging
import math
from datetime import timedelta
from typing import TYPE_CHECKING, Any, Protocol

from pydantic import BaseModel, ConfigDict

from ledger.accounts import get_account
from ledger.aggregate import (
    EventPage,
    fetch_events,
    fetch_events_concurrently,
    net_amount,
    validate_window,
)
from ledger.balance import StatementLine, compute_running_balance, quantize_money
from ledger.errors import InvalidInputError, UnauthorizedError
from ledger.events import category_label, expand_category_filter
from ledger.signs import ALL_CATEGORIES, PAYMENT_CATEGORIES

if TYPE_CHECKING:
    from collections.abc import Iterable
    from datetime import date
    from decimal import Decimal

    from sqlalchemy.engine import Engine

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 500


class RequestScope(BaseModel):
    """Caller identity handed in by the transport layer."""

    model_config = ConfigDict(frozen=True)

    company_id: int | None = None
    user_id: int | str | None = None

    def require(self) -> int:
        if self.company_id is None or self.user_id is None:
            msg = "Request scope is missing company or user"
            raise UnauthorizedError(msg)
        return self.company_id


class StatementRenderer(Protocol):
    def __call__(
        self,
        account: dict[str, Any],
        lines: list[StatementLine],
        filter_description: str,
    ) -> bytes: ...


class _Options(BaseModel):
    strict: bool = False
    fetch_workers: int = 1
    max_page_size: int = MAX_PAGE_SIZE


def _money(value: Any) -> float:  # noqa: ANN401
    return float(quantize_money(value))


def _fetch(
    engine: Engine,
    account_id: int,
    options: _Options,
    **kwargs: Any,  # noqa: ANN401
) -> EventPage:
    if options.fetch_workers > 1:
        return fetch_events_concurrently(
            engine,
            account_id,
            strict=options.strict,
            max_workers=options.fetch_workers,
            **kwargs,
        )
    with engine.connect() as conn:
        return fetch_events(conn, account_id, strict=options.strict, **kwargs)


def _load_account(engine: Engine, scope: RequestScope, account_id: int) -> dict[str, Any]:
    company_id = scope.require()
    with engine.connect() as conn:
        return get_account(conn, account_id, company_id=company_id)


def _period_opening(
    engine: Engine,
    account: dict[str, Any],
    date_from: date | None,
    categories: tuple[str, ...],
    options: _Options,
) -> Decimal:
    """Opening balance brought forward to ``date_from``."""
    if date_from is None:
        return account["opening_balance"]
    prior = _fetch(
        engine,
        account["id"],
        options,
        date_to=date_from - timedelta(days=1),
        categories=categories,
    )
    return account["opening_balance"] + net_amount(prior)


def _account_payload(account: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": account["id"],
        "accountName": account["account_name"],
        "accountType": account["account_type"],
        "openingBalance": _money(account["opening_balance"]),
        "currentBalance": _money(account["current_balance"]),
        "isActive": account["is_active"],
    }


def _line_payload(line: StatementLine) -> dict[str, Any]:
    return {
        "category": line.category,
        "id": line.id,
        "reference": line.reference,
        "date": line.date.isoformat(),
        "description": line.description,
        "amount": _money(line.amount),
        "direction": line.direction,
        "counterpart": line.counterpart,
        "runningBalance": _money(line.running_balance),
        "originId": line.origin_id,
        "originType": line.origin_type,
    }


def _pagination(page: int, page_size: int, total: int) -> dict[str, int]:
    return {
        "page": page,
        "limit": page_size,
        "total": total,
        "totalPages": math.ceil(total / page_size),
    }


def _check_page_size(page_size: int, options: _Options) -> None:
    if page_size > options.max_page_size:
        msg = f"page_size must be <= {options.max_page_size}, got {page_size}"
        raise InvalidInputError(msg)


def _build_lines(
    engine: Engine,
    scope: RequestScope,
    account_id: int,
    *,
    date_from: date | str | None,
    date_to: date | str | None,
    categories: tuple[str, ...],
    page: int,
    page_size: int | None,
    options: _Options,
) -> tuple[dict[str, Any], EventPage, list[StatementLine], Decimal]:
    account = _load_account(engine, scope, account_id)
    start, end = validate_window(date_from, date_to, page, page_size)
    opening = _period_opening(engine, account, start, categories, options)
    events = _fetch(
        engine,
        account_id,
        options,
        date_from=start,
        date_to=end,
        categories=categories,
        page=page,
        page_size=page_size,
    )
    lines, _ = compute_running_balance(opening + events.carried_amount, events.events)
    return account, events, lines, opening


def get_statement(
    engine: Engine,
    scope: RequestScope,
    account_id: int,
    *,
    date_from: date | str | None = None,
    date_to: date | str | None = None,
    categories: Iterable[str] | None = None,
    page: int = 1,
    page_size: int = DEFAULT_PAGE_SIZE,
    strict: bool = False,
    fetch_workers: int = 1,
    max_page_size: int = MAX_PAGE_SIZE,
) -> dict[str, Any]:
    """Build one page of an account statement.

    ``summary.openingBalance`` is the balance brought forward to
    ``date_from``; inflow and outflow totals cover the whole filtered
    window, not only the page; ``currentBalance`` is the persisted value.

    Raises:
        UnauthorizedError: If the scope has no company or user
        NotFoundError: If the account is missing, deleted or out of scope
        InvalidInputError: On bad dates, categories or paging
        AggregationError: If any category fetch fails
    """
    options = _Options(
        strict=strict, fetch_workers=fetch_workers, max_page_size=max_page_size
    )
    _check_page_size(page_size, options)
    selected = expand_category_filter(categories)
    account, events, lines, opening = _build_lines(
        engine,
        scope,
        account_id,
        date_from=date_from,
        date_to=date_to,
        categories=selected,
        page=page,
        page_size=page_size,
        options=options,
    )
    logger.debug(
        "Statement account=%s page=%s events=%s total=%s",
        account_id,
        page,
        len(lines),
        events.total,
    )
    return {
        "account": _account_payload(account),
        "transactions": [_line_payload(line) for line in lines],
        "pagination": _pagination(page, page_size, events.total),
        "summary": {
            "openingBalance": _money(opening),
            "totalInflows": _money(events.total_inflow),
            "totalOutflows": _money(events.total_outflow),
            "currentBalance": _money(account["current_balance"]),
        },
    }


def describe_filters(
    date_from: date | None, date_to: date | None, categories: tuple[str, ...]
) -> str:
    if date_from and date_to:
        period = f"{date_from.isoformat()} to {date_to.isoformat()}"
    elif date_from:
        period = f"from {date_from.isoformat()}"
    elif date_to:
        period = f"up to {date_to.isoformat()}"
    else:
        period = "all dates"
    if categories == ALL_CATEGORIES:
        kinds = "all transactions"
    else:
        kinds = ", ".join(category_label(c) for c in categories)
    return f"Period: {period}; Categories: {kinds}"


def export_statement(
    engine: Engine,
    scope: RequestScope,
    account_id: int,
    *,
    renderer: StatementRenderer,
    date_from: date | str | None = None,
    date_to: date | str | None = None,
    categories: Iterable[str] | None = None,
    strict: bool = False,
    fetch_workers: int = 1,
) -> bytes:
    """Render the full, unpaginated statement through ``renderer``.

    The account handed to the renderer carries ``period_opening_balance``,
    the balance brought forward to ``date_from``.
    """
    options = _Options(strict=strict, fetch_workers=fetch_workers)
    selected = expand_category_filter(categories)
    scope.require()
    start, end = validate_window(date_from, date_to, 1, None)
    account, _, lines, opening = _build_lines(
        engine,
        scope,
        account_id,
        date_from=start,
        date_to=end,
        categories=selected,
        page=1,
        page_size=None,
        options=options,
    )
    document = renderer(
        {**account, "period_opening_balance": opening},
        lines,
        describe_filters(start, end, selected),
    )
    logger.info("Exported statement account=%s lines=%s", account_id, len(lines))
    return document


def _balance_impact(line: StatementLine) -> str:
    if line.amount > 0:
        return "credit"
    if line.amount < 0:
        return "debit"
    return "neutral"


def get_transaction_tracking(
    engine: Engine,
    scope: RequestScope,
    account_id: int,
    *,
    date_from: date | str | None = None,
    date_to: date | str | None = None,
    include_payments: bool = True,
    page: int = 1,
    page_size: int = DEFAULT_PAGE_SIZE,
    strict: bool = False,
    fetch_workers: int = 1,
    max_page_size: int = MAX_PAGE_SIZE,
) -> dict[str, Any]:
    """Statement page with payment linkage for drill-down views."""
    options = _Options(
        strict=strict, fetch_workers=fetch_workers, max_page_size=max_page_size
    )
    _check_page_size(page_size, options)
    selected = (
        ALL_CATEGORIES
        if include_payments
        else tuple(c for c in ALL_CATEGORIES if c not in PAYMENT_CATEGORIES)
    )
    account, events, lines, _ = _build_lines(
        engine,
        scope,
        account_id,
        date_from=date_from,
        date_to=date_to,
        categories=selected,
        page=page,
        page_size=page_size,
        options=options,
    )
    transactions = [
        {
            **_line_payload(line),
            "paymentId": line.payment_id,
            "paymentReference": line.payment_reference,
            "balanceImpact": _balance_impact(line),
        }
        for line in lines
    ]
    credits = events.total_inflow
    debits = events.total_outflow
    return {
        "account": _account_payload(account),
        "transactions": transactions,
        "pagination": _pagination(page, page_size, events.total),
        "summary": {
            "totalTransactions": events.total,
            "totalCredits": _money(credits),
            "totalDebits": _money(debits),
            "netBalance": _money(credits - debits),
        },
    }
