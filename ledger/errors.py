"""Error taxonomy for statement reads and balance adjustments."""

from __future__ import annotations

__all__ = [
    "AdjustmentError",
    "AggregationError",
    "InvalidInputError",
    "LedgerError",
    "NotFoundError",
    "UnauthorizedError",
    "UnknownAllocationTypeError",
]


class LedgerError(Exception):
    """Base class; ``status_code`` mirrors the HTTP class callers surface."""

    status_code = 500


class UnauthorizedError(LedgerError):
    status_code = 401


class NotFoundError(LedgerError):
    status_code = 404


class InvalidInputError(LedgerError, ValueError):
    status_code = 400


class UnknownAllocationTypeError(InvalidInputError):
    """Allocation row carries a type outside the documented enumeration."""


class AggregationError(LedgerError):
    """A category fetch failed; the whole statement is abandoned."""


class AdjustmentError(LedgerError):
    """Balance deltas could not be applied; the enclosing mutation must abort."""
