"""Environment-driven settings for the CLI and statement service."""

import logging
import os

from pydantic import BaseModel, Field, field_validator

__all__ = ["LedgerSettings", "load_settings_from_env"]

_TRUTHY = ("true", "1", "yes")


class LedgerSettings(BaseModel):
    database_url: str | None = None
    plain_output: bool = False
    fetch_workers: int = Field(default=1, ge=1)
    max_page_size: int = Field(default=500, ge=1)
    strict_allocation_types: bool = False
    log_level: str = "WARNING"

    @field_validator("log_level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        level = value.strip().upper()
        if level not in logging.getLevelNamesMapping():
            msg = f"Unknown log level: {value}"
            raise ValueError(msg)
        return level


def _flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in _TRUTHY


def load_settings_from_env() -> LedgerSettings:
    """Build settings from ``DATABASE_URL`` and the ``BLR_*`` variables."""
    return LedgerSettings(
        database_url=os.getenv("DATABASE_URL") or None,
        plain_output=_flag("BLR_PLAIN"),
        fetch_workers=int(os.getenv("BLR_FETCH_WORKERS", "1")),
        max_page_size=int(os.getenv("BLR_MAX_PAGE_SIZE", "500")),
        strict_allocation_types=_flag("BLR_STRICT_ALLOCATIONS"),
        log_level=os.getenv("BLR_LOG_LEVEL", "WARNING"),
    )
