"""Time helpers with timezone-aware UTC defaults."""

from __future__ import annotations

from datetime import UTC, datetime


def utc_now() -> datetime:
    """Return timezone-aware current UTC datetime."""
    return datetime.now(UTC)


def utc_now_naive() -> datetime:
    """UTC now without tzinfo, for plain ``DateTime`` columns.

    SQLite drops offsets on round-trip, so comparisons against stored values
    must use naive datetimes on every backend.
    """
    return utc_now().replace(tzinfo=None)
