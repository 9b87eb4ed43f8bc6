from datetime import UTC, datetime, timedelta
from typing import Any


def utcnow() -> datetime:
    """Returns the current time as a timezone-aware UTC datetime."""
    return datetime.now(UTC)


def days_ago(days: float, *, midnight: bool = True) -> datetime:
    """Computes the UTC instant `days` before today (optionally anchored at midnight)."""
    anchor = utcnow()
    if midnight:
        anchor = anchor.replace(hour=0, minute=0, second=0, microsecond=0)
    return anchor - timedelta(days=days)


def page_window(page: int, limit: int) -> tuple[int, int | None]:
    """Translates 1-based page/limit query values into (offset, limit).

    A non-positive limit means "no limit", mirroring the behaviour of the user listing.
    """
    if limit <= 0:
        return 0, None
    return (max(page, 1) - 1) * limit, limit


def add_to_set(values: list[Any] | None, item: Any) -> list[Any]:
    """Returns a new list containing `item` exactly once (JSON columns must be reassigned)."""
    current = list(values or [])
    if item not in current:
        current.append(item)
    return current


def pull(values: list[Any] | None, item: Any) -> list[Any]:
    """Returns a new list with every occurrence of `item` removed."""
    return [v for v in (values or []) if v != item]
