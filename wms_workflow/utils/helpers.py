"""Shared utility functions for timestamps and pagination.

as_utc:          SQLite hands back naive datetimes; normalise before comparing
parse_datetime:  ISO-8601 input from events and API bodies
get_pagination:  page/per_page query args with sane bounds
"""
from datetime import date, datetime, timezone

from flask import request


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Normalise a datetime to UTC-aware regardless of input tz-awareness."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def isoformat(value: datetime | None) -> str | None:
    value = as_utc(value)
    return value.isoformat() if value else None


def parse_datetime(value) -> datetime | None:
    """Parse an ISO-8601 timestamp (``Z`` suffix allowed) to an aware datetime.

    Returns None for empty/invalid input.
    """
    if not value:
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return as_utc(datetime.fromisoformat(text))
    except (ValueError, TypeError):
        return None


def get_pagination(default_per_page: int = 50, max_per_page: int = 200) -> tuple[int, int]:
    """Read ``page`` / ``per_page`` from the query string.

    Returns:
        (page, per_page), page is 1-based.
    """
    page = request.args.get("page", 1, type=int) or 1
    per_page = request.args.get("per_page", default_per_page, type=int) or default_per_page
    return max(page, 1), min(max(per_page, 1), max_per_page)
