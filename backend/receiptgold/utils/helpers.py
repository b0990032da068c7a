"""Miscellaneous helper functions."""

from __future__ import annotations

import calendar
import datetime as dt
import re
from typing import Any, Optional


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def parse_iso_datetime(value: Any) -> Optional[dt.datetime]:
    """Parse an ISO8601 datetime string into an aware UTC :class:`datetime`.

    The standard ``datetime.fromisoformat`` helper does not accept a lowercase
    ``z`` as the UTC designator. Some data sources provide timestamps that end
    with ``z`` instead of the canonical ``Z``. This function normalises that
    case, treats naive values as UTC and returns ``None`` if the value cannot
    be parsed. Datetimes are passed through and epoch milliseconds (as sent by
    RevenueCat in ``*_at_ms`` fields) are accepted too.
    """
    if value is None or value == "":
        return None
    if isinstance(value, dt.datetime):
        parsed = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            return dt.datetime.fromtimestamp(value / 1000, tz=dt.timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str):
        if value.endswith(("z", "Z")):
            value = value[:-1] + "+00:00"
        try:
            parsed = dt.datetime.fromisoformat(value)
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=dt.timezone.utc)
    return parsed.astimezone(dt.timezone.utc)


def to_iso(value: dt.datetime) -> str:
    """Serialise a datetime the way the document store persists it.

    Always UTC with microsecond precision so stored values compare correctly
    as strings.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc).isoformat(timespec="microseconds")


def add_months(value: dt.datetime, months: int) -> dt.datetime:
    """Shift ``value`` by whole calendar months, clamping the day of month."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def month_key(value: dt.datetime) -> str:
    return f"{value.year:04d}-{value.month:02d}"


def first_of_next_month(value: dt.datetime) -> dt.datetime:
    start = value.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    return add_months(start, 1)


def usage_doc_id(user_id: str, when: dt.datetime) -> str:
    return f"{user_id}_{month_key(when)}"


def is_usage_doc_id(doc_id: str, user_id: str) -> bool:
    """True for ``{user_id}_YYYY-MM``; ids of users whose id merely starts with ``user_id_`` do not match."""
    return re.fullmatch(re.escape(user_id) + r"_\d{4}-\d{2}", doc_id) is not None


def mask(value: Optional[str], keep: int = 8) -> str:
    """Shorten identifiers (device tokens, user ids) for log lines."""
    if not value:
        return ""
    return value[:keep] + "..." if len(value) > keep else value
