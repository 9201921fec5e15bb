from __future__ import annotations

import calendar
from datetime import date, datetime, timezone

TREND_WINDOWS = {"1M", "YTD", "1Y", "ALL"}


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, the form stored in the database."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_timestamp(value: datetime | date | str) -> datetime:
    """Parse a snapshot timestamp into a naive UTC datetime.

    Accepts datetimes, dates and ISO-8601 strings. A bare date
    (``2024-01-31``) becomes UTC midnight of that day.
    """
    if isinstance(value, datetime):
        return _to_naive_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    text = value.strip()
    if not text:
        raise ValueError("Timestamp required.")
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        if len(text) == 10:
            parsed_date = date.fromisoformat(text)
            return datetime(parsed_date.year, parsed_date.month, parsed_date.day)
        return _to_naive_utc(datetime.fromisoformat(text))
    except ValueError as exc:
        raise ValueError(f"Invalid timestamp: {value}") from exc


def shift_month_keep_day(value: date, months: int) -> date:
    month_index = (value.year * 12 + value.month - 1) + months
    year = month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    day = min(value.day, last_day)
    return date(year, month, day)


def normalize_window(value: str) -> str:
    normalized = value.strip().upper()
    if normalized not in TREND_WINDOWS:
        raise ValueError("Invalid window. Use 1M, YTD, 1Y or ALL.")
    return normalized


def window_start(today: date, window: str) -> date | None:
    normalized = normalize_window(window)
    if normalized == "1M":
        return shift_month_keep_day(today, -1)
    if normalized == "YTD":
        return date(today.year, 1, 1)
    if normalized == "1Y":
        return shift_month_keep_day(today, -12)
    return None


def _to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
