"""Resolve SmartSuite-style date filter values to concrete dates.

Filters carry either an explicit date (``"2025-01-15"``, an ISO timestamp, or
``{"date_mode": "exact_date", "date_mode_value": "2025-01-15"}``) or a
relative mode such as ``today`` or ``{"date_mode": "days_ago",
"date_mode_value": 7}``. Relative modes are resolved against the clock at
translation time, never at storage time.
"""

import calendar
from datetime import date, datetime, timedelta, timezone

SUPPORTED_MODES = (
    "exact_date",
    "today", "yesterday", "tomorrow",
    "one_week_ago", "one_week_from_now",
    "one_month_ago", "one_month_from_now",
    "start_of_week", "end_of_week",
    "start_of_month", "end_of_month",
    "days_ago", "days_from_now",
)


def today_from(now: float) -> date:
    return datetime.fromtimestamp(now, tz=timezone.utc).date()


def parse_date(raw: str) -> date:
    """Parse ``YYYY-MM-DD`` or an ISO-8601 timestamp into a date. Raises ValueError."""
    text = raw.strip()
    if len(text) == 10:
        return date.fromisoformat(text)
    return datetime.fromisoformat(text.replace("Z", "+00:00")).date()


def shift_months(day: date, months: int) -> date:
    month_index = day.month - 1 + months
    year = day.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day.day, last_day))


def resolve_mode(mode: str, value: str | int | float | None, now: float) -> date:
    """Resolve a date mode to a date. Raises ValueError for unknown modes or bad values."""
    mode = mode.lower()
    today = today_from(now)

    if mode == "exact_date":
        if value is None:
            raise ValueError("exact_date requires a date_mode_value")
        return parse_date(str(value))
    if mode == "today":
        return today
    if mode == "yesterday":
        return today - timedelta(days=1)
    if mode == "tomorrow":
        return today + timedelta(days=1)
    if mode == "one_week_ago":
        return today - timedelta(days=7)
    if mode == "one_week_from_now":
        return today + timedelta(days=7)
    if mode == "one_month_ago":
        return shift_months(today, -1)
    if mode == "one_month_from_now":
        return shift_months(today, 1)
    # Weeks start on Sunday
    if mode == "start_of_week":
        return today - timedelta(days=(today.weekday() + 1) % 7)
    if mode == "end_of_week":
        return today + timedelta(days=6 - (today.weekday() + 1) % 7)
    if mode == "start_of_month":
        return today.replace(day=1)
    if mode == "end_of_month":
        return today.replace(day=calendar.monthrange(today.year, today.month)[1])
    if mode in ("days_ago", "days_from_now"):
        if value is None or isinstance(value, bool):
            raise ValueError(f"{mode} requires a number of days")
        days = int(value)
        return today - timedelta(days=days) if mode == "days_ago" else today + timedelta(days=days)

    raise ValueError(f"Unknown date mode '{mode}'")


def day_start_epoch(day: date) -> float:
    """Epoch seconds of midnight UTC at the start of ``day``."""
    return datetime(day.year, day.month, day.day, tzinfo=timezone.utc).timestamp()


def day_end_epoch(day: date) -> float:
    """Epoch seconds of midnight UTC at the start of the following day."""
    return day_start_epoch(day + timedelta(days=1))


def isoformat_epoch(ts: float | None) -> str | None:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()
