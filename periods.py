from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Optional
from zoneinfo import ZoneInfo


@dataclass(frozen=True)
class MonthWindow:
    year: int
    month: int
    start: datetime
    end: datetime


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def clamp_day(year: int, month: int, day: int) -> date:
    return date(year, month, min(day, days_in_month(year, month)))


def add_months(base: datetime, months: int) -> datetime:
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    return base.replace(year=year, month=month, day=min(base.day, days_in_month(year, month)))


def month_window(year: int, month: int) -> MonthWindow:
    """First and last instant of a calendar month (month is 1-12)."""
    if not 1 <= month <= 12:
        raise ValueError("Month must be between 1 and 12")
    start = datetime(year, month, 1)
    last_day = date(year, month, days_in_month(year, month))
    end = datetime.combine(last_day, time(23, 59, 59, 999999))
    return MonthWindow(year, month, start, end)


def resolve_month(
    month: Optional[str],
    year: Optional[str],
    *,
    today: Optional[date] = None,
) -> MonthWindow:
    """Resolve the API's 0-indexed ``month`` and ``year`` query params."""
    today = today or date.today()
    try:
        month_index = int(month) if month not in (None, "") else today.month - 1
        year_value = int(year) if year not in (None, "") else today.year
    except ValueError as exc:
        raise ValueError("Month and year must be integers") from exc
    if not 0 <= month_index <= 11:
        raise ValueError("Month must be between 0 and 11")
    if not 1970 <= year_value <= 3000:
        raise ValueError("Year out of range")
    return month_window(year_value, month_index + 1)


def to_local_naive(value: datetime, tz_name: str) -> datetime:
    """Convert an offset-aware datetime to naive wall time in ``tz_name``.

    Naive values are taken as local already and returned unchanged.
    """
    if value.tzinfo is None:
        return value
    return value.astimezone(ZoneInfo(tz_name)).replace(tzinfo=None)
