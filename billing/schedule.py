"""Due-date arithmetic for recurring subscriptions."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone, tzinfo
from typing import Optional, Union
from zoneinfo import ZoneInfo

from .models import BillingFrequency

_MONTHS_PER_PERIOD = {
    BillingFrequency.MONTHLY: 1,
    BillingFrequency.YEARLY: 12,
}


def as_utc(value: datetime) -> datetime:
    """
    Normalize datetimes to UTC aware.

    SQLite hands back naive datetimes even for DateTime(timezone=True)
    columns; naive values are treated as UTC.
    """

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def resolve_timezone(tz: Union[str, tzinfo, None]) -> tzinfo:
    if tz is None:
        return timezone.utc
    if isinstance(tz, tzinfo):
        return tz
    name = str(tz).strip()
    if not name or name.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(name)


def parse_frequency(value: Union[str, BillingFrequency]) -> BillingFrequency:
    if isinstance(value, BillingFrequency):
        return value
    try:
        return BillingFrequency(str(value or "").strip().lower())
    except ValueError as exc:
        raise ValueError(f"unsupported billing frequency: {value!r}") from exc


def add_calendar_months(value: datetime, months: int) -> datetime:
    """
    Add whole calendar months, letting day overflow roll into the next month.

    The day-of-month is applied as an offset from the 1st of the target
    month, so Jan 31 + 1 month lands on Mar 2 in a leap year (Mar 3
    otherwise) and Feb 29 + 12 months lands on Mar 1. Time of day and
    tzinfo are preserved.
    """

    total = value.month - 1 + int(months)
    year = value.year + total // 12
    month = total % 12 + 1
    first_of_month = value.replace(year=year, month=month, day=1)
    return first_of_month + timedelta(days=value.day - 1)


def advance_due_date(
    due: datetime,
    frequency: Union[str, BillingFrequency],
    *,
    tz: Union[str, tzinfo, None] = None,
) -> datetime:
    """
    Return the next due date one billing period after ``due``, in UTC.

    Month arithmetic runs on the wall clock of ``tz`` (the billing
    timezone), so a midnight due date stays at midnight local time.
    """

    months = _MONTHS_PER_PERIOD[parse_frequency(frequency)]
    zone = resolve_timezone(tz)
    local = as_utc(due).astimezone(zone)
    advanced = add_calendar_months(local.replace(tzinfo=None), months).replace(tzinfo=zone)
    result = advanced.astimezone(timezone.utc)
    if result <= as_utc(due):
        raise ValueError(f"due date did not advance: {due.isoformat()}")
    return result


def is_due(next_due_date: Optional[datetime], now: datetime) -> bool:
    if next_due_date is None:
        return False
    return as_utc(next_due_date) <= as_utc(now)
