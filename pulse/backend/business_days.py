"""Business-day arithmetic that skips weekends and configured holidays."""

from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from timestamps import parse_timestamp

EMPTY_HOLIDAYS: frozenset[str] = frozenset()
WEEKEND = (5, 6)  # Saturday, Sunday


def normalize_holiday(value: object) -> str | None:
    """Return a ``YYYY-MM-DD`` key for a date-like value, or None if unparseable."""
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    try:
        return date.fromisoformat(text[:10]).isoformat()
    except ValueError:
        return None


def build_holiday_set(values: list | tuple | set | None) -> frozenset[str]:
    keys = (normalize_holiday(v) for v in values or [])
    return frozenset(k for k in keys if k)


def _zone(tz: str | None) -> ZoneInfo:
    try:
        return ZoneInfo(tz or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo("UTC")


def is_business_day(day: date, holidays: frozenset[str] = EMPTY_HOLIDAYS) -> bool:
    return day.weekday() not in WEEKEND and day.isoformat() not in holidays


def business_hours_between(
    start: object, end: object, holidays: frozenset[str] = EMPTY_HOLIDAYS, tz: str | None = "UTC",
) -> float | None:
    """Hours between two instants that fall on business days in ``tz``.

    None when either bound is missing; 0 when ``end`` precedes ``start``.
    """
    start_at = parse_timestamp(start)
    end_at = parse_timestamp(end)
    if start_at is None or end_at is None:
        return None
    if end_at <= start_at:
        return 0.0

    zone = _zone(tz)
    start_utc = start_at.astimezone(timezone.utc)
    end_utc = end_at.astimezone(timezone.utc)
    total = 0.0
    day = start_at.astimezone(zone).date()
    last_day = end_at.astimezone(zone).date()
    while day <= last_day:
        if is_business_day(day, holidays):
            # Local midnights in UTC so DST days span 23 or 25 hours
            day_open = datetime.combine(day, time(), tzinfo=zone).astimezone(timezone.utc)
            day_close = datetime.combine(day + timedelta(days=1), time(), tzinfo=zone).astimezone(timezone.utc)
            overlap_start = max(start_utc, day_open)
            overlap_end = min(end_utc, day_close)
            if overlap_end > overlap_start:
                total += (overlap_end - overlap_start).total_seconds() / 3600
        day += timedelta(days=1)
    return total


def business_days_between(
    start: object, end: object, holidays: frozenset[str] = EMPTY_HOLIDAYS, tz: str | None = "UTC",
) -> int | None:
    """Whole business days between two instants, floored."""
    hours = business_hours_between(start, end, holidays, tz)
    if hours is None:
        return None
    return int(hours // 24)


def difference_in_business_days(
    value: object, now: datetime, holidays: frozenset[str] = EMPTY_HOLIDAYS, tz: str | None = "UTC",
) -> int:
    return business_days_between(value, now, holidays, tz) or 0


def difference_in_business_days_or_none(
    value: object, now: datetime, holidays: frozenset[str] = EMPTY_HOLIDAYS, tz: str | None = "UTC",
) -> int | None:
    return business_days_between(value, now, holidays, tz)
