from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from typing import Optional

BUSINESS_UTC_OFFSET = timedelta(hours=5, minutes=30)
BUSINESS_DAY_START_HOUR = 4
BUSINESS_DAY = timedelta(days=1)


def as_utc(value: datetime) -> datetime:
    """Return ``value`` as a naive UTC instant (aware values are converted)."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def to_business_time(instant: datetime) -> datetime:
    return as_utc(instant) + BUSINESS_UTC_OFFSET


def to_absolute(local_instant: datetime) -> datetime:
    return local_instant - BUSINESS_UTC_OFFSET


def business_date(instant: datetime) -> date:
    """Local date that names the business day containing ``instant``."""
    local = to_business_time(instant)
    if local.hour < BUSINESS_DAY_START_HOUR:
        return local.date() - BUSINESS_DAY
    return local.date()


def business_day_start_for(day: date) -> datetime:
    local = datetime.combine(day, time(hour=BUSINESS_DAY_START_HOUR))
    return to_absolute(local)


def business_day_start(instant: datetime) -> datetime:
    return business_day_start_for(business_date(instant))


def business_day_window(day: date) -> tuple[datetime, datetime]:
    start = business_day_start_for(day)
    return start, start + BUSINESS_DAY


def business_month_start(instant: datetime) -> datetime:
    return business_day_start_for(business_date(instant).replace(day=1))


def parse_instant(raw: Optional[str]) -> Optional[datetime]:
    if raw is None or not raw.strip():
        return None
    value = raw.strip()
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as exc:
        raise ValueError(f"invalid instant: {raw}") from exc
    return as_utc(parsed)
