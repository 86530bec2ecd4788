from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional, Union

from backend.app.models import RangePreset, Window, utc_now
from backend.app.services.business_calendar import (
    as_utc,
    business_day_start,
    business_month_start,
    parse_instant,
)

PRESET_LOOKBACK_DAYS = {
    RangePreset.one_day: 1,
    RangePreset.seven_days: 7,
    RangePreset.thirty_days: 30,
}


def resolve_range(
    preset: Optional[Union[RangePreset, str]] = None,
    from_str: Optional[str] = None,
    to_str: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
) -> Window:
    """Turn a preset and/or explicit bounds into a half-open ``[start, end)`` window.

    Presets snap their lower bound to a business-day start. Explicit bounds are
    literal instants and override whichever side they are given for.
    """
    current = as_utc(now) if now else utc_now()
    if preset is not None and not isinstance(preset, RangePreset):
        try:
            preset = RangePreset(preset)
        except ValueError as exc:
            raise ValueError(f"unknown range preset: {preset}") from exc

    if preset == RangePreset.today:
        start = business_day_start(current)
    elif preset in PRESET_LOOKBACK_DAYS:
        start = business_day_start(current - timedelta(days=PRESET_LOOKBACK_DAYS[preset]))
    else:
        start = business_month_start(current)
    end = current

    explicit_from = parse_instant(from_str)
    explicit_to = parse_instant(to_str)
    if explicit_from is not None:
        start = explicit_from
    if explicit_to is not None:
        end = explicit_to
    if start >= end:
        raise ValueError(f"empty range: {start.isoformat()} >= {end.isoformat()}")
    return Window(start=start, end=end)


def previous_window(window: Window) -> Window:
    length = window.end - window.start
    return Window(start=window.start - length, end=window.start)
