from __future__ import annotations

import re
from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import Callable
from zoneinfo import ZoneInfo

MONTH_KEY_PATTERN = re.compile(r"^(\d{4})-(0[1-9]|1[0-2])$")

_reference_tz: tzinfo = timezone.utc


def set_reference_timezone(name: str) -> None:
    global _reference_tz
    _reference_tz = timezone.utc if name.upper() == "UTC" else ZoneInfo(name)


def get_reference_timezone() -> tzinfo:
    return _reference_tz


def month_key_for(value: date | datetime) -> str:
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(_reference_tz)
        value = value.date()
    return f"{value.year:04d}-{value.month:02d}"


def current_month_key(clock: Callable[[], datetime] | None = None) -> str:
    now = clock() if clock is not None else datetime.now(timezone.utc)
    return month_key_for(now)


def parse_month_key(value: str) -> date:
    match = MONTH_KEY_PATTERN.match(value.strip())
    if not match:
        raise ValueError("Invalid month format. Use YYYY-MM.")
    return date(int(match.group(1)), int(match.group(2)), 1)


def normalize_month_key(value: str) -> str:
    return month_key_for(parse_month_key(value))


def month_start(month_key: str) -> datetime:
    """First instant of the month in the reference timezone."""
    first_day = parse_month_key(month_key)
    return datetime(first_day.year, first_day.month, 1, tzinfo=_reference_tz)


def month_first_day(month_key: str) -> date:
    return parse_month_key(month_key)


def month_last_day(month_key: str) -> date:
    next_month = parse_month_key(shift_month_key(month_key, 1))
    return next_month - timedelta(days=1)


def shift_month_key(month_key: str, months: int) -> str:
    first_day = parse_month_key(month_key)
    month_index = (first_day.year * 12 + first_day.month - 1) + months
    year = month_index // 12
    month = month_index % 12 + 1
    return f"{year:04d}-{month:02d}"


def trailing_month_keys(month_key: str, count: int) -> list[str]:
    """The `count` months ending at `month_key`, oldest first."""
    return [shift_month_key(month_key, -offset) for offset in range(count - 1, -1, -1)]
