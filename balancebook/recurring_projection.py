from __future__ import annotations

from calendar import monthrange
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from typing import Iterable, List, Optional

from balancebook.money import Currency, coerce_decimal

WEEKLY_DAYS = 7
BIWEEKLY_DAYS = 14
SUPPORTED_FREQUENCIES = {"weekly", "biweekly", "monthly", "yearly"}
SUPPORTED_KINDS = {"income", "expense"}


@dataclass(frozen=True)
class RecurringSchedule:
    amount: Decimal
    currency: Currency
    start_date: date
    account_id: str
    frequency: str = "monthly"
    kind: str = "income"
    end_date: Optional[date] = None
    is_active: bool = True
    category_id: Optional[str] = None
    id: Optional[str] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class ProjectedEntry:
    date: date
    amount: Decimal
    currency: Currency
    account_id: str
    transaction_type: str
    source: str = "projected"
    notes: Optional[str] = None


def project_recurring_schedules(
    schedules: Iterable[RecurringSchedule],
    range_start: date,
    range_end: date,
    kind: Optional[str] = None,
) -> List[ProjectedEntry]:
    """Occurrences of every active schedule inside the inclusive range."""
    if range_start > range_end:
        raise ValueError("range_start must be on or before range_end.")
    wanted_kind = _validate_kind(kind) if kind is not None else None
    projections: List[ProjectedEntry] = []
    for schedule in schedules:
        if not schedule.is_active:
            continue
        if wanted_kind is not None and _validate_kind(schedule.kind) != wanted_kind:
            continue
        projections.extend(project_recurring_schedule(schedule, range_start, range_end))
    return projections


def project_recurring_schedule(
    schedule: RecurringSchedule,
    range_start: date,
    range_end: date,
) -> List[ProjectedEntry]:
    if range_start > range_end:
        raise ValueError("range_start must be on or before range_end.")
    if schedule.amount <= 0:
        raise ValueError("schedule.amount must be greater than zero.")
    normalized_frequency = _validate_frequency(schedule.frequency)
    normalized_kind = _validate_kind(schedule.kind)
    if schedule.end_date is not None:
        range_end = min(range_end, schedule.end_date)

    if normalized_frequency == "monthly":
        first_date, month_offset = _first_monthly_on_or_after(schedule.start_date, range_start)
        month_increment = 1
    elif normalized_frequency == "yearly":
        first_date, month_offset = _first_yearly_on_or_after(schedule.start_date, range_start)
        month_increment = 12
    else:
        interval = WEEKLY_DAYS if normalized_frequency == "weekly" else BIWEEKLY_DAYS
        first_date = _first_occurrence_on_or_after(schedule.start_date, range_start, interval)

    projections: List[ProjectedEntry] = []
    current_date = first_date
    while current_date <= range_end:
        projections.append(
            ProjectedEntry(
                date=current_date,
                amount=coerce_decimal(schedule.amount),
                currency=schedule.currency,
                account_id=schedule.account_id,
                transaction_type=normalized_kind,
                notes=schedule.notes,
            )
        )
        if normalized_frequency in {"monthly", "yearly"}:
            month_offset += month_increment
            current_date = _add_months(schedule.start_date, month_offset, schedule.start_date.day)
        else:
            current_date += timedelta(days=interval)

    return projections


def _validate_frequency(frequency: str) -> str:
    normalized = "".join(ch for ch in frequency.strip().lower() if ch.isalnum())
    if normalized == "byweekly":
        normalized = "biweekly"
    if normalized not in SUPPORTED_FREQUENCIES:
        raise ValueError("Only weekly, biweekly, monthly, or yearly schedules are supported.")
    return normalized


def _validate_kind(kind: str) -> str:
    normalized = kind.strip().lower()
    if normalized not in SUPPORTED_KINDS:
        raise ValueError("Only income or expense schedules are supported.")
    return normalized


def _first_occurrence_on_or_after(start_date: date, minimum_date: date, interval_days: int) -> date:
    if start_date >= minimum_date:
        return start_date
    days_between = (minimum_date - start_date).days
    intervals = (days_between + interval_days - 1) // interval_days
    return start_date + timedelta(days=interval_days * intervals)


def _first_monthly_on_or_after(start_date: date, minimum_date: date) -> tuple[date, int]:
    if start_date >= minimum_date:
        return start_date, 0
    months_between = (minimum_date.year - start_date.year) * 12 + (minimum_date.month - start_date.month)
    candidate = _add_months(start_date, months_between, start_date.day)
    if candidate < minimum_date:
        months_between += 1
        candidate = _add_months(start_date, months_between, start_date.day)
    return candidate, months_between


def _first_yearly_on_or_after(start_date: date, minimum_date: date) -> tuple[date, int]:
    if start_date >= minimum_date:
        return start_date, 0
    months_between = (minimum_date.year - start_date.year) * 12
    candidate = _add_months(start_date, months_between, start_date.day)
    if candidate < minimum_date:
        months_between += 12
        candidate = _add_months(start_date, months_between, start_date.day)
    return candidate, months_between


def _add_months(start_date: date, months: int, anchor_day: int) -> date:
    total_month = start_date.month - 1 + months
    year = start_date.year + total_month // 12
    month = total_month % 12 + 1
    day = min(anchor_day, monthrange(year, month)[1])
    return date(year, month, day)
