"""Period boundaries for the trends cube.

Weekly and monthly periods are stored natively; bi-weekly, quarterly,
bi-annual and annual periods are folded from them on read. All boundaries are
day-granular and inclusive: ``Period(start, end)`` covers every day from
``start`` through ``end``.
"""

from dataclasses import dataclass
from datetime import date, timedelta
from typing import Iterator, Optional

from config import get_settings
from models import PeriodType

# Python weekday (Monday=0). Read once at import; never reassigned.
WEEK_STARTS_ON: int = get_settings().week_starts_on

NATIVE_PERIOD_TYPES: tuple[PeriodType, ...] = (PeriodType.weekly, PeriodType.monthly)

_ONE_DAY = timedelta(days=1)


def native_period_types() -> tuple[PeriodType, ...]:
    return NATIVE_PERIOD_TYPES


@dataclass(frozen=True)
class Period:
    period_type: PeriodType
    start: date
    end: date

    def contains(self, day: date) -> bool:
        return self.start <= day <= self.end


@dataclass(frozen=True)
class DateRange:
    slug: str
    start: date
    end: date


def week_start(day: date) -> date:
    return day - timedelta(days=(day.weekday() - WEEK_STARTS_ON) % 7)


# Bi-weekly blocks are counted from the week start that contains this day, so
# every block is exactly two native weeks.
BI_WEEKLY_EPOCH: date = week_start(date(1970, 1, 1))


def _month_end(year: int, month: int) -> date:
    if month == 12:
        return date(year + 1, 1, 1) - _ONE_DAY
    return date(year, month + 1, 1) - _ONE_DAY


def _month_group(day: date, months: int) -> tuple[date, date]:
    first_month = ((day.month - 1) // months) * months + 1
    last_month = first_month + months - 1
    return date(day.year, first_month, 1), _month_end(day.year, last_month)


def period_for(day: date, period_type: PeriodType) -> Period:
    """Return the period of ``period_type`` that contains ``day``."""
    if period_type == PeriodType.weekly:
        start = week_start(day)
        return Period(period_type, start, start + timedelta(days=6))
    if period_type == PeriodType.bi_weekly:
        blocks = (day - BI_WEEKLY_EPOCH).days // 14
        start = BI_WEEKLY_EPOCH + timedelta(days=blocks * 14)
        return Period(period_type, start, start + timedelta(days=13))
    if period_type == PeriodType.monthly:
        return Period(period_type, day.replace(day=1), _month_end(day.year, day.month))
    if period_type == PeriodType.quarterly:
        return Period(period_type, *_month_group(day, 3))
    if period_type == PeriodType.bi_annually:
        return Period(period_type, *_month_group(day, 6))
    if period_type == PeriodType.annually:
        return Period(period_type, date(day.year, 1, 1), date(day.year, 12, 31))
    raise ValueError(f"Unknown period type: {period_type}")


def iter_periods(start: date, end: date, period_type: PeriodType) -> Iterator[Period]:
    current = period_for(start, period_type)
    while current.start <= end:
        yield current
        current = period_for(current.end + _ONE_DAY, period_type)


def periods_between(start: date, end: date, period_type: PeriodType) -> list[Period]:
    """Every period of ``period_type`` overlapping ``[start, end]``, in order."""
    if start > end:
        return []
    return list(iter_periods(start, end, period_type))


def native_periods_between(start: date, end: date) -> list[Period]:
    periods: list[Period] = []
    for period_type in native_period_types():
        periods.extend(periods_between(start, end, period_type))
    return periods


def native_periods_for(day: date) -> list[Period]:
    return [period_for(day, period_type) for period_type in native_period_types()]


def base_period_type(period_type: PeriodType) -> PeriodType:
    """Native period type whose rows fold into ``period_type``."""
    if period_type in (PeriodType.weekly, PeriodType.bi_weekly):
        return PeriodType.weekly
    return PeriodType.monthly


def resolve_range(
    slug: Optional[str],
    start: Optional[str],
    end: Optional[str],
    *,
    today: Optional[date] = None,
) -> DateRange:
    today = today or date.today()
    if not slug or slug == "all":
        return DateRange("all", date(1970, 1, 1), today)
    if slug == "last_month":
        last_month_end = today.replace(day=1) - _ONE_DAY
        return DateRange("last_month", last_month_end.replace(day=1), last_month_end)
    if slug == "this_year":
        return DateRange("this_year", date(today.year, 1, 1), date(today.year, 12, 31))
    if slug == "custom":
        if not start or not end:
            raise ValueError("Custom range requires start and end dates")
        start_date = date.fromisoformat(start)
        end_date = date.fromisoformat(end)
        if start_date > end_date:
            raise ValueError("Start date must be before end date")
        return DateRange("custom", start_date, end_date)
    if slug != "this_month":
        raise ValueError(f"Unknown range: {slug}")
    this_month = period_for(today, PeriodType.monthly)
    return DateRange("this_month", this_month.start, this_month.end)
