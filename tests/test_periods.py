from datetime import date, timedelta

import pytest

from models import PeriodType
from periods import (
    BI_WEEKLY_EPOCH,
    WEEK_STARTS_ON,
    base_period_type,
    native_periods_between,
    native_period_types,
    native_periods_for,
    period_for,
    periods_between,
    resolve_range,
    week_start,
)


def _days(start: date, end: date):
    day = start
    while day <= end:
        yield day
        day += timedelta(days=1)


def test_weekly_period_starts_on_configured_weekday_and_spans_seven_days() -> None:
    for day in _days(date(2024, 12, 20), date(2025, 1, 20)):
        period = period_for(day, PeriodType.weekly)
        assert period.start.weekday() == WEEK_STARTS_ON
        assert (period.end - period.start).days == 6
        assert period.contains(day)


def test_monthly_period_handles_leap_february_and_december() -> None:
    feb = period_for(date(2024, 2, 10), PeriodType.monthly)
    assert (feb.start, feb.end) == (date(2024, 2, 1), date(2024, 2, 29))

    dec = period_for(date(2025, 12, 31), PeriodType.monthly)
    assert (dec.start, dec.end) == (date(2025, 12, 1), date(2025, 12, 31))


@pytest.mark.parametrize(
    "period_type, day, expected",
    [
        (PeriodType.quarterly, date(2025, 5, 15), (date(2025, 4, 1), date(2025, 6, 30))),
        (PeriodType.quarterly, date(2025, 12, 31), (date(2025, 10, 1), date(2025, 12, 31))),
        (PeriodType.bi_annually, date(2025, 8, 1), (date(2025, 7, 1), date(2025, 12, 31))),
        (PeriodType.bi_annually, date(2025, 6, 30), (date(2025, 1, 1), date(2025, 6, 30))),
        (PeriodType.annually, date(2025, 3, 3), (date(2025, 1, 1), date(2025, 12, 31))),
    ],
)
def test_calendar_periods(period_type, day, expected) -> None:
    period = period_for(day, period_type)
    assert (period.start, period.end) == expected
    assert period.period_type == period_type


def test_bi_weekly_blocks_are_stable_and_made_of_two_weeks() -> None:
    assert BI_WEEKLY_EPOCH.weekday() == WEEK_STARTS_ON
    for day in _days(date(2025, 1, 1), date(2025, 3, 31)):
        block = period_for(day, PeriodType.bi_weekly)
        assert (block.end - block.start).days == 13
        assert block.start == week_start(block.start)
        assert (block.start - BI_WEEKLY_EPOCH).days % 14 == 0
        assert period_for(block.start, PeriodType.bi_weekly) == block
        assert period_for(block.end, PeriodType.bi_weekly) == block


def test_every_week_lies_inside_one_bi_weekly_block() -> None:
    for week in periods_between(date(2025, 1, 1), date(2025, 12, 31), PeriodType.weekly):
        block = period_for(week.start, PeriodType.bi_weekly)
        assert block.contains(week.end)


def test_day_before_period_start_belongs_to_previous_period() -> None:
    for period_type in PeriodType:
        period = period_for(date(2025, 7, 9), period_type)
        previous = period_for(period.start - timedelta(days=1), period_type)
        assert previous.end == period.start - timedelta(days=1)
        assert previous != period


def test_periods_between_covers_range_without_gaps() -> None:
    periods = periods_between(date(2025, 1, 15), date(2025, 4, 2), PeriodType.monthly)
    assert [p.start for p in periods] == [
        date(2025, 1, 1),
        date(2025, 2, 1),
        date(2025, 3, 1),
        date(2025, 4, 1),
    ]

    weeks = periods_between(date(2025, 1, 15), date(2025, 4, 2), PeriodType.weekly)
    assert weeks[0].contains(date(2025, 1, 15))
    assert weeks[-1].contains(date(2025, 4, 2))
    for earlier, later in zip(weeks, weeks[1:]):
        assert later.start == earlier.end + timedelta(days=1)


def test_periods_between_is_empty_for_inverted_range() -> None:
    assert periods_between(date(2025, 2, 1), date(2025, 1, 1), PeriodType.weekly) == []


def test_native_periods_for_returns_week_and_month() -> None:
    week, month = native_periods_for(date(2025, 3, 31))
    assert week.period_type == PeriodType.weekly
    assert month.period_type == PeriodType.monthly
    assert week.contains(date(2025, 3, 31))
    assert (month.start, month.end) == (date(2025, 3, 1), date(2025, 3, 31))


def test_native_periods_between_lists_weeks_then_months() -> None:
    periods = native_periods_between(date(2025, 1, 1), date(2025, 1, 31))
    types = [p.period_type for p in periods]
    assert types.count(PeriodType.monthly) == 1
    assert types == sorted(types, key=lambda t: t != PeriodType.weekly)


def test_base_period_type() -> None:
    assert native_period_types() == (PeriodType.weekly, PeriodType.monthly)
    assert base_period_type(PeriodType.bi_weekly) == PeriodType.weekly
    assert base_period_type(PeriodType.weekly) == PeriodType.weekly
    assert base_period_type(PeriodType.quarterly) == PeriodType.monthly
    assert base_period_type(PeriodType.bi_annually) == PeriodType.monthly
    assert base_period_type(PeriodType.annually) == PeriodType.monthly


def test_resolve_range() -> None:
    today = date(2025, 3, 15)
    last_month = resolve_range("last_month", None, None, today=today)
    assert (last_month.start, last_month.end) == (date(2025, 2, 1), date(2025, 2, 28))

    this_month = resolve_range("this_month", None, None, today=today)
    assert (this_month.start, this_month.end) == (date(2025, 3, 1), date(2025, 3, 31))

    custom = resolve_range("custom", "2025-01-02", "2025-01-09", today=today)
    assert (custom.start, custom.end) == (date(2025, 1, 2), date(2025, 1, 9))

    with pytest.raises(ValueError):
        resolve_range("custom", "2025-02-01", "2025-01-01", today=today)
    with pytest.raises(ValueError):
        resolve_range("next_decade", None, None, today=today)
