"""Accrual period arithmetic."""
import calendar
from datetime import date, timedelta
from typing import Iterator, NamedTuple

from leave_admin.models.leave_type import AccrualFrequency


class AccrualPeriod(NamedTuple):
    start: date
    end: date
    key: str

    @property
    def length_days(self) -> int:
        return (self.end - self.start).days + 1


def _month_end(year: int, month: int) -> date:
    return date(year, month, calendar.monthrange(year, month)[1])


def period_containing(day: date, frequency: AccrualFrequency) -> AccrualPeriod:
    frequency = AccrualFrequency(frequency)
    if frequency == AccrualFrequency.MONTHLY:
        return AccrualPeriod(date(day.year, day.month, 1), _month_end(day.year, day.month), f"{day.year}-{day.month:02d}")
    if frequency == AccrualFrequency.QUARTERLY:
        quarter = (day.month - 1) // 3
        first_month = quarter * 3 + 1
        return AccrualPeriod(
            date(day.year, first_month, 1),
            _month_end(day.year, first_month + 2),
            f"{day.year}-Q{quarter + 1}"
        )
    return AccrualPeriod(date(day.year, 1, 1), date(day.year, 12, 31), f"{day.year}")


def next_period_end(after: date, frequency: AccrualFrequency) -> date:
    """End date of the period following the one that contains `after`."""
    current = period_containing(after, frequency)
    return period_containing(current.end + timedelta(days=1), frequency).end


def first_period_end(hire_date: date, frequency: AccrualFrequency) -> date:
    return period_containing(hire_date, frequency).end


def daterange(start: date, end: date) -> Iterator[date]:
    day = start
    while day <= end:
        yield day
        day += timedelta(days=1)


def add_months(day: date, months: int) -> date:
    month_index = day.month - 1 + months
    year = day.year + month_index // 12
    month = month_index % 12 + 1
    return date(year, month, min(day.day, calendar.monthrange(year, month)[1]))


def completed_years(since: date, as_of: date) -> int:
    years = as_of.year - since.year
    if (as_of.month, as_of.day) < (since.month, since.day):
        years -= 1
    return max(years, 0)
