"""
Billing interval arithmetic.

Month, quarter and year steps follow the calendar: adding a month to
Jan 31 lands on the last day of February rather than overflowing into
March.
"""
from datetime import datetime, timedelta
from enum import Enum

from dateutil.relativedelta import relativedelta

from sandbox_gateway.core.errors import ValidationError


class IntervalUnit(str, Enum):
    """Supported plan billing intervals."""

    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    QUARTER = "quarter"
    YEAR = "year"

    @classmethod
    def parse(cls, value: "str | IntervalUnit") -> "IntervalUnit":
        try:
            return cls(value)
        except ValueError:
            raise ValidationError(f"Unsupported interval: {value}", field="interval")


_STEPS = {
    IntervalUnit.DAY: relativedelta(days=1),
    IntervalUnit.WEEK: relativedelta(weeks=1),
    IntervalUnit.MONTH: relativedelta(months=1),
    IntervalUnit.QUARTER: relativedelta(months=3),
    IntervalUnit.YEAR: relativedelta(years=1),
}


def add_interval(date: datetime, unit: "str | IntervalUnit") -> datetime:
    """
    Advance ``date`` by one billing interval.

    Args:
        date: Start of the period
        unit: One of day/week/month/quarter/year

    Returns:
        datetime: End of the period, same time of day
    """
    return date + _STEPS[IntervalUnit.parse(unit)]


def add_days(date: datetime, days: int) -> datetime:
    return date + timedelta(days=days)
