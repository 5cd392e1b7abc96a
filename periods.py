from dataclasses import dataclass
from datetime import date
from typing import Optional

from errors import ValidationFailure


@dataclass(frozen=True)
class Period:
    slug: str
    start: date
    end: date


def add_months(day: date, count: int) -> date:
    month_index = (day.year * 12) + (day.month - 1) + count
    year = month_index // 12
    month = (month_index % 12) + 1
    return date(year, month, 1)


def month_period(year: int, month: int) -> Period:
    first = date(year, month, 1)
    end = add_months(first, 1) - date.resolution
    return Period(f"{year:04d}-{month:02d}", first, end)


def current_month(today: Optional[date] = None) -> Period:
    today = today or date.today()
    return month_period(today.year, today.month)


def previous_month(today: Optional[date] = None) -> Period:
    today = today or date.today()
    prior = add_months(today, -1)
    return month_period(prior.year, prior.month)


def resolve_range(start: Optional[date], end: Optional[date]) -> Optional[Period]:
    if start is None and end is None:
        return None
    if start and end and start > end:
        raise ValidationFailure("Start date must be before end date")
    return Period("custom", start or date.min, end or date.max)
