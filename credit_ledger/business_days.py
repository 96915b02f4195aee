"""
Business-Day Module

Rolls candidate dates forward to the next business day. The operative weekend
is Friday and Saturday; dates never move backward.
"""

from datetime import date, timedelta
from typing import FrozenSet, Iterable

from .errors import ValidationError


# Python weekday numbers: Monday=0 ... Sunday=6
FRIDAY_SATURDAY: FrozenSet[int] = frozenset({4, 5})
SATURDAY_SUNDAY: FrozenSet[int] = frozenset({5, 6})


def parse_weekend_days(value: str) -> FrozenSet[int]:
    """Parse a comma separated list of weekday numbers such as "4,5" """
    try:
        days = frozenset(int(part) for part in value.split(",") if part.strip())
    except ValueError:
        raise ValidationError(f"Invalid weekend days: {value!r}")
    if not days or any(day < 0 or day > 6 for day in days):
        raise ValidationError(f"Weekend days must be weekday numbers 0-6, got {value!r}")
    if len(days) == 7:
        raise ValidationError("A weekend rule must leave at least one business day")
    return days


def is_business_day(candidate: date, weekend_days: Iterable[int] = FRIDAY_SATURDAY) -> bool:
    return candidate.weekday() not in set(weekend_days)


def adjust_to_business_day(candidate: date, weekend_days: Iterable[int] = FRIDAY_SATURDAY) -> date:
    """Return candidate if it is a business day, otherwise the next one"""
    weekend = frozenset(weekend_days)
    if len(weekend) >= 7:
        raise ValidationError("A weekend rule must leave at least one business day")

    adjusted = candidate
    while adjusted.weekday() in weekend:
        adjusted += timedelta(days=1)
    return adjusted
