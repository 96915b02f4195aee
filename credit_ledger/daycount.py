"""
Day-Count Module

Simple-interest accrual under the actual/360 and actual/365 conventions.
Everything here is a pure function of its arguments so accrual previews, the
revolve gate and tests all see the same figure for the same inputs.
"""

from decimal import Decimal, ROUND_HALF_UP
from datetime import date
from enum import Enum
from typing import Optional, Union

from .errors import ValidationError


CENT = Decimal('0.01')
HUNDRED = Decimal('100')


class InterestBasis(Enum):
    """Day-count conventions"""
    ACTUAL_360 = "actual_360"
    ACTUAL_365 = "actual_365"

    @property
    def days_in_year(self) -> int:
        return 360 if self is InterestBasis.ACTUAL_360 else 365

    @classmethod
    def parse(cls, value: Union[str, int, 'InterestBasis']) -> 'InterestBasis':
        """Accept an enum, its value, or a bare 360/365"""
        if isinstance(value, cls):
            return value
        if str(value) == "360":
            return cls.ACTUAL_360
        if str(value) == "365":
            return cls.ACTUAL_365
        try:
            return cls(value)
        except ValueError:
            raise ValidationError(f"Unknown interest basis: {value}")


def to_decimal(value, field_name: str = "value") -> Decimal:
    """Convert numbers and numeric strings to Decimal without going through float"""
    if isinstance(value, float):
        value = str(value)
    try:
        result = value if isinstance(value, Decimal) else Decimal(value)
    except (ArithmeticError, TypeError, ValueError):
        raise ValidationError(f"{field_name} must be a decimal number, got {value!r}")
    if not result.is_finite():
        raise ValidationError(f"{field_name} must be a finite number, got {value!r}")
    return result


def quantize_amount(amount: Decimal) -> Decimal:
    """Round to cents"""
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def days_between(start: date, end: date) -> int:
    """Actual calendar days from start to end"""
    return (end - start).days


def accrual_origin(last_accrual_date: Optional[date], start_date: date) -> date:
    """Interest accrues from the last confirmed accrual date, else from the start date"""
    return last_accrual_date or start_date


def accrued_interest(
    principal,
    annual_rate,
    basis: Union[InterestBasis, str, int],
    start: date,
    end: Optional[date] = None,
    today: Optional[date] = None
) -> Decimal:
    """
    Accrued simple interest = principal x rate/100 x days/basis

    Args:
        principal: Non-negative principal
        annual_rate: Annual rate in percent (7.5 means 7.5%)
        basis: Day-count basis
        start: Accrual start date
        end: Accrual end date; defaults to ``today`` (or the current date)
        today: Reference date used when ``end`` is omitted

    Returns:
        Accrued interest at full precision; zero when end precedes start
    """
    principal = to_decimal(principal, "principal")
    annual_rate = to_decimal(annual_rate, "annual_rate")
    basis = InterestBasis.parse(basis)

    if principal < 0:
        raise ValidationError("principal must not be negative")
    if annual_rate < 0:
        raise ValidationError("annual_rate must not be negative")

    if end is None:
        end = today or date.today()

    days = days_between(start, end)
    if days <= 0:
        return Decimal('0')

    return principal * annual_rate / HUNDRED * Decimal(days) / Decimal(basis.days_in_year)


def projected_interest(principal, annual_rate, basis, start: date, due: date) -> Decimal:
    """Interest over the full tenor, start to due date"""
    return accrued_interest(principal, annual_rate, basis, start, due)
