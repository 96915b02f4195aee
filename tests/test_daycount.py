"""
Tests for day-count accrual

Accrued simple interest must match principal x rate/100 x days/basis exactly,
with no float rounding along the way.
"""

import pytest
from decimal import Decimal
from datetime import date, timedelta

from credit_ledger.daycount import (
    InterestBasis, accrual_origin, accrued_interest, days_between, projected_interest,
    quantize_amount, to_decimal
)
from credit_ledger.errors import ValidationError


class TestInterestBasis:
    """Test basis parsing"""

    def test_days_in_year(self):
        assert InterestBasis.ACTUAL_360.days_in_year == 360
        assert InterestBasis.ACTUAL_365.days_in_year == 365

    def test_parse_accepts_values_and_bare_numbers(self):
        assert InterestBasis.parse("actual_360") is InterestBasis.ACTUAL_360
        assert InterestBasis.parse(365) is InterestBasis.ACTUAL_365
        assert InterestBasis.parse("360") is InterestBasis.ACTUAL_360
        assert InterestBasis.parse(InterestBasis.ACTUAL_365) is InterestBasis.ACTUAL_365

    def test_parse_rejects_unknown_basis(self):
        with pytest.raises(ValidationError):
            InterestBasis.parse("30_360")


class TestAccruedInterest:
    """Test the accrual formula"""

    def test_thirty_days_on_actual_360(self):
        """1,000,000 at 7.5% for 30 days accrues exactly 6,250"""
        accrued = accrued_interest(
            Decimal('1000000'), Decimal('7.5'), InterestBasis.ACTUAL_360,
            date(2024, 1, 1), date(2024, 1, 31)
        )
        assert accrued == Decimal('6250')

    def test_actual_365(self):
        accrued = accrued_interest(
            Decimal('365000'), Decimal('10'), InterestBasis.ACTUAL_365,
            date(2024, 1, 1), date(2024, 1, 11)
        )
        assert accrued == Decimal('1000')

    @pytest.mark.parametrize("principal,rate,basis,days", [
        ("250000", "6.3", 360, 45),
        ("1000000", "7.5", 365, 91),
        ("0", "5", 360, 30),
        ("500000", "0", 365, 120),
        ("123456.78", "4.125", 360, 1),
    ])
    def test_matches_formula(self, principal, rate, basis, days):
        start = date(2024, 2, 1)
        end = start + timedelta(days=days)
        expected = Decimal(principal) * Decimal(rate) / Decimal('100') * Decimal(days) / Decimal(basis)
        assert accrued_interest(principal, rate, basis, start, end) == expected

    def test_zero_when_end_before_start(self):
        assert accrued_interest("1000000", "7.5", 360, date(2024, 3, 1), date(2024, 2, 1)) == Decimal('0')

    def test_zero_on_same_day(self):
        assert accrued_interest("1000000", "7.5", 360, date(2024, 3, 1), date(2024, 3, 1)) == Decimal('0')

    def test_end_defaults_to_today(self):
        accrued = accrued_interest("36000", "10", 360, date(2024, 1, 1), today=date(2024, 1, 11))
        assert accrued == Decimal('100')

    def test_negative_principal_rejected(self):
        with pytest.raises(ValidationError):
            accrued_interest("-1", "5", 360, date(2024, 1, 1), date(2024, 2, 1))

    def test_negative_rate_rejected(self):
        with pytest.raises(ValidationError):
            accrued_interest("1000", "-5", 360, date(2024, 1, 1), date(2024, 2, 1))

    def test_projected_interest_covers_full_tenor(self):
        projected = projected_interest("1000000", "7.5", 360, date(2024, 1, 1), date(2024, 3, 31))
        assert projected == Decimal('1000000') * Decimal('0.075') * Decimal(90) / Decimal(360)


class TestHelpers:
    """Test conversion and rounding helpers"""

    def test_to_decimal_avoids_float_artifacts(self):
        assert to_decimal(0.1) == Decimal('0.1')
        assert to_decimal("12.50") == Decimal('12.50')

    def test_to_decimal_rejects_garbage(self):
        with pytest.raises(ValidationError):
            to_decimal("abc", "amount")
        with pytest.raises(ValidationError):
            to_decimal("NaN", "amount")

    def test_quantize_amount_rounds_half_up(self):
        assert quantize_amount(Decimal('10.005')) == Decimal('10.01')
        assert quantize_amount(Decimal('10.004')) == Decimal('10.00')

    def test_accrual_origin(self):
        assert accrual_origin(None, date(2024, 1, 1)) == date(2024, 1, 1)
        assert accrual_origin(date(2024, 2, 1), date(2024, 1, 1)) == date(2024, 2, 1)

    def test_days_between(self):
        assert days_between(date(2024, 2, 1), date(2024, 3, 1)) == 29
