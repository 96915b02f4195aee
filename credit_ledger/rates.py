"""
Rate Composer Module

Combines a floating benchmark rate (SIBOR) with a facility margin into the
loan's bank rate, and supplies reference benchmark rates for standard and
custom terms. Reference and estimated rates are conveniences shown before the
authoritative rate is confirmed; an explicit rate always wins.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from typing import Dict, Iterable, Optional
import calendar

from .business_days import FRIDAY_SATURDAY, adjust_to_business_day
from .daycount import to_decimal
from .errors import ValidationError


MIN_RATE = Decimal('0')
MAX_RATE = Decimal('100')


@dataclass(frozen=True)
class StandardTerm:
    """A standard benchmark tenor offered as a one-click choice"""
    months: int
    days: int
    label: str
    reference_rate: Decimal


STANDARD_TERMS: Dict[int, StandardTerm] = {
    1: StandardTerm(1, 30, "1M", Decimal('5.25')),
    2: StandardTerm(2, 60, "2M", Decimal('5.35')),
    3: StandardTerm(3, 90, "3M", Decimal('5.45')),
    6: StandardTerm(6, 180, "6M", Decimal('5.65')),
    12: StandardTerm(12, 360, "12M", Decimal('5.85')),
}

# (upper bound in months, estimated rate); terms beyond the last bucket use the fallback
ESTIMATE_BUCKETS = (
    (1, Decimal('5.25')),
    (3, Decimal('5.45')),
    (6, Decimal('5.65')),
    (12, Decimal('5.85')),
)
ESTIMATE_FALLBACK = Decimal('6.05')


@dataclass(frozen=True)
class RateQuote:
    """A benchmark rate and where it came from"""
    rate: Decimal
    source: str  # explicit, provider, standard or estimate
    term_label: str


class RateQuoteProvider(ABC):
    """Read-only source of live benchmark quotes"""

    @abstractmethod
    def current_rate(self, term_months: int) -> Optional[Decimal]:
        """Latest benchmark for the term, or None when unavailable"""
        pass


class StaticRateQuoteProvider(RateQuoteProvider):
    """Provider backed by a fixed term -> rate table"""

    def __init__(self, rates: Dict[int, Decimal]):
        self._rates = {int(term): to_decimal(rate, "rate") for term, rate in rates.items()}

    def current_rate(self, term_months: int) -> Optional[Decimal]:
        return self._rates.get(term_months)


def validate_rate(value, field_name: str) -> Decimal:
    """Rates are percentages in [0, 100]; out-of-range input is rejected, not clamped"""
    rate = to_decimal(value, field_name)
    if rate < MIN_RATE or rate > MAX_RATE:
        raise ValidationError(f"{field_name} must be between 0 and 100 percent, got {rate}")
    return rate


def compose_bank_rate(benchmark_rate, margin) -> Decimal:
    """Bank rate = benchmark + margin"""
    benchmark = validate_rate(benchmark_rate, "benchmark_rate")
    margin = validate_rate(margin, "margin")
    return validate_rate(benchmark + margin, "bank_rate")


def term_label(term_months: int) -> str:
    return f"{term_months}M"


def validate_term_months(term_months: int) -> int:
    if not isinstance(term_months, int) or isinstance(term_months, bool) or term_months < 1:
        raise ValidationError(f"term_months must be a positive whole number of months, got {term_months!r}")
    return term_months


def is_standard_term(term_months: int) -> bool:
    return term_months in STANDARD_TERMS


def estimate_benchmark_rate(term_months: int) -> Decimal:
    """Approximate benchmark for a custom term, tiered by bucket"""
    validate_term_months(term_months)
    for upper_bound, rate in ESTIMATE_BUCKETS:
        if term_months <= upper_bound:
            return rate
    return ESTIMATE_FALLBACK


def resolve_benchmark_rate(
    term_months: int,
    explicit_rate=None,
    provider: Optional[RateQuoteProvider] = None
) -> RateQuote:
    """
    Pick the benchmark rate for a draw or revolve

    Order: explicit caller rate, live provider quote, standard reference
    table, custom-term estimate.
    """
    validate_term_months(term_months)
    label = term_label(term_months)

    if explicit_rate is not None:
        return RateQuote(validate_rate(explicit_rate, "benchmark_rate"), "explicit", label)

    if provider is not None:
        quoted = provider.current_rate(term_months)
        if quoted is not None:
            return RateQuote(validate_rate(quoted, "benchmark_rate"), "provider", label)

    if is_standard_term(term_months):
        return RateQuote(STANDARD_TERMS[term_months].reference_rate, "standard", label)

    return RateQuote(estimate_benchmark_rate(term_months), "estimate", label)


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, handling month-end edge cases"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def derive_due_date(start_date: date, term_months: int,
                    weekend_days: Iterable[int] = FRIDAY_SATURDAY) -> date:
    """
    Due date for a term starting on start_date

    Standard terms add their day count (3M = 90 days); custom terms add
    calendar months. The result is rolled forward to a business day.
    """
    validate_term_months(term_months)
    if is_standard_term(term_months):
        raw = start_date + timedelta(days=STANDARD_TERMS[term_months].days)
    else:
        raw = add_months(start_date, term_months)
    return adjust_to_business_day(raw, weekend_days)
