"""
Credit Utilization Module

Used and available credit for a facility or credit line. Limits are advisory:
a draw beyond available credit is allowed and reported as a warning, never
blocked and never clamped.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Iterable, Optional

from .daycount import HUNDRED, quantize_amount, to_decimal


@dataclass(frozen=True)
class CreditUtilization:
    """Utilization of one limit"""
    limit: Decimal
    used: Decimal
    available: Decimal
    utilization_percent: Decimal
    active_loan_count: int = 0

    @property
    def over_limit(self) -> bool:
        return self.available < 0

    @property
    def overage(self) -> Decimal:
        return -self.available if self.available < 0 else Decimal('0')

    def to_dict(self) -> Dict[str, Any]:
        return {
            "limit": str(self.limit),
            "used": str(self.used),
            "available": str(self.available),
            "utilization_percent": str(self.utilization_percent),
            "active_loan_count": self.active_loan_count,
        }


def calculate_utilization(limit, loan_amounts: Iterable) -> CreditUtilization:
    """
    Args:
        limit: Total limit of the facility or credit line
        loan_amounts: Amounts of the active loans attributable to it

    Returns:
        CreditUtilization; utilization is 0 when the limit is 0
    """
    limit = to_decimal(limit, "limit")
    amounts = [to_decimal(amount, "amount") for amount in loan_amounts]
    used = sum(amounts, Decimal('0'))
    available = limit - used

    if limit > 0:
        percent = quantize_amount(used / limit * HUNDRED)
    else:
        percent = Decimal('0.00')

    return CreditUtilization(
        limit=limit,
        used=used,
        available=available,
        utilization_percent=percent,
        active_loan_count=len(amounts)
    )


def check_draw_against_limit(utilization: CreditUtilization, amount) -> Optional[str]:
    """Warning text when a draw exceeds available credit, else None"""
    amount = to_decimal(amount, "amount")
    if amount <= utilization.available:
        return None
    return (
        f"Loan amount {quantize_amount(amount)} exceeds available credit "
        f"{quantize_amount(utilization.available)} (limit {quantize_amount(utilization.limit)}); "
        f"proceeding with the draw"
    )


@dataclass(frozen=True)
class RevolvingUsage:
    """How much of a maximum revolving period has been consumed"""
    days_used: int
    days_remaining: int
    max_revolving_period: int
    usage_percent: Decimal
    status: str  # available, warning, critical or expired

    @property
    def can_revolve(self) -> bool:
        return self.days_remaining > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "days_used": self.days_used,
            "days_remaining": self.days_remaining,
            "max_revolving_period": self.max_revolving_period,
            "usage_percent": str(self.usage_percent),
            "status": self.status,
            "can_revolve": self.can_revolve,
        }


def calculate_revolving_usage(days_used: int, max_revolving_period: int,
                              warning_percent: int = 70,
                              critical_percent: int = 90) -> RevolvingUsage:
    """
    Percent is rounded to one decimal and capped to [0, 100]. Status is
    expired at 100%, critical from critical_percent, warning from
    warning_percent, otherwise available.
    """
    days_used = max(0, days_used)
    if max_revolving_period > 0:
        percent = (Decimal(days_used) / Decimal(max_revolving_period) * HUNDRED).quantize(Decimal('0.1'))
    else:
        percent = HUNDRED
    percent = min(HUNDRED, max(Decimal('0'), percent))

    if percent >= HUNDRED:
        status = "expired"
    elif percent >= critical_percent:
        status = "critical"
    elif percent >= warning_percent:
        status = "warning"
    else:
        status = "available"

    return RevolvingUsage(
        days_used=days_used,
        days_remaining=max(0, max_revolving_period - days_used),
        max_revolving_period=max_revolving_period,
        usage_percent=percent,
        status=status
    )
