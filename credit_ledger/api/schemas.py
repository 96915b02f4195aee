"""
Pydantic schemas for API requests
"""

from datetime import date
from typing import Optional
from pydantic import BaseModel, Field

from ..ledger import Allocation


# Bank and facility schemas
class CreateBankRequest(BaseModel):
    user_id: str
    name: str
    code: str


class CreateFacilityRequest(BaseModel):
    bank_id: str
    user_id: str
    name: str
    facility_type: str = Field(..., description="revolving, term, bullet, bridge, working_capital or non_cash_guarantee")
    credit_limit: str = Field(..., description="Decimal amount as string")
    margin: str = Field(..., description="Percent over the benchmark, e.g. 2.05")
    start_date: date
    expiry_date: Optional[date] = None
    revolving_tracking: bool = False
    max_revolving_period: Optional[int] = Field(None, description="Days; requires revolving tracking")
    notes: Optional[str] = None


class UpdateMarginRequest(BaseModel):
    margin: str


class ChangeLimitRequest(BaseModel):
    new_limit: str = Field(..., description="Decimal amount as string")
    effective_date: Optional[date] = None  # Defaults to today
    memo: Optional[str] = None


class CreateCreditLineRequest(BaseModel):
    name: str
    credit_limit: str = Field(..., description="Decimal amount as string")
    interest_rate: Optional[str] = Field(None, description="Margin override for loans on this line")


# Loan schemas
class AllocationModel(BaseModel):
    interest: str = "0"
    principal: str = "0"
    fees: str = "0"

    def to_allocation(self) -> Allocation:
        return Allocation.of(self.interest, self.principal, self.fees)


class DrawLoanRequest(BaseModel):
    facility_id: str
    credit_line_id: Optional[str] = None
    amount: str = Field(..., description="Decimal amount as string")
    start_date: date
    term_months: int = Field(..., description="Benchmark term in months (1, 2, 3, 6, 12 or custom)")
    due_date: Optional[date] = None  # Derived from the term when omitted
    benchmark_rate: Optional[str] = Field(None, description="Benchmark rate in percent; reference rate when omitted")
    interest_basis: Optional[str] = Field(None, description="actual_360 or actual_365")
    charges_due_date: Optional[date] = None
    reference_number: Optional[str] = None
    notes: Optional[str] = None
    idempotency_key: Optional[str] = None


class RepaymentRequest(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    payment_date: date
    allocation: Optional[AllocationModel] = None
    idempotency_key: Optional[str] = None
    memo: Optional[str] = None


class SettleLoanRequest(BaseModel):
    settlement_date: date
    amount: Optional[str] = Field(None, description="Full outstanding balance when omitted")
    memo: Optional[str] = None
    idempotency_key: Optional[str] = None


class ReverseSettlementRequest(BaseModel):
    reason: str


class RevolveLoanRequest(BaseModel):
    new_term_months: int
    new_benchmark_rate: Optional[str] = None
    margin: Optional[str] = Field(None, description="Must equal the loan's frozen margin when given")
    due_date: Optional[date] = None
    memo: Optional[str] = None


class CancelLoanRequest(BaseModel):
    reason: Optional[str] = None


# Collateral schemas
class RegisterCollateralRequest(BaseModel):
    user_id: str
    collateral_type: str = Field(..., description="real_estate, liquid_stocks or other")
    name: str
    current_value: str = Field(..., description="Decimal amount as string")
    valuation_date: date
    description: Optional[str] = None
    valuation_source: Optional[str] = None
    notes: Optional[str] = None


class AssignCollateralRequest(BaseModel):
    collateral_id: str
    pledge_type: str = Field(..., description="first_lien, second_lien or blanket")
    effective_date: date
    facility_id: Optional[str] = None
    credit_line_id: Optional[str] = None
    bank_id: Optional[str] = None
    pledged_value: Optional[str] = None
    advance_rate: Optional[str] = None
    release_date: Optional[date] = None


class ReleaseAssignmentRequest(BaseModel):
    release_date: date


# Snapshot schemas
class UpsertSnapshotRequest(BaseModel):
    user_id: str
    snapshot_date: Optional[date] = None  # Defaults to today


class CaptureSnapshotsRequest(BaseModel):
    snapshot_date: Optional[date] = None
