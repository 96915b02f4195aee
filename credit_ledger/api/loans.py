"""
Loan endpoints
"""

from datetime import date
from typing import Any, Dict, Optional
from fastapi import APIRouter, Depends, status

from .schemas import (
    CancelLoanRequest, DrawLoanRequest, RepaymentRequest, ReverseSettlementRequest,
    RevolveLoanRequest, SettleLoanRequest
)
from .system import LedgerSystem, get_actor, get_ledger_system
from ..daycount import quantize_amount
from ..ledger import Transaction
from ..loans import Loan


router = APIRouter()


def loan_response(loan: Loan, system: LedgerSystem) -> Dict[str, Any]:
    today = system.today()
    urgency = system.loans.classify_loan_urgency(
        loan, today, system.config.urgency_critical_days, system.config.urgency_warning_days
    )
    data = loan.to_dict()
    data["outstanding_principal"] = str(loan.outstanding_principal)
    data["display_status"] = loan.display_status(today)
    data["urgency"] = urgency.value if urgency else None
    return data


def transaction_response(transaction: Transaction) -> Dict[str, Any]:
    data = transaction.to_dict()
    allocation = transaction.allocation
    data["allocation"] = allocation.to_dict() if allocation else None
    return data


@router.post("", status_code=status.HTTP_201_CREATED)
async def draw_loan(
    request: DrawLoanRequest,
    system: LedgerSystem = Depends(get_ledger_system),
    actor: str = Depends(get_actor)
):
    """Draw a new loan against a facility or credit line"""
    loan = system.loans.draw_loan(
        facility_id=request.facility_id,
        credit_line_id=request.credit_line_id,
        amount=request.amount,
        start_date=request.start_date,
        term_months=request.term_months,
        due_date=request.due_date,
        benchmark_rate=request.benchmark_rate,
        interest_basis=request.interest_basis,
        charges_due_date=request.charges_due_date,
        reference_number=request.reference_number,
        notes=request.notes,
        idempotency_key=request.idempotency_key,
        actor=actor
    )
    return loan_response(loan, system)


@router.get("")
async def list_loans(
    user_id: Optional[str] = None,
    status: Optional[str] = None,
    facility_id: Optional[str] = None,
    include_deleted: bool = False,
    system: LedgerSystem = Depends(get_ledger_system)
):
    loans = system.loans.list_loans(user_id=user_id, status=status, facility_id=facility_id,
                                    include_deleted=include_deleted)
    return {"loans": [loan_response(loan, system) for loan in loans], "count": len(loans)}


@router.get("/{loan_id}")
async def get_loan(loan_id: str, system: LedgerSystem = Depends(get_ledger_system)):
    return loan_response(system.loans.get_loan(loan_id), system)


@router.get("/{loan_id}/chain")
async def get_loan_chain(loan_id: str, system: LedgerSystem = Depends(get_ledger_system)):
    """All cycles of the loan's revolve chain, oldest first"""
    return {"loans": [loan_response(loan, system) for loan in system.loans.get_loan_chain(loan_id)]}


@router.get("/{loan_id}/ledger")
async def get_loan_ledger(loan_id: str, system: LedgerSystem = Depends(get_ledger_system)):
    transactions = system.ledger.get_loan_ledger(loan_id)
    return {"transactions": [transaction_response(t) for t in transactions], "count": len(transactions)}


@router.get("/{loan_id}/balance")
async def get_loan_balance(
    loan_id: str,
    as_of: Optional[date] = None,
    system: LedgerSystem = Depends(get_ledger_system)
):
    return system.loans.calculate_loan_balance(loan_id, as_of).to_dict()


@router.get("/{loan_id}/accrued-interest")
async def get_accrued_interest(
    loan_id: str,
    as_of: Optional[date] = None,
    system: LedgerSystem = Depends(get_ledger_system)
):
    as_of = as_of or system.today()
    accrued = system.loans.compute_accrued_interest(loan_id, as_of)
    return {"loan_id": loan_id, "as_of": as_of.isoformat(), "accrued_interest": str(quantize_amount(accrued))}


@router.get("/{loan_id}/revolving-usage")
async def get_loan_revolving_usage(loan_id: str, system: LedgerSystem = Depends(get_ledger_system)):
    return system.loans.loan_revolving_usage(loan_id).to_dict()


@router.get("/{loan_id}/audit")
async def get_loan_audit(loan_id: str, system: LedgerSystem = Depends(get_ledger_system)):
    events = system.audit_trail.get_events_for_entity("loan", loan_id)
    return {"events": [event.to_dict() for event in events], "count": len(events)}


@router.post("/{loan_id}/repayments", status_code=status.HTTP_201_CREATED)
async def record_repayment(
    loan_id: str,
    request: RepaymentRequest,
    system: LedgerSystem = Depends(get_ledger_system),
    actor: str = Depends(get_actor)
):
    transaction = system.loans.record_repayment(
        loan_id=loan_id,
        amount=request.amount,
        payment_date=request.payment_date,
        allocation=request.allocation.to_allocation() if request.allocation else None,
        idempotency_key=request.idempotency_key,
        memo=request.memo,
        actor=actor
    )
    return {
        "transaction": transaction_response(transaction),
        "loan": loan_response(system.loans.get_loan(loan_id), system)
    }


@router.post("/{loan_id}/settle")
async def settle_loan(
    loan_id: str,
    request: SettleLoanRequest,
    system: LedgerSystem = Depends(get_ledger_system),
    actor: str = Depends(get_actor)
):
    loan = system.loans.settle_loan(
        loan_id=loan_id,
        settlement_date=request.settlement_date,
        amount=request.amount,
        memo=request.memo,
        idempotency_key=request.idempotency_key,
        actor=actor
    )
    return loan_response(loan, system)


@router.post("/{loan_id}/reverse-settlement")
async def reverse_settlement(
    loan_id: str,
    request: ReverseSettlementRequest,
    system: LedgerSystem = Depends(get_ledger_system),
    actor: str = Depends(get_actor)
):
    loan = system.loans.reverse_settlement(loan_id, request.reason, actor=actor)
    return loan_response(loan, system)


@router.post("/{loan_id}/revolve", status_code=status.HTTP_201_CREATED)
async def revolve_loan(
    loan_id: str,
    request: RevolveLoanRequest,
    system: LedgerSystem = Depends(get_ledger_system),
    actor: str = Depends(get_actor)
):
    """Close the loan and open its successor cycle"""
    successor = system.loans.revolve_loan(
        loan_id=loan_id,
        new_term_months=request.new_term_months,
        new_benchmark_rate=request.new_benchmark_rate,
        margin=request.margin,
        due_date=request.due_date,
        memo=request.memo,
        actor=actor
    )
    return loan_response(successor, system)


@router.delete("/{loan_id}")
async def cancel_loan(
    loan_id: str,
    request: Optional[CancelLoanRequest] = None,
    system: LedgerSystem = Depends(get_ledger_system),
    actor: str = Depends(get_actor)
):
    """Cancel (soft delete) an active loan"""
    loan = system.loans.cancel_loan(loan_id, actor=actor, reason=request.reason if request else None)
    return loan_response(loan, system)


@router.post("/{loan_id}/permanent-delete")
async def permanently_delete_loan(
    loan_id: str,
    system: LedgerSystem = Depends(get_ledger_system),
    actor: str = Depends(get_actor)
):
    system.loans.permanently_delete_loan(loan_id, actor=actor)
    return {"loan_id": loan_id, "message": "Loan permanently deleted"}
