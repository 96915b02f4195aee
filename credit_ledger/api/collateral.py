"""
Collateral endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, status

from .schemas import AssignCollateralRequest, RegisterCollateralRequest, ReleaseAssignmentRequest
from .system import LedgerSystem, get_actor, get_ledger_system


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def register_collateral(
    request: RegisterCollateralRequest,
    system: LedgerSystem = Depends(get_ledger_system),
    actor: str = Depends(get_actor)
):
    collateral = system.collateral.register_collateral(
        user_id=request.user_id,
        collateral_type=request.collateral_type,
        name=request.name,
        current_value=request.current_value,
        valuation_date=request.valuation_date,
        description=request.description,
        valuation_source=request.valuation_source,
        notes=request.notes,
        actor=actor
    )
    return collateral.to_dict()


@router.post("/assignments", status_code=status.HTTP_201_CREATED)
async def assign_collateral(
    request: AssignCollateralRequest,
    system: LedgerSystem = Depends(get_ledger_system),
    actor: str = Depends(get_actor)
):
    """Pledge collateral to exactly one facility, credit line or bank"""
    assignment = system.collateral.assign_collateral(
        collateral_id=request.collateral_id,
        pledge_type=request.pledge_type,
        effective_date=request.effective_date,
        facility_id=request.facility_id,
        credit_line_id=request.credit_line_id,
        bank_id=request.bank_id,
        pledged_value=request.pledged_value,
        advance_rate=request.advance_rate,
        release_date=request.release_date,
        actor=actor
    )
    return assignment.to_dict()


@router.get("/assignments")
async def list_assignments(
    facility_id: Optional[str] = None,
    credit_line_id: Optional[str] = None,
    bank_id: Optional[str] = None,
    active_only: bool = True,
    system: LedgerSystem = Depends(get_ledger_system)
):
    assignments = system.collateral.get_assignments_for_target(
        facility_id=facility_id, credit_line_id=credit_line_id, bank_id=bank_id, active_only=active_only
    )
    return {"assignments": [a.to_dict() for a in assignments]}


@router.post("/assignments/{assignment_id}/release")
async def release_assignment(
    assignment_id: str,
    request: ReleaseAssignmentRequest,
    system: LedgerSystem = Depends(get_ledger_system),
    actor: str = Depends(get_actor)
):
    return system.collateral.release_assignment(assignment_id, request.release_date, actor=actor).to_dict()


@router.get("/{collateral_id}")
async def get_collateral(collateral_id: str, system: LedgerSystem = Depends(get_ledger_system)):
    data = system.collateral.get_collateral(collateral_id).to_dict()
    data["assignments"] = [a.to_dict() for a in system.collateral.get_assignments_for_collateral(collateral_id)]
    return data
