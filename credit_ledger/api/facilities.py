"""
Bank, facility and credit line endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, status

from .schemas import (
    ChangeLimitRequest, CreateBankRequest, CreateCreditLineRequest, CreateFacilityRequest,
    UpdateMarginRequest
)
from .system import LedgerSystem, get_actor, get_ledger_system


router = APIRouter()


@router.post("/banks", status_code=status.HTTP_201_CREATED)
async def create_bank(
    request: CreateBankRequest,
    system: LedgerSystem = Depends(get_ledger_system),
    actor: str = Depends(get_actor)
):
    bank = system.facilities.create_bank(request.user_id, request.name, request.code, actor=actor)
    return bank.to_dict()


@router.get("/banks")
async def list_banks(user_id: Optional[str] = None, system: LedgerSystem = Depends(get_ledger_system)):
    return {"banks": [bank.to_dict() for bank in system.facilities.list_banks(user_id)]}


@router.post("/facilities", status_code=status.HTTP_201_CREATED)
async def create_facility(
    request: CreateFacilityRequest,
    system: LedgerSystem = Depends(get_ledger_system),
    actor: str = Depends(get_actor)
):
    facility = system.facilities.create_facility(
        bank_id=request.bank_id,
        user_id=request.user_id,
        name=request.name,
        facility_type=request.facility_type,
        credit_limit=request.credit_limit,
        margin=request.margin,
        start_date=request.start_date,
        expiry_date=request.expiry_date,
        revolving_tracking=request.revolving_tracking,
        max_revolving_period=request.max_revolving_period,
        notes=request.notes,
        actor=actor
    )
    return facility.to_dict()


@router.get("/facilities")
async def list_facilities(
    user_id: Optional[str] = None,
    bank_id: Optional[str] = None,
    system: LedgerSystem = Depends(get_ledger_system)
):
    facilities = system.facilities.list_facilities(user_id=user_id, bank_id=bank_id)
    return {"facilities": [facility.to_dict() for facility in facilities]}


@router.get("/facilities/{facility_id}")
async def get_facility(facility_id: str, system: LedgerSystem = Depends(get_ledger_system)):
    facility = system.facilities.get_facility(facility_id)
    data = facility.to_dict()
    data["credit_lines"] = [line.to_dict() for line in system.facilities.list_credit_lines(facility_id)]
    return data


@router.patch("/facilities/{facility_id}/margin")
async def update_facility_margin(
    facility_id: str,
    request: UpdateMarginRequest,
    system: LedgerSystem = Depends(get_ledger_system),
    actor: str = Depends(get_actor)
):
    """Change the margin for future draws; existing loans keep theirs"""
    return system.facilities.update_facility_margin(facility_id, request.margin, actor=actor).to_dict()


@router.post("/facilities/{facility_id}/limit")
async def change_facility_limit(
    facility_id: str,
    request: ChangeLimitRequest,
    system: LedgerSystem = Depends(get_ledger_system),
    actor: str = Depends(get_actor)
):
    system.facilities.get_facility(facility_id)
    entity = system.facilities.change_credit_limit(
        facility_id, request.new_limit, request.effective_date or system.today(), actor, request.memo
    )
    return entity.to_dict()


@router.delete("/facilities/{facility_id}")
async def deactivate_facility(
    facility_id: str,
    system: LedgerSystem = Depends(get_ledger_system),
    actor: str = Depends(get_actor)
):
    return system.facilities.deactivate_facility(facility_id, actor=actor).to_dict()


@router.get("/facilities/{facility_id}/utilization")
async def get_facility_utilization(facility_id: str, system: LedgerSystem = Depends(get_ledger_system)):
    system.facilities.get_facility(facility_id)
    return system.facilities.compute_utilization(facility_id).to_dict()


@router.get("/facilities/{facility_id}/revolving-usage")
async def get_facility_revolving_usage(facility_id: str, system: LedgerSystem = Depends(get_ledger_system)):
    return system.facilities.revolving_usage(facility_id, system.today()).to_dict()


@router.get("/facilities/{facility_id}/transactions")
async def get_facility_transactions(facility_id: str, system: LedgerSystem = Depends(get_ledger_system)):
    transactions = system.ledger.list_transactions(facility_id=facility_id)
    return {"transactions": [t.to_dict() for t in transactions], "count": len(transactions)}


@router.post("/facilities/{facility_id}/credit-lines", status_code=status.HTTP_201_CREATED)
async def create_credit_line(
    facility_id: str,
    request: CreateCreditLineRequest,
    system: LedgerSystem = Depends(get_ledger_system),
    actor: str = Depends(get_actor)
):
    credit_line = system.facilities.create_credit_line(
        facility_id, request.name, request.credit_limit, request.interest_rate, actor=actor
    )
    return credit_line.to_dict()


@router.get("/credit-lines/{credit_line_id}")
async def get_credit_line(credit_line_id: str, system: LedgerSystem = Depends(get_ledger_system)):
    return system.facilities.get_credit_line(credit_line_id).to_dict()


@router.post("/credit-lines/{credit_line_id}/limit")
async def change_credit_line_limit(
    credit_line_id: str,
    request: ChangeLimitRequest,
    system: LedgerSystem = Depends(get_ledger_system),
    actor: str = Depends(get_actor)
):
    system.facilities.get_credit_line(credit_line_id)
    entity = system.facilities.change_credit_limit(
        credit_line_id, request.new_limit, request.effective_date or system.today(), actor, request.memo
    )
    return entity.to_dict()


@router.delete("/credit-lines/{credit_line_id}")
async def deactivate_credit_line(
    credit_line_id: str,
    system: LedgerSystem = Depends(get_ledger_system),
    actor: str = Depends(get_actor)
):
    return system.facilities.deactivate_credit_line(credit_line_id, actor=actor).to_dict()


@router.get("/credit-lines/{credit_line_id}/utilization")
async def get_credit_line_utilization(credit_line_id: str, system: LedgerSystem = Depends(get_ledger_system)):
    system.facilities.get_credit_line(credit_line_id)
    return system.facilities.compute_utilization(credit_line_id).to_dict()
