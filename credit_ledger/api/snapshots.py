"""
Exposure snapshot and audit endpoints
"""

from datetime import date
from typing import Optional
from fastapi import APIRouter, Depends

from .schemas import CaptureSnapshotsRequest, UpsertSnapshotRequest
from .system import LedgerSystem, get_actor, get_ledger_system


router = APIRouter()


@router.post("/snapshots")
async def upsert_exposure_snapshot(
    request: UpsertSnapshotRequest,
    system: LedgerSystem = Depends(get_ledger_system),
    actor: str = Depends(get_actor)
):
    """Recompute and replace one user's exposure rows for a date"""
    rows = system.snapshots.upsert_exposure_snapshot(
        request.user_id, request.snapshot_date or system.today(), actor=actor
    )
    return {"snapshots": [row.to_dict() for row in rows]}


@router.post("/snapshots/capture")
async def capture_all_snapshots(
    request: CaptureSnapshotsRequest,
    system: LedgerSystem = Depends(get_ledger_system)
):
    return system.snapshots.capture_all(request.snapshot_date or system.today())


@router.get("/snapshots")
async def get_snapshots(
    user_id: str,
    snapshot_date: Optional[date] = None,
    level: Optional[str] = None,
    bank_id: Optional[str] = None,
    facility_id: Optional[str] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    system: LedgerSystem = Depends(get_ledger_system)
):
    snapshots = system.snapshots.get_snapshots(
        user_id, snapshot_date=snapshot_date, level=level, bank_id=bank_id,
        facility_id=facility_id, start_date=start_date, end_date=end_date
    )
    return {"snapshots": [s.to_dict() for s in snapshots], "count": len(snapshots)}


@router.get("/audit/verify")
async def verify_audit_chain(system: LedgerSystem = Depends(get_ledger_system)):
    return system.audit_trail.verify_integrity()
