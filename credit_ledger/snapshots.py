"""
Exposure Snapshot Module

Point-in-time rollups of outstanding credit against limits for one user and
date, at three granularities: global, per bank and per (bank, facility).
Each granularity has its own uniqueness constraint, so re-running a date
replaces that date's rows instead of adding new ones.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple
import uuid

from .audit import AuditTrail, AuditAction
from .collateral import CollateralRegistry
from .daycount import HUNDRED, quantize_amount
from .errors import ValidationError
from .facilities import FacilityRegistry
from .loans import LoanLifecycleEngine, LoanStatus
from .storage import StorageInterface, StorageRecord
from .logging_config import get_logger, log_action


GLOBAL = "global"
BANK = "bank"
FACILITY = "facility"
LEVELS = (GLOBAL, BANK, FACILITY)


@dataclass
class ExposureSnapshot(StorageRecord):
    """One rollup row"""
    user_id: str
    snapshot_date: date
    level: str
    outstanding: Decimal
    credit_limit: Decimal
    active_loan_count: int = 0
    bank_id: Optional[str] = None
    facility_id: Optional[str] = None
    utilization_percent: Decimal = Decimal('0')
    portfolio_ltv: Optional[Decimal] = None  # Global rows only


def snapshot_keys(user_id: str, snapshot_date: date, bank_id: Optional[str],
                  facility_id: Optional[str]) -> Dict[str, Optional[str]]:
    """Unique keys for one row; exactly one constraint applies per level"""
    base = f"{user_id}:{snapshot_date.isoformat()}"
    return {
        GLOBAL: base if not bank_id and not facility_id else None,
        BANK: f"{base}:{bank_id}" if bank_id and not facility_id else None,
        FACILITY: f"{base}:{bank_id}:{facility_id}" if bank_id and facility_id else None,
    }


class ExposureSnapshotAggregator:
    """Computes and upserts exposure snapshots"""

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        facilities: FacilityRegistry,
        loans: LoanLifecycleEngine,
        collateral: Optional[CollateralRegistry] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.facilities = facilities
        self.loans = loans
        self.collateral = collateral

        self.table_name = "exposure_snapshots"
        self.logger = get_logger("credit_ledger.snapshots")

    def upsert_exposure_snapshot(self, user_id: str, snapshot_date: date,
                                 actor: Optional[str] = None) -> List[ExposureSnapshot]:
        """
        Recompute one user's rows for a date and replace any existing ones

        Returns:
            The stored rows: global first, then bank rows, then facility rows
        """
        rows = self._compute(user_id, snapshot_date)

        with self.storage.atomic():
            existing = self.get_snapshots(user_id, snapshot_date)
            now = datetime.now(timezone.utc)
            kept_ids = set()

            for row in rows:
                keys = snapshot_keys(user_id, snapshot_date, row.bank_id, row.facility_id)
                owner = self.storage.lookup_unique(self.table_name, row.level, keys[row.level])
                if owner is not None:
                    previous = self.storage.load(self.table_name, owner)
                    row.id = owner
                    row.created_at = datetime.fromisoformat(previous["created_at"]) if previous else now
                row.updated_at = now
                self.storage.save(self.table_name, row.id, row.to_dict(), unique_keys=keys)
                kept_ids.add(row.id)

            # Banks or facilities that no longer exist for this user
            for stale in existing:
                if stale.id not in kept_ids:
                    self.storage.delete(self.table_name, stale.id)

            self.audit_trail.record_mutation(
                AuditAction.EXPOSURE_SNAPSHOT_UPSERTED, "exposure_snapshot",
                f"{user_id}:{snapshot_date.isoformat()}",
                {"rows": [s.to_dict() for s in existing]} if existing else None,
                {"rows": [r.to_dict() for r in rows]},
                actor or "system"
            )

        log_action(self.logger, "info", f"Upserted {len(rows)} exposure snapshot rows",
                   user_id=user_id, action="exposure_snapshot_upserted",
                   resource=f"exposure_snapshot:{user_id}:{snapshot_date.isoformat()}")
        return rows

    def capture_all(self, snapshot_date: date) -> Dict[str, Any]:
        """
        Snapshot every user that owns a facility

        A failure for one user is logged and does not stop the others.
        """
        user_ids = sorted({facility.user_id for facility in self.facilities.list_facilities()})
        captured, failed = [], {}

        for user_id in user_ids:
            try:
                self.upsert_exposure_snapshot(user_id, snapshot_date)
                captured.append(user_id)
            except Exception as exc:
                failed[user_id] = str(exc)
                log_action(self.logger, "error", f"Exposure snapshot failed for user {user_id}",
                           user_id=user_id, action="exposure_snapshot_failed", exc_info=True)

        log_action(self.logger, "info", f"Captured exposure snapshots for {len(captured)} user(s)",
                   action="exposure_snapshot_batch",
                   extra={"date": snapshot_date.isoformat(), "failed": len(failed)})
        return {"date": snapshot_date.isoformat(), "captured": captured, "failed": failed}

    def get_snapshots(
        self,
        user_id: str,
        snapshot_date: Optional[date] = None,
        level: Optional[str] = None,
        bank_id: Optional[str] = None,
        facility_id: Optional[str] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None
    ) -> List[ExposureSnapshot]:
        if level is not None and level not in LEVELS:
            raise ValidationError(f"Unknown snapshot level {level}; expected one of {', '.join(LEVELS)}")

        filters: Dict[str, Any] = {"user_id": user_id}
        if snapshot_date:
            filters["snapshot_date"] = snapshot_date.isoformat()
        if level:
            filters["level"] = level
        if bank_id:
            filters["bank_id"] = bank_id
        if facility_id:
            filters["facility_id"] = facility_id

        snapshots = [ExposureSnapshot.from_dict(data) for data in self.storage.find(self.table_name, filters)]
        if start_date:
            snapshots = [s for s in snapshots if s.snapshot_date >= start_date]
        if end_date:
            snapshots = [s for s in snapshots if s.snapshot_date <= end_date]

        snapshots.sort(key=lambda s: (s.snapshot_date, LEVELS.index(s.level), s.bank_id or "", s.facility_id or ""))
        return snapshots

    def _compute(self, user_id: str, snapshot_date: date) -> List[ExposureSnapshot]:
        active_loans = self.loans.list_loans(user_id=user_id, status=LoanStatus.ACTIVE)

        by_facility: Dict[str, Tuple[Decimal, int]] = {}
        for loan in active_loans:
            amount, count = by_facility.get(loan.facility_id, (Decimal('0'), 0))
            by_facility[loan.facility_id] = (amount + loan.amount, count + 1)

        # A deactivated facility stays in the rollup while it still carries active loans
        facilities = [
            f for f in self.facilities.list_facilities(user_id=user_id)
            if f.is_active or f.id in by_facility
        ]

        now = datetime.now(timezone.utc)

        def row(level, outstanding, limit, count, bank_id=None, facility_id=None) -> ExposureSnapshot:
            return ExposureSnapshot(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                user_id=user_id,
                snapshot_date=snapshot_date,
                level=level,
                outstanding=outstanding,
                credit_limit=limit,
                active_loan_count=count,
                bank_id=bank_id,
                facility_id=facility_id,
                utilization_percent=quantize_amount(outstanding / limit * HUNDRED) if limit > 0 else Decimal('0')
            )

        bank_rows: Dict[str, ExposureSnapshot] = {}
        facility_rows: List[ExposureSnapshot] = []
        for facility in sorted(facilities, key=lambda f: (f.bank_id, f.id)):
            outstanding, count = by_facility.get(facility.id, (Decimal('0'), 0))
            facility_rows.append(row(FACILITY, outstanding, facility.credit_limit, count,
                                     facility.bank_id, facility.id))

            bank = bank_rows.get(facility.bank_id)
            if bank is None:
                bank_rows[facility.bank_id] = row(BANK, outstanding, facility.credit_limit, count,
                                                  facility.bank_id)
            else:
                bank_rows[facility.bank_id] = row(BANK, bank.outstanding + outstanding,
                                                  bank.credit_limit + facility.credit_limit,
                                                  bank.active_loan_count + count, facility.bank_id)

        total_outstanding = sum((r.outstanding for r in bank_rows.values()), Decimal('0'))
        total_limit = sum((r.credit_limit for r in bank_rows.values()), Decimal('0'))
        total_count = sum(r.active_loan_count for r in bank_rows.values())
        global_row = row(GLOBAL, total_outstanding, total_limit, total_count)
        global_row.portfolio_ltv = self._portfolio_ltv(user_id, total_outstanding)

        return [global_row] + list(bank_rows.values()) + facility_rows

    def _portfolio_ltv(self, user_id: str, outstanding: Decimal) -> Optional[Decimal]:
        """Outstanding over the value of actively pledged collateral, in percent"""
        if self.collateral is None:
            return None
        pledged_ids = {
            a["collateral_id"]
            for a in self.storage.find(self.collateral.assignments_table, {"is_active": True})
        }
        value = sum(
            (Decimal(c["current_value"])
             for c in self.storage.find(self.collateral.collateral_table, {"user_id": user_id, "is_active": True})
             if c["id"] in pledged_ids),
            Decimal('0')
        )
        if value <= 0:
            return None
        return quantize_amount(outstanding / value * HUNDRED)
