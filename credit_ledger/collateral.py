"""
Collateral Module

Collateral assets and their pledges. An assignment links one asset to exactly
one of a facility, a credit line or a bank.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import List, Optional
from enum import Enum
import uuid

from .audit import AuditTrail, AuditAction
from .daycount import to_decimal
from .errors import NotFoundError, PreconditionViolation, ValidationError, parse_enum
from .facilities import FacilityRegistry
from .rates import validate_rate
from .storage import StorageInterface, StorageRecord


class CollateralType(Enum):
    REAL_ESTATE = "real_estate"
    LIQUID_STOCKS = "liquid_stocks"
    OTHER = "other"


class PledgeType(Enum):
    FIRST_LIEN = "first_lien"
    SECOND_LIEN = "second_lien"
    BLANKET = "blanket"


@dataclass
class Collateral(StorageRecord):
    """An asset that can be pledged"""
    user_id: str
    collateral_type: CollateralType
    name: str
    current_value: Decimal
    valuation_date: date
    description: Optional[str] = None
    valuation_source: Optional[str] = None
    notes: Optional[str] = None
    is_active: bool = True


@dataclass
class CollateralAssignment(StorageRecord):
    """Pledge of one collateral asset to exactly one target"""
    collateral_id: str
    pledge_type: PledgeType
    effective_date: date
    facility_id: Optional[str] = None
    credit_line_id: Optional[str] = None
    bank_id: Optional[str] = None
    pledged_value: Optional[Decimal] = None
    advance_rate: Optional[Decimal] = None  # Percent of pledged value lendable
    release_date: Optional[date] = None
    is_active: bool = True

    @property
    def target(self) -> tuple:
        """(target type, target id)"""
        if self.facility_id:
            return ("facility", self.facility_id)
        if self.credit_line_id:
            return ("credit_line", self.credit_line_id)
        return ("bank", self.bank_id)

    @property
    def lendable_value(self) -> Optional[Decimal]:
        if self.pledged_value is None or self.advance_rate is None:
            return None
        return self.pledged_value * self.advance_rate / Decimal('100')


class CollateralRegistry:
    """Registers collateral and validates pledges"""

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail, facilities: FacilityRegistry):
        self.storage = storage
        self.audit_trail = audit_trail
        self.facilities = facilities

        self.collateral_table = "collateral"
        self.assignments_table = "collateral_assignments"

    def register_collateral(
        self,
        user_id: str,
        collateral_type: CollateralType,
        name: str,
        current_value,
        valuation_date: date,
        description: Optional[str] = None,
        valuation_source: Optional[str] = None,
        notes: Optional[str] = None,
        actor: Optional[str] = None
    ) -> Collateral:
        current_value = to_decimal(current_value, "current_value")
        if current_value < 0:
            raise ValidationError("current_value must not be negative")
        if not name or not name.strip():
            raise ValidationError("Collateral name is required")

        now = datetime.now(timezone.utc)
        collateral = Collateral(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            user_id=user_id,
            collateral_type=parse_enum(CollateralType, collateral_type, "collateral_type"),
            name=name.strip(),
            current_value=current_value,
            valuation_date=valuation_date,
            description=description,
            valuation_source=valuation_source,
            notes=notes
        )

        with self.storage.atomic():
            self.storage.save(self.collateral_table, collateral.id, collateral.to_dict())
            self.audit_trail.record_mutation(
                AuditAction.COLLATERAL_REGISTERED, "collateral", collateral.id, None,
                collateral.to_dict(), actor or user_id
            )
        return collateral

    def get_collateral(self, collateral_id: str) -> Collateral:
        data = self.storage.load(self.collateral_table, collateral_id)
        if not data:
            raise NotFoundError(f"Collateral {collateral_id} not found")
        return Collateral.from_dict(data)

    def assign_collateral(
        self,
        collateral_id: str,
        pledge_type: PledgeType,
        effective_date: date,
        facility_id: Optional[str] = None,
        credit_line_id: Optional[str] = None,
        bank_id: Optional[str] = None,
        pledged_value=None,
        advance_rate=None,
        release_date: Optional[date] = None,
        actor: Optional[str] = None
    ) -> CollateralAssignment:
        """
        Pledge collateral to exactly one of a facility, credit line or bank

        Raises:
            ValidationError: zero or several targets, bad value, rate or dates
            NotFoundError: collateral or target does not exist
        """
        targets = [t for t in (facility_id, credit_line_id, bank_id) if t]
        if len(targets) != 1:
            raise ValidationError(
                "A collateral assignment must target exactly one of facility_id, credit_line_id "
                f"or bank_id; {len(targets)} given"
            )
        if pledged_value is not None:
            pledged_value = to_decimal(pledged_value, "pledged_value")
            if pledged_value < 0:
                raise ValidationError("pledged_value must not be negative")
        if advance_rate is not None:
            advance_rate = validate_rate(advance_rate, "advance_rate")
        if release_date is not None and release_date < effective_date:
            raise ValidationError("release_date must not be before effective_date")

        collateral = self.get_collateral(collateral_id)
        if not collateral.is_active:
            raise PreconditionViolation(f"Collateral {collateral.name} is inactive")
        if facility_id:
            self.facilities.get_facility(facility_id)
        elif credit_line_id:
            self.facilities.get_credit_line(credit_line_id)
        else:
            self.facilities.get_bank(bank_id)

        now = datetime.now(timezone.utc)
        assignment = CollateralAssignment(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            collateral_id=collateral.id,
            pledge_type=parse_enum(PledgeType, pledge_type, "pledge_type"),
            effective_date=effective_date,
            facility_id=facility_id or None,
            credit_line_id=credit_line_id or None,
            bank_id=bank_id or None,
            pledged_value=pledged_value,
            advance_rate=advance_rate,
            release_date=release_date
        )

        with self.storage.atomic():
            self.storage.save(self.assignments_table, assignment.id, assignment.to_dict())
            self.audit_trail.record_mutation(
                AuditAction.COLLATERAL_ASSIGNED, "collateral_assignment", assignment.id, None,
                assignment.to_dict(), actor or collateral.user_id
            )
        return assignment

    def release_assignment(self, assignment_id: str, release_date: date,
                           actor: Optional[str] = None) -> CollateralAssignment:
        assignment = self.get_assignment(assignment_id)
        if not assignment.is_active:
            raise PreconditionViolation(f"Collateral assignment {assignment_id} is already released")
        if release_date < assignment.effective_date:
            raise ValidationError("release_date must not be before effective_date")
        before = assignment.to_dict()

        assignment.release_date = release_date
        assignment.is_active = False
        assignment.updated_at = datetime.now(timezone.utc)

        with self.storage.atomic():
            self.storage.save(self.assignments_table, assignment.id, assignment.to_dict())
            self.audit_trail.record_mutation(
                AuditAction.COLLATERAL_RELEASED, "collateral_assignment", assignment.id, before,
                assignment.to_dict(), actor
            )
        return assignment

    def get_assignment(self, assignment_id: str) -> CollateralAssignment:
        data = self.storage.load(self.assignments_table, assignment_id)
        if not data:
            raise NotFoundError(f"Collateral assignment {assignment_id} not found")
        return CollateralAssignment.from_dict(data)

    def get_assignments_for_target(
        self,
        facility_id: Optional[str] = None,
        credit_line_id: Optional[str] = None,
        bank_id: Optional[str] = None,
        active_only: bool = True
    ) -> List[CollateralAssignment]:
        if facility_id:
            filters = {"facility_id": facility_id}
        elif credit_line_id:
            filters = {"credit_line_id": credit_line_id}
        elif bank_id:
            filters = {"bank_id": bank_id}
        else:
            raise ValidationError("A target is required")
        if active_only:
            filters["is_active"] = True
        return [CollateralAssignment.from_dict(data) for data in self.storage.find(self.assignments_table, filters)]

    def get_assignments_for_collateral(self, collateral_id: str) -> List[CollateralAssignment]:
        return [
            CollateralAssignment.from_dict(data)
            for data in self.storage.find(self.assignments_table, {"collateral_id": collateral_id})
        ]
