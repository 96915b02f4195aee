"""
Facility Registry Module

Banks, facilities and credit lines: the configuration that loans are drawn
against. Limits set here are advisory for draws (see utilization); the only
hard rule is that credit-line limits never sum above their facility's limit.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass
from contextlib import contextmanager
from typing import Any, Dict, List, Optional
from enum import Enum
import uuid

from .audit import AuditTrail, AuditAction
from .daycount import to_decimal, quantize_amount
from .errors import NotFoundError, ValidationError, PreconditionViolation, parse_enum
from .ledger import TransactionLedger, TransactionType
from .locks import LockRegistry
from .rates import validate_rate
from .storage import StorageInterface, StorageRecord
from .utilization import (
    CreditUtilization, RevolvingUsage, calculate_utilization, calculate_revolving_usage
)
from .logging_config import get_logger, log_action


LOANS_TABLE = "loans"


class FacilityType(Enum):
    """Kinds of credit arrangement"""
    REVOLVING = "revolving"
    TERM = "term"
    BULLET = "bullet"
    BRIDGE = "bridge"
    WORKING_CAPITAL = "working_capital"
    NON_CASH_GUARANTEE = "non_cash_guarantee"


@dataclass
class Bank(StorageRecord):
    """A lending bank"""
    user_id: str
    name: str
    code: str
    is_active: bool = True


@dataclass
class Facility(StorageRecord):
    """A standing credit arrangement with one bank"""
    bank_id: str
    user_id: str
    name: str
    facility_type: FacilityType
    credit_limit: Decimal
    margin: Decimal                          # Percent over the benchmark
    start_date: date
    expiry_date: Optional[date] = None
    is_active: bool = True
    revolving_tracking: bool = False
    max_revolving_period: Optional[int] = None  # Days; only with tracking
    initial_drawdown_date: Optional[date] = None  # Set on the first draw, never changed
    notes: Optional[str] = None

    def covers(self, on_date: date) -> bool:
        """Whether a loan may start on this date"""
        if on_date < self.start_date:
            return False
        return self.expiry_date is None or on_date <= self.expiry_date


@dataclass
class CreditLine(StorageRecord):
    """Sub-allocation of a facility's limit"""
    facility_id: str
    name: str
    credit_limit: Decimal
    available_limit: Decimal
    interest_rate: Optional[Decimal] = None  # Margin override for loans on this line
    is_active: bool = True


class FacilityRegistry:
    """Creates and maintains banks, facilities and credit lines"""

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        ledger: TransactionLedger,
        revolving_warning_percent: int = 70,
        revolving_critical_percent: int = 90,
        lock_registry: Optional[LockRegistry] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.ledger = ledger
        self.revolving_warning_percent = revolving_warning_percent
        self.revolving_critical_percent = revolving_critical_percent
        self.locks = lock_registry or LockRegistry()

        self.banks_table = "banks"
        self.facilities_table = "facilities"
        self.credit_lines_table = "credit_lines"
        self.logger = get_logger("credit_ledger.facilities")

    @contextmanager
    def _facility_unit(self, facility_id: str):
        """
        Hold the facility lock (the one draws take) around one atomic unit

        Entities changed inside the unit must be loaded inside it.
        """
        with self.locks.hold(f"facility:{facility_id}"):
            with self.storage.atomic():
                yield

    # Banks

    def create_bank(self, user_id: str, name: str, code: str, actor: Optional[str] = None) -> Bank:
        if not name or not name.strip():
            raise ValidationError("Bank name is required")
        if not code or not code.strip():
            raise ValidationError("Bank code is required")

        now = datetime.now(timezone.utc)
        bank = Bank(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            user_id=user_id,
            name=name.strip(),
            code=code.strip().upper()
        )

        with self.storage.atomic():
            self.storage.save(self.banks_table, bank.id, bank.to_dict(),
                              unique_keys={"user_code": f"{user_id}:{bank.code}"})
            self.audit_trail.record_mutation(
                AuditAction.BANK_CREATED, "bank", bank.id, None, bank.to_dict(), actor or user_id
            )
        return bank

    def get_bank(self, bank_id: str) -> Bank:
        data = self.storage.load(self.banks_table, bank_id)
        if not data:
            raise NotFoundError(f"Bank {bank_id} not found")
        return Bank.from_dict(data)

    def list_banks(self, user_id: Optional[str] = None) -> List[Bank]:
        filters = {"user_id": user_id} if user_id else {}
        return [Bank.from_dict(data) for data in self.storage.find(self.banks_table, filters)]

    # Facilities

    def create_facility(
        self,
        bank_id: str,
        user_id: str,
        name: str,
        facility_type: FacilityType,
        credit_limit,
        margin,
        start_date: date,
        expiry_date: Optional[date] = None,
        revolving_tracking: bool = False,
        max_revolving_period: Optional[int] = None,
        notes: Optional[str] = None,
        actor: Optional[str] = None
    ) -> Facility:
        """
        Create a facility under an existing, active bank

        Raises:
            NotFoundError: bank does not exist
            PreconditionViolation: bank is inactive
            ValidationError: malformed limit, margin, dates or revolving settings
        """
        bank = self.get_bank(bank_id)
        if not bank.is_active:
            raise PreconditionViolation(f"Bank {bank.name} is inactive")

        credit_limit = self._validate_limit(credit_limit)
        margin = validate_rate(margin, "margin")
        if expiry_date is not None and expiry_date < start_date:
            raise ValidationError("Facility expiry date must not be before its start date")
        if max_revolving_period is not None:
            if not revolving_tracking:
                raise ValidationError("max_revolving_period requires revolving tracking to be enabled")
            if max_revolving_period <= 0:
                raise ValidationError("max_revolving_period must be a positive number of days")

        now = datetime.now(timezone.utc)
        facility = Facility(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            bank_id=bank_id,
            user_id=user_id,
            name=name,
            facility_type=parse_enum(FacilityType, facility_type, "facility_type"),
            credit_limit=credit_limit,
            margin=margin,
            start_date=start_date,
            expiry_date=expiry_date,
            revolving_tracking=revolving_tracking,
            max_revolving_period=max_revolving_period,
            notes=notes
        )

        with self.storage.atomic():
            self._save_facility(facility)
            self.audit_trail.record_mutation(
                AuditAction.FACILITY_CREATED, "facility", facility.id, None, facility.to_dict(),
                actor or user_id
            )

        log_action(self.logger, "info", f"Created facility {facility.name}",
                   user_id=actor or user_id, action="facility_created",
                   resource=f"facility:{facility.id}")
        return facility

    def get_facility(self, facility_id: str) -> Facility:
        data = self.storage.load(self.facilities_table, facility_id)
        if not data:
            raise NotFoundError(f"Facility {facility_id} not found")
        return Facility.from_dict(data)

    def list_facilities(self, user_id: Optional[str] = None, bank_id: Optional[str] = None) -> List[Facility]:
        filters = {}
        if user_id:
            filters["user_id"] = user_id
        if bank_id:
            filters["bank_id"] = bank_id
        return [Facility.from_dict(data) for data in self.storage.find(self.facilities_table, filters)]

    def update_facility_margin(self, facility_id: str, margin, actor: Optional[str] = None) -> Facility:
        """
        Change the facility margin for future draws

        Existing loans keep the margin frozen at their draw or revolve.
        """
        margin = validate_rate(margin, "margin")

        with self._facility_unit(facility_id):
            facility = self.get_facility(facility_id)
            before = facility.to_dict()
            facility.margin = margin
            facility.updated_at = datetime.now(timezone.utc)

            self._save_facility(facility)
            self.audit_trail.record_mutation(
                AuditAction.FACILITY_UPDATED, "facility", facility.id, before, facility.to_dict(), actor
            )
        return facility

    def deactivate_facility(self, facility_id: str, actor: Optional[str] = None) -> Facility:
        with self._facility_unit(facility_id):
            facility = self.get_facility(facility_id)
            if not facility.is_active:
                raise PreconditionViolation(f"Facility {facility.name} is already inactive")
            before = facility.to_dict()
            facility.is_active = False
            facility.updated_at = datetime.now(timezone.utc)

            self._save_facility(facility)
            self.audit_trail.record_mutation(
                AuditAction.FACILITY_DEACTIVATED, "facility", facility.id, before, facility.to_dict(), actor
            )
        return facility

    def mark_initial_drawdown(self, facility: Facility, drawdown_date: date,
                              actor: Optional[str] = None) -> bool:
        """Set initial_drawdown_date on the first draw; later draws leave it alone"""
        if facility.initial_drawdown_date is not None:
            return False
        before = facility.to_dict()
        facility.initial_drawdown_date = drawdown_date
        facility.updated_at = datetime.now(timezone.utc)

        with self.storage.atomic():
            self._save_facility(facility)
            self.audit_trail.record_mutation(
                AuditAction.FACILITY_UPDATED, "facility", facility.id, before, facility.to_dict(), actor,
                reason="initial drawdown"
            )
        return True

    # Credit lines

    def create_credit_line(
        self,
        facility_id: str,
        name: str,
        credit_limit,
        interest_rate=None,
        actor: Optional[str] = None
    ) -> CreditLine:
        """
        Create a credit line inside a facility

        Raises:
            ValidationError: when the line limits would sum above the facility limit
        """
        credit_limit = self._validate_limit(credit_limit)
        if interest_rate is not None:
            interest_rate = validate_rate(interest_rate, "interest_rate")

        with self._facility_unit(facility_id):
            facility = self.get_facility(facility_id)
            if not facility.is_active:
                raise PreconditionViolation(f"Facility {facility.name} is inactive")
            self._check_line_limits(facility, credit_limit)

            now = datetime.now(timezone.utc)
            credit_line = CreditLine(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                facility_id=facility_id,
                name=name,
                credit_limit=credit_limit,
                available_limit=credit_limit,
                interest_rate=interest_rate
            )

            self._save_credit_line(credit_line)
            self.audit_trail.record_mutation(
                AuditAction.CREDIT_LINE_CREATED, "credit_line", credit_line.id, None,
                credit_line.to_dict(), actor
            )
        return credit_line

    def get_credit_line(self, credit_line_id: str) -> CreditLine:
        data = self.storage.load(self.credit_lines_table, credit_line_id)
        if not data:
            raise NotFoundError(f"Credit line {credit_line_id} not found")
        return CreditLine.from_dict(data)

    def list_credit_lines(self, facility_id: str) -> List[CreditLine]:
        return [
            CreditLine.from_dict(data)
            for data in self.storage.find(self.credit_lines_table, {"facility_id": facility_id})
        ]

    def deactivate_credit_line(self, credit_line_id: str, actor: Optional[str] = None) -> CreditLine:
        facility_id = self.get_credit_line(credit_line_id).facility_id

        with self._facility_unit(facility_id):
            credit_line = self.get_credit_line(credit_line_id)
            if not credit_line.is_active:
                raise PreconditionViolation(f"Credit line {credit_line.name} is already inactive")
            before = credit_line.to_dict()
            credit_line.is_active = False
            credit_line.updated_at = datetime.now(timezone.utc)

            self._save_credit_line(credit_line)
            self.audit_trail.record_mutation(
                AuditAction.CREDIT_LINE_DEACTIVATED, "credit_line", credit_line.id, before,
                credit_line.to_dict(), actor
            )
        return credit_line

    def refresh_available_limit(self, credit_line_id: Optional[str]) -> Optional[CreditLine]:
        """Recompute a credit line's available-limit counter from its active loans"""
        if not credit_line_id:
            return None
        credit_line = self.get_credit_line(credit_line_id)
        utilization = calculate_utilization(
            credit_line.credit_limit, self._active_loan_amounts(credit_line_id=credit_line_id)
        )
        if credit_line.available_limit != utilization.available:
            credit_line.available_limit = utilization.available
            credit_line.updated_at = datetime.now(timezone.utc)
            self._save_credit_line(credit_line)
        return credit_line

    # Limits

    def change_credit_limit(
        self,
        entity_id: str,
        new_limit,
        effective_date: date,
        actor: str,
        memo: Optional[str] = None
    ):
        """
        Change the limit of a facility or credit line, writing a limit_change transaction

        A facility limit may not drop below the sum of its credit-line limits;
        a credit-line limit may not push the sum above the facility limit.
        """
        new_limit = self._validate_limit(new_limit)

        is_facility = self.storage.exists(self.facilities_table, entity_id)
        facility_id = entity_id if is_facility else self.get_credit_line(entity_id).facility_id

        with self._facility_unit(facility_id):
            facility = self.get_facility(facility_id)
            if is_facility:
                entity = facility
                lines_total = sum((line.credit_limit for line in self.list_credit_lines(entity.id)
                                   if line.is_active), Decimal('0'))
                if new_limit < lines_total:
                    raise ValidationError(
                        f"Facility limit {quantize_amount(new_limit)} is below the credit lines "
                        f"allocated from it ({quantize_amount(lines_total)})"
                    )
                entity_type, action = "facility", AuditAction.FACILITY_LIMIT_CHANGED
            else:
                entity = self.get_credit_line(entity_id)
                self._check_line_limits(facility, new_limit, exclude_line_id=entity.id)
                entity_type, action = "credit_line", AuditAction.CREDIT_LINE_LIMIT_CHANGED

            before = entity.to_dict()
            previous_limit = entity.credit_limit
            entity.credit_limit = new_limit
            entity.updated_at = datetime.now(timezone.utc)

            if is_facility:
                self._save_facility(entity)
            else:
                self._save_credit_line(entity)
                entity = self.refresh_available_limit(entity.id)

            self.ledger.record(
                TransactionType.LIMIT_CHANGE,
                new_limit,
                effective_date,
                actor,
                facility_id=facility.id,
                bank_id=facility.bank_id,
                credit_line_id=entity.id if entity_type == "credit_line" else None,
                memo=memo,
                metadata={"previous_limit": str(previous_limit), "new_limit": str(new_limit)}
            )
            self.audit_trail.record_mutation(action, entity_type, entity.id, before, entity.to_dict(), actor,
                                             reason=memo)
        return entity

    # Projections

    def compute_utilization(self, facility_or_credit_line_id: str) -> CreditUtilization:
        """Used and available credit of a facility or a credit line"""
        if self.storage.exists(self.facilities_table, facility_or_credit_line_id):
            facility = self.get_facility(facility_or_credit_line_id)
            return calculate_utilization(
                facility.credit_limit, self._active_loan_amounts(facility_id=facility.id)
            )
        credit_line = self.get_credit_line(facility_or_credit_line_id)
        return calculate_utilization(
            credit_line.credit_limit, self._active_loan_amounts(credit_line_id=credit_line.id)
        )

    def revolving_usage(self, facility_id: str, today: date) -> RevolvingUsage:
        """
        Consumption of the facility's maximum revolving period, counted in days
        from the initial drawdown

        Raises:
            ValidationError: revolving tracking is not enabled for the facility
        """
        facility = self.get_facility(facility_id)
        if not facility.revolving_tracking or not facility.max_revolving_period:
            raise ValidationError("Revolving period tracking is not enabled for this facility")

        days_used = 0
        if facility.initial_drawdown_date is not None:
            days_used = (today - facility.initial_drawdown_date).days

        return calculate_revolving_usage(
            days_used, facility.max_revolving_period,
            self.revolving_warning_percent, self.revolving_critical_percent
        )

    # Internals

    def _active_loan_amounts(self, facility_id: Optional[str] = None,
                             credit_line_id: Optional[str] = None) -> List[Decimal]:
        filters: Dict[str, Any] = {"status": "active", "is_deleted": False}
        if facility_id:
            filters["facility_id"] = facility_id
        if credit_line_id:
            filters["credit_line_id"] = credit_line_id
        return [Decimal(loan["amount"]) for loan in self.storage.find(LOANS_TABLE, filters)]

    def _check_line_limits(self, facility: Facility, credit_limit: Decimal,
                           exclude_line_id: Optional[str] = None) -> None:
        allocated = sum(
            (line.credit_limit for line in self.list_credit_lines(facility.id)
             if line.is_active and line.id != exclude_line_id),
            Decimal('0')
        )
        if allocated + credit_limit > facility.credit_limit:
            raise ValidationError(
                f"Credit line limits would total {quantize_amount(allocated + credit_limit)}, "
                f"above the facility limit of {quantize_amount(facility.credit_limit)}"
            )

    @staticmethod
    def _validate_limit(value) -> Decimal:
        limit = to_decimal(value, "credit_limit")
        if limit < 0:
            raise ValidationError("credit_limit must not be negative")
        return limit

    def _save_facility(self, facility: Facility) -> None:
        self.storage.save(self.facilities_table, facility.id, facility.to_dict())

    def _save_credit_line(self, credit_line: CreditLine) -> None:
        self.storage.save(self.credit_lines_table, credit_line.id, credit_line.to_dict())
