"""
Loan Module

Loan lifecycle engine: draw, repayment, settlement, settlement reversal,
revolve into a successor cycle, cancellation and permanent deletion.

Every transition runs under a per-loan lock inside one storage unit of work:
validate preconditions, compute amounts, write the loan, write exactly one
ledger transaction and write the audit row. Either all of it commits or none
of it does.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional
from enum import Enum
from contextlib import contextmanager
import uuid

from .audit import AuditTrail, AuditAction
from .business_days import FRIDAY_SATURDAY, adjust_to_business_day
from .daycount import (
    InterestBasis, accrual_origin, accrued_interest, projected_interest,
    quantize_amount, to_decimal
)
from .errors import (
    ConflictError, LedgerError, NotFoundError, PersistenceError,
    PreconditionViolation, ValidationError, parse_enum
)
from .facilities import LOANS_TABLE, Facility, FacilityRegistry
from .ledger import Allocation, Transaction, TransactionLedger, TransactionType
from .rates import RateQuoteProvider, compose_bank_rate, derive_due_date, resolve_benchmark_rate
from .storage import StorageInterface, StorageRecord
from .utilization import RevolvingUsage, calculate_revolving_usage, check_draw_against_limit
from .logging_config import get_logger, log_action


class LoanStatus(Enum):
    """Persisted loan states; overdue is derived from the due date"""
    ACTIVE = "active"
    SETTLED = "settled"
    CANCELLED = "cancelled"


# Terminal stage reached only by permanent deletion; never persisted
PURGED = "purged"

# operation -> (states it may start from, resulting state)
LOAN_TRANSITIONS: Dict[str, tuple] = {
    "repay": ({LoanStatus.ACTIVE}, LoanStatus.ACTIVE),
    "settle": ({LoanStatus.ACTIVE}, LoanStatus.SETTLED),
    "reverse_settlement": ({LoanStatus.SETTLED}, LoanStatus.ACTIVE),
    "revolve": ({LoanStatus.ACTIVE}, LoanStatus.SETTLED),
    "cancel": ({LoanStatus.ACTIVE}, LoanStatus.CANCELLED),
    "permanently_delete": ({LoanStatus.CANCELLED}, PURGED),
}

TRANSITION_ERRORS = {
    "repay": "Repayments can only be recorded against active loans",
    "settle": "Only active loans can be settled",
    "reverse_settlement": "Only settled loans can have their settlement reversed",
    "revolve": "Only active loans can be revolved",
    "cancel": "Only active loans can be cancelled",
    "permanently_delete": "Only cancelled loans can be permanently deleted",
}


class AllocationPolicy(Enum):
    """What to do with a repayment that arrives without an allocation"""
    REQUIRE = "require"
    PRINCIPAL_ONLY = "principal_only"
    INTEREST_FIRST = "interest_first"


class UrgencyLevel(Enum):
    """Due-date proximity bucket, computed at read time"""
    CRITICAL = "critical"
    WARNING = "warning"
    NORMAL = "normal"


def classify_urgency(due_date: date, today: date, critical_days: int = 7,
                     warning_days: int = 15) -> UrgencyLevel:
    """Critical when past due or due within critical_days, warning within warning_days"""
    days_until_due = (due_date - today).days
    if days_until_due <= critical_days:
        return UrgencyLevel.CRITICAL
    if days_until_due <= warning_days:
        return UrgencyLevel.WARNING
    return UrgencyLevel.NORMAL


@dataclass
class Loan(StorageRecord):
    """A single drawdown against a facility"""
    facility_id: str
    user_id: str
    amount: Decimal
    start_date: date
    due_date: date
    benchmark_rate: Decimal
    term_label: str
    term_months: int
    margin: Decimal                     # Frozen for the life of this cycle
    bank_rate: Decimal
    interest_basis: InterestBasis
    status: LoanStatus = LoanStatus.ACTIVE
    credit_line_id: Optional[str] = None
    reference_number: Optional[str] = None
    charges_due_date: Optional[date] = None

    # Interest accrual state
    last_accrual_date: Optional[date] = None       # Interest confirmed through this date
    interest_carry: Decimal = Decimal('0')          # Accrued on earlier principal segments
    accrual_segment_start: Optional[date] = None   # Start of the current principal segment
    interest_paid_since_accrual: Decimal = Decimal('0')

    # Repayment totals
    principal_repaid: Decimal = Decimal('0')
    interest_repaid: Decimal = Decimal('0')
    fees_repaid: Decimal = Decimal('0')

    # Settlement and reversal
    settled_date: Optional[date] = None
    settled_amount: Optional[Decimal] = None
    settlement_transaction_id: Optional[str] = None
    reversed_at: Optional[datetime] = None
    reversal_reason: Optional[str] = None
    reversed_by: Optional[str] = None

    # Revolve chain
    parent_loan_id: Optional[str] = None
    cycle_number: int = 1
    rolled_into_loan_id: Optional[str] = None

    # Soft delete
    is_deleted: bool = False
    cancelled_at: Optional[datetime] = None

    limit_warning: Optional[str] = None
    notes: Optional[str] = None

    @property
    def outstanding_principal(self) -> Decimal:
        return max(Decimal('0'), self.amount - self.principal_repaid)

    def is_overdue(self, today: date) -> bool:
        return self.status == LoanStatus.ACTIVE and self.due_date < today

    def display_status(self, today: date) -> str:
        return "overdue" if self.is_overdue(today) else self.status.value

    def accrual_state(self) -> Dict[str, Any]:
        """Fields a settlement overwrites and a reversal restores"""
        return {
            "last_accrual_date": self.last_accrual_date.isoformat() if self.last_accrual_date else None,
            "interest_carry": str(self.interest_carry),
            "accrual_segment_start": self.accrual_segment_start.isoformat() if self.accrual_segment_start else None,
            "interest_paid_since_accrual": str(self.interest_paid_since_accrual),
            "principal_repaid": str(self.principal_repaid),
            "interest_repaid": str(self.interest_repaid),
            "fees_repaid": str(self.fees_repaid),
        }

    def restore_accrual_state(self, state: Dict[str, Any]) -> None:
        self.last_accrual_date = date.fromisoformat(state["last_accrual_date"]) if state.get("last_accrual_date") else None
        self.interest_carry = Decimal(state["interest_carry"])
        self.accrual_segment_start = (
            date.fromisoformat(state["accrual_segment_start"]) if state.get("accrual_segment_start") else None
        )
        self.interest_paid_since_accrual = Decimal(state["interest_paid_since_accrual"])
        self.principal_repaid = Decimal(state["principal_repaid"])
        self.interest_repaid = Decimal(state["interest_repaid"])
        self.fees_repaid = Decimal(state["fees_repaid"])


@dataclass(frozen=True)
class LoanBalance:
    """Point-in-time balance of one loan"""
    loan_id: str
    as_of: date
    amount: Decimal
    outstanding_principal: Decimal
    accrued_interest: Decimal
    principal_repaid: Decimal
    interest_repaid: Decimal
    fees_repaid: Decimal
    projected_interest: Decimal

    @property
    def total_outstanding(self) -> Decimal:
        return self.outstanding_principal + self.accrued_interest

    def to_dict(self) -> Dict[str, Any]:
        return {
            "loan_id": self.loan_id,
            "as_of": self.as_of.isoformat(),
            "amount": str(self.amount),
            "outstanding_principal": str(quantize_amount(self.outstanding_principal)),
            "accrued_interest": str(quantize_amount(self.accrued_interest)),
            "total_outstanding": str(quantize_amount(self.total_outstanding)),
            "principal_repaid": str(self.principal_repaid),
            "interest_repaid": str(self.interest_repaid),
            "fees_repaid": str(self.fees_repaid),
            "projected_interest": str(quantize_amount(self.projected_interest)),
        }


class LoanLifecycleEngine:
    """
    Owns every loan state transition
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        ledger: TransactionLedger,
        facilities: FacilityRegistry,
        rate_provider: Optional[RateQuoteProvider] = None,
        weekend_days: Iterable[int] = FRIDAY_SATURDAY,
        default_interest_basis: InterestBasis = InterestBasis.ACTUAL_360,
        allocation_policy: AllocationPolicy = AllocationPolicy.REQUIRE,
        amount_tolerance: Decimal = Decimal('0.01'),
        clock: Callable[[], date] = date.today
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.ledger = ledger
        self.facilities = facilities
        self.rate_provider = rate_provider
        self.weekend_days = frozenset(weekend_days)
        self.default_interest_basis = InterestBasis.parse(default_interest_basis)
        self.allocation_policy = AllocationPolicy(allocation_policy)
        self.amount_tolerance = to_decimal(amount_tolerance, "amount_tolerance")
        self.locks = facilities.locks  # facility:<id> keys are shared with the registry
        self.clock = clock

        self.loans_table = LOANS_TABLE
        self.logger = get_logger("credit_ledger.loans")

    # Unit of work

    @contextmanager
    def _mutation(self, lock_key: str, operation: str):
        """Serialize on lock_key and run the body as one atomic unit"""
        with self.locks.hold(lock_key):
            try:
                with self.storage.atomic():
                    yield
            except LedgerError:
                raise
            except Exception as exc:
                log_action(self.logger, "error", f"{operation} failed and was rolled back",
                           action=operation, resource=lock_key, exc_info=True)
                raise PersistenceError(f"{operation} failed and was rolled back: {exc}") from exc

    def _require_transition(self, loan: Loan, operation: str) -> None:
        allowed_from, _ = LOAN_TRANSITIONS[operation]
        if loan.status not in allowed_from:
            raise PreconditionViolation(
                f"{TRANSITION_ERRORS[operation]}; loan {loan.id} is {loan.status.value}",
                {"loan_id": loan.id, "status": loan.status.value, "operation": operation}
            )

    # Draw

    def draw_loan(
        self,
        facility_id: str,
        amount,
        start_date: date,
        term_months: int,
        actor: Optional[str] = None,
        credit_line_id: Optional[str] = None,
        due_date: Optional[date] = None,
        benchmark_rate=None,
        interest_basis: Optional[InterestBasis] = None,
        charges_due_date: Optional[date] = None,
        reference_number: Optional[str] = None,
        notes: Optional[str] = None,
        idempotency_key: Optional[str] = None
    ) -> Loan:
        """
        Draw a new loan (cycle 1) against a facility or one of its credit lines

        The bank rate is the benchmark (explicit, quoted or reference) plus the
        credit line's rate override, else the facility margin. A draw above
        available credit proceeds and carries a limit warning.

        Raises:
            NotFoundError: facility or credit line does not exist
            PreconditionViolation: facility or credit line inactive, start outside facility period
            ValidationError: malformed amount, rate, term or dates
        """
        amount = to_decimal(amount, "amount")
        if amount <= 0:
            raise ValidationError("Loan amount must be positive")
        basis = InterestBasis.parse(interest_basis) if interest_basis else self.default_interest_basis

        with self._mutation(f"facility:{facility_id}", "draw_loan"):
            facility = self.facilities.get_facility(facility_id)
            actor = actor or facility.user_id

            replay = self.ledger.check_replay(idempotency_key, TransactionType.DRAW, amount,
                                              start_date, created_by=actor, facility_id=facility_id,
                                              kinds=("draw",))
            if replay is not None:
                return self.get_loan(replay.loan_id)

            if not facility.is_active:
                raise PreconditionViolation(f"Facility {facility.name} is inactive")
            if not facility.covers(start_date):
                raise PreconditionViolation(
                    f"Loan start date {start_date.isoformat()} is outside the facility period "
                    f"of {facility.name}"
                )

            margin = facility.margin
            if credit_line_id:
                credit_line = self.facilities.get_credit_line(credit_line_id)
                if credit_line.facility_id != facility.id:
                    raise ValidationError(
                        f"Credit line {credit_line.name} does not belong to facility {facility.name}"
                    )
                if not credit_line.is_active:
                    raise PreconditionViolation(f"Credit line {credit_line.name} is inactive")
                if credit_line.interest_rate is not None:
                    margin = credit_line.interest_rate

            due_date = self._resolve_due_date(start_date, term_months, due_date)
            if charges_due_date is not None and charges_due_date < start_date:
                raise ValidationError("charges_due_date must not be before the start date")
            quote = resolve_benchmark_rate(term_months, benchmark_rate, self.rate_provider)
            bank_rate = compose_bank_rate(quote.rate, margin)

            utilization = self.facilities.compute_utilization(credit_line_id or facility.id)
            limit_warning = check_draw_against_limit(utilization, amount)

            now = datetime.now(timezone.utc)
            loan = Loan(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                facility_id=facility.id,
                user_id=facility.user_id,
                amount=amount,
                start_date=start_date,
                due_date=due_date,
                benchmark_rate=quote.rate,
                term_label=quote.term_label,
                term_months=term_months,
                margin=margin,
                bank_rate=bank_rate,
                interest_basis=basis,
                credit_line_id=credit_line_id,
                reference_number=reference_number,
                charges_due_date=charges_due_date,
                limit_warning=limit_warning,
                notes=notes
            )

            self._save_loan(loan)
            self.ledger.record(
                TransactionType.DRAW, amount, start_date, actor,
                loan_id=loan.id, facility_id=facility.id, bank_id=facility.bank_id,
                credit_line_id=credit_line_id, idempotency_key=idempotency_key,
                metadata={"kind": "draw", "rate_source": quote.source, "cycle_number": 1}
            )
            self.facilities.mark_initial_drawdown(facility, start_date, actor)
            self.facilities.refresh_available_limit(credit_line_id)
            self.audit_trail.record_mutation(
                AuditAction.LOAN_DRAWN, "loan", loan.id, None, loan.to_dict(), actor
            )

        if limit_warning:
            log_action(self.logger, "warning", limit_warning, user_id=actor,
                       action="loan_drawn_over_limit", resource=f"loan:{loan.id}",
                       extra=utilization.to_dict())
        log_action(self.logger, "info", f"Drew loan of {quantize_amount(amount)}",
                   user_id=actor, action="loan_drawn", resource=f"loan:{loan.id}")
        return loan

    # Repayment

    def record_repayment(
        self,
        loan_id: str,
        amount,
        payment_date: date,
        allocation: Optional[Allocation] = None,
        idempotency_key: Optional[str] = None,
        actor: Optional[str] = None,
        memo: Optional[str] = None
    ) -> Transaction:
        """
        Record a repayment against an active loan

        Interest allocated up to the full accrued amount advances the loan's
        last accrual date to the payment date. A repayment that leaves no
        principal and no accrued interest settles the loan.

        Returns:
            The repayment transaction (the stored one on an idempotent retry)
        """
        amount = to_decimal(amount, "amount")
        if amount <= 0:
            raise ValidationError("Repayment amount must be positive")

        with self._mutation(f"loan:{loan_id}", "record_repayment"):
            replay = self.ledger.check_replay(idempotency_key, TransactionType.REPAYMENT, amount,
                                              payment_date, loan_id, allocation, actor,
                                              kinds=("repayment", "settlement"))
            if replay is not None:
                return replay

            loan = self.get_loan(loan_id)
            self._require_transition(loan, "repay")
            actor = actor or loan.user_id
            if payment_date < loan.start_date:
                raise ValidationError("Repayment date must not be before the loan start date")

            accrued = self._outstanding_interest(loan, payment_date)
            allocation = self._resolve_allocation(amount, allocation, accrued)
            allocation.validate_against(amount, self.amount_tolerance)
            if allocation.interest > quantize_amount(accrued) + self.amount_tolerance:
                raise ValidationError(
                    f"Interest allocation of {quantize_amount(allocation.interest)} exceeds "
                    f"accrued interest of {quantize_amount(accrued)}"
                )
            if allocation.principal > loan.outstanding_principal + self.amount_tolerance:
                raise ValidationError(
                    f"Principal allocation of {quantize_amount(allocation.principal)} exceeds "
                    f"outstanding principal of {quantize_amount(loan.outstanding_principal)}"
                )

            before = loan.to_dict()
            prior_state = loan.accrual_state()
            self._apply_payment(loan, allocation, payment_date, accrued)

            settles = (
                loan.outstanding_principal <= self.amount_tolerance
                and self._outstanding_interest(loan, payment_date) <= self.amount_tolerance
            )
            facility = self.facilities.get_facility(loan.facility_id)
            transaction = self.ledger.record(
                TransactionType.REPAYMENT, amount, payment_date, actor,
                loan_id=loan.id, facility_id=loan.facility_id, bank_id=facility.bank_id,
                credit_line_id=loan.credit_line_id, allocation=allocation,
                idempotency_key=idempotency_key, memo=memo,
                metadata={"kind": "settlement" if settles else "repayment", "prior_state": prior_state}
            )

            if settles:
                self._mark_settled(loan, payment_date, amount, transaction.id)
            loan.updated_at = datetime.now(timezone.utc)
            self._save_loan(loan)
            if settles:
                self.facilities.refresh_available_limit(loan.credit_line_id)

            self.audit_trail.record_mutation(
                AuditAction.LOAN_SETTLED if settles else AuditAction.LOAN_REPAYMENT,
                "loan", loan.id, before, loan.to_dict(), actor,
                metadata={"transaction_id": transaction.id}
            )

        log_action(self.logger, "info", f"Recorded repayment of {quantize_amount(amount)}",
                   user_id=actor, action="loan_repayment", resource=f"loan:{loan_id}",
                   extra={"settled": settles})
        return transaction

    def _resolve_allocation(self, amount: Decimal, allocation: Optional[Allocation],
                            accrued: Decimal) -> Allocation:
        if allocation is not None:
            return allocation
        if self.allocation_policy == AllocationPolicy.PRINCIPAL_ONLY:
            return Allocation(principal=amount)
        if self.allocation_policy == AllocationPolicy.INTEREST_FIRST:
            interest = min(amount, quantize_amount(accrued))
            return Allocation(interest=interest, principal=amount - interest)
        raise ValidationError(
            "A repayment must state its allocation across interest, principal and fees"
        )

    def _apply_payment(self, loan: Loan, allocation: Allocation, payment_date: date,
                       accrued: Decimal) -> None:
        """Apply an allocation to the loan's repayment totals and accrual state"""
        origin = accrual_origin(loan.last_accrual_date, loan.start_date)
        segment_start = loan.accrual_segment_start or origin

        if allocation.interest + self.amount_tolerance >= accrued and payment_date >= origin:
            # Interest confirmed through the payment date
            loan.last_accrual_date = payment_date
            loan.interest_carry = Decimal('0')
            loan.accrual_segment_start = None
            loan.interest_paid_since_accrual = Decimal('0')
        else:
            loan.interest_paid_since_accrual += allocation.interest
            if allocation.principal > 0 and payment_date > segment_start:
                # Close the segment on the old principal before it drops
                loan.interest_carry += accrued_interest(
                    loan.outstanding_principal, loan.bank_rate, loan.interest_basis,
                    segment_start, payment_date
                )
                loan.accrual_segment_start = payment_date

        loan.principal_repaid = min(loan.amount, loan.principal_repaid + allocation.principal)
        loan.interest_repaid += allocation.interest
        loan.fees_repaid += allocation.fees

    # Settlement

    def settle_loan(
        self,
        loan_id: str,
        settlement_date: date,
        amount=None,
        memo: Optional[str] = None,
        actor: Optional[str] = None,
        idempotency_key: Optional[str] = None
    ) -> Loan:
        """
        Settle an active loan

        Without an amount the full outstanding balance (principal plus accrued
        interest as of the settlement date) is settled. The amount goes to
        accrued interest first, then principal.
        """
        with self._mutation(f"loan:{loan_id}", "settle_loan"):
            loan = self.get_loan(loan_id)
            if idempotency_key is not None:
                existing = self.ledger.find_by_idempotency_key(idempotency_key)
                if existing is not None:
                    self.ledger.check_replay(idempotency_key, TransactionType.REPAYMENT,
                                             existing.amount if amount is None else amount,
                                             settlement_date, loan_id, created_by=actor,
                                             kinds=("settlement",))
                    return loan

            self._require_transition(loan, "settle")
            actor = actor or loan.user_id
            if settlement_date < loan.start_date:
                raise ValidationError("Settlement date must not be before the loan start date")

            accrued = quantize_amount(self._outstanding_interest(loan, settlement_date))
            principal_due = loan.outstanding_principal
            full_amount = accrued + principal_due

            if amount is None:
                amount = full_amount
            else:
                amount = to_decimal(amount, "amount")
                if amount <= 0:
                    raise ValidationError("Settlement amount must be positive")
                if amount > full_amount + self.amount_tolerance:
                    raise ValidationError(
                        f"Settlement amount of {quantize_amount(amount)} exceeds the outstanding "
                        f"balance of {quantize_amount(full_amount)}"
                    )
            if amount <= 0:
                raise PreconditionViolation(f"Loan {loan.id} has no outstanding balance to settle")

            interest_part = min(amount, accrued)
            allocation = Allocation(interest=interest_part, principal=amount - interest_part)

            before = loan.to_dict()
            prior_state = loan.accrual_state()
            loan.principal_repaid = min(loan.amount, loan.principal_repaid + allocation.principal)
            loan.interest_repaid += allocation.interest
            loan.last_accrual_date = max(settlement_date, accrual_origin(loan.last_accrual_date, loan.start_date))
            loan.interest_carry = Decimal('0')
            loan.accrual_segment_start = None
            loan.interest_paid_since_accrual = Decimal('0')

            facility = self.facilities.get_facility(loan.facility_id)
            transaction = self.ledger.record(
                TransactionType.REPAYMENT, amount, settlement_date, actor,
                loan_id=loan.id, facility_id=loan.facility_id, bank_id=facility.bank_id,
                credit_line_id=loan.credit_line_id, allocation=allocation,
                idempotency_key=idempotency_key, memo=memo,
                metadata={
                    "kind": "settlement",
                    "full_settlement": amount >= full_amount - self.amount_tolerance,
                    "prior_state": prior_state
                }
            )

            self._mark_settled(loan, settlement_date, amount, transaction.id)
            loan.updated_at = datetime.now(timezone.utc)
            self._save_loan(loan)
            self.facilities.refresh_available_limit(loan.credit_line_id)
            self.audit_trail.record_mutation(
                AuditAction.LOAN_SETTLED, "loan", loan.id, before, loan.to_dict(), actor, reason=memo,
                metadata={"transaction_id": transaction.id}
            )

        log_action(self.logger, "info", f"Settled loan for {quantize_amount(amount)}",
                   user_id=actor, action="loan_settled", resource=f"loan:{loan_id}")
        return loan

    def _mark_settled(self, loan: Loan, settled_date: date, settled_amount: Decimal,
                      transaction_id: str) -> None:
        loan.status = LoanStatus.SETTLED
        loan.settled_date = settled_date
        loan.settled_amount = settled_amount
        loan.settlement_transaction_id = transaction_id

    def reverse_settlement(self, loan_id: str, reason: str, actor: Optional[str] = None) -> Loan:
        """
        Undo a settlement, returning the loan to active

        The original settlement transaction stays in the ledger; a void
        transaction referencing it is appended and the accrual state recorded
        at settlement time is restored.
        """
        if not reason or not reason.strip():
            raise ValidationError("A reason is required to reverse a settlement")

        with self._mutation(f"loan:{loan_id}", "reverse_settlement"):
            loan = self.get_loan(loan_id)
            self._require_transition(loan, "reverse_settlement")
            actor = actor or loan.user_id
            if loan.rolled_into_loan_id:
                raise PreconditionViolation(
                    f"Loan {loan.id} was revolved into loan {loan.rolled_into_loan_id}; "
                    f"its settlement cannot be reversed"
                )

            settlement = self.ledger.get_transaction(loan.settlement_transaction_id)
            before = loan.to_dict()
            voided_amount = loan.settled_amount or Decimal('0')

            prior_state = settlement.metadata.get("prior_state")
            if prior_state:
                loan.restore_accrual_state(prior_state)
            loan.status = LoanStatus.ACTIVE
            loan.settled_date = None
            loan.settled_amount = None
            loan.settlement_transaction_id = None
            loan.reversed_at = datetime.now(timezone.utc)
            loan.reversal_reason = reason.strip()
            loan.reversed_by = actor
            loan.updated_at = loan.reversed_at

            facility = self.facilities.get_facility(loan.facility_id)
            self.ledger.record(
                TransactionType.VOID, voided_amount, self.clock(), actor,
                loan_id=loan.id, facility_id=loan.facility_id, bank_id=facility.bank_id,
                credit_line_id=loan.credit_line_id, memo=reason.strip(),
                metadata={"kind": "settlement_reversal", "voids_transaction_id": settlement.id}
            )
            self._save_loan(loan)
            self.facilities.refresh_available_limit(loan.credit_line_id)
            self.audit_trail.record_mutation(
                AuditAction.LOAN_SETTLEMENT_REVERSED, "loan", loan.id, before, loan.to_dict(), actor,
                reason=reason.strip()
            )

        log_action(self.logger, "info", "Reversed loan settlement", user_id=actor,
                   action="loan_settlement_reversed", resource=f"loan:{loan_id}")
        return loan

    # Revolve

    def revolve_loan(
        self,
        loan_id: str,
        new_term_months: int,
        new_benchmark_rate=None,
        margin=None,
        due_date: Optional[date] = None,
        memo: Optional[str] = None,
        actor: Optional[str] = None
    ) -> Loan:
        """
        Close an active loan and open its successor cycle

        Rejected while any interest has accrued since the last accrual date.
        The successor carries the outstanding principal, the source's margin
        unchanged, cycle_number + 1 and parent_loan_id pointing at the source,
        which becomes settled and points forward through rolled_into_loan_id.

        Returns:
            The successor loan
        """
        today = self.clock()

        with self._mutation(f"loan:{loan_id}", "revolve_loan"):
            source = self.get_loan(loan_id)
            self._require_transition(source, "revolve")
            actor = actor or source.user_id

            accrued = self._outstanding_interest(source, today)
            if accrued > 0:
                raise PreconditionViolation(
                    f"accrued interest of {quantize_amount(accrued)} must be settled before revolving",
                    {"loan_id": source.id, "accrued_interest": str(quantize_amount(accrued))}
                )
            if margin is not None and to_decimal(margin, "margin") != source.margin:
                raise ValidationError(
                    f"Margin is frozen at {source.margin} for this loan; a revolve cannot change it"
                )
            principal = source.outstanding_principal
            if principal <= 0:
                raise PreconditionViolation(f"Loan {source.id} has no outstanding principal to revolve")

            facility = self.facilities.get_facility(source.facility_id)
            self._check_revolving_period(facility, today)

            due_date = self._resolve_due_date(today, new_term_months, due_date)
            quote = resolve_benchmark_rate(new_term_months, new_benchmark_rate, self.rate_provider)
            bank_rate = compose_bank_rate(quote.rate, source.margin)

            now = datetime.now(timezone.utc)
            successor = Loan(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                facility_id=source.facility_id,
                user_id=source.user_id,
                amount=principal,
                start_date=today,
                due_date=due_date,
                benchmark_rate=quote.rate,
                term_label=quote.term_label,
                term_months=new_term_months,
                margin=source.margin,
                bank_rate=bank_rate,
                interest_basis=source.interest_basis,
                credit_line_id=source.credit_line_id,
                reference_number=source.reference_number,
                parent_loan_id=source.id,
                cycle_number=source.cycle_number + 1,
                notes=memo
            )

            source_before = source.to_dict()
            self._save_loan(successor)
            transaction = self.ledger.record(
                TransactionType.DRAW, principal, today, actor,
                loan_id=successor.id, facility_id=facility.id, bank_id=facility.bank_id,
                credit_line_id=successor.credit_line_id, memo=memo,
                metadata={
                    "kind": "revolve",
                    "source_loan_id": source.id,
                    "rate_source": quote.source,
                    "cycle_number": successor.cycle_number
                }
            )

            self._mark_settled(source, today, principal, transaction.id)
            source.rolled_into_loan_id = successor.id
            source.updated_at = now
            self._save_loan(source)
            self.facilities.refresh_available_limit(successor.credit_line_id)

            self.audit_trail.record_mutation(
                AuditAction.LOAN_REVOLVED, "loan", source.id, source_before, source.to_dict(), actor,
                reason=memo, metadata={"successor_loan_id": successor.id}
            )
            self.audit_trail.record_mutation(
                AuditAction.LOAN_DRAWN, "loan", successor.id, None, successor.to_dict(), actor,
                reason=memo, metadata={"source_loan_id": source.id}
            )

        log_action(self.logger, "info", f"Revolved loan into cycle {successor.cycle_number}",
                   user_id=actor, action="loan_revolved", resource=f"loan:{loan_id}",
                   extra={"successor_loan_id": successor.id})
        return successor

    def _check_revolving_period(self, facility: Facility, today: date) -> None:
        if not facility.revolving_tracking or not facility.max_revolving_period:
            return
        usage = self.facilities.revolving_usage(facility.id, today)
        if not usage.can_revolve:
            raise PreconditionViolation(
                f"The {usage.max_revolving_period}-day revolving period of facility {facility.name} "
                f"is exhausted",
                usage.to_dict()
            )

    # Cancellation and deletion

    def cancel_loan(self, loan_id: str, actor: Optional[str] = None, reason: Optional[str] = None) -> Loan:
        """Soft delete an active loan; it stays queryable but stops counting against limits"""
        with self._mutation(f"loan:{loan_id}", "cancel_loan"):
            loan = self.get_loan(loan_id)
            self._require_transition(loan, "cancel")
            actor = actor or loan.user_id
            before = loan.to_dict()

            loan.status = LoanStatus.CANCELLED
            loan.is_deleted = True
            loan.cancelled_at = datetime.now(timezone.utc)
            loan.updated_at = loan.cancelled_at

            facility = self.facilities.get_facility(loan.facility_id)
            self.ledger.record(
                TransactionType.VOID, loan.amount, self.clock(), actor,
                loan_id=loan.id, facility_id=loan.facility_id, bank_id=facility.bank_id,
                credit_line_id=loan.credit_line_id, memo=reason,
                metadata={"kind": "cancellation"}
            )
            self._save_loan(loan)
            self.facilities.refresh_available_limit(loan.credit_line_id)
            self.audit_trail.record_mutation(
                AuditAction.LOAN_CANCELLED, "loan", loan.id, before, loan.to_dict(), actor, reason=reason
            )

        log_action(self.logger, "info", "Cancelled loan", user_id=actor,
                   action="loan_cancelled", resource=f"loan:{loan_id}")
        return loan

    def permanently_delete_loan(self, loan_id: str, actor: Optional[str] = None) -> None:
        """Erase a cancelled loan; its ledger and audit history remain"""
        with self._mutation(f"loan:{loan_id}", "permanently_delete_loan"):
            loan = self.get_loan(loan_id)
            self._require_transition(loan, "permanently_delete")
            actor = actor or loan.user_id
            before = loan.to_dict()

            facility = self.facilities.get_facility(loan.facility_id)
            self.ledger.record(
                TransactionType.OTHER, Decimal('0'), self.clock(), actor,
                loan_id=loan.id, facility_id=loan.facility_id, bank_id=facility.bank_id,
                credit_line_id=loan.credit_line_id,
                metadata={"kind": "permanent_deletion", "amount": str(loan.amount)}
            )
            self.storage.delete(self.loans_table, loan.id)
            self.audit_trail.record_mutation(
                AuditAction.LOAN_PERMANENTLY_DELETED, "loan", loan.id, before, None, actor
            )

        log_action(self.logger, "warning", "Permanently deleted loan", user_id=actor,
                   action="loan_permanently_deleted", resource=f"loan:{loan_id}")

    # Reads

    def compute_accrued_interest(self, loan_id: str, as_of: Optional[date] = None) -> Decimal:
        """
        Outstanding accrued interest as of a date (today by default)

        Only active loans accrue; settled and cancelled loans return zero.
        """
        loan = self.get_loan(loan_id)
        return self._outstanding_interest(loan, as_of or self.clock())

    def _outstanding_interest(self, loan: Loan, as_of: date) -> Decimal:
        if loan.status != LoanStatus.ACTIVE:
            return Decimal('0')
        origin = accrual_origin(loan.last_accrual_date, loan.start_date)
        segment_start = loan.accrual_segment_start or origin
        gross = loan.interest_carry + accrued_interest(
            loan.outstanding_principal, loan.bank_rate, loan.interest_basis, segment_start, as_of
        )
        return max(Decimal('0'), gross - loan.interest_paid_since_accrual)

    def calculate_loan_balance(self, loan_id: str, as_of: Optional[date] = None) -> LoanBalance:
        loan = self.get_loan(loan_id)
        as_of = as_of or self.clock()
        return LoanBalance(
            loan_id=loan.id,
            as_of=as_of,
            amount=loan.amount,
            outstanding_principal=loan.outstanding_principal if loan.status == LoanStatus.ACTIVE else Decimal('0'),
            accrued_interest=self._outstanding_interest(loan, as_of),
            principal_repaid=loan.principal_repaid,
            interest_repaid=loan.interest_repaid,
            fees_repaid=loan.fees_repaid,
            projected_interest=projected_interest(
                loan.amount, loan.bank_rate, loan.interest_basis, loan.start_date, loan.due_date
            )
        )

    def get_loan(self, loan_id: str) -> Loan:
        data = self.storage.load(self.loans_table, loan_id)
        if not data:
            raise NotFoundError(f"Loan {loan_id} not found")
        return Loan.from_dict(data)

    def list_loans(
        self,
        user_id: Optional[str] = None,
        status: Optional[LoanStatus] = None,
        facility_id: Optional[str] = None,
        include_deleted: bool = False
    ) -> List[Loan]:
        status = parse_enum(LoanStatus, status, "status") if status else None
        filters: Dict[str, Any] = {}
        if user_id:
            filters["user_id"] = user_id
        if status:
            filters["status"] = status.value
        if facility_id:
            filters["facility_id"] = facility_id
        if not include_deleted and status != LoanStatus.CANCELLED:
            filters["is_deleted"] = False

        loans = [Loan.from_dict(data) for data in self.storage.find(self.loans_table, filters)]
        loans.sort(key=lambda loan: (loan.due_date, loan.created_at))
        return loans

    def get_loan_chain(self, loan_id: str) -> List[Loan]:
        """
        All cycles of a revolve chain containing loan_id, oldest first

        Cycles are resolved through the store by id; a permanently deleted
        ancestor ends the walk.
        """
        loan = self.get_loan(loan_id)
        chain = [loan]

        current = loan
        while current.parent_loan_id:
            data = self.storage.load(self.loans_table, current.parent_loan_id)
            if not data:
                break
            current = Loan.from_dict(data)
            chain.insert(0, current)

        current = loan
        while current.rolled_into_loan_id:
            data = self.storage.load(self.loans_table, current.rolled_into_loan_id)
            if not data:
                break
            current = Loan.from_dict(data)
            chain.append(current)

        return chain

    def classify_loan_urgency(self, loan: Loan, today: Optional[date] = None,
                              critical_days: int = 7, warning_days: int = 15) -> Optional[UrgencyLevel]:
        """Urgency of an active loan; None once it is settled or cancelled"""
        if loan.status != LoanStatus.ACTIVE:
            return None
        return classify_urgency(loan.due_date, today or self.clock(), critical_days, warning_days)

    def loan_revolving_usage(self, loan_id: str, today: Optional[date] = None) -> RevolvingUsage:
        """Days of the facility's revolving period consumed by one loan"""
        loan = self.get_loan(loan_id)
        facility = self.facilities.get_facility(loan.facility_id)
        if not facility.revolving_tracking or not facility.max_revolving_period:
            raise ValidationError("Revolving period tracking is not enabled for this loan's facility")

        end = loan.settled_date if loan.status == LoanStatus.SETTLED and loan.settled_date else (today or self.clock())
        return calculate_revolving_usage(
            (end - loan.start_date).days, facility.max_revolving_period,
            self.facilities.revolving_warning_percent, self.facilities.revolving_critical_percent
        )

    # Internals

    def _resolve_due_date(self, start_date: date, term_months: int, due_date: Optional[date]) -> date:
        if due_date is None:
            return derive_due_date(start_date, term_months, self.weekend_days)
        adjusted = adjust_to_business_day(due_date, self.weekend_days)
        if adjusted <= start_date:
            raise ValidationError("Due date must be after the start date")
        return adjusted

    def _save_loan(self, loan: Loan) -> None:
        self.storage.save(self.loans_table, loan.id, loan.to_dict())
