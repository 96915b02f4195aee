"""
Transaction Ledger Module

Append-only ledger of money-moving and state-changing events. Each lifecycle
transition writes exactly one transaction inside the same atomic unit as the
loan update. Idempotency keys are claimed through a storage-level uniqueness
constraint, so concurrent duplicate submissions cannot both land.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional
from enum import Enum
import uuid

from .daycount import quantize_amount, to_decimal
from .errors import ConflictError, NotFoundError, UniqueViolation, ValidationError
from .storage import StorageInterface, StorageRecord
from .logging_config import get_logger, log_action


class TransactionType(Enum):
    """Ledger entry types"""
    DRAW = "draw"
    REPAYMENT = "repayment"
    FEE = "fee"
    INTEREST = "interest"
    LIMIT_CHANGE = "limit_change"
    VOID = "void"
    OTHER = "other"


# Entries that move money must carry a positive amount
POSITIVE_AMOUNT_TYPES = frozenset({
    TransactionType.DRAW,
    TransactionType.REPAYMENT,
    TransactionType.FEE,
    TransactionType.INTEREST,
})


@dataclass(frozen=True)
class Allocation:
    """Split of a payment across interest, principal and fees"""
    interest: Decimal = Decimal('0')
    principal: Decimal = Decimal('0')
    fees: Decimal = Decimal('0')

    @classmethod
    def of(cls, interest=0, principal=0, fees=0) -> 'Allocation':
        allocation = cls(
            interest=to_decimal(interest, "allocation.interest"),
            principal=to_decimal(principal, "allocation.principal"),
            fees=to_decimal(fees, "allocation.fees")
        )
        for name in ("interest", "principal", "fees"):
            if getattr(allocation, name) < 0:
                raise ValidationError(f"allocation.{name} must not be negative")
        return allocation

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Allocation':
        unknown = set(data) - {"interest", "principal", "fees"}
        if unknown:
            raise ValidationError(f"Unknown allocation parts: {', '.join(sorted(unknown))}")
        return cls.of(data.get("interest", 0), data.get("principal", 0), data.get("fees", 0))

    @property
    def total(self) -> Decimal:
        return self.interest + self.principal + self.fees

    def validate_against(self, amount: Decimal, tolerance: Decimal) -> None:
        """Parts must sum to the transaction amount within tolerance"""
        if abs(self.total - amount) > tolerance:
            raise ValidationError(
                f"Allocation parts sum to {quantize_amount(self.total)} "
                f"but the transaction amount is {quantize_amount(amount)}"
            )

    def to_dict(self) -> Dict[str, str]:
        return {"interest": str(self.interest), "principal": str(self.principal), "fees": str(self.fees)}


@dataclass
class Transaction(StorageRecord):
    """Immutable ledger entry"""
    transaction_type: TransactionType
    amount: Decimal
    transaction_date: date
    created_by: str
    loan_id: Optional[str] = None
    facility_id: Optional[str] = None
    bank_id: Optional[str] = None
    credit_line_id: Optional[str] = None
    allocation_interest: Optional[Decimal] = None
    allocation_principal: Optional[Decimal] = None
    allocation_fees: Optional[Decimal] = None
    idempotency_key: Optional[str] = None
    memo: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def allocation(self) -> Optional[Allocation]:
        if self.allocation_interest is None and self.allocation_principal is None \
                and self.allocation_fees is None:
            return None
        return Allocation(
            interest=self.allocation_interest or Decimal('0'),
            principal=self.allocation_principal or Decimal('0'),
            fees=self.allocation_fees or Decimal('0')
        )

    @property
    def kind(self) -> Optional[str]:
        """Finer classification inside a type, e.g. settlement or revolve"""
        return self.metadata.get("kind")


class TransactionLedger:
    """Writes and queries ledger entries"""

    def __init__(self, storage: StorageInterface, amount_tolerance: Decimal = Decimal('0.01')):
        self.storage = storage
        self.amount_tolerance = to_decimal(amount_tolerance, "amount_tolerance")
        self.table_name = "transactions"
        self.logger = get_logger("credit_ledger.ledger")

    def record(
        self,
        transaction_type: TransactionType,
        amount,
        transaction_date: date,
        created_by: str,
        loan_id: Optional[str] = None,
        facility_id: Optional[str] = None,
        bank_id: Optional[str] = None,
        credit_line_id: Optional[str] = None,
        allocation: Optional[Allocation] = None,
        idempotency_key: Optional[str] = None,
        memo: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Transaction:
        """
        Append a transaction

        With an idempotency key, a retry carrying the same payload returns the
        stored transaction unchanged; a different payload under the same key
        raises ConflictError.

        Returns:
            The stored Transaction
        """
        amount = to_decimal(amount, "amount")
        if amount < 0:
            raise ValidationError("Transaction amount must not be negative")
        if transaction_type in POSITIVE_AMOUNT_TYPES and amount == 0:
            raise ValidationError(f"A {transaction_type.value} transaction must have a positive amount")
        if allocation is not None:
            allocation.validate_against(amount, self.amount_tolerance)
        if idempotency_key is not None and not idempotency_key.strip():
            raise ValidationError("idempotency_key must not be blank")

        now = datetime.now(timezone.utc)
        transaction = Transaction(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            transaction_type=transaction_type,
            amount=amount,
            transaction_date=transaction_date,
            created_by=created_by,
            loan_id=loan_id,
            facility_id=facility_id,
            bank_id=bank_id,
            credit_line_id=credit_line_id,
            allocation_interest=allocation.interest if allocation else None,
            allocation_principal=allocation.principal if allocation else None,
            allocation_fees=allocation.fees if allocation else None,
            idempotency_key=idempotency_key,
            memo=memo,
            metadata=metadata or {}
        )

        with self.storage.atomic():
            if idempotency_key is not None:
                existing = self.find_by_idempotency_key(idempotency_key)
                if existing is not None:
                    return self._resolve_replay(existing, transaction)
            try:
                self.storage.save(self.table_name, transaction.id, transaction.to_dict(),
                                  unique_keys={"idempotency_key": idempotency_key})
            except UniqueViolation as exc:
                # Lost a race with a concurrent writer holding the same key
                existing = self.get_transaction(exc.owner_id)
                return self._resolve_replay(existing, transaction)

        log_action(
            self.logger, "info", f"Recorded {transaction_type.value} transaction",
            user_id=created_by, action=f"transaction_{transaction_type.value}",
            resource=f"transaction:{transaction.id}",
            extra={"loan_id": loan_id, "amount": str(amount)}
        )
        return transaction

    def _resolve_replay(self, existing: Transaction, candidate: Transaction) -> Transaction:
        return self._accept_replay(
            existing, candidate.transaction_type, candidate.amount, candidate.transaction_date,
            candidate.loan_id, candidate.allocation, candidate.created_by,
            facility_id=candidate.facility_id,
            kinds=(candidate.kind,) if candidate.kind else None
        )

    def _accept_replay(self, existing: Transaction, transaction_type: TransactionType, amount,
                       transaction_date: date, loan_id: Optional[str], allocation: Optional[Allocation],
                       created_by: Optional[str], facility_id: Optional[str] = None,
                       kinds: Optional[Iterable[str]] = None) -> Transaction:
        if not self.matches(existing, transaction_type, amount, transaction_date, loan_id, allocation,
                            facility_id, kinds):
            raise ConflictError(
                f"Idempotency key {existing.idempotency_key} was already used for a different "
                f"{existing.kind or existing.transaction_type.value} of {quantize_amount(existing.amount)}",
                {"transaction_id": existing.id}
            )
        log_action(
            self.logger, "info", "Idempotent replay returned existing transaction",
            user_id=created_by, action="transaction_replay",
            resource=f"transaction:{existing.id}"
        )
        return existing

    @staticmethod
    def matches(
        existing: Transaction,
        transaction_type: TransactionType,
        amount,
        transaction_date: date,
        loan_id: Optional[str] = None,
        allocation: Optional[Allocation] = None,
        facility_id: Optional[str] = None,
        kinds: Optional[Iterable[str]] = None
    ) -> bool:
        """
        Whether a retry describes the same write as the stored entry

        None parts are not compared. kinds lists the metadata kinds the retried
        operation can have written, e.g. a repayment that settled the loan.
        """
        if existing.transaction_type != transaction_type:
            return False
        if existing.amount != to_decimal(amount, "amount") or existing.transaction_date != transaction_date:
            return False
        if loan_id is not None and existing.loan_id != loan_id:
            return False
        if facility_id is not None and existing.facility_id != facility_id:
            return False
        if kinds is not None and existing.kind not in set(kinds):
            return False
        if allocation is not None and existing.allocation != allocation:
            return False
        return True

    def check_replay(
        self,
        idempotency_key: Optional[str],
        transaction_type: TransactionType,
        amount,
        transaction_date: date,
        loan_id: Optional[str] = None,
        allocation: Optional[Allocation] = None,
        created_by: Optional[str] = None,
        facility_id: Optional[str] = None,
        kinds: Optional[Iterable[str]] = None
    ) -> Optional[Transaction]:
        """
        Look up a retried write before any state changes

        Returns:
            The stored transaction for a matching retry, None for a fresh key

        Raises:
            ConflictError: the key is held by a different write
        """
        if idempotency_key is None:
            return None
        existing = self.find_by_idempotency_key(idempotency_key)
        if existing is None:
            return None
        return self._accept_replay(existing, transaction_type, amount, transaction_date,
                                   loan_id, allocation, created_by, facility_id, kinds)

    def find_by_idempotency_key(self, idempotency_key: str) -> Optional[Transaction]:
        owner = self.storage.lookup_unique(self.table_name, "idempotency_key", idempotency_key)
        if owner is None:
            return None
        return self.get_transaction(owner)

    def get_transaction(self, transaction_id: str) -> Transaction:
        data = self.storage.load(self.table_name, transaction_id)
        if not data:
            raise NotFoundError(f"Transaction {transaction_id} not found")
        return Transaction.from_dict(data)

    def get_loan_ledger(self, loan_id: str) -> List[Transaction]:
        """All entries for a loan, oldest first; survives permanent deletion of the loan"""
        return self.list_transactions(loan_id=loan_id)

    def list_transactions(
        self,
        loan_id: Optional[str] = None,
        facility_id: Optional[str] = None,
        bank_id: Optional[str] = None,
        transaction_type: Optional[TransactionType] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None
    ) -> List[Transaction]:
        filters = {}
        if loan_id:
            filters["loan_id"] = loan_id
        if facility_id:
            filters["facility_id"] = facility_id
        if bank_id:
            filters["bank_id"] = bank_id
        if transaction_type:
            filters["transaction_type"] = transaction_type.value

        transactions = [Transaction.from_dict(data) for data in self.storage.find(self.table_name, filters)]
        if start_date:
            transactions = [t for t in transactions if t.transaction_date >= start_date]
        if end_date:
            transactions = [t for t in transactions if t.transaction_date <= end_date]

        transactions.sort(key=lambda t: (t.transaction_date, t.created_at))
        return transactions
