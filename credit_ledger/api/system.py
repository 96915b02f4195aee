"""
Ledger system wiring and request dependencies
"""

from datetime import date
from decimal import Decimal
from typing import Callable, Optional

from fastapi import Header, Request

from ..audit import AuditTrail
from ..business_days import parse_weekend_days
from ..collateral import CollateralRegistry
from ..config import LedgerConfig, get_config
from ..daycount import InterestBasis
from ..facilities import FacilityRegistry
from ..ledger import TransactionLedger
from ..locks import LockRegistry
from ..loans import AllocationPolicy, LoanLifecycleEngine
from ..rates import RateQuoteProvider
from ..snapshots import ExposureSnapshotAggregator
from ..storage import StorageInterface, create_storage


class LedgerSystem:
    """All engine components over one storage backend"""

    def __init__(
        self,
        storage: Optional[StorageInterface] = None,
        config: Optional[LedgerConfig] = None,
        rate_provider: Optional[RateQuoteProvider] = None,
        clock: Callable[[], date] = date.today
    ):
        self.config = config or get_config()
        self.storage = storage or create_storage(self.config.database_url)
        self.clock = clock

        self.audit_trail = AuditTrail(self.storage, enabled=self.config.enable_audit_logging)
        self.ledger = TransactionLedger(self.storage, Decimal(self.config.amount_tolerance))
        self.facilities = FacilityRegistry(
            self.storage, self.audit_trail, self.ledger,
            revolving_warning_percent=self.config.revolving_warning_percent,
            revolving_critical_percent=self.config.revolving_critical_percent,
            lock_registry=LockRegistry(self.config.loan_lock_timeout_seconds)
        )
        self.loans = LoanLifecycleEngine(
            self.storage, self.audit_trail, self.ledger, self.facilities,
            rate_provider=rate_provider,
            weekend_days=parse_weekend_days(self.config.weekend_days),
            default_interest_basis=InterestBasis.parse(self.config.default_interest_basis),
            allocation_policy=AllocationPolicy(self.config.allocation_policy),
            amount_tolerance=Decimal(self.config.amount_tolerance),
            clock=clock
        )
        self.collateral = CollateralRegistry(self.storage, self.audit_trail, self.facilities)
        self.snapshots = ExposureSnapshotAggregator(
            self.storage, self.audit_trail, self.facilities, self.loans, self.collateral
        )

    def today(self) -> date:
        return self.clock()

    def close(self) -> None:
        self.storage.close()


def get_ledger_system(request: Request) -> LedgerSystem:
    return request.app.state.system


def get_actor(x_actor_id: Optional[str] = Header(None)) -> str:
    """Acting user, supplied by the identity layer in front of the engine"""
    return x_actor_id or get_config().api_default_actor
