"""
Test suite for the facility registry

Banks, facilities, credit lines, limit changes, utilization and revolving
period tracking.
"""

import pytest
import threading
import time
from decimal import Decimal
from datetime import date

from credit_ledger.audit import AuditAction, AuditTrail
from credit_ledger.errors import (
    ConflictError, NotFoundError, PreconditionViolation, UniqueViolation, ValidationError
)
from credit_ledger.facilities import FacilityRegistry, FacilityType
from credit_ledger.ledger import TransactionLedger, TransactionType
from credit_ledger.loans import LoanLifecycleEngine
from credit_ledger.storage import InMemoryStorage


class FacilityTestBase:
    """Shared wiring over in-memory storage"""

    def setup_method(self):
        self.today = date(2024, 1, 31)
        self.storage = InMemoryStorage()
        self.audit = AuditTrail(self.storage)
        self.ledger = TransactionLedger(self.storage)
        self.registry = FacilityRegistry(self.storage, self.audit, self.ledger)
        self.loans = LoanLifecycleEngine(self.storage, self.audit, self.ledger, self.registry,
                                         clock=lambda: self.today)
        self.bank = self.registry.create_bank("user_1", "Gulf Bank", "gb")

    def make_facility(self, credit_limit="1000000", **kwargs):
        params = dict(
            bank_id=self.bank.id, user_id="user_1", name="Working Capital",
            facility_type="revolving", credit_limit=credit_limit, margin="2.0",
            start_date=date(2024, 1, 1)
        )
        params.update(kwargs)
        return self.registry.create_facility(**params)


class TestBanks(FacilityTestBase):
    """Test bank creation"""

    def test_create_bank(self):
        assert self.bank.code == "GB"
        assert self.registry.get_bank(self.bank.id).name == "Gulf Bank"
        assert len(self.registry.list_banks("user_1")) == 1

    def test_bank_code_unique_per_user(self):
        with pytest.raises(UniqueViolation):
            self.registry.create_bank("user_1", "Gulf Bank Again", "GB")
        other = self.registry.create_bank("user_2", "Gulf Bank", "GB")
        assert other.user_id == "user_2"

    def test_blank_name_rejected(self):
        with pytest.raises(ValidationError):
            self.registry.create_bank("user_1", " ", "X")

    def test_missing_bank(self):
        with pytest.raises(NotFoundError):
            self.registry.get_bank("nope")


class TestFacilities(FacilityTestBase):
    """Test facility creation and maintenance"""

    def test_create_facility(self):
        facility = self.make_facility()
        stored = self.registry.get_facility(facility.id)
        assert stored.facility_type == FacilityType.REVOLVING
        assert stored.credit_limit == Decimal('1000000')
        assert stored.margin == Decimal('2.0')
        assert stored.initial_drawdown_date is None

        events = self.audit.get_events_for_entity("facility", facility.id)
        assert events[0].action == AuditAction.FACILITY_CREATED

    def test_unknown_facility_type(self):
        with pytest.raises(ValidationError):
            self.make_facility(facility_type="overdraft")

    def test_margin_out_of_range(self):
        with pytest.raises(ValidationError):
            self.make_facility(margin="120")

    def test_expiry_before_start(self):
        with pytest.raises(ValidationError):
            self.make_facility(expiry_date=date(2023, 12, 31))

    def test_revolving_period_requires_tracking(self):
        with pytest.raises(ValidationError):
            self.make_facility(max_revolving_period=180)

    def test_inactive_bank(self):
        data = self.storage.load("banks", self.bank.id)
        data["is_active"] = False
        self.storage.save("banks", self.bank.id, data)
        with pytest.raises(PreconditionViolation):
            self.make_facility()

    def test_covers(self):
        facility = self.make_facility(expiry_date=date(2024, 12, 31))
        assert facility.covers(date(2024, 6, 1))
        assert not facility.covers(date(2023, 12, 31))
        assert not facility.covers(date(2025, 1, 1))

    def test_update_margin(self):
        facility = self.make_facility()
        updated = self.registry.update_facility_margin(facility.id, "2.5", actor="user_1")
        assert updated.margin == Decimal('2.5')

    def test_deactivate(self):
        facility = self.make_facility()
        self.registry.deactivate_facility(facility.id)
        assert not self.registry.get_facility(facility.id).is_active
        with pytest.raises(PreconditionViolation):
            self.registry.deactivate_facility(facility.id)

    def test_list_facilities(self):
        self.make_facility()
        self.make_facility(user_id="user_2")
        assert len(self.registry.list_facilities(user_id="user_1")) == 1
        assert len(self.registry.list_facilities(bank_id=self.bank.id)) == 2


class TestCreditLines(FacilityTestBase):
    """Credit line limits stay inside the facility limit"""

    def test_create_credit_line(self):
        facility = self.make_facility()
        line = self.registry.create_credit_line(facility.id, "Trade", "400000", interest_rate="1.5")
        assert line.available_limit == Decimal('400000')
        assert line.interest_rate == Decimal('1.5')
        assert [l.id for l in self.registry.list_credit_lines(facility.id)] == [line.id]

    def test_line_limits_cannot_exceed_facility(self):
        facility = self.make_facility()
        self.registry.create_credit_line(facility.id, "A", "600000")
        with pytest.raises(ValidationError):
            self.registry.create_credit_line(facility.id, "B", "500000")

    def test_inactive_facility(self):
        facility = self.make_facility()
        self.registry.deactivate_facility(facility.id)
        with pytest.raises(PreconditionViolation):
            self.registry.create_credit_line(facility.id, "A", "100")

    def test_deactivated_line_frees_allocation(self):
        facility = self.make_facility()
        line = self.registry.create_credit_line(facility.id, "A", "600000")
        self.registry.deactivate_credit_line(line.id)
        self.registry.create_credit_line(facility.id, "B", "900000")


class TestCreditLimitChanges(FacilityTestBase):
    """Limit changes write a limit_change transaction"""

    def test_facility_limit_change(self):
        facility = self.make_facility()
        updated = self.registry.change_credit_limit(facility.id, "1500000", date(2024, 2, 1), "user_1",
                                                    memo="renegotiated")
        assert updated.credit_limit == Decimal('1500000')

        entries = self.ledger.list_transactions(facility_id=facility.id,
                                                transaction_type=TransactionType.LIMIT_CHANGE)
        assert len(entries) == 1
        assert entries[0].metadata["previous_limit"] == "1000000"
        assert entries[0].metadata["new_limit"] == "1500000"
        assert entries[0].memo == "renegotiated"

    def test_facility_limit_below_credit_lines(self):
        facility = self.make_facility()
        self.registry.create_credit_line(facility.id, "A", "600000")
        with pytest.raises(ValidationError):
            self.registry.change_credit_limit(facility.id, "500000", date(2024, 2, 1), "user_1")

    def test_credit_line_limit_change(self):
        facility = self.make_facility()
        line = self.registry.create_credit_line(facility.id, "A", "300000")
        updated = self.registry.change_credit_limit(line.id, "400000", date(2024, 2, 1), "user_1")
        assert updated.credit_limit == Decimal('400000')
        assert updated.available_limit == Decimal('400000')

        with pytest.raises(ValidationError):
            self.registry.change_credit_limit(line.id, "1200000", date(2024, 2, 1), "user_1")

    def test_negative_limit(self):
        facility = self.make_facility()
        with pytest.raises(ValidationError):
            self.registry.change_credit_limit(facility.id, "-1", date(2024, 2, 1), "user_1")


class TestUtilization(FacilityTestBase):
    """Utilization counts active loans only"""

    def test_facility_utilization(self):
        facility = self.make_facility()
        self.loans.draw_loan(facility.id, "250000", date(2024, 1, 2), 3, benchmark_rate="5.5")
        cancelled = self.loans.draw_loan(facility.id, "100000", date(2024, 1, 2), 3, benchmark_rate="5.5")
        self.loans.cancel_loan(cancelled.id)

        utilization = self.registry.compute_utilization(facility.id)
        assert utilization.used == Decimal('250000')
        assert utilization.available == Decimal('750000')
        assert utilization.utilization_percent == Decimal('25.00')

    def test_credit_line_utilization_and_available_limit(self):
        facility = self.make_facility()
        line = self.registry.create_credit_line(facility.id, "A", "400000")
        self.loans.draw_loan(facility.id, "100000", date(2024, 1, 2), 3, credit_line_id=line.id,
                             benchmark_rate="5.5")

        assert self.registry.compute_utilization(line.id).used == Decimal('100000')
        assert self.registry.get_credit_line(line.id).available_limit == Decimal('300000')

    def test_missing_target(self):
        with pytest.raises(NotFoundError):
            self.registry.compute_utilization("nope")


class TestRevolvingUsage(FacilityTestBase):
    """Revolving period consumption from the initial drawdown"""

    def test_tracking_disabled(self):
        facility = self.make_facility()
        with pytest.raises(ValidationError, match="not enabled"):
            self.registry.revolving_usage(facility.id, self.today)

    def test_no_drawdown_yet(self):
        facility = self.make_facility(revolving_tracking=True, max_revolving_period=180)
        usage = self.registry.revolving_usage(facility.id, self.today)
        assert usage.days_used == 0
        assert usage.status == "available"

    def test_counts_from_initial_drawdown(self):
        facility = self.make_facility(revolving_tracking=True, max_revolving_period=100)
        self.loans.draw_loan(facility.id, "1000", date(2024, 1, 1), 1, benchmark_rate="5")
        self.loans.draw_loan(facility.id, "1000", date(2024, 1, 20), 1, benchmark_rate="5")

        assert self.registry.get_facility(facility.id).initial_drawdown_date == date(2024, 1, 1)
        usage = self.registry.revolving_usage(facility.id, date(2024, 3, 21))
        assert usage.days_used == 80
        assert usage.status == "warning"


class TestConcurrentFacilityEdits(FacilityTestBase):
    """Facility edits serialize with draws on the facility lock"""

    def test_margin_update_keeps_initial_drawdown_from_concurrent_draw(self, monkeypatch):
        facility = self.make_facility(revolving_tracking=True, max_revolving_period=180)
        original_get = self.registry.get_facility
        drawers = []

        def get_then_race(facility_id):
            result = original_get(facility_id)
            if not drawers:
                # First draw starts while the margin update is mid-flight
                drawer = threading.Thread(target=self.loans.draw_loan,
                                          args=(facility.id, "1000", date(2024, 1, 2), 1),
                                          kwargs={"benchmark_rate": "5"})
                drawers.append(drawer)
                drawer.start()
                time.sleep(0.1)
            return result

        monkeypatch.setattr(self.registry, "get_facility", get_then_race)
        self.registry.update_facility_margin(facility.id, "3")
        drawers[0].join()

        stored = original_get(facility.id)
        assert stored.margin == Decimal('3')
        assert stored.initial_drawdown_date == date(2024, 1, 2)

    def test_edits_wait_for_the_facility_lock(self):
        facility = self.make_facility()
        line = self.registry.create_credit_line(facility.id, "A", "100000")
        self.registry.locks.timeout_seconds = 0.05
        assert self.loans.locks is self.registry.locks

        with self.registry.locks.hold(f"facility:{facility.id}"):
            with pytest.raises(ConflictError):
                self.registry.update_facility_margin(facility.id, "3")
            with pytest.raises(ConflictError):
                self.registry.change_credit_limit(facility.id, "2000000", date(2024, 2, 1), "user_1")
            with pytest.raises(ConflictError):
                self.registry.deactivate_credit_line(line.id)
            with pytest.raises(ConflictError):
                self.registry.deactivate_facility(facility.id)

        assert self.registry.get_facility(facility.id).margin == Decimal('2.0')
