"""
Test suite for exposure snapshots
"""

import pytest
from decimal import Decimal
from datetime import date

from credit_ledger.audit import AuditTrail
from credit_ledger.collateral import CollateralRegistry
from credit_ledger.errors import ValidationError
from credit_ledger.facilities import FacilityRegistry
from credit_ledger.ledger import TransactionLedger
from credit_ledger.loans import LoanLifecycleEngine
from credit_ledger.snapshots import BANK, FACILITY, GLOBAL, ExposureSnapshotAggregator
from credit_ledger.storage import InMemoryStorage


class TestExposureSnapshots:
    """Upserts leave one row per key and granularity"""

    def setup_method(self):
        self.today = date(2024, 1, 31)
        self.storage = InMemoryStorage()
        self.audit = AuditTrail(self.storage)
        self.ledger = TransactionLedger(self.storage)
        self.registry = FacilityRegistry(self.storage, self.audit, self.ledger)
        self.loans = LoanLifecycleEngine(self.storage, self.audit, self.ledger, self.registry,
                                         clock=lambda: self.today)
        self.collateral = CollateralRegistry(self.storage, self.audit, self.registry)
        self.aggregator = ExposureSnapshotAggregator(self.storage, self.audit, self.registry,
                                                     self.loans, self.collateral)

        self.bank_a = self.registry.create_bank("user_1", "Bank A", "A")
        self.bank_b = self.registry.create_bank("user_1", "Bank B", "B")
        self.fac_a1 = self.make_facility(self.bank_a.id, "1000000")
        self.fac_a2 = self.make_facility(self.bank_a.id, "500000")
        self.fac_b1 = self.make_facility(self.bank_b.id, "2000000")

    def make_facility(self, bank_id, limit, user_id="user_1"):
        return self.registry.create_facility(
            bank_id=bank_id, user_id=user_id, name=f"Facility {limit}", facility_type="revolving",
            credit_limit=limit, margin="2", start_date=date(2024, 1, 1)
        )

    def draw(self, facility, amount):
        return self.loans.draw_loan(facility.id, amount, date(2024, 1, 2), 3, benchmark_rate="5")

    def rows_by_level(self, rows):
        return {level: [r for r in rows if r.level == level] for level in (GLOBAL, BANK, FACILITY)}

    def test_rows_at_three_granularities(self):
        self.draw(self.fac_a1, "400000")
        self.draw(self.fac_a2, "100000")
        self.draw(self.fac_b1, "500000")

        rows = self.rows_by_level(self.aggregator.upsert_exposure_snapshot("user_1", self.today))
        assert len(rows[GLOBAL]) == 1
        assert len(rows[BANK]) == 2
        assert len(rows[FACILITY]) == 3

        total = rows[GLOBAL][0]
        assert total.outstanding == Decimal('1000000')
        assert total.credit_limit == Decimal('3500000')
        assert total.active_loan_count == 3

        bank_a = next(r for r in rows[BANK] if r.bank_id == self.bank_a.id)
        assert bank_a.outstanding == Decimal('500000')
        assert bank_a.credit_limit == Decimal('1500000')
        assert bank_a.utilization_percent == Decimal('33.33')

    def test_upsert_twice_keeps_one_row_per_key(self):
        self.draw(self.fac_a1, "400000")
        self.aggregator.upsert_exposure_snapshot("user_1", self.today)

        self.draw(self.fac_a1, "100000")
        self.aggregator.upsert_exposure_snapshot("user_1", self.today)

        stored = self.rows_by_level(self.aggregator.get_snapshots("user_1", self.today))
        assert len(stored[GLOBAL]) == 1
        assert len(stored[BANK]) == 2
        assert len(stored[FACILITY]) == 3
        assert stored[GLOBAL][0].outstanding == Decimal('500000')

    def test_stale_rows_removed(self):
        self.aggregator.upsert_exposure_snapshot("user_1", self.today)
        self.registry.deactivate_facility(self.fac_b1.id)
        self.aggregator.upsert_exposure_snapshot("user_1", self.today)

        stored = self.rows_by_level(self.aggregator.get_snapshots("user_1", self.today))
        assert len(stored[BANK]) == 1
        assert len(stored[FACILITY]) == 2

    def test_deactivated_facility_with_active_loans_still_counts(self):
        self.draw(self.fac_b1, "1000")
        self.registry.deactivate_facility(self.fac_b1.id)

        rows = self.rows_by_level(self.aggregator.upsert_exposure_snapshot("user_1", self.today))
        assert rows[GLOBAL][0].outstanding == Decimal('1000')
        assert rows[GLOBAL][0].active_loan_count == 1
        bank_b = next(r for r in rows[BANK] if r.bank_id == self.bank_b.id)
        assert bank_b.outstanding == Decimal('1000')
        assert any(r.facility_id == self.fac_b1.id for r in rows[FACILITY])

    def test_dates_are_independent(self):
        self.aggregator.upsert_exposure_snapshot("user_1", date(2024, 1, 30))
        self.aggregator.upsert_exposure_snapshot("user_1", self.today)
        assert len(self.aggregator.get_snapshots("user_1", level=GLOBAL)) == 2
        assert len(self.aggregator.get_snapshots("user_1", level=GLOBAL, start_date=self.today)) == 1

    def test_cancelled_loans_excluded(self):
        loan = self.draw(self.fac_a1, "400000")
        self.loans.cancel_loan(loan.id)
        rows = self.rows_by_level(self.aggregator.upsert_exposure_snapshot("user_1", self.today))
        assert rows[GLOBAL][0].outstanding == Decimal('0')

    def test_portfolio_ltv(self):
        self.draw(self.fac_a1, "500000")
        asset = self.collateral.register_collateral("user_1", "liquid_stocks", "Shares", "2000000",
                                                    date(2024, 1, 15))
        self.collateral.assign_collateral(asset.id, "blanket", date(2024, 1, 15), bank_id=self.bank_a.id)

        rows = self.rows_by_level(self.aggregator.upsert_exposure_snapshot("user_1", self.today))
        assert rows[GLOBAL][0].portfolio_ltv == Decimal('25.00')

    def test_unknown_level(self):
        with pytest.raises(ValidationError):
            self.aggregator.get_snapshots("user_1", level="region")

    def test_capture_all_continues_past_failures(self, monkeypatch):
        self.make_facility(self.bank_a.id, "100000", user_id="user_2")
        original = self.aggregator.upsert_exposure_snapshot

        def flaky(user_id, snapshot_date, actor=None):
            if user_id == "user_1":
                raise RuntimeError("boom")
            return original(user_id, snapshot_date, actor)

        monkeypatch.setattr(self.aggregator, "upsert_exposure_snapshot", flaky)
        result = self.aggregator.capture_all(self.today)
        assert result["captured"] == ["user_2"]
        assert "user_1" in result["failed"]
