"""
Credit Ledger

Loan ledger and lifecycle engine for bank credit relationships: facility
drawdowns, day-count interest accrual, settlement, reversal, revolving cycles,
an idempotent transaction ledger, hash-chained audit trail and daily exposure
snapshots. All money values use Decimal.
"""

__version__ = "1.0.0"
