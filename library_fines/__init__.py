"""
Library Fines

Fine accrual, member suspension and fine settlement for a lending library.
All monetary values use Decimal with two-place half-up rounding, and every
settlement is recorded in an append-only, receipt-numbered ledger.
"""

__version__ = "1.0.0"
