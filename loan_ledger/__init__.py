"""
Loan Ledger

Loan lifecycle and amortization ledger for fixed-rate, fixed-term installment
loans: deterministic repayment schedules, an append-only repayment ledger,
arrears detection, payment exports and a hash-chained audit trail.
"""

__version__ = "1.0.0"
