"""
Lending Core

Transaction-lifecycle engine for loans: disbursement, amortization schedules,
repayment posting, and compensating rollbacks with a hash-chained audit trail.
All financial math uses Decimal.
"""

__version__ = "1.0.0"
