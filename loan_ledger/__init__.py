"""
Loan Ledger Engine

Amortization, repayment schedules, payment waterfall allocation and loan
lifecycle state for a multi-tenant lending back office. All financial math
uses Decimal; every ledger mutation is atomic and audited.
"""

__version__ = "1.0.0"
