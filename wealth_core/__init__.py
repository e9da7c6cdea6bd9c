"""
Wealth Core

Ledger and settlement core for a personal banking and investment app:
cash accounts, weighted-average positions, brokerage fees and capital-gains
tax, with Decimal money math and a hash-chained audit trail.
"""

__version__ = "1.0.0"
