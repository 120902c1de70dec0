"""
Gold Loan Core

Lifecycle and financial-calculation engine for gold-backed loans: interest
with contractual minimums, early settlement, installment scheduling, payment
allocation, the interest rate upgrade ladder, gold return tracking and
collateral auction. All money is Decimal, rounded half-up to whole rupees.
"""

__version__ = "1.0.0"
