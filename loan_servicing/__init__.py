"""
Loan Servicing Engine

Allocates loan repayments to installment schedules oldest-due first,
reverses them newest-due first, and routes overpayments to client wallets,
with Decimal money math and a hash-chained audit trail.
"""

__version__ = "1.0.0"
