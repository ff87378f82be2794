"""
Reconciliation Module.

Imports bank statement CSV files and records manual one-to-one matches
between bank transactions and platform transactions (paid invoices and
expenses).
"""

from billing_modules.reconciliation.config import ReconciliationConfig
from billing_modules.reconciliation.models import BankTransaction, ImportResult
from billing_modules.reconciliation.service import ReconciliationMatcher

__all__ = [
    "BankTransaction",
    "ImportResult",
    "ReconciliationConfig",
    "ReconciliationMatcher",
]
