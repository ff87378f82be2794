"""
Billing Modules.

Thin orchestration layers over the billing kernel and engines.
Each module contains:
- Domain models (frozen DTOs, the nouns)
- ORM models (persistence)
- Services (own the transaction boundary)
- Configuration derived from the active billing configuration

Modules:
- Projects: Clients, projects, tasks, time entries, expenses
- Invoicing: Task billing ledger, invoice composition and lifecycle
- Payments: Open-invoice selection and payment allocation
- Reconciliation: Bank statement import and manual matching
- Settings: Categories, expense codes, invoice terms

Actual calculation logic lives in billing_engines.
"""

from billing_modules import invoicing, payments, projects, reconciliation, settings

__all__ = [
    "invoicing",
    "payments",
    "projects",
    "reconciliation",
    "settings",
]
