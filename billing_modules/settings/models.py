"""
Settings Domain Models (``billing_modules.settings.models``).

Frozen value objects for company reference data.
"""

from dataclasses import dataclass
from uuid import UUID


@dataclass(frozen=True)
class Category:
    id: UUID
    company_id: UUID
    name: str
    description: str | None = None
    is_inactive: bool = False
    sort_order: int = 0


@dataclass(frozen=True)
class ExpenseCode:
    id: UUID
    company_id: UUID
    code: str
    name: str
    is_inactive: bool = False
    sort_order: int = 0


@dataclass(frozen=True)
class InvoiceTerm:
    """Payment terms; the default term sets an invoice's due date."""
    id: UUID
    company_id: UUID
    name: str
    days_until_due: int
    is_default: bool = False
    is_inactive: bool = False
    sort_order: int = 0
