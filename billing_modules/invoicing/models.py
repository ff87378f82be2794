"""
Invoicing Domain Models (``billing_modules.invoicing.models``).

Responsibility
--------------
Frozen dataclass value objects for invoices, their line items, billing
requests handed to the ``InvoiceComposer`` and status-change
notifications.

Architecture position
---------------------
**Modules layer** -- pure data definitions with ZERO I/O.  Status and
strategy enums come from the engines so the pure and persisted sides
share one vocabulary.

Invariants enforced
-------------------
* All models are ``frozen=True`` (immutable after construction).
* All monetary fields use ``Decimal`` -- NEVER ``float``.
* ``BillingRequest`` rejects negative tax and non-positive manual
  subtotals at construction.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from billing_engines.invoice_calculator import ManualLineInput, TaskSelection
from billing_engines.payment_allocation import InvoiceStatus
from billing_engines.task_billing import BillingStrategy
from billing_kernel.db.types import ZERO, round_money
from billing_kernel.exceptions import ValidationError


@dataclass(frozen=True)
class InvoiceLineItem:
    """A persisted invoice line."""
    id: UUID
    invoice_id: UUID
    line_number: int
    description: str
    quantity: Decimal
    unit_price: Decimal
    amount: Decimal
    unit: str
    billing_type: BillingStrategy
    task_id: UUID | None = None
    billed_percentage: Decimal | None = None  # snapshot, immutable
    task_total_budget: Decimal | None = None  # snapshot, immutable
    billed_amount: Decimal | None = None  # snapshot, immutable
    time_entry_id: UUID | None = None
    expense_id: UUID | None = None


@dataclass(frozen=True)
class Invoice:
    """A client invoice with its line items."""
    id: UUID
    company_id: UUID
    client_id: UUID
    invoice_number: str
    subtotal: Decimal
    tax_amount: Decimal
    total: Decimal
    amount_paid: Decimal
    status: InvoiceStatus
    calculator_type: BillingStrategy
    project_id: UUID | None = None
    due_date: date | None = None
    sent_date: date | None = None
    paid_at: datetime | None = None
    payment_date: date | None = None
    payment_method: str | None = None
    payment_reference: str | None = None
    payment_notes: str | None = None
    notes: str | None = None
    line_items: tuple[InvoiceLineItem, ...] = field(default_factory=tuple)

    @property
    def open_balance(self) -> Decimal:
        return round_money(self.total - self.amount_paid)


@dataclass(frozen=True)
class BillingRequest:
    """
    Everything the composer needs to build one invoice.

    ``selections`` drive milestone, percentage and fixed-fee billing;
    ``manual_lines`` and ``subtotal`` drive manual billing.  Time &
    materials billing draws its lines from the project.
    """
    company_id: UUID
    client_id: UUID
    strategy: BillingStrategy
    project_id: UUID | None = None
    selections: tuple[TaskSelection, ...] = ()
    manual_lines: tuple[ManualLineInput, ...] = ()
    subtotal: Decimal | None = None
    tax_amount: Decimal = ZERO
    due_date: date | None = None
    notes: str | None = None

    def __post_init__(self):
        if self.tax_amount < 0:
            raise ValidationError("tax_amount", "must be non-negative")
        if self.subtotal is not None and self.subtotal <= 0:
            raise ValidationError("subtotal", "must be greater than zero")


@dataclass(frozen=True)
class LineItemEdit:
    """A change to an existing line; None leaves a field as it is."""
    line_id: UUID
    description: str | None = None
    quantity: Decimal | None = None
    unit_price: Decimal | None = None


@dataclass(frozen=True)
class StatusChange:
    """Passed to the status-change callback after a commit."""
    invoice_id: UUID
    invoice_number: str
    from_status: InvoiceStatus
    to_status: InvoiceStatus
    changed_at: datetime
