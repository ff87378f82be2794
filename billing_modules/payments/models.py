"""
Payments Domain Models (``billing_modules.payments.models``).

Responsibility
--------------
Frozen value objects describing one incoming payment and the outcome of
applying it across invoices.

Architecture position
---------------------
**Modules layer** -- pure data definitions with ZERO I/O.
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from uuid import UUID

from billing_engines.payment_allocation import AllocationLine
from billing_kernel.db.types import ZERO
from billing_kernel.exceptions import ValidationError
from billing_modules.invoicing.models import Invoice


@dataclass(frozen=True)
class PaymentInfo:
    """An incoming payment as entered by the user."""
    amount: Decimal
    payment_date: date
    method: str
    reference: str | None = None
    notes: str | None = None

    def __post_init__(self):
        if self.amount <= 0:
            raise ValidationError("amount", "must be greater than zero")
        if not self.method:
            raise ValidationError("method", "payment method is required")


@dataclass(frozen=True)
class PaymentResult:
    """What a committed payment did."""
    payment: PaymentInfo
    lines: tuple[AllocationLine, ...]
    invoices: tuple[Invoice, ...] = field(default_factory=tuple)
    newly_paid_invoice_ids: tuple[UUID, ...] = field(default_factory=tuple)

    @property
    def total_allocated(self) -> Decimal:
        return sum((line.amount for line in self.lines), ZERO)

    @property
    def unallocated(self) -> Decimal:
        return self.payment.amount - self.total_allocated

    @property
    def is_over_allocated(self) -> bool:
        return self.total_allocated > self.payment.amount
