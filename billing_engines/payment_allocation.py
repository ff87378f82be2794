"""
Payment Allocation Engine.

Pure functions with deterministic behavior. No I/O.

Decides how one incoming payment is spread over a client's open invoices:

1. Candidates: open balance > 0, status != paid, optional project filter,
   oldest due date first (no due date sorts last).
2. Auto-match: when the payment equals a candidate's open balance within
   the tolerance, that candidate (the oldest, if several) is pre-selected
   for the full payment.
3. Manual lines are validated against each invoice's open balance, which
   is a hard ceiling.  The payment total is not: over-allocation beyond the
   entered amount is flagged, not rejected.

Application to the store is done by ``billing_modules.payments.service``
with one guarded UPDATE per invoice.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Iterable, Mapping, Sequence
from uuid import UUID

from billing_engines.tracer import traced_engine
from billing_kernel.db.types import ZERO, round_money
from billing_kernel.exceptions import AllocationExceedsBalanceError, ValidationError
from billing_kernel.logging_config import get_logger

logger = get_logger("engines.payment_allocation")

DEFAULT_TOLERANCE = Decimal("0.01")


class InvoiceStatus(str, Enum):
    """Invoice lifecycle states."""

    DRAFT = "draft"
    SENT = "sent"
    OVERDUE = "overdue"
    PAID = "paid"


@dataclass(frozen=True, slots=True)
class OpenInvoice:
    """The payment-relevant view of an invoice."""

    invoice_id: UUID
    invoice_number: str
    client_id: UUID
    total: Decimal
    amount_paid: Decimal
    status: InvoiceStatus
    project_id: UUID | None = None
    due_date: date | None = None

    @property
    def open_balance(self) -> Decimal:
        return round_money(self.total - self.amount_paid)


@dataclass(frozen=True, slots=True)
class AllocationLine:
    invoice_id: UUID
    amount: Decimal


@dataclass(frozen=True, slots=True)
class AllocationProposal:
    """A proposed or validated split of one payment."""

    payment_amount: Decimal
    candidates: tuple[OpenInvoice, ...]
    lines: tuple[AllocationLine, ...]
    auto_matched_invoice_id: UUID | None = None

    @property
    def total_allocated(self) -> Decimal:
        return sum((line.amount for line in self.lines), ZERO)

    @property
    def unallocated(self) -> Decimal:
        return self.payment_amount - self.total_allocated

    @property
    def is_balanced(self) -> bool:
        return self.total_allocated == self.payment_amount

    @property
    def is_over_allocated(self) -> bool:
        return self.total_allocated > self.payment_amount


def _due_date_key(invoice: OpenInvoice) -> tuple:
    return (invoice.due_date is None, invoice.due_date or date.min, invoice.invoice_number)


def select_candidates(
    invoices: Iterable[OpenInvoice],
    client_id: UUID,
    project_id: UUID | None = None,
) -> tuple[OpenInvoice, ...]:
    """Open invoices for the client, oldest obligation first."""
    candidates = [
        inv for inv in invoices
        if inv.client_id == client_id
        and inv.status != InvoiceStatus.PAID
        and inv.open_balance > 0
        and (project_id is None or inv.project_id == project_id)
    ]
    return tuple(sorted(candidates, key=_due_date_key))


def auto_match(
    candidates: Sequence[OpenInvoice],
    payment_amount: Decimal,
    tolerance: Decimal = DEFAULT_TOLERANCE,
) -> OpenInvoice | None:
    """First candidate (in due-date order) whose open balance equals the payment."""
    for invoice in candidates:
        if abs(invoice.open_balance - payment_amount) < tolerance:
            return invoice
    return None


@traced_engine(
    "payment_allocation", "1.0",
    fingerprint_fields=("candidates", "payment_amount"),
)
def propose_allocation(
    *,
    candidates: Sequence[OpenInvoice],
    payment_amount: Decimal,
    tolerance: Decimal = DEFAULT_TOLERANCE,
) -> AllocationProposal:
    """
    Default allocation for a payment: auto-match or nothing pre-selected.

    Raises:
        ValidationError: Payment amount is not positive.
    """
    if payment_amount <= 0:
        raise ValidationError("payment_amount", "must be greater than zero")

    matched = auto_match(candidates, payment_amount, tolerance)
    lines: tuple[AllocationLine, ...] = ()
    if matched is not None:
        lines = (AllocationLine(invoice_id=matched.invoice_id, amount=payment_amount),)
        logger.info("payment_auto_matched", extra={
            "invoice_id": str(matched.invoice_id),
            "payment_amount": str(payment_amount),
        })

    return AllocationProposal(
        payment_amount=payment_amount,
        candidates=tuple(candidates),
        lines=lines,
        auto_matched_invoice_id=matched.invoice_id if matched else None,
    )


def merge_lines(lines: Iterable[AllocationLine]) -> tuple[AllocationLine, ...]:
    """Sum amounts of lines that target the same invoice, keeping first-seen order."""
    totals: dict[UUID, Decimal] = {}
    for line in lines:
        totals[line.invoice_id] = totals.get(line.invoice_id, ZERO) + line.amount
    return tuple(AllocationLine(invoice_id=k, amount=v) for k, v in totals.items())


def validate_allocation(
    lines: Sequence[AllocationLine],
    invoices: Mapping[UUID, OpenInvoice],
    client_id: UUID | None = None,
    project_id: UUID | None = None,
) -> tuple[AllocationLine, ...]:
    """
    Validate manual allocation lines against per-invoice open balances.

    Args:
        lines: Requested lines; duplicates for the same invoice are merged.
        invoices: Current state of every referenced invoice, by id.
        client_id: When given, every invoice must belong to this client.
        project_id: When given, every invoice must belong to this project.

    Returns:
        The merged, validated lines.

    Raises:
        ValidationError: No lines, a non-positive amount, an unknown
            invoice, or an invoice outside the payment's client or project.
        AllocationExceedsBalanceError: The invoice is already paid or the
            amount exceeds its open balance.
    """
    merged = merge_lines(lines)
    if not merged:
        raise ValidationError("allocations", "at least one invoice allocation is required")

    for line in merged:
        if line.amount <= 0:
            raise ValidationError(
                "amount", f"allocation to invoice {line.invoice_id} must be greater than zero"
            )
        invoice = invoices.get(line.invoice_id)
        if invoice is None:
            raise ValidationError("invoice_id", f"invoice {line.invoice_id} is not open for payment")
        if client_id is not None and invoice.client_id != client_id:
            raise ValidationError(
                "invoice_id", f"invoice {invoice.invoice_number} belongs to another client"
            )
        if project_id is not None and invoice.project_id != project_id:
            raise ValidationError(
                "invoice_id", f"invoice {invoice.invoice_number} belongs to another project"
            )
        if invoice.status == InvoiceStatus.PAID:
            raise AllocationExceedsBalanceError(
                invoice_id=str(line.invoice_id),
                amount=line.amount,
                open_balance=ZERO,
            )
        if line.amount > invoice.open_balance:
            raise AllocationExceedsBalanceError(
                invoice_id=str(line.invoice_id),
                amount=line.amount,
                open_balance=invoice.open_balance,
            )
    return merged


def status_after_payment(
    status: InvoiceStatus,
    total: Decimal,
    new_amount_paid: Decimal,
    tolerance: Decimal = DEFAULT_TOLERANCE,
) -> InvoiceStatus:
    """Paid once fully covered; otherwise unchanged. Never moves backwards."""
    if status == InvoiceStatus.PAID:
        return status
    if new_amount_paid >= total - tolerance:
        return InvoiceStatus.PAID
    return status
