"""
Module: billing_modules.payments.selectors
Responsibility: Read-only queries returning the payment-relevant view of
    invoices (``OpenInvoice``) for the allocator.
Architecture position: Modules > Payments.  Extends the kernel
    ``BaseSelector``; returns engine dataclasses, never ORM rows.
"""

from typing import Iterable
from uuid import UUID

from sqlalchemy import select

from billing_engines.payment_allocation import InvoiceStatus, OpenInvoice
from billing_kernel.db.types import to_decimal
from billing_kernel.selectors.base import BaseSelector
from billing_modules.invoicing.orm import InvoiceModel


def to_open_invoice(invoice: InvoiceModel) -> OpenInvoice:
    return OpenInvoice(
        invoice_id=invoice.id,
        invoice_number=invoice.invoice_number,
        client_id=invoice.client_id,
        total=to_decimal(invoice.total),
        amount_paid=to_decimal(invoice.amount_paid),
        status=InvoiceStatus(invoice.status),
        project_id=invoice.project_id,
        due_date=invoice.due_date,
    )


class OpenInvoiceSelector(BaseSelector[InvoiceModel]):
    """Invoices as the payment allocator sees them."""

    def for_client(self, client_id: UUID, project_id: UUID | None = None) -> list[OpenInvoice]:
        """Every unpaid invoice of the client, unordered and unfiltered by balance."""
        stmt = select(InvoiceModel).where(
            InvoiceModel.client_id == client_id,
            InvoiceModel.status != InvoiceStatus.PAID.value,
        )
        if project_id is not None:
            stmt = stmt.where(InvoiceModel.project_id == project_id)
        rows = self.session.execute(
            stmt.execution_options(populate_existing=True)
        ).scalars()
        return [to_open_invoice(row) for row in rows]

    def by_ids(self, invoice_ids: Iterable[UUID]) -> dict[UUID, OpenInvoice]:
        ids = list(set(invoice_ids))
        if not ids:
            return {}
        rows = self.session.execute(
            select(InvoiceModel)
            .where(InvoiceModel.id.in_(ids))
            .execution_options(populate_existing=True)
        ).scalars()
        return {row.id: to_open_invoice(row) for row in rows}
