"""
Invoicing ORM Models (``billing_modules.invoicing.orm``).

Responsibility
--------------
SQLAlchemy persistence models for invoices and invoice line items.

Architecture position
---------------------
**Modules layer** -- persistence.  Imports from ``billing_kernel.db.base``
and sibling ``models.py``.

Invariants enforced
-------------------
* ``total = subtotal + tax_amount`` is maintained by the composer; the
  database enforces ``tax_amount >= 0`` and
  ``0 <= amount_paid <= total`` (a sub-cent epsilon absorbs float-backed
  Numeric storage).
* ``amount_paid`` and ``status`` are written by guarded updates in the
  payment allocator, never by ORM attribute assignment.
* Line-item snapshot columns (``task_id``, ``billed_percentage``,
  ``task_total_budget``, ``billed_amount``) are immutable after insert
  (ORM listener in ``billing_kernel.db.immutability``).
"""

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from billing_kernel.db.base import TrackedBase
from billing_kernel.db.types import ZERO


# ---------------------------------------------------------------------------
# 1. InvoiceModel
# ---------------------------------------------------------------------------


class InvoiceModel(TrackedBase):
    """
    ORM model for invoices.

    Maps to the ``Invoice`` frozen dataclass.  Lines are stored in a
    separate child table via the ``line_items`` relationship.

    Guarantees:
        - invoice_number is unique per company (uq_invoices_company_number).
        - Monetary fields use Decimal (Numeric(38,9) via type_annotation_map).
        - status stored as string enum value.
    """

    __tablename__ = "invoices"

    __table_args__ = (
        UniqueConstraint("company_id", "invoice_number", name="uq_invoices_company_number"),
        CheckConstraint("tax_amount >= 0", name="ck_invoices_tax_non_negative"),
        CheckConstraint("amount_paid >= 0", name="ck_invoices_amount_paid_non_negative"),
        CheckConstraint(
            "amount_paid <= total + 0.000000001", name="ck_invoices_amount_paid_within_total"
        ),
        CheckConstraint(
            "status IN ('draft', 'sent', 'overdue', 'paid')", name="ck_invoices_status"
        ),
        Index("idx_invoices_client_id", "client_id"),
        Index("idx_invoices_project_id", "project_id"),
        Index("idx_invoices_status", "status"),
        Index("idx_invoices_due_date", "due_date"),
    )

    company_id: Mapped[UUID] = mapped_column(nullable=False)
    client_id: Mapped[UUID] = mapped_column(ForeignKey("clients.id"), nullable=False)
    project_id: Mapped[UUID | None] = mapped_column(ForeignKey("projects.id"), nullable=True)
    invoice_number: Mapped[str] = mapped_column(String(100), nullable=False)
    subtotal: Mapped[Decimal] = mapped_column(nullable=False)
    tax_amount: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    total: Mapped[Decimal] = mapped_column(nullable=False)
    amount_paid: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="draft")
    calculator_type: Mapped[str] = mapped_column(String(30), nullable=False)
    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    sent_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    payment_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    payment_method: Mapped[str | None] = mapped_column(String(50), nullable=True)
    payment_reference: Mapped[str | None] = mapped_column(String(255), nullable=True)
    payment_notes: Mapped[str | None] = mapped_column(String(500), nullable=True)
    notes: Mapped[str | None] = mapped_column(String(4000), nullable=True)

    line_items: Mapped[list["InvoiceLineItemModel"]] = relationship(
        back_populates="invoice",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="InvoiceLineItemModel.line_number",
    )

    def to_dto(self):
        """Convert ORM model to frozen dataclass."""
        from billing_engines.payment_allocation import InvoiceStatus
        from billing_engines.task_billing import BillingStrategy
        from billing_modules.invoicing.models import Invoice

        return Invoice(
            id=self.id,
            company_id=self.company_id,
            client_id=self.client_id,
            invoice_number=self.invoice_number,
            subtotal=self.subtotal,
            tax_amount=self.tax_amount,
            total=self.total,
            amount_paid=self.amount_paid,
            status=InvoiceStatus(self.status),
            calculator_type=BillingStrategy(self.calculator_type),
            project_id=self.project_id,
            due_date=self.due_date,
            sent_date=self.sent_date,
            paid_at=self.paid_at,
            payment_date=self.payment_date,
            payment_method=self.payment_method,
            payment_reference=self.payment_reference,
            payment_notes=self.payment_notes,
            notes=self.notes,
            line_items=tuple(line.to_dto() for line in self.line_items),
        )

    def __repr__(self) -> str:
        return f"<InvoiceModel {self.invoice_number}: {self.status}>"


# ---------------------------------------------------------------------------
# 2. InvoiceLineItemModel
# ---------------------------------------------------------------------------


class InvoiceLineItemModel(TrackedBase):
    """
    ORM model for invoice line items.

    Guarantees:
        - line_number is unique per invoice.
        - unit is 'hr' or 'unit'.
        - Snapshot columns are protected by an ORM before_update listener.
    """

    __tablename__ = "invoice_line_items"

    __table_args__ = (
        UniqueConstraint("invoice_id", "line_number", name="uq_invoice_line_items_line"),
        CheckConstraint("unit IN ('hr', 'unit')", name="ck_invoice_line_items_unit"),
        Index("idx_invoice_line_items_invoice_id", "invoice_id"),
        Index("idx_invoice_line_items_task_id", "task_id"),
    )

    invoice_id: Mapped[UUID] = mapped_column(ForeignKey("invoices.id"), nullable=False)
    line_number: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(String(1000), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    unit: Mapped[str] = mapped_column(String(10), nullable=False, default="unit")
    billing_type: Mapped[str] = mapped_column(String(30), nullable=False)
    task_id: Mapped[UUID | None] = mapped_column(ForeignKey("tasks.id"), nullable=True)
    billed_percentage: Mapped[Decimal | None] = mapped_column(nullable=True)
    task_total_budget: Mapped[Decimal | None] = mapped_column(nullable=True)
    billed_amount: Mapped[Decimal | None] = mapped_column(nullable=True)
    time_entry_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("time_entries.id"), nullable=True
    )
    expense_id: Mapped[UUID | None] = mapped_column(ForeignKey("expenses.id"), nullable=True)

    invoice: Mapped[InvoiceModel] = relationship(back_populates="line_items")

    def to_dto(self):
        from billing_engines.task_billing import BillingStrategy
        from billing_modules.invoicing.models import InvoiceLineItem

        return InvoiceLineItem(
            id=self.id,
            invoice_id=self.invoice_id,
            line_number=self.line_number,
            description=self.description,
            quantity=self.quantity,
            unit_price=self.unit_price,
            amount=self.amount,
            unit=self.unit,
            billing_type=BillingStrategy(self.billing_type),
            task_id=self.task_id,
            billed_percentage=self.billed_percentage,
            task_total_budget=self.task_total_budget,
            billed_amount=self.billed_amount,
            time_entry_id=self.time_entry_id,
            expense_id=self.expense_id,
        )

    @classmethod
    def from_draft(
        cls,
        draft,
        line_number: int,
        created_by_id: UUID,
    ) -> "InvoiceLineItemModel":
        """Create ORM model from a ``LineItemDraft`` produced by the calculator."""
        return cls(
            line_number=line_number,
            description=draft.description,
            quantity=draft.quantity,
            unit_price=draft.unit_price,
            amount=draft.amount,
            unit=draft.unit,
            billing_type=draft.billing_type.value,
            task_id=draft.task_id,
            billed_percentage=draft.billed_percentage,
            task_total_budget=draft.task_total_budget,
            billed_amount=draft.billed_amount,
            time_entry_id=draft.time_entry_id,
            expense_id=draft.expense_id,
            created_by_id=created_by_id,
        )

    def __repr__(self) -> str:
        return f"<InvoiceLineItemModel #{self.line_number}: {self.amount}>"
