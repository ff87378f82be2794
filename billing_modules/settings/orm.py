"""
Settings ORM Models (``billing_modules.settings.orm``).

Responsibility
--------------
Reference data a company maintains for itself: expense categories,
expense codes and invoice payment terms.

Architecture position
---------------------
**Modules layer** -- persistence.  Accessed through the typed
``billing_kernel.db.repository.Repository``.
"""

from uuid import UUID

from sqlalchemy import Boolean, CheckConstraint, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from billing_kernel.db.base import TrackedBase


class _ReferenceDataColumns:
    """Columns shared by every settings entity."""

    company_id: Mapped[UUID] = mapped_column(nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_inactive: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class CategoryModel(_ReferenceDataColumns, TrackedBase):
    """Expense category."""

    __tablename__ = "categories"

    __table_args__ = (
        UniqueConstraint("company_id", "name", name="uq_categories_company_name"),
        Index("idx_categories_company_id", "company_id"),
    )

    description: Mapped[str | None] = mapped_column(String(1000), nullable=True)

    def to_dto(self):
        from billing_modules.settings.models import Category

        return Category(
            id=self.id,
            company_id=self.company_id,
            name=self.name,
            description=self.description,
            is_inactive=self.is_inactive,
            sort_order=self.sort_order,
        )


class ExpenseCodeModel(_ReferenceDataColumns, TrackedBase):
    """Accounting code attached to expenses."""

    __tablename__ = "expense_codes"

    __table_args__ = (
        UniqueConstraint("company_id", "code", name="uq_expense_codes_company_code"),
        Index("idx_expense_codes_company_id", "company_id"),
    )

    code: Mapped[str] = mapped_column(String(50), nullable=False)

    def to_dto(self):
        from billing_modules.settings.models import ExpenseCode

        return ExpenseCode(
            id=self.id,
            company_id=self.company_id,
            code=self.code,
            name=self.name,
            is_inactive=self.is_inactive,
            sort_order=self.sort_order,
        )


class InvoiceTermModel(_ReferenceDataColumns, TrackedBase):
    """
    Payment terms offered on invoices (e.g. "Net 30").

    Guarantees:
        - days_until_due >= 0.
        - At most one active default per company, maintained by
          SettingsService.
    """

    __tablename__ = "invoice_terms"

    __table_args__ = (
        CheckConstraint("days_until_due >= 0", name="ck_invoice_terms_days_non_negative"),
        Index("idx_invoice_terms_company_id", "company_id"),
    )

    days_until_due: Mapped[int] = mapped_column(Integer, nullable=False)
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    def to_dto(self):
        from billing_modules.settings.models import InvoiceTerm

        return InvoiceTerm(
            id=self.id,
            company_id=self.company_id,
            name=self.name,
            days_until_due=self.days_until_due,
            is_default=self.is_default,
            is_inactive=self.is_inactive,
            sort_order=self.sort_order,
        )
