"""
Module: billing_modules.reconciliation.selectors
Responsibility: Read-only projections for reconciliation: platform
    transactions (paid invoices and non-rejected expenses), bank lines and
    bank statements.
Architecture position: Modules > Reconciliation.  Extends the kernel
    ``BaseSelector``; returns engine dataclasses, never ORM rows.

Invariants enforced:
    - Paid invoices are credits (money in); expenses are debits (money out).
    - The projection is computed on every call, never stored.
"""

from uuid import UUID

from sqlalchemy import select

from billing_engines.bank_import import TransactionType
from billing_engines.payment_allocation import InvoiceStatus
from billing_engines.reconciliation import BankLine, PlatformTransaction, ReferenceType
from billing_kernel.db.types import to_decimal
from billing_kernel.selectors.base import BaseSelector
from billing_modules.invoicing.orm import InvoiceModel
from billing_modules.projects.models import ApprovalStatus
from billing_modules.projects.orm import ExpenseModel
from billing_modules.reconciliation.models import BankStatement
from billing_modules.reconciliation.orm import BankStatementModel, BankTransactionModel


def _invoice_transaction(invoice: InvoiceModel) -> PlatformTransaction:
    paid_on = invoice.payment_date
    if paid_on is None and invoice.paid_at is not None:
        paid_on = invoice.paid_at.date()
    return PlatformTransaction(
        id=invoice.id,
        source_kind=ReferenceType.INVOICE,
        transaction_date=paid_on,
        description=f"Invoice {invoice.invoice_number}",
        amount=to_decimal(invoice.total),
        direction=TransactionType.CREDIT,
    )


def _expense_transaction(expense: ExpenseModel) -> PlatformTransaction:
    return PlatformTransaction(
        id=expense.id,
        source_kind=ReferenceType.EXPENSE,
        transaction_date=expense.expense_date,
        description=expense.description,
        amount=to_decimal(expense.amount),
        direction=TransactionType.DEBIT,
    )


class PlatformTransactionSelector(BaseSelector[InvoiceModel]):
    """Invoices and expenses seen as money in and money out."""

    def _paid_invoices(self, company_id: UUID):
        return select(InvoiceModel).where(
            InvoiceModel.company_id == company_id,
            InvoiceModel.status == InvoiceStatus.PAID.value,
        )

    def _recorded_expenses(self, company_id: UUID):
        return select(ExpenseModel).where(
            ExpenseModel.company_id == company_id,
            ExpenseModel.approval_status != ApprovalStatus.REJECTED.value,
        )

    def all(self, company_id: UUID) -> list[PlatformTransaction]:
        invoices = self.session.execute(
            self._paid_invoices(company_id).order_by(InvoiceModel.invoice_number)
        ).scalars()
        expenses = self.session.execute(
            self._recorded_expenses(company_id).order_by(
                ExpenseModel.expense_date, ExpenseModel.created_at
            )
        ).scalars()
        return [_invoice_transaction(i) for i in invoices] + [
            _expense_transaction(e) for e in expenses
        ]

    def get(
        self,
        company_id: UUID,
        reference_id: UUID,
        reference_type: ReferenceType,
    ) -> PlatformTransaction | None:
        if reference_type == ReferenceType.INVOICE:
            invoice = self.session.execute(
                self._paid_invoices(company_id).where(InvoiceModel.id == reference_id)
            ).scalar_one_or_none()
            return _invoice_transaction(invoice) if invoice is not None else None

        expense = self.session.execute(
            self._recorded_expenses(company_id).where(ExpenseModel.id == reference_id)
        ).scalar_one_or_none()
        return _expense_transaction(expense) if expense is not None else None


class BankLineSelector(BaseSelector[BankTransactionModel]):
    """Bank transactions of a company, oldest first."""

    def all(self, company_id: UUID) -> list[BankLine]:
        rows = self.session.execute(
            select(BankTransactionModel)
            .where(BankTransactionModel.company_id == company_id)
            .order_by(BankTransactionModel.transaction_date, BankTransactionModel.created_at)
            .execution_options(populate_existing=True)
        ).scalars()
        return [row.to_line() for row in rows]

    def for_statement(self, statement_id: UUID) -> list[BankLine]:
        rows = self.session.execute(
            select(BankTransactionModel)
            .where(BankTransactionModel.statement_id == statement_id)
            .order_by(BankTransactionModel.transaction_date, BankTransactionModel.created_at)
            .execution_options(populate_existing=True)
        ).scalars()
        return [row.to_line() for row in rows]

    def matched_to(
        self,
        reference_id: UUID,
        reference_type: ReferenceType,
    ) -> BankTransactionModel | None:
        return self.session.execute(
            select(BankTransactionModel).where(
                BankTransactionModel.match_status == "matched",
                BankTransactionModel.matched_reference_id == reference_id,
                BankTransactionModel.matched_reference_type == reference_type.value,
            )
        ).scalars().first()


class BankStatementSelector(BaseSelector[BankStatementModel]):
    """Imported statements of a company, latest period first."""

    def all(self, company_id: UUID) -> list[BankStatement]:
        rows = self.session.execute(
            select(BankStatementModel)
            .where(BankStatementModel.company_id == company_id)
            .order_by(
                BankStatementModel.period_end.desc().nulls_last(),
                BankStatementModel.created_at.desc(),
            )
        ).scalars()
        return [row.to_dto() for row in rows]
