"""
Reconciliation ORM Models (``billing_modules.reconciliation.orm``).

Responsibility
--------------
SQLAlchemy persistence models for imported bank statements, their
transactions and each transaction's match state.

Invariants enforced
-------------------
* ``amount > 0``; direction lives in ``type`` (debit/credit).
* Match state is all-or-nothing: matched rows carry both reference
  columns, unmatched rows carry neither (ck_bank_transactions_match_state).
* One-to-one matching: a partial unique index over
  ``(matched_reference_id, matched_reference_type)`` for matched rows
  stops two bank rows from claiming the same invoice or expense.
"""

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import CheckConstraint, Date, DateTime, ForeignKey, Index, String, text
from sqlalchemy.orm import Mapped, mapped_column

from billing_kernel.db.base import TrackedBase, UUIDString

_MATCHED = text("match_status = 'matched'")


class BankStatementModel(TrackedBase):
    """
    ORM model for one imported bank statement.

    Guarantees:
        - period_start is not after period_end when both are set.
        - Every imported row references its statement through
          bank_transactions.statement_id.
    """

    __tablename__ = "bank_statements"

    __table_args__ = (
        CheckConstraint(
            "period_start IS NULL OR period_end IS NULL OR period_start <= period_end",
            name="ck_bank_statements_period",
        ),
        Index("idx_bank_statements_company_id", "company_id"),
    )

    company_id: Mapped[UUID] = mapped_column(nullable=False)
    account_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    account_number: Mapped[str | None] = mapped_column(String(50), nullable=True)
    original_filename: Mapped[str | None] = mapped_column(String(255), nullable=True)
    period_start: Mapped[date | None] = mapped_column(Date, nullable=True)
    period_end: Mapped[date | None] = mapped_column(Date, nullable=True)
    beginning_balance: Mapped[Decimal | None] = mapped_column(nullable=True)
    ending_balance: Mapped[Decimal | None] = mapped_column(nullable=True)

    def to_dto(self):
        from billing_modules.reconciliation.models import BankStatement

        return BankStatement(
            id=self.id,
            company_id=self.company_id,
            account_name=self.account_name,
            account_number=self.account_number,
            original_filename=self.original_filename,
            period_start=self.period_start,
            period_end=self.period_end,
            beginning_balance=self.beginning_balance,
            ending_balance=self.ending_balance,
            created_at=self.created_at,
        )

    def __repr__(self) -> str:
        return f"<BankStatementModel {self.account_name or self.id}>"


class BankTransactionModel(TrackedBase):
    """
    ORM model for one imported bank statement row.

    Guarantees:
        - match_status is 'unmatched' or 'matched'.
        - matched_reference_type is 'invoice' or 'expense' when set.
    """

    __tablename__ = "bank_transactions"

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_bank_transactions_amount_positive"),
        CheckConstraint("type IN ('debit', 'credit')", name="ck_bank_transactions_type"),
        CheckConstraint(
            "(match_status = 'matched' AND matched_reference_id IS NOT NULL "
            "AND matched_reference_type IS NOT NULL) OR "
            "(match_status = 'unmatched' AND matched_reference_id IS NULL "
            "AND matched_reference_type IS NULL)",
            name="ck_bank_transactions_match_state",
        ),
        CheckConstraint(
            "matched_reference_type IS NULL OR matched_reference_type IN ('invoice', 'expense')",
            name="ck_bank_transactions_reference_type",
        ),
        Index(
            "uq_bank_transactions_matched_reference",
            "matched_reference_id",
            "matched_reference_type",
            unique=True,
            sqlite_where=_MATCHED,
            postgresql_where=_MATCHED,
        ),
        Index("idx_bank_transactions_company_id", "company_id"),
        Index("idx_bank_transactions_statement_id", "statement_id"),
    )

    company_id: Mapped[UUID] = mapped_column(nullable=False)
    statement_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("bank_statements.id"), nullable=True
    )
    transaction_date: Mapped[date] = mapped_column(Date, nullable=False)
    description: Mapped[str] = mapped_column(String(1000), nullable=False, default="")
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    type: Mapped[str] = mapped_column(String(10), nullable=False)
    check_number: Mapped[str | None] = mapped_column(String(50), nullable=True)
    match_status: Mapped[str] = mapped_column(String(20), nullable=False, default="unmatched")
    matched_reference_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    matched_reference_type: Mapped[str | None] = mapped_column(String(20), nullable=True)
    matched_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def to_dto(self):
        from billing_engines.bank_import import TransactionType
        from billing_engines.reconciliation import MatchStatus, ReferenceType
        from billing_modules.reconciliation.models import BankTransaction

        return BankTransaction(
            id=self.id,
            company_id=self.company_id,
            transaction_date=self.transaction_date,
            description=self.description,
            amount=self.amount,
            type=TransactionType(self.type),
            match_status=MatchStatus(self.match_status),
            statement_id=self.statement_id,
            check_number=self.check_number,
            matched_reference_id=self.matched_reference_id,
            matched_reference_type=(
                ReferenceType(self.matched_reference_type)
                if self.matched_reference_type else None
            ),
            matched_at=self.matched_at,
        )

    def to_line(self):
        """Engine view used by the reconciliation projections."""
        from billing_engines.bank_import import TransactionType
        from billing_engines.reconciliation import BankLine, MatchStatus, ReferenceType

        return BankLine(
            id=self.id,
            transaction_date=self.transaction_date,
            description=self.description,
            amount=self.amount,
            type=TransactionType(self.type),
            match_status=MatchStatus(self.match_status),
            matched_reference_id=self.matched_reference_id,
            matched_reference_type=(
                ReferenceType(self.matched_reference_type)
                if self.matched_reference_type else None
            ),
        )

    def __repr__(self) -> str:
        return f"<BankTransactionModel {self.transaction_date} {self.type} {self.amount}>"
