"""
Projects ORM Models (``billing_modules.projects.orm``).

Responsibility
--------------
SQLAlchemy persistence models for clients, projects, tasks, time entries
and expenses.  Maps frozen domain dataclasses from ``models.py`` to
database tables.

Architecture position
---------------------
**Modules layer** -- persistence.  Imports from ``billing_kernel.db.base``
and sibling ``models.py``.  MUST NOT be imported by ``billing_kernel``
except through the lazy immutability listener targets.

Invariants enforced
-------------------
* ``tasks.billed_percentage`` stays within 0..100 (check constraint).  The
  column is only ever written by guarded updates in the task billing
  ledger, never by ORM attribute assignment.
* ``tasks.total_budget`` and ``tasks.billed_amount`` are non-negative.
* ``tasks.total_budget`` is frozen once billing has started (ORM
  ``before_update`` listener in ``billing_kernel.db.immutability``).
"""

from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    ForeignKey,
    Index,
    String,
)
from sqlalchemy.orm import Mapped, mapped_column

from billing_kernel.db.base import TrackedBase
from billing_kernel.db.types import ZERO


# ---------------------------------------------------------------------------
# 1. ClientModel
# ---------------------------------------------------------------------------


class ClientModel(TrackedBase):
    """ORM model for clients. Maps to the ``Client`` frozen dataclass."""

    __tablename__ = "clients"

    __table_args__ = (
        Index("idx_clients_company_id", "company_id"),
    )

    company_id: Mapped[UUID] = mapped_column(nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)

    def to_dto(self):
        from billing_modules.projects.models import Client

        return Client(
            id=self.id,
            company_id=self.company_id,
            name=self.name,
            email=self.email,
        )

    def __repr__(self) -> str:
        return f"<ClientModel {self.name}>"


# ---------------------------------------------------------------------------
# 2. ProjectModel
# ---------------------------------------------------------------------------


class ProjectModel(TrackedBase):
    """ORM model for projects. Maps to the ``Project`` frozen dataclass."""

    __tablename__ = "projects"

    __table_args__ = (
        Index("idx_projects_company_id", "company_id"),
        Index("idx_projects_client_id", "client_id"),
    )

    company_id: Mapped[UUID] = mapped_column(nullable=False)
    client_id: Mapped[UUID] = mapped_column(ForeignKey("clients.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(50), default="active")

    def to_dto(self):
        from billing_modules.projects.models import Project, ProjectStatus

        return Project(
            id=self.id,
            company_id=self.company_id,
            client_id=self.client_id,
            name=self.name,
            status=ProjectStatus(self.status),
        )

    def __repr__(self) -> str:
        return f"<ProjectModel {self.name}>"


# ---------------------------------------------------------------------------
# 3. TaskModel
# ---------------------------------------------------------------------------


class TaskModel(TrackedBase):
    """
    ORM model for budgeted project tasks.

    Maps to the ``Task`` frozen dataclass.

    Guarantees:
        - 0 <= billed_percentage <= 100 (ck_tasks_billed_percentage_range).
        - total_budget >= 0 and billed_amount >= 0.
        - billing_unit is 'hours' or 'unit'.
    """

    __tablename__ = "tasks"

    __table_args__ = (
        CheckConstraint(
            "billed_percentage >= 0 AND billed_percentage <= 100",
            name="ck_tasks_billed_percentage_range",
        ),
        CheckConstraint("total_budget >= 0", name="ck_tasks_total_budget_non_negative"),
        CheckConstraint("billed_amount >= 0", name="ck_tasks_billed_amount_non_negative"),
        CheckConstraint(
            "billing_unit IN ('hours', 'unit')", name="ck_tasks_billing_unit"
        ),
        Index("idx_tasks_project_id", "project_id"),
    )

    project_id: Mapped[UUID] = mapped_column(ForeignKey("projects.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    total_budget: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    estimated_hours: Mapped[Decimal | None] = mapped_column(nullable=True)
    estimated_fees: Mapped[Decimal | None] = mapped_column(nullable=True)
    billed_percentage: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    billed_amount: Mapped[Decimal] = mapped_column(nullable=False, default=ZERO)
    billing_unit: Mapped[str] = mapped_column(String(10), nullable=False, default="hours")

    def to_dto(self):
        from billing_modules.projects.models import BillingUnit, Task

        return Task(
            id=self.id,
            project_id=self.project_id,
            name=self.name,
            total_budget=self.total_budget,
            billed_percentage=self.billed_percentage,
            billed_amount=self.billed_amount,
            estimated_hours=self.estimated_hours,
            estimated_fees=self.estimated_fees,
            billing_unit=BillingUnit(self.billing_unit),
        )

    @classmethod
    def from_dto(cls, dto, created_by_id: UUID) -> "TaskModel":
        return cls(
            id=dto.id,
            project_id=dto.project_id,
            name=dto.name,
            total_budget=dto.total_budget,
            estimated_hours=dto.estimated_hours,
            estimated_fees=dto.estimated_fees,
            billed_percentage=dto.billed_percentage,
            billed_amount=dto.billed_amount,
            billing_unit=dto.billing_unit.value,
            created_by_id=created_by_id,
        )

    def __repr__(self) -> str:
        return f"<TaskModel {self.name}: {self.billed_percentage}% billed>"


# ---------------------------------------------------------------------------
# 4. TimeEntryModel
# ---------------------------------------------------------------------------


class TimeEntryModel(TrackedBase):
    """
    ORM model for time entries.

    Guarantees:
        - invoice_id is NULL until the entry is billed on a time &
          materials invoice, and is cleared again if that invoice is
          deleted.
    """

    __tablename__ = "time_entries"

    __table_args__ = (
        CheckConstraint("hours >= 0", name="ck_time_entries_hours_non_negative"),
        CheckConstraint(
            "approval_status IN ('pending', 'approved', 'rejected')",
            name="ck_time_entries_approval_status",
        ),
        Index("idx_time_entries_project_id", "project_id"),
        Index("idx_time_entries_invoice_id", "invoice_id"),
    )

    project_id: Mapped[UUID] = mapped_column(ForeignKey("projects.id"), nullable=False)
    task_id: Mapped[UUID | None] = mapped_column(ForeignKey("tasks.id"), nullable=True)
    entry_date: Mapped[date] = mapped_column(Date, nullable=False)
    hours: Mapped[Decimal] = mapped_column(nullable=False)
    hourly_rate: Mapped[Decimal] = mapped_column(nullable=False)
    description: Mapped[str] = mapped_column(String(1000), nullable=False, default="")
    approval_status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    invoice_id: Mapped[UUID | None] = mapped_column(ForeignKey("invoices.id"), nullable=True)

    def to_dto(self):
        from billing_modules.projects.models import ApprovalStatus, TimeEntry

        return TimeEntry(
            id=self.id,
            project_id=self.project_id,
            entry_date=self.entry_date,
            hours=self.hours,
            hourly_rate=self.hourly_rate,
            description=self.description,
            task_id=self.task_id,
            approval_status=ApprovalStatus(self.approval_status),
            invoice_id=self.invoice_id,
        )

    def __repr__(self) -> str:
        return f"<TimeEntryModel {self.entry_date}: {self.hours}h>"


# ---------------------------------------------------------------------------
# 5. ExpenseModel
# ---------------------------------------------------------------------------


class ExpenseModel(TrackedBase):
    """
    ORM model for expenses.

    Expenses are billable on time & materials invoices and are also the
    money-out side of bank reconciliation.
    """

    __tablename__ = "expenses"

    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_expenses_amount_non_negative"),
        CheckConstraint(
            "approval_status IN ('pending', 'approved', 'rejected')",
            name="ck_expenses_approval_status",
        ),
        Index("idx_expenses_company_id", "company_id"),
        Index("idx_expenses_project_id", "project_id"),
        Index("idx_expenses_invoice_id", "invoice_id"),
    )

    company_id: Mapped[UUID] = mapped_column(nullable=False)
    project_id: Mapped[UUID | None] = mapped_column(ForeignKey("projects.id"), nullable=True)
    expense_date: Mapped[date] = mapped_column(Date, nullable=False)
    description: Mapped[str] = mapped_column(String(1000), nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    category: Mapped[str | None] = mapped_column(String(100), nullable=True)
    billable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    approval_status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    invoice_id: Mapped[UUID | None] = mapped_column(ForeignKey("invoices.id"), nullable=True)

    def to_dto(self):
        from billing_modules.projects.models import ApprovalStatus, Expense

        return Expense(
            id=self.id,
            company_id=self.company_id,
            expense_date=self.expense_date,
            description=self.description,
            amount=self.amount,
            category=self.category,
            project_id=self.project_id,
            billable=self.billable,
            approval_status=ApprovalStatus(self.approval_status),
            invoice_id=self.invoice_id,
        )

    def __repr__(self) -> str:
        return f"<ExpenseModel {self.expense_date}: {self.amount}>"
