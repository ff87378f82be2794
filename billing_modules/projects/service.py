"""
Projects Module Service - maintains the work that invoices bill.

Creates clients, projects, budgeted tasks, time entries and expenses, and
handles their approval state.  The cumulative billed state of a task is
NOT writable here: it changes only through the task billing ledger.

This service owns the transaction boundary: each public method commits on
success and rolls back on failure.

Usage:
    service = ProjectService(session)
    client = service.create_client(company_id, "Acme", actor_id=actor_id)
    project = service.create_project(company_id, client.id, "HQ", actor_id=actor_id)
    task = service.create_task(
        project.id, "Design", actor_id=actor_id, total_budget=Decimal("10000"),
    )
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from billing_kernel.db.guarded import refetch
from billing_kernel.db.types import ZERO
from billing_kernel.exceptions import TaskNotFoundError, ValidationError
from billing_kernel.logging_config import LogContext, get_logger
from billing_modules.projects.models import (
    ApprovalStatus,
    BillingUnit,
    Client,
    Expense,
    Project,
    Task,
    TimeEntry,
)
from billing_modules.projects.orm import (
    ClientModel,
    ExpenseModel,
    ProjectModel,
    TaskModel,
    TimeEntryModel,
)

logger = get_logger("modules.projects.service")


class ProjectService:
    """
    Maintains clients, projects, tasks, time entries and expenses.

    Transaction boundary: this service commits on success, rolls back on failure.
    """

    def __init__(self, session: Session):
        self._session = session

    # =========================================================================
    # Clients and projects
    # =========================================================================

    def create_client(
        self,
        company_id: UUID,
        name: str,
        actor_id: UUID,
        email: str | None = None,
    ) -> Client:
        if not name or not name.strip():
            raise ValidationError("name", "client name cannot be empty")
        try:
            client = ClientModel(
                company_id=company_id,
                name=name.strip(),
                email=email,
                created_by_id=actor_id,
            )
            self._session.add(client)
            self._session.flush()
            self._session.commit()
            logger.info("client_created", extra={
                "client_id": str(client.id),
                "company_id": str(company_id),
            })
            return client.to_dto()
        except Exception:
            self._session.rollback()
            raise

    def create_project(
        self,
        company_id: UUID,
        client_id: UUID,
        name: str,
        actor_id: UUID,
    ) -> Project:
        if not name or not name.strip():
            raise ValidationError("name", "project name cannot be empty")
        try:
            client = self._session.get(ClientModel, client_id)
            if client is None or client.company_id != company_id:
                raise ValidationError("client_id", f"client {client_id} not found")

            project = ProjectModel(
                company_id=company_id,
                client_id=client_id,
                name=name.strip(),
                created_by_id=actor_id,
            )
            self._session.add(project)
            self._session.flush()
            self._session.commit()
            logger.info("project_created", extra={
                "project_id": str(project.id),
                "client_id": str(client_id),
            })
            return project.to_dto()
        except Exception:
            self._session.rollback()
            raise

    # =========================================================================
    # Tasks
    # =========================================================================

    def create_task(
        self,
        project_id: UUID,
        name: str,
        actor_id: UUID,
        total_budget: Decimal | None = None,
        estimated_hours: Decimal | None = None,
        estimated_fees: Decimal | None = None,
        billing_unit: BillingUnit = BillingUnit.HOURS,
    ) -> Task:
        """
        Create a task with nothing billed yet.

        When no total_budget is given it falls back to estimated_fees, or
        zero when that is missing too.
        """
        if total_budget is None:
            total_budget = estimated_fees if estimated_fees is not None else ZERO
        if total_budget < 0:
            raise ValidationError("total_budget", "must be non-negative")
        if estimated_hours is not None and estimated_hours < 0:
            raise ValidationError("estimated_hours", "must be non-negative")

        try:
            if self._session.get(ProjectModel, project_id) is None:
                raise ValidationError("project_id", f"project {project_id} not found")

            task = TaskModel(
                project_id=project_id,
                name=name,
                total_budget=total_budget,
                estimated_hours=estimated_hours,
                estimated_fees=estimated_fees,
                billed_percentage=ZERO,
                billed_amount=ZERO,
                billing_unit=BillingUnit(billing_unit).value,
                created_by_id=actor_id,
            )
            self._session.add(task)
            self._session.flush()
            self._session.commit()
            logger.info("task_created", extra={
                "task_id": str(task.id),
                "project_id": str(project_id),
                "total_budget": str(total_budget),
            })
            return task.to_dto()
        except Exception:
            self._session.rollback()
            raise

    def get_task(self, task_id: UUID) -> Task:
        task = refetch(self._session, TaskModel, task_id)
        if task is None:
            raise TaskNotFoundError(str(task_id))
        return task.to_dto()

    def list_tasks(self, project_id: UUID) -> list[Task]:
        tasks = self._session.execute(
            select(TaskModel)
            .where(TaskModel.project_id == project_id)
            .order_by(TaskModel.created_at, TaskModel.name)
            .execution_options(populate_existing=True)
        ).scalars()
        return [t.to_dto() for t in tasks]

    def update_task_budget(
        self,
        task_id: UUID,
        total_budget: Decimal,
        actor_id: UUID,
    ) -> Task:
        """
        Change a task's budget.

        Raises:
            TaskNotFoundError: Unknown task.
            ImmutabilityViolationError: Billing has already started.
        """
        if total_budget < 0:
            raise ValidationError("total_budget", "must be non-negative")

        with LogContext.bind(actor_id=actor_id):
            try:
                # Ledger writes bypass the identity map; read the current row
                task = refetch(self._session, TaskModel, task_id)
                if task is None:
                    raise TaskNotFoundError(str(task_id))
                task.total_budget = total_budget
                task.updated_by_id = actor_id
                self._session.flush()
                self._session.commit()
                logger.info("task_budget_updated", extra={
                    "task_id": str(task_id),
                    "total_budget": str(total_budget),
                })
                return task.to_dto()
            except Exception:
                self._session.rollback()
                raise

    # =========================================================================
    # Time entries and expenses
    # =========================================================================

    def record_time_entry(
        self,
        project_id: UUID,
        entry_date: date,
        hours: Decimal,
        hourly_rate: Decimal,
        actor_id: UUID,
        description: str = "",
        task_id: UUID | None = None,
        approval_status: ApprovalStatus = ApprovalStatus.PENDING,
    ) -> TimeEntry:
        if hours < 0:
            raise ValidationError("hours", "must be non-negative")
        if hourly_rate < 0:
            raise ValidationError("hourly_rate", "must be non-negative")
        try:
            entry = TimeEntryModel(
                project_id=project_id,
                task_id=task_id,
                entry_date=entry_date,
                hours=hours,
                hourly_rate=hourly_rate,
                description=description,
                approval_status=ApprovalStatus(approval_status).value,
                created_by_id=actor_id,
            )
            self._session.add(entry)
            self._session.flush()
            self._session.commit()
            return entry.to_dto()
        except Exception:
            self._session.rollback()
            raise

    def record_expense(
        self,
        company_id: UUID,
        expense_date: date,
        description: str,
        amount: Decimal,
        actor_id: UUID,
        project_id: UUID | None = None,
        category: str | None = None,
        billable: bool = False,
        approval_status: ApprovalStatus = ApprovalStatus.PENDING,
    ) -> Expense:
        if amount < 0:
            raise ValidationError("amount", "must be non-negative")
        try:
            expense = ExpenseModel(
                company_id=company_id,
                project_id=project_id,
                expense_date=expense_date,
                description=description,
                amount=amount,
                category=category,
                billable=billable,
                approval_status=ApprovalStatus(approval_status).value,
                created_by_id=actor_id,
            )
            self._session.add(expense)
            self._session.flush()
            self._session.commit()
            return expense.to_dto()
        except Exception:
            self._session.rollback()
            raise

    def set_time_entry_approval(
        self,
        entry_id: UUID,
        status: ApprovalStatus,
        actor_id: UUID,
    ) -> TimeEntry:
        try:
            entry = self._session.get(TimeEntryModel, entry_id)
            if entry is None:
                raise ValidationError("time_entry_id", f"time entry {entry_id} not found")
            entry.approval_status = ApprovalStatus(status).value
            entry.updated_by_id = actor_id
            self._session.commit()
            return entry.to_dto()
        except Exception:
            self._session.rollback()
            raise

    def set_expense_approval(
        self,
        expense_id: UUID,
        status: ApprovalStatus,
        actor_id: UUID,
    ) -> Expense:
        try:
            expense = self._session.get(ExpenseModel, expense_id)
            if expense is None:
                raise ValidationError("expense_id", f"expense {expense_id} not found")
            expense.approval_status = ApprovalStatus(status).value
            expense.updated_by_id = actor_id
            self._session.commit()
            return expense.to_dto()
        except Exception:
            self._session.rollback()
            raise
