"""
Projects Domain Models (``billing_modules.projects.models``).

Responsibility
--------------
Frozen dataclass value objects for the work being billed: clients,
projects, tasks with their cumulative billed state, time entries and
expenses.

Architecture position
---------------------
**Modules layer** -- pure data definitions with ZERO I/O.  Returned by
``ProjectService`` and by ``to_dto()`` on the ORM models.

Invariants enforced
-------------------
* All models are ``frozen=True`` (immutable after construction).
* All monetary fields and percentages use ``Decimal`` -- NEVER ``float``.
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from enum import Enum
from uuid import UUID


class ProjectStatus(str, Enum):
    ACTIVE = "active"
    ON_HOLD = "on_hold"
    COMPLETED = "completed"


class ApprovalStatus(str, Enum):
    """Approval state shared by time entries and expenses."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class BillingUnit(str, Enum):
    HOURS = "hours"
    UNIT = "unit"


@dataclass(frozen=True)
class Client:
    id: UUID
    company_id: UUID
    name: str
    email: str | None = None


@dataclass(frozen=True)
class Project:
    id: UUID
    company_id: UUID
    client_id: UUID
    name: str
    status: ProjectStatus = ProjectStatus.ACTIVE


@dataclass(frozen=True)
class Task:
    """A budgeted unit of work and how much of it has been billed."""
    id: UUID
    project_id: UUID
    name: str
    total_budget: Decimal
    billed_percentage: Decimal = Decimal("0")
    billed_amount: Decimal = Decimal("0")
    estimated_hours: Decimal | None = None
    estimated_fees: Decimal | None = None
    billing_unit: BillingUnit = BillingUnit.HOURS

    @property
    def remaining_percentage(self) -> Decimal:
        return Decimal("100") - self.billed_percentage


@dataclass(frozen=True)
class TimeEntry:
    id: UUID
    project_id: UUID
    entry_date: date
    hours: Decimal
    hourly_rate: Decimal
    description: str = ""
    task_id: UUID | None = None
    approval_status: ApprovalStatus = ApprovalStatus.PENDING
    invoice_id: UUID | None = None  # set when billed on a time & materials invoice


@dataclass(frozen=True)
class Expense:
    id: UUID
    company_id: UUID
    expense_date: date
    description: str
    amount: Decimal
    category: str | None = None
    project_id: UUID | None = None
    billable: bool = False
    approval_status: ApprovalStatus = ApprovalStatus.PENDING
    invoice_id: UUID | None = None
