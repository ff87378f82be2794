"""
Projects Module.

Clients, projects, budgeted tasks, time entries and expenses: the work
that invoices bill.
"""

from billing_modules.projects.models import (
    ApprovalStatus,
    BillingUnit,
    Client,
    Expense,
    Project,
    ProjectStatus,
    Task,
    TimeEntry,
)
from billing_modules.projects.service import ProjectService

__all__ = [
    "ApprovalStatus",
    "BillingUnit",
    "Client",
    "Expense",
    "Project",
    "ProjectService",
    "ProjectStatus",
    "Task",
    "TimeEntry",
]
