"""
Immutability listener tests.

Invoice line items keep a snapshot of the task they billed, and a task's
budget is frozen once billing has started.
"""

from decimal import Decimal

import pytest

from billing_engines.invoice_calculator import TaskSelection
from billing_engines.task_billing import BillingStrategy
from billing_kernel.db.guarded import refetch
from billing_kernel.exceptions import ImmutabilityViolationError
from billing_modules.invoicing.models import BillingRequest
from billing_modules.invoicing.orm import InvoiceLineItemModel
from billing_modules.invoicing.service import InvoiceComposer


@pytest.fixture
def billed_invoice(session, clock, company_id, client, project, make_task, actor_id):
    task = make_task("8000")
    invoice = InvoiceComposer(session, clock=clock).create_invoice(
        BillingRequest(
            company_id=company_id,
            client_id=client.id,
            project_id=project.id,
            strategy=BillingStrategy.PERCENTAGE,
            selections=(TaskSelection(task.id, Decimal("25")),),
        ),
        actor_id,
    )
    return task, invoice


class TestTaskBudget:

    def test_budget_editable_before_billing(self, projects, make_task, actor_id):
        task = make_task("1000")
        updated = projects.update_task_budget(task.id, Decimal("1500"), actor_id)
        assert updated.total_budget == Decimal("1500")

    def test_budget_frozen_after_billing(self, projects, billed_invoice, actor_id):
        task, _ = billed_invoice
        with pytest.raises(ImmutabilityViolationError) as exc_info:
            projects.update_task_budget(task.id, Decimal("9000"), actor_id)
        assert exc_info.value.entity_type == "Task"
        assert projects.get_task(task.id).total_budget == Decimal("8000")


class TestLineItemSnapshot:

    @pytest.mark.parametrize("column", ["billed_percentage", "billed_amount", "task_total_budget"])
    def test_snapshot_columns_cannot_change(self, session, billed_invoice, column):
        _, invoice = billed_invoice
        line = refetch(session, InvoiceLineItemModel, invoice.line_items[0].id)
        setattr(line, column, Decimal("50"))
        with pytest.raises(ImmutabilityViolationError) as exc_info:
            session.flush()
        assert exc_info.value.entity_type == "InvoiceLineItem"
        session.rollback()

    def test_description_may_change(self, session, billed_invoice, actor_id):
        _, invoice = billed_invoice
        line = refetch(session, InvoiceLineItemModel, invoice.line_items[0].id)
        line.description = "Design development, phase 1"
        line.updated_by_id = actor_id
        session.flush()
        session.commit()
        assert refetch(session, InvoiceLineItemModel, line.id).description.startswith("Design")
