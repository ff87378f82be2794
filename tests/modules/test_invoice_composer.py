"""
InvoiceComposer tests against a real session.

Every public composer call commits or rolls back on its own, so the
assertions read state back through fresh queries.
"""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from billing_engines.invoice_calculator import ManualLineInput, TaskSelection
from billing_engines.payment_allocation import InvoiceStatus
from billing_engines.task_billing import BillingStrategy
from billing_kernel.db.guarded import refetch
from billing_kernel.exceptions import (
    FullyBilledError,
    InvalidInvoiceTransitionError,
    InvoiceNotFoundError,
    TaskNotFoundError,
    ValidationError,
)
from billing_modules.invoicing.config import InvoicingConfig
from billing_modules.invoicing.models import BillingRequest, LineItemEdit
from billing_modules.invoicing.orm import InvoiceModel
from billing_modules.invoicing.service import InvoiceComposer
from billing_modules.projects.models import ApprovalStatus
from billing_modules.projects.orm import ExpenseModel, TimeEntryModel
from billing_modules.settings.orm import InvoiceTermModel
from billing_modules.settings.service import SettingsService


@pytest.fixture
def status_changes():
    return []


@pytest.fixture
def composer(session, clock, no_wait_retry, status_changes):
    return InvoiceComposer(
        session,
        clock=clock,
        retry_policy=no_wait_retry,
        on_status_change=status_changes.append,
    )


@pytest.fixture
def request_for(company_id, client, project):
    """Build a BillingRequest for the default client and project."""

    def _request(strategy, *selections, **kwargs):
        kwargs.setdefault("project_id", project.id)
        return BillingRequest(
            company_id=company_id,
            client_id=client.id,
            strategy=strategy,
            selections=tuple(selections),
            **kwargs,
        )

    return _request


def _invoice_count(session) -> int:
    return session.execute(select(func.count()).select_from(InvoiceModel)).scalar_one()


# =============================================================================
# Creation
# =============================================================================


class TestMilestoneBilling:

    def test_bills_whole_task(self, composer, request_for, make_task, projects, actor_id, captured_logs):
        task = make_task("10000", estimated_hours=Decimal("80"), estimated_fees=Decimal("10000"))

        invoice = composer.create_invoice(
            request_for(BillingStrategy.MILESTONE, TaskSelection(task.id)), actor_id,
        )

        assert invoice.invoice_number == "INV-000001"
        assert invoice.status == InvoiceStatus.DRAFT
        assert invoice.calculator_type == BillingStrategy.MILESTONE
        assert invoice.total == Decimal("10000")
        assert invoice.amount_paid == 0
        line = invoice.line_items[0]
        assert line.task_id == task.id
        assert line.billed_percentage == Decimal("100")
        assert line.unit_price == Decimal("125")
        assert projects.get_task(task.id).billed_percentage == Decimal("100")
        assert any(r["message"] == "invoice_created" for r in captured_logs())

    def test_fully_billed_task_rejected(self, composer, request_for, make_task, actor_id):
        task = make_task("10000")
        composer.create_invoice(request_for(BillingStrategy.MILESTONE, TaskSelection(task.id)), actor_id)

        with pytest.raises(FullyBilledError):
            composer.create_invoice(
                request_for(BillingStrategy.MILESTONE, TaskSelection(task.id)), actor_id,
            )

    def test_default_due_date_from_config(self, composer, request_for, make_task, actor_id):
        task = make_task("100")
        invoice = composer.create_invoice(
            request_for(BillingStrategy.MILESTONE, TaskSelection(task.id)), actor_id,
        )
        assert invoice.due_date == date(2024, 4, 14)

    def test_default_invoice_term_sets_due_date(
        self, session, composer, request_for, make_task, company_id, actor_id,
    ):
        SettingsService(session, InvoiceTermModel).create(
            company_id, actor_id, name="Net 15", days_until_due=15, is_default=True,
        )
        task = make_task("100")
        invoice = composer.create_invoice(
            request_for(BillingStrategy.MILESTONE, TaskSelection(task.id)), actor_id,
        )
        assert invoice.due_date == date(2024, 3, 30)

    def test_explicit_due_date_wins(self, composer, request_for, make_task, actor_id):
        task = make_task("100")
        invoice = composer.create_invoice(
            request_for(
                BillingStrategy.MILESTONE, TaskSelection(task.id), due_date=date(2024, 6, 1),
            ),
            actor_id,
        )
        assert invoice.due_date == date(2024, 6, 1)


class TestPercentageBilling:

    def test_progressive_invoices_clamp_at_remaining(self, composer, request_for, make_task, projects, actor_id):
        task = make_task("8000")

        first = composer.create_invoice(
            request_for(BillingStrategy.PERCENTAGE, TaskSelection(task.id, Decimal("25"))), actor_id,
        )
        second = composer.create_invoice(
            request_for(BillingStrategy.PERCENTAGE, TaskSelection(task.id, Decimal("50"))), actor_id,
        )
        third = composer.create_invoice(
            request_for(BillingStrategy.PERCENTAGE, TaskSelection(task.id, Decimal("50"))), actor_id,
        )

        assert [inv.total for inv in (first, second, third)] == [
            Decimal("2000"), Decimal("4000"), Decimal("2000"),
        ]
        assert third.line_items[0].billed_percentage == Decimal("25")
        assert [inv.invoice_number for inv in (first, second, third)] == [
            "INV-000001", "INV-000002", "INV-000003",
        ]
        state = projects.get_task(task.id)
        assert state.billed_percentage == Decimal("100")
        assert state.billed_amount == Decimal("8000")

    def test_tax_added_to_total(self, composer, request_for, make_task, actor_id):
        task = make_task("1000")
        invoice = composer.create_invoice(
            request_for(
                BillingStrategy.PERCENTAGE,
                TaskSelection(task.id, Decimal("50")),
                tax_amount=Decimal("40"),
            ),
            actor_id,
        )
        assert invoice.subtotal == Decimal("500")
        assert invoice.total == Decimal("540")

    def test_missing_percentage_rejected(self, composer, request_for, make_task, actor_id):
        task = make_task("1000")
        with pytest.raises(ValidationError):
            composer.create_invoice(
                request_for(BillingStrategy.PERCENTAGE, TaskSelection(task.id)), actor_id,
            )


class TestAtomicity:

    def test_exhausted_task_rolls_back_whole_invoice(
        self, session, composer, request_for, make_task, projects, actor_id, captured_logs,
    ):
        fresh = make_task("5000")
        exhausted = make_task("3000")
        composer.create_invoice(
            request_for(BillingStrategy.MILESTONE, TaskSelection(exhausted.id)), actor_id,
        )

        with pytest.raises(FullyBilledError):
            composer.create_invoice(
                request_for(
                    BillingStrategy.MILESTONE,
                    TaskSelection(fresh.id),
                    TaskSelection(exhausted.id),
                ),
                actor_id,
            )

        assert _invoice_count(session) == 1
        assert projects.get_task(fresh.id).billed_percentage == 0
        assert any(r["message"] == "invoice_creation_rolled_back" for r in captured_logs())

    def test_duplicate_task_rejected_before_billing(
        self, session, composer, request_for, make_task, projects, actor_id,
    ):
        task = make_task("1000")
        with pytest.raises(ValidationError) as exc_info:
            composer.create_invoice(
                request_for(
                    BillingStrategy.PERCENTAGE,
                    TaskSelection(task.id, Decimal("10")),
                    TaskSelection(task.id, Decimal("20")),
                ),
                actor_id,
            )
        assert exc_info.value.field == "selections"
        assert _invoice_count(session) == 0
        assert projects.get_task(task.id).billed_percentage == 0

    def test_task_from_other_project_rejected(
        self, composer, request_for, projects, company_id, client, actor_id,
    ):
        other = projects.create_project(company_id, client.id, "Warehouse", actor_id)
        foreign = projects.create_task(other.id, "Survey", actor_id, total_budget=Decimal("500"))

        with pytest.raises(ValidationError):
            composer.create_invoice(
                request_for(BillingStrategy.MILESTONE, TaskSelection(foreign.id)), actor_id,
            )
        assert projects.get_task(foreign.id).billed_percentage == 0

    def test_unknown_task(self, composer, request_for, project, actor_id):
        with pytest.raises(TaskNotFoundError):
            composer.create_invoice(
                request_for(BillingStrategy.MILESTONE, TaskSelection(uuid4())), actor_id,
            )

    def test_unknown_client(self, composer, company_id, actor_id):
        with pytest.raises(ValidationError) as exc_info:
            composer.create_invoice(
                BillingRequest(
                    company_id=company_id,
                    client_id=uuid4(),
                    strategy=BillingStrategy.MANUAL,
                    subtotal=Decimal("100"),
                ),
                actor_id,
            )
        assert exc_info.value.field == "client_id"

    def test_disabled_strategy(self, session, clock, request_for, actor_id):
        composer = InvoiceComposer(
            session,
            clock=clock,
            config=InvoicingConfig(enabled_calculators=(BillingStrategy.MILESTONE,)),
        )
        with pytest.raises(ValidationError) as exc_info:
            composer.create_invoice(
                request_for(BillingStrategy.MANUAL, subtotal=Decimal("100")), actor_id,
            )
        assert exc_info.value.field == "strategy"


class TestFixedFeeBilling:

    def test_bills_remaining_budget_of_every_project_task(
        self, composer, request_for, make_task, projects, actor_id,
    ):
        design = make_task("5000")
        permits = make_task("3000")
        composer.create_invoice(
            request_for(BillingStrategy.PERCENTAGE, TaskSelection(design.id, Decimal("20"))),
            actor_id,
        )

        invoice = composer.create_invoice(request_for(BillingStrategy.FIXED_FEE), actor_id)

        assert sorted(line.amount for line in invoice.line_items) == [
            Decimal("3000"), Decimal("4000"),
        ]
        assert all(line.quantity == 1 for line in invoice.line_items)
        assert invoice.total == Decimal("7000")
        assert projects.get_task(design.id).billed_amount == Decimal("5000")
        assert projects.get_task(permits.id).billed_percentage == Decimal("100")

    def test_nothing_left(self, composer, request_for, make_task, actor_id):
        make_task("100")
        composer.create_invoice(request_for(BillingStrategy.FIXED_FEE), actor_id)
        with pytest.raises(ValidationError):
            composer.create_invoice(request_for(BillingStrategy.FIXED_FEE), actor_id)


class TestManualBilling:

    def test_subtotal_only(self, composer, request_for, actor_id):
        invoice = composer.create_invoice(
            request_for(
                BillingStrategy.MANUAL, subtotal=Decimal("1200"), tax_amount=Decimal("96"),
            ),
            actor_id,
        )
        assert invoice.line_items == ()
        assert invoice.total == Decimal("1296")

    def test_lines(self, composer, request_for, actor_id):
        invoice = composer.create_invoice(
            request_for(
                BillingStrategy.MANUAL,
                manual_lines=(
                    ManualLineInput("Consulting", Decimal("2"), Decimal("150")),
                    ManualLineInput("Printing", Decimal("1"), Decimal("35.50")),
                ),
            ),
            actor_id,
        )
        assert [line.line_number for line in invoice.line_items] == [1, 2]
        assert invoice.subtotal == Decimal("335.50")

    def test_empty_manual_rejected(self, composer, request_for, actor_id):
        with pytest.raises(ValidationError):
            composer.create_invoice(request_for(BillingStrategy.MANUAL), actor_id)


class TestTimeAndMaterials:

    @pytest.fixture
    def billables(self, projects, project, company_id, actor_id):
        entry = projects.record_time_entry(
            project.id, date(2024, 3, 1), Decimal("2.5"), Decimal("150"), actor_id,
            description="Site visit", approval_status=ApprovalStatus.APPROVED,
        )
        pending = projects.record_time_entry(
            project.id, date(2024, 3, 2), Decimal("4"), Decimal("150"), actor_id,
        )
        expense = projects.record_expense(
            company_id, date(2024, 3, 3), "Plotter prints", Decimal("42.50"), actor_id,
            project_id=project.id, billable=True, approval_status=ApprovalStatus.APPROVED,
        )
        return entry, pending, expense

    def test_bills_approved_entries_and_expenses(self, session, composer, request_for, billables, actor_id):
        entry, pending, expense = billables

        invoice = composer.create_invoice(request_for(BillingStrategy.TIME_MATERIALS), actor_id)

        assert invoice.total == Decimal("417.50")
        assert [line.description for line in invoice.line_items] == [
            "Site visit (2024-03-01)", "Plotter prints",
        ]
        assert refetch(session, TimeEntryModel, entry.id).invoice_id == invoice.id
        assert refetch(session, TimeEntryModel, pending.id).invoice_id is None
        assert refetch(session, ExpenseModel, expense.id).invoice_id == invoice.id

    def test_entries_billed_once(self, composer, request_for, billables, actor_id):
        composer.create_invoice(request_for(BillingStrategy.TIME_MATERIALS), actor_id)
        with pytest.raises(ValidationError):
            composer.create_invoice(request_for(BillingStrategy.TIME_MATERIALS), actor_id)

    def test_delete_releases_entries(self, session, composer, request_for, billables, actor_id):
        entry, _, expense = billables
        invoice = composer.create_invoice(request_for(BillingStrategy.TIME_MATERIALS), actor_id)

        composer.delete_invoice(invoice.id, actor_id)

        assert refetch(session, TimeEntryModel, entry.id).invoice_id is None
        assert refetch(session, ExpenseModel, expense.id).invoice_id is None

    def test_removing_lines_releases_entries(self, session, composer, request_for, billables, actor_id):
        entry, _, expense = billables
        invoice = composer.create_invoice(request_for(BillingStrategy.TIME_MATERIALS), actor_id)
        editor_id = uuid4()

        composer.update_line_items(
            invoice.id, editor_id, removals=tuple(line.id for line in invoice.line_items),
        )

        released_entry = refetch(session, TimeEntryModel, entry.id)
        assert released_entry.invoice_id is None
        assert released_entry.updated_by_id == editor_id
        released_expense = refetch(session, ExpenseModel, expense.id)
        assert released_expense.invoice_id is None
        assert released_expense.updated_by_id == editor_id

    def test_needs_project(self, composer, request_for, actor_id):
        with pytest.raises(ValidationError):
            composer.create_invoice(
                request_for(BillingStrategy.TIME_MATERIALS, project_id=None), actor_id,
            )


class TestNumbering:

    def test_numbers_are_per_company(self, composer, request_for, projects, actor_id):
        composer.create_invoice(request_for(BillingStrategy.MANUAL, subtotal=Decimal("10")), actor_id)

        other_company = uuid4()
        other_client = projects.create_client(other_company, "Bayside Dental", actor_id)
        invoice = composer.create_invoice(
            BillingRequest(
                company_id=other_company,
                client_id=other_client.id,
                strategy=BillingStrategy.MANUAL,
                subtotal=Decimal("10"),
            ),
            actor_id,
        )
        assert invoice.invoice_number == "INV-000001"

    def test_configured_prefix(self, session, clock, request_for, actor_id):
        composer = InvoiceComposer(
            session, clock=clock, config=InvoicingConfig(number_prefix="HB-", number_padding=4),
        )
        invoice = composer.create_invoice(
            request_for(BillingStrategy.MANUAL, subtotal=Decimal("10")), actor_id,
        )
        assert invoice.invoice_number == "HB-0001"


# =============================================================================
# Editing and deletion
# =============================================================================


class TestLineItemEditing:

    @pytest.fixture
    def percentage_invoice(self, composer, request_for, make_task, actor_id):
        task = make_task("8000")
        invoice = composer.create_invoice(
            request_for(BillingStrategy.PERCENTAGE, TaskSelection(task.id, Decimal("25"))), actor_id,
        )
        return task, invoice

    def test_edit_add_and_recompute(self, composer, percentage_invoice, projects, actor_id):
        task, invoice = percentage_invoice
        line = invoice.line_items[0]

        updated = composer.update_line_items(
            invoice.id,
            actor_id,
            edits=(LineItemEdit(line.id, description="Construction documents, 25%"),),
            additions=(ManualLineInput("Reimbursable travel", Decimal("1"), Decimal("500")),),
        )

        assert updated.line_items[0].description == "Construction documents, 25%"
        assert updated.line_items[1].line_number == 2
        assert updated.subtotal == Decimal("2500")
        assert updated.total == Decimal("2500")
        assert projects.get_task(task.id).billed_percentage == Decimal("25")

    def test_price_edit_rounds_amount(self, composer, percentage_invoice, actor_id):
        _, invoice = percentage_invoice
        line = invoice.line_items[0]
        updated = composer.update_line_items(
            invoice.id, actor_id,
            edits=(LineItemEdit(line.id, quantity=Decimal("3"), unit_price=Decimal("33.335")),),
        )
        assert updated.line_items[0].amount == Decimal("100.01")
        assert updated.total == Decimal("100.01")

    def test_remove_task_line_reverses_ledger(self, composer, percentage_invoice, projects, actor_id):
        task, invoice = percentage_invoice

        updated = composer.update_line_items(
            invoice.id, actor_id, removals=(invoice.line_items[0].id,),
        )

        assert updated.line_items == ()
        assert updated.total == 0
        state = projects.get_task(task.id)
        assert state.billed_percentage == 0
        assert state.billed_amount == 0

    def test_unknown_line_rejected(self, composer, percentage_invoice, actor_id):
        _, invoice = percentage_invoice
        with pytest.raises(ValidationError):
            composer.update_line_items(invoice.id, actor_id, removals=(uuid4(),))
        assert composer.get_invoice(invoice.id).total == Decimal("2000")

    def test_reopen_recomputes_totals(self, composer, percentage_invoice, actor_id):
        _, invoice = percentage_invoice
        reopened = composer.reopen_invoice(invoice.id, actor_id)
        assert reopened.subtotal == Decimal("2000")
        assert reopened.total == invoice.total


class TestDeletion:

    def test_delete_reverses_ledger(self, composer, request_for, make_task, projects, actor_id):
        task = make_task("8000")
        composer.create_invoice(
            request_for(BillingStrategy.PERCENTAGE, TaskSelection(task.id, Decimal("25"))), actor_id,
        )
        second = composer.create_invoice(
            request_for(BillingStrategy.PERCENTAGE, TaskSelection(task.id, Decimal("50"))), actor_id,
        )

        composer.delete_invoice(second.id, actor_id)

        state = projects.get_task(task.id)
        assert state.billed_percentage == Decimal("25")
        assert state.billed_amount == Decimal("2000")
        with pytest.raises(InvoiceNotFoundError):
            composer.get_invoice(second.id)

    def test_delete_fixed_fee_reverses_by_amount(self, composer, request_for, make_task, projects, actor_id):
        task = make_task("4000")
        invoice = composer.create_invoice(request_for(BillingStrategy.FIXED_FEE), actor_id)

        composer.delete_invoice(invoice.id, actor_id)

        assert projects.get_task(task.id).billed_percentage == 0

    def test_delete_after_price_edit_reverses_committed_share(
        self, composer, request_for, make_task, projects, actor_id,
    ):
        task = make_task("1000")
        first = composer.create_invoice(
            request_for(BillingStrategy.PERCENTAGE, TaskSelection(task.id, Decimal("50"))), actor_id,
        )
        composer.create_invoice(
            request_for(BillingStrategy.PERCENTAGE, TaskSelection(task.id, Decimal("25"))), actor_id,
        )
        line = first.line_items[0]
        assert line.billed_amount == Decimal("500")
        composer.update_line_items(
            first.id, actor_id, edits=(LineItemEdit(line.id, unit_price=Decimal("250")),),
        )

        composer.delete_invoice(first.id, actor_id)

        state = projects.get_task(task.id)
        assert state.billed_percentage == Decimal("25")
        assert state.billed_amount == Decimal("250")

    def test_delete_edited_fixed_fee_reverses_committed_amount(
        self, composer, request_for, make_task, projects, actor_id,
    ):
        task = make_task("4000")
        invoice = composer.create_invoice(request_for(BillingStrategy.FIXED_FEE), actor_id)
        line = invoice.line_items[0]
        assert line.billed_amount == Decimal("4000")
        composer.update_line_items(
            invoice.id, actor_id, edits=(LineItemEdit(line.id, unit_price=Decimal("1000")),),
        )

        composer.delete_invoice(invoice.id, actor_id)

        state = projects.get_task(task.id)
        assert state.billed_percentage == 0
        assert state.billed_amount == 0

    def test_unknown_invoice(self, composer, engine, actor_id):
        with pytest.raises(InvoiceNotFoundError):
            composer.delete_invoice(uuid4(), actor_id)


# =============================================================================
# Status
# =============================================================================


class TestStatusTransitions:

    @pytest.fixture
    def draft(self, composer, request_for, actor_id):
        return composer.create_invoice(
            request_for(BillingStrategy.MANUAL, subtotal=Decimal("900")), actor_id,
        )

    def test_mark_sent(self, composer, draft, actor_id, status_changes):
        sent = composer.mark_sent(draft.id, actor_id)

        assert sent.status == InvoiceStatus.SENT
        assert sent.sent_date == date(2024, 3, 15)
        assert len(status_changes) == 1
        change = status_changes[0]
        assert (change.from_status, change.to_status) == (InvoiceStatus.DRAFT, InvoiceStatus.SENT)
        assert change.invoice_number == draft.invoice_number

    def test_sent_twice_rejected(self, composer, draft, actor_id):
        composer.mark_sent(draft.id, actor_id)
        with pytest.raises(InvalidInvoiceTransitionError):
            composer.mark_sent(draft.id, actor_id)

    def test_refresh_overdue(self, composer, draft, actor_id, status_changes):
        composer.mark_sent(draft.id, actor_id)

        changed = composer.refresh_overdue(actor_id, as_of=date(2024, 5, 1))

        assert changed == [draft.id]
        assert composer.get_invoice(draft.id).status == InvoiceStatus.OVERDUE
        assert status_changes[-1].to_status == InvoiceStatus.OVERDUE
        assert composer.refresh_overdue(actor_id, as_of=date(2024, 5, 2)) == []

    def test_not_yet_due_stays_sent(self, composer, draft, actor_id):
        composer.mark_sent(draft.id, actor_id)
        assert composer.refresh_overdue(actor_id, as_of=date(2024, 4, 14)) == []

    def test_drafts_never_overdue(self, composer, draft, actor_id):
        assert composer.refresh_overdue(actor_id, as_of=date(2025, 1, 1)) == []

    def test_overdue_may_be_resent(self, composer, draft, actor_id):
        composer.mark_sent(draft.id, actor_id)
        composer.refresh_overdue(actor_id, as_of=date(2024, 5, 1))
        assert composer.mark_sent(draft.id, actor_id).status == InvoiceStatus.SENT

    def test_failing_callback_does_not_undo(self, session, clock, draft, actor_id, captured_logs):
        def _explode(change):
            raise RuntimeError("mailer down")

        composer = InvoiceComposer(session, clock=clock, on_status_change=_explode)
        sent = composer.mark_sent(draft.id, actor_id)

        assert sent.status == InvoiceStatus.SENT
        assert composer.get_invoice(draft.id).status == InvoiceStatus.SENT
        assert any(r["message"] == "status_change_callback_failed" for r in captured_logs())
