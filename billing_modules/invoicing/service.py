"""
Invoicing Module Service - composes invoices over the task billing ledger.

Thin glue layer that:
1. Validates the billing request (strategy enabled, client exists,
   selections well formed) before touching any task.
2. Commits each selected task through the TaskBillingLedger.
3. Builds line items and totals with billing_engines.invoice_calculator.
4. Numbers the invoice from a locked sequence counter.

The invoice row, its line items, time-entry/expense back-references and
every ledger update are ONE transaction.  This service owns the boundary:
it commits on success and rolls back on any failure, so a concurrent
biller that exhausts a task midway leaves no partial invoice and no
ledger change behind.

Usage:
    composer = InvoiceComposer(session, clock=clock)
    invoice = composer.create_invoice(
        BillingRequest(
            company_id=company_id,
            client_id=client_id,
            project_id=project_id,
            strategy=BillingStrategy.MILESTONE,
            selections=(TaskSelection(task_id=task_id),),
        ),
        actor_id=actor_id,
    )
"""

from __future__ import annotations

from datetime import date, timedelta
from decimal import Decimal
from typing import Callable, Sequence
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from billing_engines.invoice_calculator import (
    ExpenseSource,
    LineItemDraft,
    ManualLineInput,
    TaskLineSource,
    TimeEntrySource,
    build_expense_line,
    build_fixed_fee_line,
    build_manual_line,
    build_task_line,
    build_time_entry_line,
    compute_totals,
    line_amount,
    validate_task_selections,
)
from billing_engines.payment_allocation import DEFAULT_TOLERANCE, InvoiceStatus
from billing_engines.task_billing import BillingStrategy
from billing_kernel.db.guarded import guarded_update, refetch
from billing_kernel.db.types import HUNDRED, ZERO, round_money, to_decimal
from billing_kernel.domain.clock import Clock, SystemClock
from billing_kernel.exceptions import (
    InvalidInvoiceTransitionError,
    InvoiceNotFoundError,
    TaskNotFoundError,
    ValidationError,
)
from billing_kernel.logging_config import LogContext, get_logger
from billing_kernel.services.retry_service import RetryPolicy
from billing_kernel.services.sequence_service import (
    SequenceService,
    format_sequence_number,
    invoice_sequence_name,
)
from billing_modules.invoicing.config import InvoicingConfig
from billing_modules.invoicing.ledger import TaskBillingLedger, task_state
from billing_modules.invoicing.models import (
    BillingRequest,
    Invoice,
    LineItemEdit,
    StatusChange,
)
from billing_modules.invoicing.orm import InvoiceLineItemModel, InvoiceModel
from billing_modules.projects.models import ApprovalStatus
from billing_modules.projects.orm import (
    ClientModel,
    ExpenseModel,
    ProjectModel,
    TaskModel,
    TimeEntryModel,
)
from billing_modules.settings.service import default_invoice_term

logger = get_logger("modules.invoicing.service")

StatusCallback = Callable[[StatusChange], None]


def notify_status_changes(
    callback: StatusCallback | None,
    changes: Sequence[StatusChange],
) -> None:
    """Deliver committed status changes; a failing callback never undoes state."""
    if callback is None:
        return
    for change in changes:
        try:
            callback(change)
        except Exception:
            logger.exception("status_change_callback_failed", extra={
                "invoice_id": str(change.invoice_id),
                "to_status": change.to_status.value,
            })


def _task_source(task: TaskModel) -> TaskLineSource:
    return TaskLineSource(
        task_id=task.id,
        name=task.name,
        total_budget=to_decimal(task.total_budget),
        estimated_hours=task.estimated_hours,
        estimated_fees=task.estimated_fees,
        billing_unit=task.billing_unit,
    )


class InvoiceComposer:
    """
    Creates, edits, sends and deletes invoices.

    Engine composition:
    - TaskBillingLedger: guarded task billing commits and reversals
    - invoice_calculator: line items and totals
    - SequenceService: invoice numbers

    Transaction boundary: this service commits on success, rolls back on failure.
    Transient store failures are retried around the whole unit of work.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        config: InvoicingConfig | None = None,
        retry_policy: RetryPolicy | None = None,
        on_status_change: StatusCallback | None = None,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._config = config or InvoicingConfig()
        self._retry = retry_policy or RetryPolicy()
        self._on_status_change = on_status_change
        self._ledger = TaskBillingLedger(session, self._config.max_cas_attempts)
        self._sequences = SequenceService(session)

    # =========================================================================
    # Creation
    # =========================================================================

    def create_invoice(self, request: BillingRequest, actor_id: UUID) -> Invoice:
        """
        Build and persist one invoice.

        Raises:
            ValidationError: Strategy not enabled, unknown client or
                project, no selections or no billable lines, bad manual
                subtotal.
            FullyBilledError: A selected task has nothing left to bill.
            TaskNotFoundError: A selected task does not exist.
        """
        with LogContext.bind(actor_id=actor_id, company_id=request.company_id):
            return self._retry.run(
                lambda: self._create_invoice(request, actor_id),
                operation="create_invoice",
            )

    def _create_invoice(self, request: BillingRequest, actor_id: UUID) -> Invoice:
        try:
            invoice = self._compose(request, actor_id)
            self._session.commit()
        except Exception:
            self._session.rollback()
            logger.warning("invoice_creation_rolled_back", extra={
                "client_id": str(request.client_id),
                "strategy": request.strategy.value,
            }, exc_info=True)
            raise

        logger.info("invoice_created", extra={
            "invoice_id": str(invoice.id),
            "invoice_number": invoice.invoice_number,
            "strategy": request.strategy.value,
            "line_count": len(invoice.line_items),
            "total": str(invoice.total),
        })
        return invoice.to_dto()

    def _validate_request(self, request: BillingRequest) -> None:
        if not self._config.is_enabled(request.strategy):
            raise ValidationError(
                "strategy", f"calculator '{request.strategy.value}' is not enabled"
            )
        client = self._session.get(ClientModel, request.client_id)
        if client is None or client.company_id != request.company_id:
            raise ValidationError("client_id", f"client {request.client_id} not found")
        if request.project_id is not None:
            project = self._session.get(ProjectModel, request.project_id)
            if project is None or project.client_id != request.client_id:
                raise ValidationError(
                    "project_id", f"project {request.project_id} not found for client"
                )

    def _compose(self, request: BillingRequest, actor_id: UUID) -> InvoiceModel:
        self._validate_request(request)

        strategy = request.strategy
        subtotal_override = None
        back_references: tuple[list[TimeEntryModel], list[ExpenseModel]] = ([], [])

        if strategy == BillingStrategy.MANUAL:
            drafts = [build_manual_line(line) for line in request.manual_lines]
            if request.subtotal is None and not drafts:
                raise ValidationError(
                    "subtotal", "manual billing needs a subtotal or at least one line"
                )
            subtotal_override = request.subtotal
        elif strategy in (BillingStrategy.MILESTONE, BillingStrategy.PERCENTAGE):
            selections = validate_task_selections(request.selections, strategy)
            self._check_task_projects([s.task_id for s in selections], request.project_id)
            drafts = [
                self._bill_task(s.task_id, strategy, actor_id, s.percentage)
                for s in selections
            ]
        elif strategy == BillingStrategy.FIXED_FEE:
            task_ids = self._fixed_fee_task_ids(request)
            drafts = [
                self._bill_task(task_id, strategy, actor_id)
                for task_id in task_ids
            ]
        else:
            drafts, back_references = self._time_and_materials_lines(request)

        totals = compute_totals(
            amounts=[d.amount for d in drafts],
            tax_amount=request.tax_amount,
            subtotal_override=subtotal_override,
        )
        if totals.subtotal <= 0 and strategy == BillingStrategy.MANUAL:
            raise ValidationError("subtotal", "must be greater than zero")

        invoice = InvoiceModel(
            company_id=request.company_id,
            client_id=request.client_id,
            project_id=request.project_id,
            invoice_number=self._next_invoice_number(request.company_id),
            subtotal=totals.subtotal,
            tax_amount=totals.tax_amount,
            total=totals.total,
            amount_paid=ZERO,
            status=InvoiceStatus.DRAFT.value,
            calculator_type=strategy.value,
            due_date=request.due_date or self._default_due_date(request.company_id),
            notes=request.notes,
            created_by_id=actor_id,
        )
        invoice.line_items = [
            InvoiceLineItemModel.from_draft(draft, line_number, actor_id)
            for line_number, draft in enumerate(drafts, start=1)
        ]
        self._session.add(invoice)
        self._session.flush()

        entries, expenses = back_references
        for entry in entries:
            entry.invoice_id = invoice.id
            entry.updated_by_id = actor_id
        for expense in expenses:
            expense.invoice_id = invoice.id
            expense.updated_by_id = actor_id
        self._session.flush()
        return invoice

    def _check_task_projects(self, task_ids: Sequence[UUID], project_id: UUID | None) -> None:
        if project_id is None:
            return
        for task_id in task_ids:
            task = self._session.get(TaskModel, task_id)
            if task is None:
                raise TaskNotFoundError(str(task_id))
            if task.project_id != project_id:
                raise ValidationError(
                    "selections", f"task {task_id} does not belong to project {project_id}"
                )

    def _bill_task(
        self,
        task_id: UUID,
        strategy: BillingStrategy,
        actor_id: UUID,
        percentage: Decimal | None = None,
    ) -> LineItemDraft:
        task = self._ledger.load(task_id)
        source = _task_source(task)
        result = self._ledger.commit_billing(
            task_id,
            strategy,
            actor_id,
            requested_percentage=percentage,
            observed=task_state(task),
        )
        if strategy == BillingStrategy.FIXED_FEE:
            return build_fixed_fee_line(source, result)
        return build_task_line(source, result, strategy)

    def _fixed_fee_task_ids(self, request: BillingRequest) -> list[UUID]:
        if request.selections:
            selections = validate_task_selections(request.selections, BillingStrategy.FIXED_FEE)
            task_ids = [s.task_id for s in selections]
            self._check_task_projects(task_ids, request.project_id)
            return task_ids

        if request.project_id is None:
            raise ValidationError(
                "project_id", "fixed fee billing without selections needs a project"
            )
        task_ids = list(self._session.execute(
            select(TaskModel.id)
            .where(
                TaskModel.project_id == request.project_id,
                TaskModel.billed_percentage < HUNDRED,
            )
            .order_by(TaskModel.created_at, TaskModel.name)
        ).scalars())
        if not task_ids:
            raise ValidationError("selections", "no project task has budget left to bill")
        return task_ids

    def _time_and_materials_lines(
        self,
        request: BillingRequest,
    ) -> tuple[list[LineItemDraft], tuple[list[TimeEntryModel], list[ExpenseModel]]]:
        if request.project_id is None:
            raise ValidationError("project_id", "time & materials billing needs a project")

        entries = list(self._session.execute(
            select(TimeEntryModel)
            .where(
                TimeEntryModel.project_id == request.project_id,
                TimeEntryModel.approval_status == ApprovalStatus.APPROVED.value,
                TimeEntryModel.invoice_id.is_(None),
            )
            .order_by(TimeEntryModel.entry_date, TimeEntryModel.created_at)
        ).scalars())
        expenses = list(self._session.execute(
            select(ExpenseModel)
            .where(
                ExpenseModel.project_id == request.project_id,
                ExpenseModel.approval_status == ApprovalStatus.APPROVED.value,
                ExpenseModel.billable.is_(True),
                ExpenseModel.invoice_id.is_(None),
            )
            .order_by(ExpenseModel.expense_date, ExpenseModel.created_at)
        ).scalars())
        if not entries and not expenses:
            raise ValidationError(
                "project_id", "no approved, uninvoiced time or expenses to bill"
            )

        drafts = [
            build_time_entry_line(TimeEntrySource(
                time_entry_id=e.id,
                description=e.description,
                hours=to_decimal(e.hours),
                hourly_rate=to_decimal(e.hourly_rate),
                entry_date=e.entry_date,
            ))
            for e in entries
        ]
        drafts.extend(
            build_expense_line(ExpenseSource(
                expense_id=x.id,
                description=x.description,
                amount=to_decimal(x.amount),
                expense_date=x.expense_date,
            ))
            for x in expenses
        )
        return drafts, (entries, expenses)

    def _next_invoice_number(self, company_id: UUID) -> str:
        value = self._sequences.next_value(invoice_sequence_name(company_id))
        return format_sequence_number(
            self._config.number_prefix, value, self._config.number_padding
        )

    def _default_due_date(self, company_id: UUID) -> date:
        term = default_invoice_term(self._session, company_id)
        days = term.days_until_due if term is not None else self._config.default_payment_terms_days
        return self._clock.today() + timedelta(days=days)

    # =========================================================================
    # Editing
    # =========================================================================

    def _load_invoice(self, invoice_id: UUID) -> InvoiceModel:
        invoice = refetch(self._session, InvoiceModel, invoice_id)
        if invoice is None:
            raise InvoiceNotFoundError(str(invoice_id))
        return invoice

    def _recompute_totals(self, invoice: InvoiceModel) -> None:
        totals = compute_totals(
            amounts=[to_decimal(line.amount) for line in invoice.line_items],
            tax_amount=to_decimal(invoice.tax_amount),
        )
        if totals.total + DEFAULT_TOLERANCE < to_decimal(invoice.amount_paid):
            raise ValidationError(
                "line_items",
                f"invoice total {totals.total} would fall below the amount paid",
            )
        invoice.subtotal = totals.subtotal
        invoice.total = totals.total

    def reopen_invoice(self, invoice_id: UUID, actor_id: UUID) -> Invoice:
        """
        Recompute subtotal and total from the invoice's current line items.

        Raises:
            InvoiceNotFoundError: Unknown invoice.
            InvalidInvoiceTransitionError: The invoice is paid.
        """
        with LogContext.bind(actor_id=actor_id, invoice_id=invoice_id):
            try:
                invoice = self._load_invoice(invoice_id)
                self._require_editable(invoice, "reopened")
                self._recompute_totals(invoice)
                invoice.updated_by_id = actor_id
                self._session.flush()
                self._session.commit()
            except Exception:
                self._session.rollback()
                raise

            logger.info("invoice_reopened", extra={
                "invoice_id": str(invoice_id),
                "subtotal": str(invoice.subtotal),
                "total": str(invoice.total),
            })
            return invoice.to_dto()

    def update_line_items(
        self,
        invoice_id: UUID,
        actor_id: UUID,
        edits: Sequence[LineItemEdit] = (),
        additions: Sequence[ManualLineInput] = (),
        removals: Sequence[UUID] = (),
    ) -> Invoice:
        """
        Change, add or remove lines and recompute totals.

        A changed line's amount is quantity * unit_price rounded half-up to
        cents.  Removing a task-billing line reverses its ledger delta.
        """
        with LogContext.bind(actor_id=actor_id, invoice_id=invoice_id):
            try:
                invoice = self._load_invoice(invoice_id)
                self._require_editable(invoice, "edited")
                lines_by_id = {line.id: line for line in invoice.line_items}

                for edit in edits:
                    line = lines_by_id.get(edit.line_id)
                    if line is None:
                        raise ValidationError("line_id", f"line {edit.line_id} not on invoice")
                    if edit.quantity is not None and edit.quantity < 0:
                        raise ValidationError("quantity", "must be non-negative")
                    if edit.unit_price is not None and edit.unit_price < 0:
                        raise ValidationError("unit_price", "must be non-negative")
                    if edit.description is not None:
                        line.description = edit.description
                    if edit.quantity is not None:
                        line.quantity = edit.quantity
                    price = to_decimal(
                        edit.unit_price if edit.unit_price is not None else line.unit_price
                    )
                    line.unit_price = round_money(price)
                    line.amount = line_amount(to_decimal(line.quantity), price)
                    line.updated_by_id = actor_id

                for line_id in removals:
                    line = lines_by_id.get(line_id)
                    if line is None:
                        raise ValidationError("line_id", f"line {line_id} not on invoice")
                    self._reverse_line(line, actor_id)
                    invoice.line_items.remove(line)

                next_number = max((line.line_number for line in invoice.line_items), default=0)
                for offset, addition in enumerate(additions, start=1):
                    invoice.line_items.append(InvoiceLineItemModel.from_draft(
                        build_manual_line(addition), next_number + offset, actor_id,
                    ))

                self._session.flush()
                self._recompute_totals(invoice)
                invoice.updated_by_id = actor_id
                self._session.flush()
                self._session.commit()
            except Exception:
                self._session.rollback()
                raise

            logger.info("invoice_line_items_updated", extra={
                "invoice_id": str(invoice_id),
                "edited": len(edits),
                "added": len(additions),
                "removed": len(removals),
                "total": str(invoice.total),
            })
            return invoice.to_dto()

    def _require_editable(self, invoice: InvoiceModel, action: str) -> None:
        if invoice.status == InvoiceStatus.PAID.value:
            raise InvalidInvoiceTransitionError(
                invoice_id=str(invoice.id),
                from_status=invoice.status,
                to_status=action,
            )

    def _reverse_line(self, line: InvoiceLineItemModel, actor_id: UUID) -> None:
        """Return a task line's billed share to the task ledger."""
        if line.task_id is None:
            if line.time_entry_id is not None:
                entry = self._session.get(TimeEntryModel, line.time_entry_id)
                if entry is not None:
                    entry.invoice_id = None
                    entry.updated_by_id = actor_id
            if line.expense_id is not None:
                expense = self._session.get(ExpenseModel, line.expense_id)
                if expense is not None:
                    expense.invoice_id = None
                    expense.updated_by_id = actor_id
            return

        # Quantity and price may have been edited since; reverse what was committed
        if line.billed_amount is not None:
            amount = to_decimal(line.billed_amount)
        elif line.billed_percentage is not None and line.task_total_budget is not None:
            amount = round_money(
                to_decimal(line.task_total_budget) * to_decimal(line.billed_percentage) / HUNDRED
            )
        else:
            amount = to_decimal(line.amount)

        if line.billed_percentage is not None:
            percentage = to_decimal(line.billed_percentage)
        else:
            # Fixed-fee lines carry no percentage; derive it from the committed amount
            task = self._ledger.load(line.task_id)
            budget = to_decimal(task.total_budget)
            percentage = (
                amount * HUNDRED / budget if budget > 0
                else to_decimal(task.billed_percentage)
            )
        self._ledger.reverse_billing(line.task_id, percentage, amount, actor_id)

    # =========================================================================
    # Deletion
    # =========================================================================

    def delete_invoice(self, invoice_id: UUID, actor_id: UUID) -> None:
        """
        Delete an invoice and undo everything it billed.

        Time-entry and expense back-references are cleared, every
        task-billing line's ledger delta is reversed, then the lines and the
        invoice are deleted, all in one transaction.

        Raises:
            InvoiceNotFoundError: Unknown invoice.
            InvalidInvoiceTransitionError: Payments have been applied.
        """
        with LogContext.bind(actor_id=actor_id, invoice_id=invoice_id):
            try:
                invoice = self._load_invoice(invoice_id)
                if to_decimal(invoice.amount_paid) > 0:
                    raise InvalidInvoiceTransitionError(
                        invoice_id=str(invoice_id),
                        from_status=invoice.status,
                        to_status="deleted",
                    )

                for entry in self._session.execute(
                    select(TimeEntryModel).where(TimeEntryModel.invoice_id == invoice_id)
                ).scalars():
                    entry.invoice_id = None
                    entry.updated_by_id = actor_id
                for expense in self._session.execute(
                    select(ExpenseModel).where(ExpenseModel.invoice_id == invoice_id)
                ).scalars():
                    expense.invoice_id = None
                    expense.updated_by_id = actor_id
                self._session.flush()

                for line in invoice.line_items:
                    if line.task_id is not None:
                        self._reverse_line(line, actor_id)

                number = invoice.invoice_number
                self._session.delete(invoice)
                self._session.flush()
                self._session.commit()
            except Exception:
                self._session.rollback()
                raise

            logger.info("invoice_deleted", extra={
                "invoice_id": str(invoice_id),
                "invoice_number": number,
            })

    # =========================================================================
    # Status
    # =========================================================================

    def mark_sent(
        self,
        invoice_id: UUID,
        actor_id: UUID,
        sent_date: date | None = None,
    ) -> Invoice:
        """
        Transition a draft or overdue invoice to sent.

        Raises:
            InvalidInvoiceTransitionError: The invoice is already sent or paid.
        """
        with LogContext.bind(actor_id=actor_id, invoice_id=invoice_id):
            try:
                invoice = self._load_invoice(invoice_id)
                previous = InvoiceStatus(invoice.status)
                if previous not in (InvoiceStatus.DRAFT, InvoiceStatus.OVERDUE):
                    raise InvalidInvoiceTransitionError(
                        invoice_id=str(invoice_id),
                        from_status=previous.value,
                        to_status=InvoiceStatus.SENT.value,
                    )
                rows = guarded_update(
                    self._session,
                    InvoiceModel,
                    invoice_id,
                    guard=(InvoiceModel.status == previous.value,),
                    values={
                        "status": InvoiceStatus.SENT.value,
                        "sent_date": sent_date or self._clock.today(),
                        "updated_by_id": actor_id,
                    },
                )
                if rows == 0:
                    current = self._load_invoice(invoice_id)
                    raise InvalidInvoiceTransitionError(
                        invoice_id=str(invoice_id),
                        from_status=current.status,
                        to_status=InvoiceStatus.SENT.value,
                    )
                invoice = self._load_invoice(invoice_id)
                self._session.commit()
            except Exception:
                self._session.rollback()
                raise

            logger.info("invoice_sent", extra={
                "invoice_id": str(invoice_id),
                "from_status": previous.value,
            })
            notify_status_changes(self._on_status_change, [StatusChange(
                invoice_id=invoice.id,
                invoice_number=invoice.invoice_number,
                from_status=previous,
                to_status=InvoiceStatus.SENT,
                changed_at=self._clock.now(),
            )])
            return invoice.to_dto()

    def refresh_overdue(
        self,
        actor_id: UUID,
        as_of: date | None = None,
        company_id: UUID | None = None,
    ) -> list[UUID]:
        """
        Mark sent invoices past their due date with an open balance as overdue.

        Returns:
            Ids of the invoices that changed status.
        """
        as_of = as_of or self._clock.today()
        try:
            stmt = select(InvoiceModel).where(
                InvoiceModel.status == InvoiceStatus.SENT.value,
                InvoiceModel.due_date.is_not(None),
                InvoiceModel.due_date < as_of,
                InvoiceModel.total - InvoiceModel.amount_paid > DEFAULT_TOLERANCE,
            )
            if company_id is not None:
                stmt = stmt.where(InvoiceModel.company_id == company_id)
            candidates = list(self._session.execute(stmt).scalars())

            changed: list[InvoiceModel] = []
            for invoice in candidates:
                rows = guarded_update(
                    self._session,
                    InvoiceModel,
                    invoice.id,
                    guard=(InvoiceModel.status == InvoiceStatus.SENT.value,),
                    values={"status": InvoiceStatus.OVERDUE.value, "updated_by_id": actor_id},
                )
                if rows == 1:
                    changed.append(invoice)
            self._session.commit()
        except Exception:
            self._session.rollback()
            raise

        logger.info("overdue_invoices_refreshed", extra={
            "as_of": as_of.isoformat(),
            "changed_count": len(changed),
        })
        now = self._clock.now()
        notify_status_changes(self._on_status_change, [
            StatusChange(
                invoice_id=invoice.id,
                invoice_number=invoice.invoice_number,
                from_status=InvoiceStatus.SENT,
                to_status=InvoiceStatus.OVERDUE,
                changed_at=now,
            )
            for invoice in changed
        ])
        return [invoice.id for invoice in changed]

    def get_invoice(self, invoice_id: UUID) -> Invoice:
        return self._load_invoice(invoice_id).to_dto()
