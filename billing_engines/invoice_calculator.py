"""
Invoice Calculator Engine.

Pure functions with deterministic behavior. No I/O.

Builds invoice line-item drafts for each billing strategy and computes
invoice totals.  Line drafts are persisted by the InvoiceComposer.

Line-item rules:
    Task lines (milestone / percentage):
        task_quantity = estimated_hours, or 1 when not estimated
        task_fees     = estimated_fees, or total_budget when not estimated
        quantity      = task_quantity * percentage_billed / 100
        unit_price    = task_fees / task_quantity
        amount        = amount the ledger committed (not quantity * price)
    Fixed-fee lines: quantity 1, unit "unit", amount = full remaining budget.
    Time entries: quantity = hours, unit_price = hourly_rate, unit "hr".
    Expenses: quantity 1, unit_price = amount, unit "unit".
    Manual lines: amount = quantity * unit_price.

Totals:
    subtotal = sum of line amounts (or an explicit manual subtotal)
    total    = subtotal + tax_amount
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Sequence
from uuid import UUID

from billing_engines.task_billing import BillingStrategy, TaskBillingResult
from billing_engines.tracer import traced_engine
from billing_kernel.db.types import HUNDRED, ZERO, round_money
from billing_kernel.exceptions import ValidationError
from billing_kernel.logging_config import get_logger

logger = get_logger("engines.invoice_calculator")

_QUANTITY_PLACES = 4

UNIT_HOURS = "hr"
UNIT_UNITS = "unit"


@dataclass(frozen=True, slots=True)
class TaskLineSource:
    """The task attributes a task line is built from."""

    task_id: UUID
    name: str
    total_budget: Decimal
    estimated_hours: Decimal | None = None
    estimated_fees: Decimal | None = None
    billing_unit: str = "hours"

    @property
    def quantity_basis(self) -> Decimal:
        if self.estimated_hours and self.estimated_hours > 0:
            return self.estimated_hours
        return Decimal("1")

    @property
    def fee_basis(self) -> Decimal:
        if self.estimated_fees and self.estimated_fees > 0:
            return self.estimated_fees
        return self.total_budget

    @property
    def unit(self) -> str:
        return UNIT_UNITS if self.billing_unit == "unit" else UNIT_HOURS


@dataclass(frozen=True, slots=True)
class TimeEntrySource:
    time_entry_id: UUID
    description: str
    hours: Decimal
    hourly_rate: Decimal
    entry_date: date | None = None


@dataclass(frozen=True, slots=True)
class ExpenseSource:
    expense_id: UUID
    description: str
    amount: Decimal
    expense_date: date | None = None


@dataclass(frozen=True, slots=True)
class ManualLineInput:
    """A free-text line supplied by the caller."""

    description: str
    quantity: Decimal
    unit_price: Decimal
    unit: str = UNIT_UNITS

    def __post_init__(self) -> None:
        if not self.description or not self.description.strip():
            raise ValidationError("description", "line description cannot be empty")
        if self.quantity < 0:
            raise ValidationError("quantity", "must be non-negative")
        if self.unit_price < 0:
            raise ValidationError("unit_price", "must be non-negative")


@dataclass(frozen=True, slots=True)
class LineItemDraft:
    """A line item ready to be persisted."""

    description: str
    quantity: Decimal
    unit_price: Decimal
    amount: Decimal
    unit: str
    billing_type: BillingStrategy
    task_id: UUID | None = None
    billed_percentage: Decimal | None = None
    task_total_budget: Decimal | None = None
    billed_amount: Decimal | None = None
    time_entry_id: UUID | None = None
    expense_id: UUID | None = None


@dataclass(frozen=True, slots=True)
class InvoiceTotals:
    subtotal: Decimal
    tax_amount: Decimal
    total: Decimal


@dataclass(frozen=True, slots=True)
class TaskSelection:
    """A request to bill one task; percentage only matters for percentage billing."""

    task_id: UUID
    percentage: Decimal | None = None


def line_amount(quantity: Decimal, unit_price: Decimal) -> Decimal:
    """quantity * unit_price rounded to cents."""
    return round_money(quantity * unit_price)


def _quantity(value: Decimal) -> Decimal:
    return round_money(value, decimal_places=_QUANTITY_PLACES)


def build_task_line(
    source: TaskLineSource,
    billing: TaskBillingResult,
    strategy: BillingStrategy,
) -> LineItemDraft:
    """Line item for a milestone or percentage commit."""
    basis = source.quantity_basis
    return LineItemDraft(
        description=source.name,
        quantity=_quantity(basis * billing.percentage_to_bill / HUNDRED),
        unit_price=round_money(source.fee_basis / basis),
        amount=billing.amount_to_bill,
        unit=source.unit,
        billing_type=strategy,
        task_id=source.task_id,
        billed_percentage=billing.percentage_to_bill,
        task_total_budget=source.total_budget,
        billed_amount=billing.amount_to_bill,
    )


def build_fixed_fee_line(source: TaskLineSource, billing: TaskBillingResult) -> LineItemDraft:
    """Line item billing a task's full remaining budget as one unit."""
    return LineItemDraft(
        description=source.name,
        quantity=Decimal("1"),
        unit_price=billing.amount_to_bill,
        amount=billing.amount_to_bill,
        unit=UNIT_UNITS,
        billing_type=BillingStrategy.FIXED_FEE,
        task_id=source.task_id,
        billed_amount=billing.amount_to_bill,
    )


def build_time_entry_line(entry: TimeEntrySource) -> LineItemDraft:
    description = entry.description or "Time entry"
    if entry.entry_date is not None:
        description = f"{description} ({entry.entry_date.isoformat()})"
    return LineItemDraft(
        description=description,
        quantity=_quantity(entry.hours),
        unit_price=round_money(entry.hourly_rate),
        amount=line_amount(entry.hours, entry.hourly_rate),
        unit=UNIT_HOURS,
        billing_type=BillingStrategy.TIME_MATERIALS,
        time_entry_id=entry.time_entry_id,
    )


def build_expense_line(expense: ExpenseSource) -> LineItemDraft:
    amount = round_money(expense.amount)
    return LineItemDraft(
        description=expense.description or "Expense",
        quantity=Decimal("1"),
        unit_price=amount,
        amount=amount,
        unit=UNIT_UNITS,
        billing_type=BillingStrategy.TIME_MATERIALS,
        expense_id=expense.expense_id,
    )


def build_manual_line(line: ManualLineInput) -> LineItemDraft:
    return LineItemDraft(
        description=line.description.strip(),
        quantity=_quantity(line.quantity),
        unit_price=round_money(line.unit_price),
        amount=line_amount(line.quantity, line.unit_price),
        unit=line.unit,
        billing_type=BillingStrategy.MANUAL,
    )


@traced_engine(
    "invoice_calculator", "1.0",
    fingerprint_fields=("amounts", "tax_amount", "subtotal_override"),
)
def compute_totals(
    *,
    amounts: Sequence[Decimal],
    tax_amount: Decimal = ZERO,
    subtotal_override: Decimal | None = None,
) -> InvoiceTotals:
    """
    Compute subtotal and total.

    Raises:
        ValidationError: Negative tax.
    """
    if tax_amount < 0:
        raise ValidationError("tax_amount", "must be non-negative")

    if subtotal_override is not None:
        subtotal = round_money(subtotal_override)
    else:
        subtotal = round_money(sum(amounts, ZERO))
    tax = round_money(tax_amount)
    return InvoiceTotals(subtotal=subtotal, tax_amount=tax, total=subtotal + tax)


def validate_task_selections(
    selections: Sequence[TaskSelection],
    strategy: BillingStrategy,
) -> tuple[TaskSelection, ...]:
    """
    Check a task-based billing request before any ledger mutation.

    Raises:
        ValidationError: No selections, a duplicate task id, or a
            percentage selection without a positive percentage.
    """
    if not selections:
        raise ValidationError("selections", f"{strategy.value} billing requires at least one task")

    seen: set[UUID] = set()
    for selection in selections:
        if selection.task_id in seen:
            raise ValidationError(
                "selections", f"task {selection.task_id} selected more than once"
            )
        seen.add(selection.task_id)
        if strategy == BillingStrategy.PERCENTAGE:
            if selection.percentage is None or selection.percentage <= 0:
                raise ValidationError(
                    "percentage",
                    f"task {selection.task_id} needs a percentage greater than zero",
                )
    return tuple(selections)
