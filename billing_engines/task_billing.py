"""
Task Billing Engine.

Pure functions with deterministic behavior. No I/O.

Computes how much of a task's budget a billing commit takes, given the
task's cumulative billed state and the billing strategy:

- milestone / fixed_fee: bill everything that remains.
- percentage: bill the requested percentage, clamped to what remains.

The stateful side (the guarded UPDATE that applies the result) lives in
``billing_modules.invoicing.ledger``.  This module only decides numbers.

Rounding:
    amount = total_budget * percentage / 100, rounded half-up to cents.
    The commit that brings a task to exactly 100% bills
    ``total_budget - billed_amount`` instead, so the cumulative amount ends
    exactly on the budget and no residual cent is left by earlier rounding.
    No commit bills more than ``total_budget - billed_amount``, so many
    small half-up rounded commits cannot overshoot the budget.

Usage:
    state = TaskBillingState(
        task_id=task_id,
        total_budget=Decimal("8000"),
        billed_percentage=Decimal("25"),
        billed_amount=Decimal("2000.00"),
    )
    result = compute_billing(
        state=state,
        strategy=BillingStrategy.PERCENTAGE,
        requested_percentage=Decimal("50"),
    )
    # result.amount_to_bill == Decimal("4000.00")
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from uuid import UUID

from billing_engines.tracer import traced_engine
from billing_kernel.db.types import HUNDRED, ZERO, round_money
from billing_kernel.exceptions import FullyBilledError, ValidationError
from billing_kernel.logging_config import get_logger

logger = get_logger("engines.task_billing")


class BillingStrategy(str, Enum):
    """Invoice calculator types."""

    MANUAL = "manual"
    MILESTONE = "milestone"
    PERCENTAGE = "percentage"
    TIME_MATERIALS = "time_materials"
    FIXED_FEE = "fixed_fee"

    @property
    def uses_task_ledger(self) -> bool:
        return self in (
            BillingStrategy.MILESTONE,
            BillingStrategy.PERCENTAGE,
            BillingStrategy.FIXED_FEE,
        )


@dataclass(frozen=True, slots=True)
class TaskBillingState:
    """Cumulative billed state of one task, as last observed."""

    task_id: UUID
    total_budget: Decimal
    billed_percentage: Decimal = ZERO
    billed_amount: Decimal = ZERO

    def __post_init__(self) -> None:
        if self.total_budget < 0:
            raise ValueError("total_budget must be non-negative")
        if not (ZERO <= self.billed_percentage <= HUNDRED):
            raise ValueError("billed_percentage must be between 0 and 100")

    @property
    def remaining_percentage(self) -> Decimal:
        return HUNDRED - self.billed_percentage


@dataclass(frozen=True, slots=True)
class TaskBillingResult:
    """Outcome of one billing commit computation."""

    task_id: UUID
    percentage_to_bill: Decimal
    amount_to_bill: Decimal
    new_cumulative_percentage: Decimal
    new_cumulative_amount: Decimal

    @property
    def completes_task(self) -> bool:
        return self.new_cumulative_percentage >= HUNDRED


@dataclass(frozen=True, slots=True)
class TaskBillingReversal:
    """Outcome of reversing a previously committed billing."""

    task_id: UUID
    percentage_reversed: Decimal
    amount_reversed: Decimal
    new_cumulative_percentage: Decimal
    new_cumulative_amount: Decimal


def remaining_percentage(state: TaskBillingState) -> Decimal:
    """
    Percentage of the task budget not yet billed.

    Raises:
        FullyBilledError: If nothing remains to bill.
    """
    remaining = state.remaining_percentage
    if remaining <= 0:
        raise FullyBilledError(
            task_id=str(state.task_id),
            billed_percentage=state.billed_percentage,
        )
    return remaining


@traced_engine(
    "task_billing", "1.0",
    fingerprint_fields=("state", "strategy", "requested_percentage"),
)
def compute_billing(
    *,
    state: TaskBillingState,
    strategy: BillingStrategy,
    requested_percentage: Decimal | None = None,
) -> TaskBillingResult:
    """
    Compute the percentage and amount a commit bills against ``state``.

    Pure function - no side effects, no I/O, deterministic output.

    Args:
        state: The task's cumulative billed state.
        strategy: milestone, percentage or fixed_fee.
        requested_percentage: Required for percentage billing; ignored
            otherwise.

    Returns:
        TaskBillingResult with the deltas and new cumulative values.

    Raises:
        FullyBilledError: Remaining percentage is <= 0.
        ValidationError: Strategy does not bill tasks, or the requested
            percentage is missing or not positive.
    """
    if not strategy.uses_task_ledger:
        raise ValidationError("strategy", f"{strategy.value} does not bill against tasks")

    remaining = remaining_percentage(state)

    if strategy == BillingStrategy.PERCENTAGE:
        if requested_percentage is None:
            raise ValidationError("percentage", "required for percentage billing")
        if requested_percentage <= 0:
            raise ValidationError("percentage", "must be greater than zero")
        percentage = min(requested_percentage, remaining)
        if percentage < requested_percentage:
            logger.info("task_billing_percentage_clamped", extra={
                "task_id": str(state.task_id),
                "requested_percentage": str(requested_percentage),
                "remaining_percentage": str(remaining),
            })
    else:
        percentage = remaining

    new_percentage = state.billed_percentage + percentage
    unbilled = max(ZERO, round_money(state.total_budget - state.billed_amount))
    if new_percentage >= HUNDRED:
        amount = unbilled
    else:
        amount = min(round_money(state.total_budget * percentage / HUNDRED), unbilled)

    result = TaskBillingResult(
        task_id=state.task_id,
        percentage_to_bill=percentage,
        amount_to_bill=amount,
        new_cumulative_percentage=new_percentage,
        new_cumulative_amount=state.billed_amount + amount,
    )

    logger.debug("task_billing_computed", extra={
        "task_id": str(state.task_id),
        "strategy": strategy.value,
        "percentage_to_bill": str(percentage),
        "amount_to_bill": str(amount),
        "new_cumulative_percentage": str(new_percentage),
    })
    return result


def compute_reversal(
    *,
    state: TaskBillingState,
    percentage: Decimal,
    amount: Decimal,
) -> TaskBillingReversal:
    """
    Compute the state after undoing a committed billing.

    The reversal is clamped so neither cumulative value drops below zero.
    """
    if percentage < 0 or amount < 0:
        raise ValidationError("reversal", "percentage and amount must be non-negative")

    pct = min(percentage, state.billed_percentage)
    amt = min(amount, state.billed_amount)
    return TaskBillingReversal(
        task_id=state.task_id,
        percentage_reversed=pct,
        amount_reversed=amt,
        new_cumulative_percentage=state.billed_percentage - pct,
        new_cumulative_amount=state.billed_amount - amt,
    )
