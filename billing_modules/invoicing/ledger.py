"""
TaskBillingLedger -- cumulative billed state of tasks.

Responsibility:
    Applies task billing commits and reversals to the ``tasks`` table.  The
    numbers come from ``billing_engines.task_billing``; this class only
    reads the task, asks the engine, and writes the result with one
    compare-and-swap UPDATE.

Architecture position:
    Modules > Invoicing.  Flush-only building block (extends
    ``BaseService``) used by the ``InvoiceComposer`` inside its invoice
    transaction.  Never commits or rolls back.

Invariants enforced:
    - billed_percentage never exceeds 100 and never decreases through a
      commit.
    - Each write is ``UPDATE tasks SET ... WHERE id = :id AND
      billed_percentage = :observed``.  A stale observation cannot push a
      task past 100%: the guard fails, the ledger re-reads and recomputes
      (percentage billing re-clamps against the fresh value).
    - A commit that brings a task to 100% writes the cumulative values
      exactly (100, total_budget) so repeated rounding leaves no residue.

Failure modes:
    - TaskNotFoundError: unknown task id.
    - FullyBilledError: the (re-)read task has nothing left to bill.
    - ConcurrentUpdateError: the guard kept failing for
      ``max_cas_attempts`` attempts.

Audit relevance:
    ledger_commit_applied / ledger_reversal_applied log records carry the
    task id, deltas and new cumulative values.
"""

from __future__ import annotations

from decimal import Decimal
from uuid import UUID

from sqlalchemy.orm import Session

from billing_engines.task_billing import (
    BillingStrategy,
    TaskBillingResult,
    TaskBillingReversal,
    TaskBillingState,
    compute_billing,
    compute_reversal,
)
from billing_kernel.db.guarded import guarded_update, refetch
from billing_kernel.db.types import HUNDRED, ZERO, to_decimal
from billing_kernel.exceptions import ConcurrentUpdateError, TaskNotFoundError
from billing_kernel.logging_config import get_logger
from billing_kernel.services.base import BaseService
from billing_modules.projects.orm import TaskModel

logger = get_logger("modules.invoicing.ledger")

# Numeric columns may round-trip through a binary float on some backends
_PERCENT_TOLERANCE = Decimal("0.000000001")


def task_state(task: TaskModel) -> TaskBillingState:
    """Engine view of a task row."""
    return TaskBillingState(
        task_id=task.id,
        total_budget=to_decimal(task.total_budget),
        billed_percentage=to_decimal(task.billed_percentage),
        billed_amount=to_decimal(task.billed_amount),
    )


class TaskBillingLedger(BaseService[TaskModel]):
    """
    Guarded writer for task billing state.

    Contract:
        Operates inside the caller's transaction.  Every successful call
        leaves exactly one UPDATE on the task row pending in that
        transaction.

    Guarantees:
        - Never commits; a rollback by the caller undoes every commit.
        - The returned result reflects what was actually written.

    Non-goals:
        - Does not build invoice lines; see InvoiceComposer.
    """

    def __init__(self, session: Session, max_cas_attempts: int = 3):
        super().__init__(session)
        if max_cas_attempts < 1:
            raise ValueError("max_cas_attempts must be at least 1")
        self.max_cas_attempts = max_cas_attempts

    def load(self, task_id: UUID) -> TaskModel:
        task = refetch(self.session, TaskModel, task_id)
        if task is None:
            raise TaskNotFoundError(str(task_id))
        return task

    def commit_billing(
        self,
        task_id: UUID,
        strategy: BillingStrategy,
        actor_id: UUID,
        requested_percentage: Decimal | None = None,
        observed: TaskBillingState | None = None,
    ) -> TaskBillingResult:
        """
        Bill part (or all) of a task's remaining budget.

        Args:
            task_id: Task to bill.
            strategy: milestone, percentage or fixed_fee.
            actor_id: Recorded as updated_by_id.
            requested_percentage: Percentage billing only.
            observed: State the caller already read.  Used for the first
                attempt instead of a fresh read.

        Returns:
            The committed TaskBillingResult.
        """
        state = observed
        for attempt in range(1, self.max_cas_attempts + 1):
            if state is None:
                state = task_state(self.load(task_id))

            result = compute_billing(
                state=state,
                strategy=strategy,
                requested_percentage=requested_percentage,
            )

            if result.completes_task:
                new_values = {
                    "billed_percentage": HUNDRED,
                    "billed_amount": state.total_budget,
                }
            else:
                new_values = {
                    "billed_percentage": TaskModel.billed_percentage + result.percentage_to_bill,
                    "billed_amount": TaskModel.billed_amount + result.amount_to_bill,
                }

            rows = guarded_update(
                self.session,
                TaskModel,
                task_id,
                guard=(
                    TaskModel.billed_percentage.between(
                        state.billed_percentage - _PERCENT_TOLERANCE,
                        state.billed_percentage + _PERCENT_TOLERANCE,
                    ),
                ),
                values={**new_values, "updated_by_id": actor_id},
            )
            if rows == 1:
                logger.info("ledger_commit_applied", extra={
                    "task_id": str(task_id),
                    "strategy": strategy.value,
                    "percentage_to_bill": str(result.percentage_to_bill),
                    "amount_to_bill": str(result.amount_to_bill),
                    "new_cumulative_percentage": str(result.new_cumulative_percentage),
                    "attempt": attempt,
                })
                return result

            logger.warning("ledger_commit_conflict", extra={
                "task_id": str(task_id),
                "observed_percentage": str(state.billed_percentage),
                "attempt": attempt,
            })
            state = None

        raise ConcurrentUpdateError(
            entity_type="Task",
            entity_id=str(task_id),
            attempts=self.max_cas_attempts,
        )

    def reverse_billing(
        self,
        task_id: UUID,
        percentage: Decimal,
        amount: Decimal,
        actor_id: UUID,
    ) -> TaskBillingReversal:
        """Undo a committed billing delta, never going below zero."""
        for attempt in range(1, self.max_cas_attempts + 1):
            state = task_state(self.load(task_id))
            reversal = compute_reversal(state=state, percentage=percentage, amount=amount)

            if reversal.new_cumulative_percentage <= 0:
                new_values = {"billed_percentage": ZERO, "billed_amount": ZERO}
            else:
                new_values = {
                    "billed_percentage": reversal.new_cumulative_percentage,
                    "billed_amount": reversal.new_cumulative_amount,
                }

            rows = guarded_update(
                self.session,
                TaskModel,
                task_id,
                guard=(
                    TaskModel.billed_percentage.between(
                        state.billed_percentage - _PERCENT_TOLERANCE,
                        state.billed_percentage + _PERCENT_TOLERANCE,
                    ),
                ),
                values={**new_values, "updated_by_id": actor_id},
            )
            if rows == 1:
                logger.info("ledger_reversal_applied", extra={
                    "task_id": str(task_id),
                    "percentage_reversed": str(reversal.percentage_reversed),
                    "amount_reversed": str(reversal.amount_reversed),
                    "new_cumulative_percentage": str(reversal.new_cumulative_percentage),
                    "attempt": attempt,
                })
                return reversal

            logger.warning("ledger_reversal_conflict", extra={
                "task_id": str(task_id),
                "attempt": attempt,
            })

        raise ConcurrentUpdateError(
            entity_type="Task",
            entity_id=str(task_id),
            attempts=self.max_cas_attempts,
        )
