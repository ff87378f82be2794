"""
ORM-Level Immutability Enforcement.

===============================================================================
WHY THIS EXISTS
===============================================================================

Two facts must never be rewritten after the fact:

  - What an invoice line billed.  A line item carries a snapshot of the task
    it billed (task id, percentage billed, task budget at the time).  Editing
    the snapshot would make the invoice disagree with the task ledger.

  - A task's budget once billing has started.  Every billed amount was
    computed against the budget in force at the time; changing it afterwards
    breaks the billedAmount / billedPercentage consistency.

===============================================================================
HOW IT WORKS
===============================================================================

    session.flush()
         |
         v
    [before_update event] --> _check_*() --> ImmutabilityViolationError
         |
         v
    SQL sent to database (only if checks pass)

Ledger increments go through billing_kernel.db.guarded (a Core UPDATE), which
does not fire mapper events, so the ledger itself is never blocked here.

===============================================================================
PROTECTED ENTITIES
===============================================================================

Entity            | Protected columns                              | When
------------------|------------------------------------------------|-----------------
InvoiceLineItem   | task_id, billed_percentage, task_total_budget, | always after insert
                  | billed_amount                                  |
Task              | total_budget                                   | billed_percentage > 0

Quantity, unit price, amount and description of a line stay editable so an
invoice can be reopened and adjusted before sending.  Deleting the invoice
reverses the snapshot, never the edited amount.

To temporarily disable (TESTS ONLY):

    unregister_immutability_listeners()
    ...
    register_immutability_listeners()
"""

from sqlalchemy import event
from sqlalchemy.orm.attributes import get_history

from billing_kernel.exceptions import ImmutabilityViolationError
from billing_kernel.logging_config import get_logger

logger = get_logger("db.immutability")

LINE_ITEM_SNAPSHOT_COLUMNS = (
    "task_id", "billed_percentage", "task_total_budget", "billed_amount",
)


def _check_line_item_snapshot(mapper, connection, target):
    """Block changes to the billing snapshot carried by an invoice line."""
    for column in LINE_ITEM_SNAPSHOT_COLUMNS:
        if get_history(target, column).has_changes():
            logger.error(
                "immutability_violation_blocked",
                extra={
                    "entity_type": "InvoiceLineItem",
                    "entity_id": str(target.id),
                    "operation": "UPDATE",
                    "column": column,
                },
            )
            raise ImmutabilityViolationError(
                entity_type="InvoiceLineItem",
                entity_id=str(target.id),
                reason=f"{column} is a billing snapshot and cannot change",
            )


def _check_task_budget(mapper, connection, target):
    """Block budget edits on a task that has already been billed."""
    history = get_history(target, "total_budget")
    if not history.has_changes():
        return

    if target.billed_percentage and target.billed_percentage > 0:
        logger.error(
            "immutability_violation_blocked",
            extra={
                "entity_type": "Task",
                "entity_id": str(target.id),
                "operation": "UPDATE",
                "column": "total_budget",
                "billed_percentage": str(target.billed_percentage),
            },
        )
        raise ImmutabilityViolationError(
            entity_type="Task",
            entity_id=str(target.id),
            reason="total_budget cannot change once billing has started",
        )


_registered = False


def _listener_targets():
    from billing_modules.invoicing.orm import InvoiceLineItemModel
    from billing_modules.projects.orm import TaskModel

    return (
        (InvoiceLineItemModel, _check_line_item_snapshot),
        (TaskModel, _check_task_budget),
    )


def register_immutability_listeners() -> None:
    """Register all ORM immutability listeners (idempotent)."""
    global _registered
    if _registered:
        return
    for model, fn in _listener_targets():
        event.listen(model, "before_update", fn)
    _registered = True
    logger.debug("immutability_listeners_registered")


def unregister_immutability_listeners() -> None:
    """Remove all ORM immutability listeners. FOR TESTING ONLY."""
    global _registered
    if not _registered:
        return
    for model, fn in _listener_targets():
        if event.contains(model, "before_update", fn):
            event.remove(model, "before_update", fn)
    _registered = False
