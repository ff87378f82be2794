"""
Module: billing_kernel.db.guarded
Responsibility: The single conditional-update primitive used for every
    running-balance mutation (task ledger, invoice amount_paid, bank
    transaction match state).
Architecture position: Kernel > DB.  Used by module services.

Invariants enforced:
    - Read-modify-write of a capped running total is ONE statement:
      ``UPDATE ... SET col = col + :delta WHERE id = :id AND <cap holds>``.
      No Python-side read feeds the written value except through the
      WHERE clause guard.
    - Zero rows affected is the authoritative signal that the guard failed
      (cap reached, state changed, or row gone).  Callers decide whether
      to re-read and retry or raise.

Failure modes:
    - Returns 0; never raises for a failed guard.  Database errors
      propagate unchanged.
"""

from typing import Any, TypeVar
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from billing_kernel.db.base import Base
from billing_kernel.logging_config import get_logger

logger = get_logger("db.guarded")

ModelType = TypeVar("ModelType", bound=Base)


def guarded_update(
    session: Session,
    model: type[Base],
    entity_id: UUID,
    *,
    guard: tuple = (),
    values: dict[str, Any],
) -> int:
    """
    Apply ``values`` to one row only if every ``guard`` clause holds.

    The ORM identity map is not synchronized; use refetch() to read the
    post-update row.

    Args:
        session: Active session.  The update joins its transaction.
        model: ORM class of the target row.
        entity_id: Primary key of the target row.
        guard: Extra WHERE clauses (SQLAlchemy column expressions).
        values: Column -> value or SQL expression (e.g. ``Model.col + delta``).

    Returns:
        Number of rows affected (0 or 1).
    """
    stmt = (
        update(model)
        .where(model.id == entity_id, *guard)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    rowcount = session.execute(stmt).rowcount

    logger.debug(
        "guarded_update_executed",
        extra={
            "table": model.__tablename__,
            "entity_id": str(entity_id),
            "rows_affected": rowcount,
        },
    )
    return rowcount


def refetch(session: Session, model: type[ModelType], entity_id: UUID) -> ModelType | None:
    """Load a row bypassing any stale state held in the identity map."""
    return session.execute(
        select(model)
        .where(model.id == entity_id)
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
