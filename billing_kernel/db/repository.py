"""
Module: billing_kernel.db.repository
Responsibility: Generic typed repository parameterized by an ORM class.
    Replaces "table name as a string" CRUD helpers: the entity is a
    compile-time type, and column names are checked against its mapper.
Architecture position: Kernel > DB.  Used by module services for simple
    reference-data entities (categories, expense codes, invoice terms).

Invariants enforced:
    - Flush-only: the repository never commits or rolls back.  The owning
      service controls the transaction boundary.
    - update() rejects attribute names that are not mapped columns of the
      entity, so a typo cannot silently create a Python attribute.

Failure modes:
    - ValidationError on unknown or protected column names in update().
"""

from typing import Any, Generic, Sequence, TypeVar
from uuid import UUID

from sqlalchemy import ColumnElement, inspect, select
from sqlalchemy.orm import Session

from billing_kernel.db.base import Base
from billing_kernel.exceptions import ValidationError

ModelType = TypeVar("ModelType", bound=Base)

_PROTECTED_COLUMNS = frozenset({"id", "created_at", "created_by_id", "updated_at"})


class Repository(Generic[ModelType]):
    """
    CRUD access to one ORM entity type.

    Contract:
        Accepts a caller-owned Session and the ORM class to operate on.

    Guarantees:
        - Every write is flushed so generated ids and defaults are visible.
        - No commit/rollback is ever issued.
    """

    def __init__(self, session: Session, model: type[ModelType]):
        self.session = session
        self.model = model
        self._columns = frozenset(c.key for c in inspect(model).column_attrs)

    def get(self, entity_id: UUID) -> ModelType | None:
        return self.session.get(self.model, entity_id)

    def list(
        self,
        *where: ColumnElement[bool],
        order_by: Sequence[Any] = (),
    ) -> list[ModelType]:
        stmt = select(self.model).where(*where)
        if order_by:
            stmt = stmt.order_by(*order_by)
        return list(self.session.execute(stmt).scalars())

    def _check_columns(self, values: dict[str, Any]) -> None:
        for key in values:
            if key not in self._columns or key in _PROTECTED_COLUMNS:
                raise ValidationError(
                    key, f"not an updatable column of {self.model.__name__}"
                )

    def add(self, entity: ModelType) -> ModelType:
        self.session.add(entity)
        self.session.flush()
        return entity

    def create(self, actor_id: UUID, **values: Any) -> ModelType:
        """Insert a row built from column values."""
        self._check_columns(values)
        return self.add(self.model(created_by_id=actor_id, **values))

    def update(
        self,
        entity_id: UUID,
        actor_id: UUID,
        **changes: Any,
    ) -> ModelType | None:
        """Apply column changes to one row; returns None if it does not exist."""
        self._check_columns(changes)

        entity = self.get(entity_id)
        if entity is None:
            return None
        for key, value in changes.items():
            setattr(entity, key, value)
        entity.updated_by_id = actor_id
        self.session.flush()
        return entity

    def delete(self, entity_id: UUID) -> bool:
        entity = self.get(entity_id)
        if entity is None:
            return False
        self.session.delete(entity)
        self.session.flush()
        return True
