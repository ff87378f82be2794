"""
Settings Module Service - company reference data.

One typed service per reference-data entity, parameterized by its ORM
class rather than a table name:

    terms = SettingsService(session, InvoiceTermModel)
    net30 = terms.create(company_id, actor_id, name="Net 30", days_until_due=30,
                         is_default=True)
    active = terms.list(company_id)

Lists are ordered by sort_order, then name, and skip inactive rows unless
asked.  Marking an invoice term as the default clears the flag on the
company's other terms.

This service owns the transaction boundary: each write commits on success
and rolls back on failure.
"""

from __future__ import annotations

from typing import Any, Generic, TypeVar
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from billing_kernel.db.repository import Repository
from billing_kernel.exceptions import ReferenceDataNotFoundError, ValidationError
from billing_kernel.logging_config import get_logger
from billing_modules.settings.orm import CategoryModel, ExpenseCodeModel, InvoiceTermModel

logger = get_logger("modules.settings.service")

SettingsModel = TypeVar("SettingsModel", CategoryModel, ExpenseCodeModel, InvoiceTermModel)


def default_invoice_term(session: Session, company_id: UUID) -> InvoiceTermModel | None:
    """The company's active default invoice term, if any."""
    return session.execute(
        select(InvoiceTermModel)
        .where(
            InvoiceTermModel.company_id == company_id,
            InvoiceTermModel.is_default.is_(True),
            InvoiceTermModel.is_inactive.is_(False),
        )
        .order_by(InvoiceTermModel.sort_order, InvoiceTermModel.name)
        .limit(1)
    ).scalar_one_or_none()


class SettingsService(Generic[SettingsModel]):
    """
    CRUD for one kind of reference data.

    Transaction boundary: this service commits on success, rolls back on failure.
    """

    def __init__(self, session: Session, model: type[SettingsModel]):
        self._session = session
        self._model = model
        self._repository = Repository(session, model)
        self._entity_type = model.__name__.removesuffix("Model")

    def list(self, company_id: UUID, include_inactive: bool = False) -> list:
        where = [self._model.company_id == company_id]
        if not include_inactive:
            where.append(self._model.is_inactive.is_(False))
        rows = self._repository.list(
            *where, order_by=(self._model.sort_order, self._model.name)
        )
        return [row.to_dto() for row in rows]

    def get(self, entity_id: UUID):
        return self._load(entity_id).to_dto()

    def _load(self, entity_id: UUID) -> SettingsModel:
        entity = self._repository.get(entity_id)
        if entity is None:
            raise ReferenceDataNotFoundError(self._entity_type, str(entity_id))
        return entity

    def _validate(self, values: dict[str, Any]) -> None:
        if "name" in values and (not values["name"] or not str(values["name"]).strip()):
            raise ValidationError("name", "cannot be empty")
        if values.get("days_until_due") is not None and values["days_until_due"] < 0:
            raise ValidationError("days_until_due", "must be non-negative")

    def _clear_other_defaults(self, company_id: UUID, keep_id: UUID) -> None:
        if self._model is not InvoiceTermModel:
            return
        self._session.execute(
            update(InvoiceTermModel)
            .where(
                InvoiceTermModel.company_id == company_id,
                InvoiceTermModel.id != keep_id,
                InvoiceTermModel.is_default.is_(True),
            )
            .values(is_default=False)
            .execution_options(synchronize_session="fetch")
        )

    def create(self, company_id: UUID, actor_id: UUID, **values: Any):
        self._validate(values)
        if "name" not in values:
            raise ValidationError("name", "is required")
        try:
            entity = self._repository.create(actor_id, company_id=company_id, **values)
            if values.get("is_default"):
                self._clear_other_defaults(company_id, entity.id)
            self._session.commit()
            logger.info("reference_data_created", extra={
                "entity_type": self._entity_type,
                "entity_id": str(entity.id),
            })
            return entity.to_dto()
        except Exception:
            self._session.rollback()
            raise

    def update(self, entity_id: UUID, actor_id: UUID, **changes: Any):
        self._validate(changes)
        if "company_id" in changes:
            raise ValidationError("company_id", "cannot be changed")
        try:
            entity = self._repository.update(entity_id, actor_id, **changes)
            if entity is None:
                raise ReferenceDataNotFoundError(self._entity_type, str(entity_id))
            if changes.get("is_default"):
                self._clear_other_defaults(entity.company_id, entity.id)
            self._session.commit()
            logger.info("reference_data_updated", extra={
                "entity_type": self._entity_type,
                "entity_id": str(entity_id),
                "fields": sorted(changes),
            })
            return entity.to_dto()
        except Exception:
            self._session.rollback()
            raise

    def deactivate(self, entity_id: UUID, actor_id: UUID):
        """Hide from default listings; keeps the row for historical references."""
        changes: dict[str, Any] = {"is_inactive": True}
        if self._model is InvoiceTermModel:
            changes["is_default"] = False
        return self.update(entity_id, actor_id, **changes)

    def delete(self, entity_id: UUID) -> None:
        try:
            if not self._repository.delete(entity_id):
                raise ReferenceDataNotFoundError(self._entity_type, str(entity_id))
            self._session.commit()
            logger.info("reference_data_deleted", extra={
                "entity_type": self._entity_type,
                "entity_id": str(entity_id),
            })
        except Exception:
            self._session.rollback()
            raise
