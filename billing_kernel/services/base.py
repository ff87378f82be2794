"""
BaseService -- abstract base for stateful kernel services.

Responsibility:
    Common constructor and session-handling contract.  Concrete services
    receive a SQLAlchemy ``Session`` and use ``session.flush()``, never
    ``session.commit()``.

Architecture position:
    Kernel > Services.  Extended by flush-only building blocks such as the
    task billing ledger.  Module services (InvoiceComposer, PaymentAllocator,
    ReconciliationMatcher) sit above these and own the transaction boundary.

Invariants enforced:
    - Flush-only: a building block never commits or rolls back, so several
      of them can take part in one atomic unit of work.
"""

from abc import ABC
from typing import Generic, TypeVar

from sqlalchemy.orm import Session

from billing_kernel.db.base import Base

ModelType = TypeVar("ModelType", bound=Base)


class BaseService(ABC, Generic[ModelType]):
    """
    Abstract base class for flush-only kernel services.

    Non-goals:
        - Does NOT manage transaction lifecycle (commit/rollback).
        - Does NOT provide read-only query helpers; those belong in
          selectors.
    """

    def __init__(self, session: Session):
        self.session = session
