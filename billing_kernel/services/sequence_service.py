"""
SequenceService -- monotonic invoice numbers via locked counter rows.

Responsibility:
    Provides strictly increasing sequence values per named sequence (one
    invoice-number sequence per company).  Uses a counter table with
    row-level locking (``SELECT ... FOR UPDATE``) so two concurrent invoice
    creations never receive the same number.

Architecture position:
    Kernel > Services.  Called by the InvoiceComposer inside its
    invoice-creation transaction.

Invariants enforced:
    - The locked counter row is the sole source of truth.  MAX(number)+1
      over the invoices table is never used.
    - Transactional: the increment is only visible after the caller
      commits.  A rolled-back invoice returns its number.

Failure modes:
    - IntegrityError on concurrent counter creation (handled with a
      savepoint and a locked re-read).
"""

from sqlalchemy import BigInteger, String, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Mapped, Session, mapped_column

from billing_kernel.db.base import Base
from billing_kernel.logging_config import get_logger

logger = get_logger("services.sequence")


class SequenceCounter(Base):
    """One row per named sequence holding its current value."""

    __tablename__ = "sequence_counters"

    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    current_value: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)


def invoice_sequence_name(company_id) -> str:
    """Sequence name for a company's invoice numbers."""
    return f"invoice_number:{company_id}"


def format_sequence_number(prefix: str, value: int, padding: int) -> str:
    """Render a sequence value as e.g. ``INV-000042``."""
    return f"{prefix}{value:0{padding}d}"


class SequenceService:
    """
    Generates transactional sequence numbers.

    Non-goals:
        - Does NOT call ``session.commit()``; the caller controls boundaries.
    """

    def __init__(self, session: Session):
        self._session = session

    def _locked_counter(self, sequence_name: str) -> SequenceCounter | None:
        return self._session.execute(
            select(SequenceCounter)
            .where(SequenceCounter.name == sequence_name)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def next_value(self, sequence_name: str) -> int:
        """
        Lock the counter row (creating it on first use), increment it and
        return the new value.

        Returns:
            The next sequence value (always > 0).
        """
        counter = self._locked_counter(sequence_name)

        if counter is None:
            # Another transaction may create the same counter concurrently
            savepoint = self._session.begin_nested()
            try:
                counter = SequenceCounter(name=sequence_name, current_value=1)
                self._session.add(counter)
                self._session.flush()
                savepoint.commit()
                logger.debug(
                    "sequence_allocated",
                    extra={"sequence_name": sequence_name, "value": 1},
                )
                return 1
            except IntegrityError:
                logger.debug(
                    "sequence_counter_race_retry",
                    extra={"sequence_name": sequence_name},
                )
                savepoint.rollback()
                counter = self._locked_counter(sequence_name)
                if counter is None:
                    raise

        counter.current_value += 1
        self._session.flush()
        logger.debug(
            "sequence_allocated",
            extra={"sequence_name": sequence_name, "value": counter.current_value},
        )
        return counter.current_value

    def current_value(self, sequence_name: str) -> int | None:
        """Get the current value of a sequence without incrementing."""
        return self._session.execute(
            select(SequenceCounter.current_value).where(
                SequenceCounter.name == sequence_name
            )
        ).scalar_one_or_none()
