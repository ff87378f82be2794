"""
Reconciliation Domain Models (``billing_modules.reconciliation.models``).

Frozen value objects for persisted bank statements, bank transactions and
import results.
Platform transactions, views and summaries are engine types from
``billing_engines.reconciliation``.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from billing_engines.bank_import import TransactionType
from billing_engines.reconciliation import MatchStatus, ReferenceType
from billing_kernel.exceptions import ValidationError


@dataclass(frozen=True)
class BankTransaction:
    """One imported bank statement row and its match state."""
    id: UUID
    company_id: UUID
    transaction_date: date
    description: str
    amount: Decimal
    type: TransactionType
    match_status: MatchStatus = MatchStatus.UNMATCHED
    statement_id: UUID | None = None
    check_number: str | None = None
    matched_reference_id: UUID | None = None
    matched_reference_type: ReferenceType | None = None
    matched_at: datetime | None = None


@dataclass(frozen=True)
class ImportResult:
    """Outcome of importing one CSV statement."""
    statement_id: UUID
    created: int
    skipped: int
    transaction_ids: tuple[UUID, ...] = field(default_factory=tuple)
    deposits_total: Decimal = Decimal("0")
    withdrawals_total: Decimal = Decimal("0")


@dataclass(frozen=True)
class StatementDetails:
    """What the bank prints at the top of a statement; every field optional."""
    account_name: str | None = None
    account_number: str | None = None
    original_filename: str | None = None
    period_start: date | None = None
    period_end: date | None = None
    beginning_balance: Decimal | None = None
    ending_balance: Decimal | None = None

    def __post_init__(self):
        if self.period_start and self.period_end and self.period_start > self.period_end:
            raise ValidationError("period_end", "must not be before period_start")


@dataclass(frozen=True)
class BankStatement:
    """One imported statement; its rows reference it by statement_id."""
    id: UUID
    company_id: UUID
    account_name: str | None = None
    account_number: str | None = None
    original_filename: str | None = None
    period_start: date | None = None
    period_end: date | None = None
    beginning_balance: Decimal | None = None
    ending_balance: Decimal | None = None
    created_at: datetime | None = None

    @property
    def masked_account_number(self) -> str | None:
        if not self.account_number:
            return None
        return f"****{self.account_number[-4:]}"
