"""
Reconciliation Domain Objects and Projections.

Immutable value objects and pure functions for pairing bank transactions
with platform transactions (paid invoices and recorded expenses).  There is
no automatic or fuzzy matching: a match is always an explicit operator
action recorded by ``billing_modules.reconciliation.service``.

Derived here, never stored:
    - which platform transactions are unmatched (no matched bank row
      references them);
    - the reconciliation view, where a matched reference that no longer
      resolves is reported as an InconsistentStateWarning and displayed as
      unmatched;
    - summary totals;
    - whether a statement balances: beginning balance plus deposits minus
      withdrawals against the bank's stated ending balance.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Iterable, Mapping, Sequence
from uuid import UUID

from billing_engines.bank_import import TransactionType
from billing_engines.tracer import traced_engine
from billing_kernel.db.types import ZERO, round_money
from billing_kernel.exceptions import InconsistentStateWarning
from billing_kernel.logging_config import get_logger

logger = get_logger("engines.reconciliation")


class MatchStatus(str, Enum):
    UNMATCHED = "unmatched"
    MATCHED = "matched"


class ReferenceType(str, Enum):
    """Kind of platform transaction a bank row can be matched to."""

    INVOICE = "invoice"
    EXPENSE = "expense"


@dataclass(frozen=True, slots=True)
class PlatformTransaction:
    """
    A normalized view of a paid invoice or a recorded expense.

    Paid invoices are money in (credit); expenses are money out (debit).
    """

    id: UUID
    source_kind: ReferenceType
    transaction_date: date | None
    description: str
    amount: Decimal
    direction: TransactionType

    @property
    def key(self) -> tuple[UUID, ReferenceType]:
        return (self.id, self.source_kind)


@dataclass(frozen=True, slots=True)
class BankLine:
    """The reconciliation-relevant fields of a bank transaction."""

    id: UUID
    transaction_date: date
    description: str
    amount: Decimal
    type: TransactionType
    match_status: MatchStatus = MatchStatus.UNMATCHED
    matched_reference_id: UUID | None = None
    matched_reference_type: ReferenceType | None = None

    @property
    def matched_key(self) -> tuple[UUID, ReferenceType] | None:
        if self.match_status != MatchStatus.MATCHED:
            return None
        if self.matched_reference_id is None or self.matched_reference_type is None:
            return None
        return (self.matched_reference_id, self.matched_reference_type)


@dataclass(frozen=True, slots=True)
class ReconciliationRow:
    """One bank line with the platform transaction it resolves to, if any."""

    bank: BankLine
    platform: PlatformTransaction | None
    effective_status: MatchStatus


@dataclass(frozen=True, slots=True)
class ReconciliationSummary:
    deposits_total: Decimal
    withdrawals_total: Decimal
    matched_count: int
    unmatched_count: int
    inconsistent_count: int


@dataclass(frozen=True, slots=True)
class ReconciliationView:
    rows: tuple[ReconciliationRow, ...]
    unmatched_platform: tuple[PlatformTransaction, ...]
    warnings: tuple[InconsistentStateWarning, ...]
    summary: ReconciliationSummary


def unmatched_platform_transactions(
    platform: Iterable[PlatformTransaction],
    bank_lines: Iterable[BankLine],
) -> tuple[PlatformTransaction, ...]:
    """Platform transactions not referenced by any matched bank line."""
    matched = {line.matched_key for line in bank_lines if line.matched_key is not None}
    return tuple(p for p in platform if p.key not in matched)


def resolve_rows(
    bank_lines: Sequence[BankLine],
    platform_index: Mapping[tuple[UUID, ReferenceType], PlatformTransaction],
) -> tuple[tuple[ReconciliationRow, ...], tuple[InconsistentStateWarning, ...]]:
    """Pair each bank line with its platform transaction.

    A matched line whose reference does not resolve is shown as unmatched
    and reported as a warning.
    """
    rows: list[ReconciliationRow] = []
    warnings: list[InconsistentStateWarning] = []
    for line in bank_lines:
        key = line.matched_key
        if key is None:
            rows.append(ReconciliationRow(line, None, MatchStatus.UNMATCHED))
            continue

        platform = platform_index.get(key)
        if platform is None:
            warning = InconsistentStateWarning(
                entity_type="BankTransaction",
                entity_id=str(line.id),
                reason=f"matched {key[1].value} {key[0]} no longer exists",
            )
            warnings.append(warning)
            logger.warning("reconciliation_reference_unresolved", extra={
                "bank_transaction_id": str(line.id),
                "reference_id": str(key[0]),
                "reference_type": key[1].value,
            })
            rows.append(ReconciliationRow(line, None, MatchStatus.UNMATCHED))
        else:
            rows.append(ReconciliationRow(line, platform, MatchStatus.MATCHED))
    return tuple(rows), tuple(warnings)


def summarize(
    rows: Sequence[ReconciliationRow],
    warnings: Sequence[InconsistentStateWarning] = (),
) -> ReconciliationSummary:
    deposits = sum((r.bank.amount for r in rows if r.bank.type == TransactionType.CREDIT), ZERO)
    withdrawals = sum((r.bank.amount for r in rows if r.bank.type == TransactionType.DEBIT), ZERO)
    matched = sum(1 for r in rows if r.effective_status == MatchStatus.MATCHED)
    return ReconciliationSummary(
        deposits_total=deposits,
        withdrawals_total=withdrawals,
        matched_count=matched,
        unmatched_count=len(rows) - matched,
        inconsistent_count=len(warnings),
    )


@traced_engine("reconciliation", "1.0")
def build_reconciliation_view(
    *,
    bank_lines: Sequence[BankLine],
    platform: Sequence[PlatformTransaction],
) -> ReconciliationView:
    """Full reconciliation picture for one company."""
    index = {p.key: p for p in platform}
    rows, warnings = resolve_rows(bank_lines, index)
    return ReconciliationView(
        rows=rows,
        unmatched_platform=unmatched_platform_transactions(platform, bank_lines),
        warnings=warnings,
        summary=summarize(rows, warnings),
    )


@dataclass(frozen=True, slots=True)
class StatementBalance:
    """Calculated versus stated ending balance of one bank statement."""

    beginning_balance: Decimal
    deposits_total: Decimal
    withdrawals_total: Decimal
    calculated_ending_balance: Decimal
    ending_balance: Decimal
    variance: Decimal
    is_balanced: bool


def balance_statement(
    *,
    bank_lines: Iterable[BankLine],
    beginning_balance: Decimal | None,
    ending_balance: Decimal | None,
    tolerance: Decimal = Decimal("0.01"),
) -> StatementBalance:
    """
    Roll the statement's rows forward from its beginning balance.

    Missing balances count as zero.  The statement balances when the stated
    ending balance differs from the calculated one by less than
    ``tolerance``.
    """
    lines = list(bank_lines)
    deposits = sum((line.amount for line in lines if line.type == TransactionType.CREDIT), ZERO)
    withdrawals = sum((line.amount for line in lines if line.type == TransactionType.DEBIT), ZERO)
    beginning = round_money(beginning_balance or ZERO)
    ending = round_money(ending_balance or ZERO)
    calculated = round_money(beginning + deposits - withdrawals)
    variance = ending - calculated
    return StatementBalance(
        beginning_balance=beginning,
        deposits_total=round_money(deposits),
        withdrawals_total=round_money(withdrawals),
        calculated_ending_balance=calculated,
        ending_balance=ending,
        variance=variance,
        is_balanced=abs(variance) < tolerance,
    )
