"""
Reconciliation Module Service - pairs bank transactions with platform records.

Thin glue layer that:
1. Parses statement CSV text with billing_engines.bank_import, records the
   statement and stores each surviving row as an unmatched
   BankTransactionModel referencing it
2. Records manual one-to-one matches with a guarded UPDATE on the bank row
3. Builds the reconciliation view and per-statement balance check with
   billing_engines.reconciliation

Matching is an explicit operator action; nothing here matches
automatically.  A platform transaction may be matched to at most one bank
transaction: checked before the write and enforced by the partial unique
index ``uq_bank_transactions_matched_reference``.

Usage:
    matcher = ReconciliationMatcher(session, clock=clock)
    result = matcher.import_csv(company_id, csv_text, actor_id=actor_id)
    matcher.match(result.transaction_ids[0], invoice_id,
                  ReferenceType.INVOICE, actor_id=actor_id)
    view = matcher.view(company_id)
    balance = matcher.statement_balance(result.statement_id)
"""

from __future__ import annotations

from uuid import UUID, uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from billing_engines.bank_import import parse_bank_csv
from billing_engines.reconciliation import (
    MatchStatus,
    PlatformTransaction,
    ReconciliationSummary,
    ReconciliationView,
    ReferenceType,
    StatementBalance,
    balance_statement,
    build_reconciliation_view,
    unmatched_platform_transactions,
)
from billing_kernel.db.guarded import guarded_update, refetch
from billing_kernel.domain.clock import Clock, SystemClock
from billing_kernel.exceptions import (
    AlreadyMatchedError,
    BankStatementNotFoundError,
    BankTransactionNotFoundError,
    PlatformTransactionNotFoundError,
    ReferenceAlreadyMatchedError,
)
from billing_kernel.logging_config import LogContext, get_logger
from billing_kernel.services.retry_service import RetryPolicy
from billing_modules.reconciliation.config import ReconciliationConfig
from billing_modules.reconciliation.models import (
    BankStatement,
    BankTransaction,
    ImportResult,
    StatementDetails,
)
from billing_modules.reconciliation.orm import BankStatementModel, BankTransactionModel
from billing_modules.reconciliation.selectors import (
    BankLineSelector,
    BankStatementSelector,
    PlatformTransactionSelector,
)

logger = get_logger("modules.reconciliation.service")


class ReconciliationMatcher:
    """
    Imports bank statements and maintains bank-to-platform matches.

    Engine composition:
    - bank_import: CSV header resolution and amount normalization
    - reconciliation: unmatched derivation, view and summary

    Transaction boundary: this service commits on success, rolls back on failure.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        config: ReconciliationConfig | None = None,
        retry_policy: RetryPolicy | None = None,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._config = config or ReconciliationConfig()
        self._retry = retry_policy or RetryPolicy()
        self._platform = PlatformTransactionSelector(session)
        self._bank = BankLineSelector(session)
        self._statements = BankStatementSelector(session)

    # =========================================================================
    # Import
    # =========================================================================

    def import_csv(
        self,
        company_id: UUID,
        csv_text: str,
        actor_id: UUID,
        statement_id: UUID | None = None,
        default_year: int | None = None,
        details: StatementDetails | None = None,
    ) -> ImportResult:
        """
        Record a bank statement and store each parsable row as an unmatched
        bank transaction referencing it.

        Rows with a zero, negative or unparsable amount, or without a
        parsable date, are skipped and counted in ``ImportResult.skipped``.

        Raises:
            ValidationError: No header row, or no recognizable date column.
        """
        parsed = parse_bank_csv(
            csv_text=csv_text,
            synonyms=self._config.column_synonyms,
            date_formats=self._config.date_formats,
            default_year=default_year,
        )
        statement_id = statement_id or uuid4()
        details = details or StatementDetails()

        def unit_of_work() -> list[UUID]:
            try:
                self._session.add(BankStatementModel(
                    id=statement_id,
                    company_id=company_id,
                    account_name=details.account_name,
                    account_number=details.account_number,
                    original_filename=details.original_filename,
                    period_start=details.period_start,
                    period_end=details.period_end,
                    beginning_balance=details.beginning_balance,
                    ending_balance=details.ending_balance,
                    created_by_id=actor_id,
                ))
                self._session.flush()
                models = [
                    BankTransactionModel(
                        company_id=company_id,
                        statement_id=statement_id,
                        transaction_date=row.transaction_date,
                        description=row.description,
                        amount=row.amount,
                        type=row.type.value,
                        check_number=row.check_number,
                        match_status=MatchStatus.UNMATCHED.value,
                        created_by_id=actor_id,
                    )
                    for row in parsed.rows
                ]
                self._session.add_all(models)
                self._session.flush()
                ids = [m.id for m in models]
                self._session.commit()
                return ids
            except Exception:
                self._session.rollback()
                raise

        with LogContext.bind(actor_id=actor_id):
            ids = self._retry.run(unit_of_work, operation="import_bank_statement")
            logger.info("bank_statement_imported", extra={
                "company_id": str(company_id),
                "statement_id": str(statement_id),
                "created_count": len(ids),
                "skipped_count": parsed.skipped,
            })

        return ImportResult(
            statement_id=statement_id,
            created=len(ids),
            skipped=parsed.skipped,
            transaction_ids=tuple(ids),
            deposits_total=parsed.deposits_total,
            withdrawals_total=parsed.withdrawals_total,
        )

    # =========================================================================
    # Matching
    # =========================================================================

    def get(self, bank_transaction_id: UUID) -> BankTransaction:
        row = refetch(self._session, BankTransactionModel, bank_transaction_id)
        if row is None:
            raise BankTransactionNotFoundError(str(bank_transaction_id))
        return row.to_dto()

    def match(
        self,
        bank_transaction_id: UUID,
        reference_id: UUID,
        reference_type: ReferenceType,
        actor_id: UUID,
    ) -> BankTransaction:
        """
        Pair one unmatched bank transaction with one platform transaction.

        Raises:
            BankTransactionNotFoundError: Unknown bank transaction.
            AlreadyMatchedError: The bank transaction is already matched.
            PlatformTransactionNotFoundError: The invoice is not paid or
                does not exist, or the expense is rejected or missing.
            ReferenceAlreadyMatchedError: Another bank transaction already
                holds this reference.
        """
        reference_type = ReferenceType(reference_type)
        with LogContext.bind(actor_id=actor_id):
            return self._retry.run(
                lambda: self._match(bank_transaction_id, reference_id, reference_type, actor_id),
                operation="match_bank_transaction",
            )

    def _match(
        self,
        bank_transaction_id: UUID,
        reference_id: UUID,
        reference_type: ReferenceType,
        actor_id: UUID,
    ) -> BankTransaction:
        try:
            row = refetch(self._session, BankTransactionModel, bank_transaction_id)
            if row is None:
                raise BankTransactionNotFoundError(str(bank_transaction_id))
            if row.match_status == MatchStatus.MATCHED.value:
                raise AlreadyMatchedError(str(bank_transaction_id))

            if self._platform.get(row.company_id, reference_id, reference_type) is None:
                raise PlatformTransactionNotFoundError(str(reference_id), reference_type.value)

            holder = self._bank.matched_to(reference_id, reference_type)
            if holder is not None:
                raise ReferenceAlreadyMatchedError(str(reference_id), reference_type.value)

            try:
                rows = guarded_update(
                    self._session,
                    BankTransactionModel,
                    bank_transaction_id,
                    guard=(BankTransactionModel.match_status == MatchStatus.UNMATCHED.value,),
                    values={
                        "match_status": MatchStatus.MATCHED.value,
                        "matched_reference_id": reference_id,
                        "matched_reference_type": reference_type.value,
                        "matched_at": self._clock.now(),
                        "updated_by_id": actor_id,
                    },
                )
            except IntegrityError as exc:
                raise ReferenceAlreadyMatchedError(
                    str(reference_id), reference_type.value
                ) from exc
            if rows == 0:
                raise AlreadyMatchedError(str(bank_transaction_id))

            matched = refetch(self._session, BankTransactionModel, bank_transaction_id)
            self._session.commit()
        except Exception:
            self._session.rollback()
            raise

        logger.info("bank_transaction_matched", extra={
            "bank_transaction_id": str(bank_transaction_id),
            "reference_id": str(reference_id),
            "reference_type": reference_type.value,
        })
        return matched.to_dto()

    def unmatch(self, bank_transaction_id: UUID, actor_id: UUID) -> BankTransaction:
        """
        Return a bank transaction to the unmatched state.

        Idempotent: unmatching an unmatched row changes nothing.

        Raises:
            BankTransactionNotFoundError: Unknown bank transaction.
        """
        def unit_of_work() -> tuple[BankTransactionModel, int]:
            try:
                rows = guarded_update(
                    self._session,
                    BankTransactionModel,
                    bank_transaction_id,
                    guard=(BankTransactionModel.match_status == MatchStatus.MATCHED.value,),
                    values={
                        "match_status": MatchStatus.UNMATCHED.value,
                        "matched_reference_id": None,
                        "matched_reference_type": None,
                        "matched_at": None,
                        "updated_by_id": actor_id,
                    },
                )
                row = refetch(self._session, BankTransactionModel, bank_transaction_id)
                if row is None:
                    raise BankTransactionNotFoundError(str(bank_transaction_id))
                self._session.commit()
                return row, rows
            except Exception:
                self._session.rollback()
                raise

        with LogContext.bind(actor_id=actor_id):
            row, changed = self._retry.run(unit_of_work, operation="unmatch_bank_transaction")
            if changed:
                logger.info("bank_transaction_unmatched", extra={
                    "bank_transaction_id": str(bank_transaction_id),
                })
        return row.to_dto()

    # =========================================================================
    # Projections
    # =========================================================================

    def platform_transactions(self, company_id: UUID) -> list[PlatformTransaction]:
        """Paid invoices (credits) and non-rejected expenses (debits)."""
        return self._platform.all(company_id)

    def unmatched_platform_transactions(self, company_id: UUID) -> tuple[PlatformTransaction, ...]:
        return unmatched_platform_transactions(
            self._platform.all(company_id),
            self._bank.all(company_id),
        )

    def view(self, company_id: UUID) -> ReconciliationView:
        return build_reconciliation_view(
            bank_lines=self._bank.all(company_id),
            platform=self._platform.all(company_id),
        )

    def summary(self, company_id: UUID) -> ReconciliationSummary:
        return self.view(company_id).summary

    # =========================================================================
    # Statements
    # =========================================================================

    def get_statement(self, statement_id: UUID) -> BankStatement:
        statement = refetch(self._session, BankStatementModel, statement_id)
        if statement is None:
            raise BankStatementNotFoundError(str(statement_id))
        return statement.to_dto()

    def list_statements(self, company_id: UUID) -> list[BankStatement]:
        """Imported statements, latest period first."""
        return self._statements.all(company_id)

    def statement_balance(self, statement_id: UUID) -> StatementBalance:
        """
        Beginning balance plus deposits minus withdrawals of one statement,
        compared with the ending balance the bank reported.

        Raises:
            BankStatementNotFoundError: Unknown statement.
        """
        statement = self.get_statement(statement_id)
        balance = balance_statement(
            bank_lines=self._bank.for_statement(statement_id),
            beginning_balance=statement.beginning_balance,
            ending_balance=statement.ending_balance,
            tolerance=self._config.balance_tolerance,
        )
        if not balance.is_balanced:
            logger.warning("bank_statement_out_of_balance", extra={
                "statement_id": str(statement_id),
                "calculated_ending_balance": str(balance.calculated_ending_balance),
                "ending_balance": str(balance.ending_balance),
                "variance": str(balance.variance),
            })
        return balance
