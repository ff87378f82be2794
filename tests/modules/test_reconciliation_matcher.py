"""ReconciliationMatcher tests against a real session."""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from billing_engines.bank_import import TransactionType
from billing_engines.payment_allocation import AllocationLine
from billing_engines.reconciliation import MatchStatus, ReferenceType
from billing_engines.task_billing import BillingStrategy
from billing_kernel.db.guarded import refetch
from billing_kernel.exceptions import (
    AlreadyMatchedError,
    BankStatementNotFoundError,
    BankTransactionNotFoundError,
    PlatformTransactionNotFoundError,
    ReferenceAlreadyMatchedError,
    ValidationError,
)
from billing_modules.invoicing.models import BillingRequest
from billing_modules.invoicing.service import InvoiceComposer
from billing_modules.payments.models import PaymentInfo
from billing_modules.payments.service import PaymentAllocator
from billing_modules.projects.models import ApprovalStatus
from billing_modules.projects.orm import ExpenseModel
from billing_modules.reconciliation.models import StatementDetails
from billing_modules.reconciliation.service import ReconciliationMatcher

STATEMENT = (
    "Posting Date,Memo,Amount,Check No\n"
    "2024-03-20,DEPOSIT ACME ARCHITECTS,1523.47,\n"
    "2024-03-21,OFFICE DEPOT,-45.20,\n"
    "2024-03-22,ZERO ADJUSTMENT,0.00,\n"
    "2024-03-23,DEPOSIT ACME ARCHITECTS,1523.47,\n"
    "2024-03-24,CHECK 1042,-300.00,1042\n"
)


@pytest.fixture
def matcher(session, clock, no_wait_retry):
    return ReconciliationMatcher(session, clock=clock, retry_policy=no_wait_retry)


@pytest.fixture
def imported(matcher, company_id, actor_id):
    return matcher.import_csv(company_id, STATEMENT, actor_id)


@pytest.fixture
def make_invoice(session, clock, company_id, client, actor_id):
    """Factory for a manual invoice, optionally paid in full."""
    composer = InvoiceComposer(session, clock=clock)
    allocator = PaymentAllocator(session, clock=clock)

    def _make(total: str = "1523.47", paid: bool = True):
        invoice = composer.create_invoice(
            BillingRequest(
                company_id=company_id,
                client_id=client.id,
                strategy=BillingStrategy.MANUAL,
                subtotal=Decimal(total),
            ),
            actor_id,
        )
        composer.mark_sent(invoice.id, actor_id)
        if paid:
            allocator.apply_payment(
                client.id,
                PaymentInfo(amount=Decimal(total), payment_date=date(2024, 3, 19), method="check"),
                [AllocationLine(invoice.id, Decimal(total))],
                actor_id,
            )
        return invoice

    return _make


@pytest.fixture
def expense(projects, company_id, actor_id):
    return projects.record_expense(
        company_id, date(2024, 3, 21), "Office supplies", Decimal("45.20"), actor_id,
        approval_status=ApprovalStatus.APPROVED,
    )


class TestImport:

    def test_rows_stored_unmatched(self, matcher, imported, company_id, captured_logs):
        assert imported.created == 4
        assert imported.skipped == 1
        assert imported.deposits_total == Decimal("3046.94")
        assert imported.withdrawals_total == Decimal("345.20")

        deposit = matcher.get(imported.transaction_ids[0])
        assert deposit.company_id == company_id
        assert deposit.statement_id == imported.statement_id
        assert deposit.type == TransactionType.CREDIT
        assert deposit.amount == Decimal("1523.47")
        assert deposit.match_status == MatchStatus.UNMATCHED
        assert deposit.matched_reference_id is None

        check = matcher.get(imported.transaction_ids[3])
        assert check.type == TransactionType.DEBIT
        assert check.check_number == "1042"

    def test_import_logged(self, matcher, company_id, actor_id, captured_logs):
        matcher.import_csv(company_id, STATEMENT, actor_id)
        record = next(r for r in captured_logs() if r["message"] == "bank_statement_imported")
        assert record["created_count"] == 4
        assert record["skipped_count"] == 1

    def test_explicit_statement_id(self, matcher, company_id, actor_id):
        statement_id = uuid4()
        result = matcher.import_csv(company_id, STATEMENT, actor_id, statement_id=statement_id)
        assert result.statement_id == statement_id
        assert matcher.get_statement(statement_id).company_id == company_id

    def test_month_day_dates_use_default_year(self, matcher, company_id, actor_id):
        result = matcher.import_csv(
            company_id, "Date,Description,Amount\n3/7,Deposit,10\n", actor_id, default_year=2023,
        )
        assert matcher.get(result.transaction_ids[0]).transaction_date == date(2023, 3, 7)

    def test_unrecognized_header_stores_nothing(self, matcher, company_id, actor_id):
        with pytest.raises(ValidationError):
            matcher.import_csv(company_id, "Memo,Amount\nx,1\n", actor_id)
        assert matcher.view(company_id).rows == ()


class TestStatements:

    @pytest.fixture
    def details(self):
        return StatementDetails(
            account_name="Operating Checking",
            account_number="000123456789",
            original_filename="march.csv",
            period_start=date(2024, 3, 1),
            period_end=date(2024, 3, 31),
            beginning_balance=Decimal("5000.00"),
            ending_balance=Decimal("7701.74"),
        )

    def test_statement_recorded_with_rows(self, matcher, company_id, actor_id, details):
        result = matcher.import_csv(company_id, STATEMENT, actor_id, details=details)

        statement = matcher.get_statement(result.statement_id)
        assert statement.account_name == "Operating Checking"
        assert statement.masked_account_number == "****6789"
        assert statement.period_end == date(2024, 3, 31)
        assert statement.beginning_balance == Decimal("5000.00")
        assert all(
            matcher.get(bank_id).statement_id == statement.id for bank_id in result.transaction_ids
        )

    def test_balanced_statement(self, matcher, company_id, actor_id, details):
        result = matcher.import_csv(company_id, STATEMENT, actor_id, details=details)

        balance = matcher.statement_balance(result.statement_id)

        assert balance.deposits_total == Decimal("3046.94")
        assert balance.withdrawals_total == Decimal("345.20")
        assert balance.calculated_ending_balance == Decimal("7701.74")
        assert balance.variance == 0
        assert balance.is_balanced

    def test_out_of_balance_statement_logged(self, matcher, company_id, actor_id, captured_logs):
        result = matcher.import_csv(
            company_id, STATEMENT, actor_id,
            details=StatementDetails(beginning_balance=Decimal("5000"), ending_balance=Decimal("7700")),
        )

        balance = matcher.statement_balance(result.statement_id)

        assert balance.variance == Decimal("-1.74")
        assert not balance.is_balanced
        record = next(r for r in captured_logs() if r["message"] == "bank_statement_out_of_balance")
        assert record["variance"] == "-1.74"

    def test_balance_only_counts_own_rows(self, matcher, company_id, actor_id, details):
        matcher.import_csv(company_id, "Date,Description,Amount\n2024-04-02,Deposit,999\n", actor_id)
        result = matcher.import_csv(company_id, STATEMENT, actor_id, details=details)

        assert matcher.statement_balance(result.statement_id).is_balanced

    def test_list_latest_period_first(self, matcher, company_id, actor_id):
        february = matcher.import_csv(
            company_id, STATEMENT, actor_id,
            details=StatementDetails(period_start=date(2024, 2, 1), period_end=date(2024, 2, 29)),
        )
        march = matcher.import_csv(
            company_id, STATEMENT, actor_id,
            details=StatementDetails(period_start=date(2024, 3, 1), period_end=date(2024, 3, 31)),
        )

        assert [s.id for s in matcher.list_statements(company_id)] == [
            march.statement_id, february.statement_id,
        ]
        assert matcher.list_statements(uuid4()) == []

    def test_inverted_period_rejected(self):
        with pytest.raises(ValidationError):
            StatementDetails(period_start=date(2024, 3, 31), period_end=date(2024, 3, 1))

    def test_unknown_statement(self, matcher, engine):
        with pytest.raises(BankStatementNotFoundError):
            matcher.statement_balance(uuid4())


class TestMatch:

    def test_match_invoice(self, matcher, imported, make_invoice, company_id, actor_id, captured_logs):
        invoice = make_invoice()

        matched = matcher.match(
            imported.transaction_ids[0], invoice.id, ReferenceType.INVOICE, actor_id,
        )

        assert matched.match_status == MatchStatus.MATCHED
        assert matched.matched_reference_id == invoice.id
        assert matched.matched_reference_type == ReferenceType.INVOICE
        assert matched.matched_at is not None
        assert matcher.unmatched_platform_transactions(company_id) == ()
        assert any(r["message"] == "bank_transaction_matched" for r in captured_logs())

    def test_match_expense(self, matcher, imported, expense, company_id, actor_id):
        matched = matcher.match(
            imported.transaction_ids[1], expense.id, ReferenceType.EXPENSE, actor_id,
        )
        assert matched.matched_reference_type == ReferenceType.EXPENSE

    def test_bank_row_matched_once(self, matcher, imported, make_invoice, actor_id):
        first, second = make_invoice(), make_invoice()
        matcher.match(imported.transaction_ids[0], first.id, ReferenceType.INVOICE, actor_id)

        with pytest.raises(AlreadyMatchedError):
            matcher.match(imported.transaction_ids[0], second.id, ReferenceType.INVOICE, actor_id)

    def test_reference_matched_once(self, matcher, imported, make_invoice, actor_id):
        invoice = make_invoice()
        matcher.match(imported.transaction_ids[0], invoice.id, ReferenceType.INVOICE, actor_id)

        with pytest.raises(ReferenceAlreadyMatchedError):
            matcher.match(imported.transaction_ids[2], invoice.id, ReferenceType.INVOICE, actor_id)
        assert matcher.get(imported.transaction_ids[2]).match_status == MatchStatus.UNMATCHED

    def test_unpaid_invoice_not_matchable(self, matcher, imported, make_invoice, actor_id):
        invoice = make_invoice(paid=False)
        with pytest.raises(PlatformTransactionNotFoundError):
            matcher.match(imported.transaction_ids[0], invoice.id, ReferenceType.INVOICE, actor_id)

    def test_rejected_expense_not_matchable(self, matcher, imported, projects, expense, actor_id):
        projects.set_expense_approval(expense.id, ApprovalStatus.REJECTED, actor_id)
        with pytest.raises(PlatformTransactionNotFoundError):
            matcher.match(imported.transaction_ids[1], expense.id, ReferenceType.EXPENSE, actor_id)

    def test_other_company_expense_not_matchable(self, matcher, imported, projects, actor_id):
        foreign = projects.record_expense(
            uuid4(), date(2024, 3, 21), "Elsewhere", Decimal("45.20"), actor_id,
        )
        with pytest.raises(PlatformTransactionNotFoundError):
            matcher.match(imported.transaction_ids[1], foreign.id, ReferenceType.EXPENSE, actor_id)

    def test_unknown_bank_transaction(self, matcher, engine, actor_id):
        with pytest.raises(BankTransactionNotFoundError):
            matcher.match(uuid4(), uuid4(), ReferenceType.INVOICE, actor_id)

    def test_reference_type_accepts_plain_string(self, matcher, imported, expense, actor_id):
        matched = matcher.match(imported.transaction_ids[1], expense.id, "expense", actor_id)
        assert matched.matched_reference_type == ReferenceType.EXPENSE


class TestUnmatch:

    def test_round_trip(self, matcher, imported, make_invoice, actor_id):
        invoice = make_invoice()
        bank_id = imported.transaction_ids[0]
        matcher.match(bank_id, invoice.id, ReferenceType.INVOICE, actor_id)

        restored = matcher.unmatch(bank_id, actor_id)

        assert restored.match_status == MatchStatus.UNMATCHED
        assert restored.matched_reference_id is None
        assert restored.matched_reference_type is None
        assert restored.matched_at is None

    def test_idempotent(self, matcher, imported, actor_id, captured_logs):
        bank_id = imported.transaction_ids[0]
        first = matcher.unmatch(bank_id, actor_id)
        second = matcher.unmatch(bank_id, actor_id)
        assert first == second
        assert not any(r["message"] == "bank_transaction_unmatched" for r in captured_logs())

    def test_reference_free_after_unmatch(self, matcher, imported, make_invoice, actor_id):
        invoice = make_invoice()
        matcher.match(imported.transaction_ids[0], invoice.id, ReferenceType.INVOICE, actor_id)
        matcher.unmatch(imported.transaction_ids[0], actor_id)

        moved = matcher.match(imported.transaction_ids[2], invoice.id, ReferenceType.INVOICE, actor_id)
        assert moved.matched_reference_id == invoice.id

    def test_unknown(self, matcher, engine, actor_id):
        with pytest.raises(BankTransactionNotFoundError):
            matcher.unmatch(uuid4(), actor_id)


class TestView:

    def test_platform_transactions(self, matcher, make_invoice, expense, company_id):
        invoice = make_invoice()
        make_invoice(paid=False)

        platform = matcher.platform_transactions(company_id)

        assert [(p.source_kind, p.id) for p in platform] == [
            (ReferenceType.INVOICE, invoice.id),
            (ReferenceType.EXPENSE, expense.id),
        ]
        credit = platform[0]
        assert credit.direction == TransactionType.CREDIT
        assert credit.transaction_date == date(2024, 3, 19)
        assert credit.description == f"Invoice {invoice.invoice_number}"

    def test_summary(self, matcher, imported, make_invoice, expense, company_id, actor_id):
        invoice = make_invoice()
        matcher.match(imported.transaction_ids[0], invoice.id, ReferenceType.INVOICE, actor_id)
        matcher.match(imported.transaction_ids[1], expense.id, ReferenceType.EXPENSE, actor_id)

        summary = matcher.summary(company_id)

        assert summary.matched_count == 2
        assert summary.unmatched_count == 2
        assert summary.inconsistent_count == 0
        assert summary.deposits_total == Decimal("3046.94")
        assert summary.withdrawals_total == Decimal("345.20")

    def test_rows_follow_statement_order(self, matcher, imported, company_id):
        view = matcher.view(company_id)
        assert [row.bank.id for row in view.rows] == list(imported.transaction_ids)

    def test_deleted_expense_shows_unmatched_with_warning(
        self, session, matcher, imported, expense, company_id, actor_id,
    ):
        bank_id = imported.transaction_ids[1]
        matcher.match(bank_id, expense.id, ReferenceType.EXPENSE, actor_id)
        session.delete(refetch(session, ExpenseModel, expense.id))
        session.commit()

        view = matcher.view(company_id)

        row = next(r for r in view.rows if r.bank.id == bank_id)
        assert row.effective_status == MatchStatus.UNMATCHED
        assert row.platform is None
        assert [w.entity_id for w in view.warnings] == [str(bank_id)]
        assert matcher.get(bank_id).match_status == MatchStatus.MATCHED
