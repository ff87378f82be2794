"""Tests for the reconciliation projections (billing_engines/reconciliation.py)."""

from datetime import date
from decimal import Decimal
from uuid import uuid4

from billing_engines.bank_import import TransactionType
from billing_engines.reconciliation import (
    BankLine,
    MatchStatus,
    PlatformTransaction,
    ReferenceType,
    balance_statement,
    build_reconciliation_view,
    unmatched_platform_transactions,
)


def _platform(kind=ReferenceType.INVOICE, amount="100") -> PlatformTransaction:
    return PlatformTransaction(
        id=uuid4(),
        source_kind=kind,
        transaction_date=date(2024, 3, 1),
        description="Invoice INV-000001" if kind == ReferenceType.INVOICE else "Printer paper",
        amount=Decimal(amount),
        direction=TransactionType.CREDIT if kind == ReferenceType.INVOICE else TransactionType.DEBIT,
    )


def _bank(amount="100", type=TransactionType.CREDIT, matched: PlatformTransaction | None = None) -> BankLine:
    return BankLine(
        id=uuid4(),
        transaction_date=date(2024, 3, 2),
        description="DEPOSIT",
        amount=Decimal(amount),
        type=type,
        match_status=MatchStatus.MATCHED if matched else MatchStatus.UNMATCHED,
        matched_reference_id=matched.id if matched else None,
        matched_reference_type=matched.source_kind if matched else None,
    )


class TestUnmatchedPlatform:

    def test_matched_reference_excluded(self):
        invoice, expense = _platform(), _platform(ReferenceType.EXPENSE, "20")
        lines = [_bank(matched=invoice)]
        assert unmatched_platform_transactions([invoice, expense], lines) == (expense,)

    def test_same_id_different_kind_not_confused(self):
        invoice = _platform()
        expense = PlatformTransaction(
            id=invoice.id,
            source_kind=ReferenceType.EXPENSE,
            transaction_date=date(2024, 3, 1),
            description="Paper",
            amount=Decimal("5"),
            direction=TransactionType.DEBIT,
        )
        assert unmatched_platform_transactions([invoice, expense], [_bank(matched=invoice)]) == (expense,)

    def test_unmatched_bank_lines_reference_nothing(self):
        invoice = _platform()
        assert unmatched_platform_transactions([invoice], [_bank()]) == (invoice,)


class TestView:

    def test_rows_and_summary(self):
        invoice = _platform(amount="1523.47")
        matched = _bank("1523.47", matched=invoice)
        fee = _bank("12.50", TransactionType.DEBIT)

        view = build_reconciliation_view(bank_lines=[matched, fee], platform=[invoice])

        assert view.rows[0].platform == invoice
        assert view.rows[0].effective_status == MatchStatus.MATCHED
        assert view.rows[1].platform is None
        assert view.unmatched_platform == ()
        assert view.warnings == ()
        assert view.summary.deposits_total == Decimal("1523.47")
        assert view.summary.withdrawals_total == Decimal("12.50")
        assert view.summary.matched_count == 1
        assert view.summary.unmatched_count == 1

    def test_dangling_reference_shown_unmatched_with_warning(self, captured_logs):
        gone = _platform()
        line = _bank(matched=gone)

        view = build_reconciliation_view(bank_lines=[line], platform=[])

        assert view.rows[0].effective_status == MatchStatus.UNMATCHED
        assert view.rows[0].bank.match_status == MatchStatus.MATCHED
        assert len(view.warnings) == 1
        assert view.warnings[0].entity_id == str(line.id)
        assert view.summary.inconsistent_count == 1
        assert view.summary.unmatched_count == 1
        assert any(r["message"] == "reconciliation_reference_unresolved" for r in captured_logs())

    def test_empty(self):
        view = build_reconciliation_view(bank_lines=[], platform=[])
        assert view.rows == ()
        assert view.summary.matched_count == 0
        assert view.summary.deposits_total == 0


class TestStatementBalance:

    def test_rolls_forward_to_stated_ending(self):
        lines = [_bank("1523.47"), _bank("45.20", TransactionType.DEBIT), _bank("300", TransactionType.DEBIT)]
        balance = balance_statement(
            bank_lines=lines,
            beginning_balance=Decimal("10000.00"),
            ending_balance=Decimal("11178.27"),
        )
        assert balance.deposits_total == Decimal("1523.47")
        assert balance.withdrawals_total == Decimal("345.20")
        assert balance.calculated_ending_balance == Decimal("11178.27")
        assert balance.variance == 0
        assert balance.is_balanced

    def test_variance_reported(self):
        balance = balance_statement(
            bank_lines=[_bank("100")],
            beginning_balance=Decimal("50"),
            ending_balance=Decimal("140"),
        )
        assert balance.variance == Decimal("-10.00")
        assert not balance.is_balanced

    def test_one_cent_off_is_out_of_balance(self):
        balance = balance_statement(
            bank_lines=[_bank("100")], beginning_balance=Decimal("0"), ending_balance=Decimal("100.01"),
        )
        assert not balance.is_balanced

    def test_missing_balances_count_as_zero(self):
        balance = balance_statement(bank_lines=[], beginning_balance=None, ending_balance=None)
        assert balance.calculated_ending_balance == 0
        assert balance.is_balanced
