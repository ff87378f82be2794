"""
TaskBillingLedger tests.

The ledger is flush-only; tests commit or roll back themselves to observe
what it left pending.
"""

from decimal import Decimal
from uuid import uuid4

import pytest
from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from billing_engines.task_billing import BillingStrategy, TaskBillingState
from billing_kernel.exceptions import (
    ConcurrentUpdateError,
    FullyBilledError,
    TaskNotFoundError,
)
from billing_modules.invoicing.ledger import TaskBillingLedger, task_state


@pytest.fixture
def ledger(session):
    return TaskBillingLedger(session)


class TestCommit:

    def test_milestone_bills_everything(self, session, ledger, make_task, projects, actor_id):
        task = make_task("10000")
        result = ledger.commit_billing(task.id, BillingStrategy.MILESTONE, actor_id)
        session.commit()

        assert result.amount_to_bill == Decimal("10000.00")
        stored = projects.get_task(task.id)
        assert stored.billed_percentage == Decimal("100")
        assert stored.billed_amount == Decimal("10000")

    def test_second_milestone_fails(self, session, ledger, make_task, actor_id):
        task = make_task("10000")
        ledger.commit_billing(task.id, BillingStrategy.MILESTONE, actor_id)
        with pytest.raises(FullyBilledError):
            ledger.commit_billing(task.id, BillingStrategy.MILESTONE, actor_id)

    def test_partial_percentage_twice_then_clamp(self, session, ledger, make_task, projects, actor_id):
        task = make_task("8000")

        ledger.commit_billing(task.id, BillingStrategy.PERCENTAGE, actor_id, Decimal("25"))
        state = projects.get_task(task.id)
        assert (state.billed_percentage, state.billed_amount) == (Decimal("25"), Decimal("2000"))

        ledger.commit_billing(task.id, BillingStrategy.PERCENTAGE, actor_id, Decimal("50"))
        state = projects.get_task(task.id)
        assert (state.billed_percentage, state.billed_amount) == (Decimal("75"), Decimal("6000"))

        result = ledger.commit_billing(task.id, BillingStrategy.PERCENTAGE, actor_id, Decimal("50"))
        assert result.percentage_to_bill == Decimal("25")
        state = projects.get_task(task.id)
        assert (state.billed_percentage, state.billed_amount) == (Decimal("100"), Decimal("8000"))

    def test_unknown_task(self, ledger, engine, actor_id):
        with pytest.raises(TaskNotFoundError):
            ledger.commit_billing(uuid4(), BillingStrategy.MILESTONE, actor_id)

    def test_rollback_undoes_commit(self, session, ledger, make_task, projects, actor_id):
        task = make_task("1000")
        ledger.commit_billing(task.id, BillingStrategy.MILESTONE, actor_id)
        session.rollback()
        assert projects.get_task(task.id).billed_percentage == 0

    def test_invalid_attempt_count(self, session):
        with pytest.raises(ValueError):
            TaskBillingLedger(session, max_cas_attempts=0)


class TestCompareAndSwap:

    def test_stale_observation_rechecks_and_clamps(
        self, session, ledger, make_task, projects, actor_id, captured_logs,
    ):
        task = make_task("1000")
        stale = TaskBillingState(task_id=task.id, total_budget=Decimal("1000"))

        # Another biller takes 60% after our read
        ledger.commit_billing(task.id, BillingStrategy.PERCENTAGE, actor_id, Decimal("60"))

        result = ledger.commit_billing(
            task.id, BillingStrategy.PERCENTAGE, actor_id, Decimal("60"), observed=stale,
        )
        assert result.percentage_to_bill == Decimal("40")
        stored = projects.get_task(task.id)
        assert stored.billed_percentage == Decimal("100")
        assert stored.billed_amount == Decimal("1000")
        assert any(r["message"] == "ledger_commit_conflict" for r in captured_logs())

    def test_stale_milestone_after_full_billing_fails(self, ledger, make_task, actor_id):
        task = make_task("1000")
        stale = TaskBillingState(task_id=task.id, total_budget=Decimal("1000"))
        ledger.commit_billing(task.id, BillingStrategy.MILESTONE, actor_id)

        with pytest.raises(FullyBilledError):
            ledger.commit_billing(task.id, BillingStrategy.MILESTONE, actor_id, observed=stale)

    def test_gives_up_after_max_attempts(self, session, make_task, actor_id):
        task = make_task("1000")
        ledger = TaskBillingLedger(session, max_cas_attempts=1)
        stale = TaskBillingState(task_id=task.id, total_budget=Decimal("1000"))
        ledger.commit_billing(task.id, BillingStrategy.PERCENTAGE, actor_id, Decimal("10"))

        with pytest.raises(ConcurrentUpdateError) as exc_info:
            ledger.commit_billing(
                task.id, BillingStrategy.PERCENTAGE, actor_id, Decimal("10"), observed=stale,
            )
        assert exc_info.value.attempts == 1


class TestReversal:

    def test_reversal_restores_previous_state(self, ledger, make_task, projects, actor_id):
        task = make_task("8000")
        ledger.commit_billing(task.id, BillingStrategy.PERCENTAGE, actor_id, Decimal("25"))
        ledger.commit_billing(task.id, BillingStrategy.PERCENTAGE, actor_id, Decimal("50"))

        ledger.reverse_billing(task.id, Decimal("50"), Decimal("4000"), actor_id)
        state = projects.get_task(task.id)
        assert (state.billed_percentage, state.billed_amount) == (Decimal("25"), Decimal("2000"))

    def test_full_reversal_returns_to_zero(self, ledger, make_task, projects, actor_id):
        task = make_task("10000")
        ledger.commit_billing(task.id, BillingStrategy.MILESTONE, actor_id)
        ledger.reverse_billing(task.id, Decimal("100"), Decimal("10000"), actor_id)

        state = projects.get_task(task.id)
        assert state.billed_percentage == 0
        assert state.billed_amount == 0
        result = ledger.commit_billing(task.id, BillingStrategy.MILESTONE, actor_id)
        assert result.amount_to_bill == Decimal("10000.00")


class TestLedgerBoundAgainstStore:

    @settings(
        max_examples=25,
        deadline=None,
        suppress_health_check=[HealthCheck.function_scoped_fixture],
    )
    @given(requests=st.lists(st.integers(min_value=1, max_value=150), min_size=1, max_size=8))
    def test_billed_percentage_never_exceeds_hundred(
        self, session, ledger, make_task, actor_id, requests,
    ):
        task = make_task("5000")
        previous = Decimal("0")
        for requested in requests:
            try:
                ledger.commit_billing(
                    task.id, BillingStrategy.PERCENTAGE, actor_id, Decimal(requested),
                )
            except FullyBilledError:
                assert previous == 100
            current = task_state(ledger.load(task.id))
            assert previous <= current.billed_percentage <= 100
            assert current.billed_amount <= Decimal("5000")
            previous = current.billed_percentage
        session.rollback()
