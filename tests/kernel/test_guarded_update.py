"""Tests for guarded_update / refetch (billing_kernel/db/guarded.py)."""

from decimal import Decimal
from uuid import uuid4

from billing_kernel.db.guarded import guarded_update, refetch
from billing_modules.projects.orm import TaskModel


class TestGuardedUpdate:

    def test_applies_when_guard_holds(self, session, make_task, actor_id):
        task = make_task("1000")
        rows = guarded_update(
            session,
            TaskModel,
            task.id,
            guard=(TaskModel.billed_percentage == 0,),
            values={
                "billed_percentage": TaskModel.billed_percentage + Decimal("25"),
                "updated_by_id": actor_id,
            },
        )
        assert rows == 1
        assert refetch(session, TaskModel, task.id).billed_percentage == Decimal("25")

    def test_skips_when_guard_fails(self, session, make_task, actor_id):
        task = make_task("1000")
        rows = guarded_update(
            session,
            TaskModel,
            task.id,
            guard=(TaskModel.billed_percentage == 50,),
            values={"billed_percentage": Decimal("75"), "updated_by_id": actor_id},
        )
        assert rows == 0
        assert refetch(session, TaskModel, task.id).billed_percentage == 0

    def test_unknown_id_affects_nothing(self, session, engine):
        rows = guarded_update(
            session, TaskModel, uuid4(), values={"billed_percentage": Decimal("10")}
        )
        assert rows == 0

    def test_refetch_sees_update_behind_identity_map(self, session, make_task, actor_id):
        task = make_task("1000")
        loaded = session.get(TaskModel, task.id)
        guarded_update(
            session, TaskModel, task.id,
            values={"billed_percentage": Decimal("40"), "updated_by_id": actor_id},
        )
        assert loaded.billed_percentage == 0
        assert refetch(session, TaskModel, task.id).billed_percentage == Decimal("40")
        assert loaded.billed_percentage == Decimal("40")

    def test_refetch_missing_returns_none(self, session, engine):
        assert refetch(session, TaskModel, uuid4()) is None
