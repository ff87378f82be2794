"""Database layer - engine, base classes, types and guarded updates."""

from billing_kernel.db.base import UUID, Base, TrackedBase, UUIDString
from billing_kernel.db.engine import create_tables, get_engine, get_session
from billing_kernel.db.guarded import guarded_update, refetch
from billing_kernel.db.types import Money, Percentage, round_money

__all__ = [
    "get_engine",
    "get_session",
    "create_tables",
    "guarded_update",
    "refetch",
    "Base",
    "TrackedBase",
    "UUIDString",
    "UUID",
    "Money",
    "Percentage",
    "round_money",
]
