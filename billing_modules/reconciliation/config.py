"""
Reconciliation Configuration Schema.

    config = ReconciliationConfig.from_billing_config(get_active_config())
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Self

from billing_kernel.logging_config import get_logger

logger = get_logger("modules.reconciliation.config")

_DEFAULT_SYNONYMS: dict[str, tuple[str, ...]] = {
    "date": ("date", "transaction date", "posting date", "posted date"),
    "description": ("description", "memo", "details", "payee"),
    "amount": ("amount", "transaction amount"),
    "debit": ("debit", "withdrawal", "withdrawals"),
    "credit": ("credit", "deposit", "deposits"),
    "check_number": ("check number", "check no", "check #", "check"),
}


@dataclass
class ReconciliationConfig:
    """Configuration schema for bank statement import and balancing."""

    column_synonyms: dict[str, tuple[str, ...]] = field(
        default_factory=lambda: dict(_DEFAULT_SYNONYMS)
    )
    date_formats: tuple[str, ...] = (
        "%Y-%m-%d",
        "%m/%d/%Y",
        "%m/%d/%y",
        "%B %d, %Y",
        "%b %d, %Y",
        "%B %d %Y",
        "%b %d %Y",
    )
    balance_tolerance: Decimal = Decimal("0.01")

    def __post_init__(self):
        if "date" not in self.column_synonyms:
            raise ValueError("column_synonyms must define the 'date' field")
        if not self.date_formats:
            raise ValueError("at least one date format is required")
        if self.balance_tolerance < 0:
            raise ValueError("balance_tolerance must be non-negative")
        self.column_synonyms = {
            name: tuple(s.lower() for s in values)
            for name, values in self.column_synonyms.items()
        }
        logger.debug(
            "reconciliation_config_initialized",
            extra={"fields": sorted(self.column_synonyms)},
        )

    @classmethod
    def from_billing_config(cls, config) -> Self:
        return cls(
            column_synonyms=config.imports.synonyms(),
            date_formats=tuple(config.imports.date_formats),
            balance_tolerance=config.imports.balance_tolerance,
        )
