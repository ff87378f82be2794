"""
Payments Configuration Schema.

    config = PaymentsConfig.from_billing_config(get_active_config())
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Self

from billing_kernel.logging_config import get_logger

logger = get_logger("modules.payments.config")


@dataclass
class PaymentsConfig:
    """Configuration schema for the payments module."""

    match_tolerance: Decimal = Decimal("0.01")
    notes_max_length: int = 500
    payment_methods: tuple[str, ...] = (
        "check",
        "bank_transfer",
        "wire",
        "credit_card",
        "cash",
        "other",
    )

    def __post_init__(self):
        if self.match_tolerance < 0:
            raise ValueError("match_tolerance cannot be negative")
        if self.notes_max_length < 1:
            raise ValueError("notes_max_length must be positive")
        if not self.payment_methods:
            raise ValueError("at least one payment method is required")
        logger.debug(
            "payments_config_initialized",
            extra={
                "match_tolerance": str(self.match_tolerance),
                "payment_methods": list(self.payment_methods),
            },
        )

    @classmethod
    def from_billing_config(cls, config) -> Self:
        return cls(
            match_tolerance=config.payments.match_tolerance,
            notes_max_length=config.payments.notes_max_length,
            payment_methods=tuple(config.payments.payment_methods),
        )
