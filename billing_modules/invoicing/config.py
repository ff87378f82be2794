"""
Invoicing Configuration Schema.

Module-level view of the invoice and ledger settings.  Built from the
active billing configuration:

    config = InvoicingConfig.from_billing_config(get_active_config())
"""

from dataclasses import dataclass
from typing import Self

from billing_engines.task_billing import BillingStrategy
from billing_kernel.logging_config import get_logger

logger = get_logger("modules.invoicing.config")


@dataclass
class InvoicingConfig:
    """
    Configuration schema for the invoicing module.

    Field defaults match ``billing_config/defaults.yaml``.
    """

    number_prefix: str = "INV-"
    number_padding: int = 6
    enabled_calculators: tuple[BillingStrategy, ...] = tuple(BillingStrategy)
    default_calculator: BillingStrategy = BillingStrategy.MILESTONE
    default_payment_terms_days: int = 30
    max_cas_attempts: int = 3

    def __post_init__(self):
        if not self.number_prefix:
            raise ValueError("number_prefix cannot be empty")
        if self.number_padding < 1:
            raise ValueError("number_padding must be at least 1")
        if not self.enabled_calculators:
            raise ValueError("at least one calculator must be enabled")
        if self.default_calculator not in self.enabled_calculators:
            raise ValueError(
                f"default_calculator '{self.default_calculator.value}' is not enabled"
            )
        if self.default_payment_terms_days < 0:
            raise ValueError("default_payment_terms_days cannot be negative")
        if self.max_cas_attempts < 1:
            raise ValueError("max_cas_attempts must be at least 1")
        logger.debug(
            "invoicing_config_initialized",
            extra={
                "number_prefix": self.number_prefix,
                "enabled_calculators": [c.value for c in self.enabled_calculators],
                "max_cas_attempts": self.max_cas_attempts,
            },
        )

    @classmethod
    def from_billing_config(cls, config) -> Self:
        """Derive from a ``billing_config.BillingConfiguration``."""
        return cls(
            number_prefix=config.invoices.number_prefix,
            number_padding=config.invoices.number_padding,
            enabled_calculators=tuple(
                BillingStrategy(name) for name in config.invoices.enabled_calculators
            ),
            default_calculator=BillingStrategy(config.invoices.default_calculator),
            default_payment_terms_days=config.invoices.default_payment_terms_days,
            max_cas_attempts=config.ledger.max_cas_attempts,
        )

    def is_enabled(self, strategy: BillingStrategy) -> bool:
        return strategy in self.enabled_calculators
