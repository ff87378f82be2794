"""
Billing configuration schema.

Frozen dataclasses the YAML configuration is parsed into.  The loader builds
these; services receive them through ``billing_config.get_active_config()``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

CALCULATOR_TYPES = (
    "manual",
    "milestone",
    "percentage",
    "time_materials",
    "fixed_fee",
)

IMPORT_FIELDS = ("date", "description", "amount", "debit", "credit", "check_number")


@dataclass(frozen=True)
class InvoiceSettings:
    """Invoice numbering, calculator availability and default terms."""

    number_prefix: str = "INV-"
    number_padding: int = 6
    default_calculator: str = "milestone"
    enabled_calculators: tuple[str, ...] = CALCULATOR_TYPES
    default_payment_terms_days: int = 30


@dataclass(frozen=True)
class LedgerSettings:
    """Task billing ledger tuning."""

    currency_places: int = 2
    max_cas_attempts: int = 3


@dataclass(frozen=True)
class PaymentSettings:
    """Payment matching tolerance and accepted payment info."""

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


@dataclass(frozen=True)
class ImportSettings:
    """Bank CSV column synonyms, accepted date formats and statement balance tolerance."""

    column_synonyms: tuple[tuple[str, tuple[str, ...]], ...] = ()
    date_formats: tuple[str, ...] = ("%Y-%m-%d", "%m/%d/%Y")
    balance_tolerance: Decimal = Decimal("0.01")

    def synonyms(self) -> dict[str, tuple[str, ...]]:
        """Field name -> lower-cased header synonyms."""
        return {name: values for name, values in self.column_synonyms}


@dataclass(frozen=True)
class RetrySettings:
    """Transient store retry policy."""

    max_retries: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 10000
    jitter_ratio: float = 0.3
    retryable_fragments: tuple[str, ...] = ()
    auth_fragments: tuple[str, ...] = ()


@dataclass(frozen=True)
class BillingConfiguration:
    """The runtime configuration artifact."""

    config_id: str
    version: int
    invoices: InvoiceSettings = field(default_factory=InvoiceSettings)
    ledger: LedgerSettings = field(default_factory=LedgerSettings)
    payments: PaymentSettings = field(default_factory=PaymentSettings)
    imports: ImportSettings = field(default_factory=ImportSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    checksum: str = ""
