"""
Module: billing_engines
Responsibility:
    Package entrypoint re-exporting the pure calculation engines used by
    the billing modules.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May import billing_kernel (types, exceptions, logging) and sibling
    engine modules.  MUST NOT import billing_modules or billing_config.

Invariants enforced:
    - Purity: engines never read the clock; dates are passed in.
    - Decimal-only arithmetic for amounts and percentages.
    - Determinism: identical inputs always produce identical outputs.

Audit relevance:
    Main entry points are wrapped with ``@traced_engine`` and emit
    BILLING_ENGINE_TRACE records.
"""

from billing_engines.bank_import import (
    ParsedBankRow,
    ParsedStatement,
    TransactionType,
    parse_amount,
    parse_bank_csv,
)
from billing_engines.invoice_calculator import (
    InvoiceTotals,
    LineItemDraft,
    ManualLineInput,
    TaskSelection,
    compute_totals,
)
from billing_engines.payment_allocation import (
    AllocationLine,
    AllocationProposal,
    InvoiceStatus,
    OpenInvoice,
    propose_allocation,
    validate_allocation,
)
from billing_engines.reconciliation import (
    BankLine,
    MatchStatus,
    PlatformTransaction,
    ReconciliationSummary,
    ReconciliationView,
    ReferenceType,
    StatementBalance,
    balance_statement,
    build_reconciliation_view,
)
from billing_engines.task_billing import (
    BillingStrategy,
    TaskBillingResult,
    TaskBillingState,
    compute_billing,
    remaining_percentage,
)

__all__ = [
    "AllocationLine",
    "AllocationProposal",
    "BankLine",
    "BillingStrategy",
    "InvoiceStatus",
    "InvoiceTotals",
    "LineItemDraft",
    "ManualLineInput",
    "MatchStatus",
    "OpenInvoice",
    "ParsedBankRow",
    "ParsedStatement",
    "PlatformTransaction",
    "ReconciliationSummary",
    "ReconciliationView",
    "ReferenceType",
    "StatementBalance",
    "TaskBillingResult",
    "TaskBillingState",
    "TaskSelection",
    "TransactionType",
    "balance_statement",
    "build_reconciliation_view",
    "compute_billing",
    "compute_totals",
    "parse_amount",
    "parse_bank_csv",
    "propose_allocation",
    "remaining_percentage",
    "validate_allocation",
]
