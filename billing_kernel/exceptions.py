"""
Typed Exception Hierarchy for the Billing Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Billing errors must be handled precisely.  A caller rendering "Task 'Design'
is already fully billed" needs the task id, not a parsed message string.

Every error in this module:
  1. Has a TYPED exception class (catch by type, not message)
  2. Has a CODE attribute (machine-readable, API-safe)
  3. Carries structured DATA (entity ids, offending amounts)

Example:
    try:
        composer.create_invoice(request, actor_id=actor_id)
    except FullyBilledError as e:
        show_error(code=e.code, task_id=e.task_id)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    BillingKernelError (base)
    |
    +-- ValidationError
    |
    +-- LedgerError
    |   +-- FullyBilledError
    |   +-- TaskNotFoundError
    |
    +-- InvoiceError
    |   +-- InvoiceNotFoundError
    |   +-- InvalidInvoiceTransitionError
    |
    +-- AllocationError
    |   +-- AllocationExceedsBalanceError
    |
    +-- ReconciliationError
    |   +-- BankTransactionNotFoundError
    |   +-- BankStatementNotFoundError
    |   +-- PlatformTransactionNotFoundError
    |   +-- AlreadyMatchedError
    |   +-- ReferenceAlreadyMatchedError
    |
    +-- SettingsError
    |   +-- ReferenceDataNotFoundError
    |
    +-- ConcurrencyError
    |   +-- ConcurrentUpdateError
    |
    +-- StoreError
    |   +-- TransientStoreError
    |
    +-- ImmutabilityError
        +-- ImmutabilityViolationError

    InconsistentStateWarning is NOT an exception.  It is a non-fatal record
    collected into reconciliation views and logged.

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                             | When Raised
----------------|----------------------------------|------------------------------------
Validation      | VALIDATION_ERROR                 | Missing/malformed input
----------------|----------------------------------|------------------------------------
Ledger          | TASK_FULLY_BILLED                | Remaining percentage <= 0
                | TASK_NOT_FOUND                   | Task id doesn't exist
----------------|----------------------------------|------------------------------------
Invoice         | INVOICE_NOT_FOUND                | Invoice id doesn't exist
                | INVALID_INVOICE_TRANSITION       | e.g. sending a paid invoice
----------------|----------------------------------|------------------------------------
Allocation      | ALLOCATION_EXCEEDS_BALANCE       | Amount > open balance
----------------|----------------------------------|------------------------------------
Reconciliation  | BANK_TRANSACTION_NOT_FOUND       | Bank row doesn't exist
                | PLATFORM_TRANSACTION_NOT_FOUND   | Match target doesn't exist
                | BANK_TRANSACTION_ALREADY_MATCHED | Bank row is already matched
                | REFERENCE_ALREADY_MATCHED        | Target matched to another row
----------------|----------------------------------|------------------------------------
Settings        | REFERENCE_DATA_NOT_FOUND         | Category/code/term doesn't exist
----------------|----------------------------------|------------------------------------
Concurrency     | CONCURRENT_UPDATE                | CAS attempts exhausted
----------------|----------------------------------|------------------------------------
Store           | TRANSIENT_STORE_ERROR            | Network/timeout/server errors
----------------|----------------------------------|------------------------------------
Immutability    | IMMUTABILITY_VIOLATION           | Line-item snapshot modified

===============================================================================
HANDLING PATTERNS
===============================================================================

1. Business-rule errors (everything except StoreError) are surfaced to the
   caller and never retried.

2. TransientStoreError is the only retryable error.  RetryPolicy in
   billing_kernel.services.retry_service retries it with backoff.

3. Module services roll back their transaction and re-raise.  They do not
   translate or swallow errors.
"""

from dataclasses import dataclass
from decimal import Decimal


class BillingKernelError(Exception):
    """
    Base exception for all billing kernel errors.

    All subclasses must have a `code` class attribute
    for machine-readable error identification.
    """

    code: str = "BILLING_KERNEL_ERROR"


# Validation


class ValidationError(BillingKernelError):
    """Malformed or missing required input, raised before any mutation."""

    code: str = "VALIDATION_ERROR"

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid {field}: {reason}")


# Ledger-related exceptions


class LedgerError(BillingKernelError):
    """Base exception for task billing ledger errors."""

    code: str = "LEDGER_ERROR"


class FullyBilledError(LedgerError):
    """A billing commit was attempted on a task with nothing left to bill."""

    code: str = "TASK_FULLY_BILLED"

    def __init__(self, task_id: str, billed_percentage: Decimal):
        self.task_id = task_id
        self.billed_percentage = billed_percentage
        super().__init__(
            f"Task {task_id} is fully billed ({billed_percentage}% already invoiced)"
        )


class TaskNotFoundError(LedgerError):
    """Task with given ID was not found."""

    code: str = "TASK_NOT_FOUND"

    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Task not found: {task_id}")


# Invoice-related exceptions


class InvoiceError(BillingKernelError):
    """Base exception for invoice errors."""

    code: str = "INVOICE_ERROR"


class InvoiceNotFoundError(InvoiceError):
    """Invoice with given ID was not found."""

    code: str = "INVOICE_NOT_FOUND"

    def __init__(self, invoice_id: str):
        self.invoice_id = invoice_id
        super().__init__(f"Invoice not found: {invoice_id}")


class InvalidInvoiceTransitionError(InvoiceError):
    """The invoice cannot move from its current status to the requested one."""

    code: str = "INVALID_INVOICE_TRANSITION"

    def __init__(self, invoice_id: str, from_status: str, to_status: str):
        self.invoice_id = invoice_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Invoice {invoice_id} cannot transition from {from_status} to {to_status}"
        )


# Allocation-related exceptions


class AllocationError(BillingKernelError):
    """Base exception for payment allocation errors."""

    code: str = "ALLOCATION_ERROR"


class AllocationExceedsBalanceError(AllocationError):
    """An allocated amount is larger than the invoice's open balance."""

    code: str = "ALLOCATION_EXCEEDS_BALANCE"

    def __init__(self, invoice_id: str, amount: Decimal, open_balance: Decimal):
        self.invoice_id = invoice_id
        self.amount = amount
        self.open_balance = open_balance
        super().__init__(
            f"Allocation of {amount} exceeds open balance {open_balance} "
            f"on invoice {invoice_id}"
        )


# Reconciliation-related exceptions


class ReconciliationError(BillingKernelError):
    """Base exception for bank reconciliation errors."""

    code: str = "RECONCILIATION_ERROR"


class BankTransactionNotFoundError(ReconciliationError):
    """Bank transaction with given ID was not found."""

    code: str = "BANK_TRANSACTION_NOT_FOUND"

    def __init__(self, bank_transaction_id: str):
        self.bank_transaction_id = bank_transaction_id
        super().__init__(f"Bank transaction not found: {bank_transaction_id}")


class BankStatementNotFoundError(ReconciliationError):
    """Bank statement with given ID was not found."""

    code: str = "BANK_STATEMENT_NOT_FOUND"

    def __init__(self, statement_id: str):
        self.statement_id = statement_id
        super().__init__(f"Bank statement not found: {statement_id}")


class PlatformTransactionNotFoundError(ReconciliationError):
    """The invoice or expense a match refers to does not exist."""

    code: str = "PLATFORM_TRANSACTION_NOT_FOUND"

    def __init__(self, reference_id: str, reference_type: str):
        self.reference_id = reference_id
        self.reference_type = reference_type
        super().__init__(
            f"Platform transaction not found: {reference_type} {reference_id}"
        )


class AlreadyMatchedError(ReconciliationError):
    """The bank transaction is already matched; unmatch it first."""

    code: str = "BANK_TRANSACTION_ALREADY_MATCHED"

    def __init__(self, bank_transaction_id: str):
        self.bank_transaction_id = bank_transaction_id
        super().__init__(f"Bank transaction {bank_transaction_id} is already matched")


class ReferenceAlreadyMatchedError(ReconciliationError):
    """The platform transaction is matched to a different bank transaction."""

    code: str = "REFERENCE_ALREADY_MATCHED"

    def __init__(self, reference_id: str, reference_type: str):
        self.reference_id = reference_id
        self.reference_type = reference_type
        super().__init__(
            f"{reference_type} {reference_id} is already matched to a bank transaction"
        )


# Settings-related exceptions


class SettingsError(BillingKernelError):
    """Base exception for reference-data settings errors."""

    code: str = "SETTINGS_ERROR"


class ReferenceDataNotFoundError(SettingsError):
    """A category, expense code or invoice term was not found."""

    code: str = "REFERENCE_DATA_NOT_FOUND"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} not found: {entity_id}")


# Concurrency-related exceptions


class ConcurrencyError(BillingKernelError):
    """Base exception for concurrency-related errors."""

    code: str = "CONCURRENCY_ERROR"


class ConcurrentUpdateError(ConcurrencyError):
    """A guarded update kept losing to concurrent writers."""

    code: str = "CONCURRENT_UPDATE"

    def __init__(self, entity_type: str, entity_id: str, attempts: int):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.attempts = attempts
        super().__init__(
            f"Concurrent update on {entity_type} {entity_id}: "
            f"gave up after {attempts} attempts"
        )


# Store-related exceptions


class StoreError(BillingKernelError):
    """Base exception for persistence-layer failures."""

    code: str = "STORE_ERROR"


class TransientStoreError(StoreError):
    """Network, timeout or server error from the store. Eligible for retry."""

    code: str = "TRANSIENT_STORE_ERROR"

    def __init__(self, operation: str, reason: str, attempts: int = 1):
        self.operation = operation
        self.reason = reason
        self.attempts = attempts
        super().__init__(
            f"Transient store error during {operation} after {attempts} attempt(s): {reason}"
        )


# Immutability-related exceptions


class ImmutabilityError(BillingKernelError):
    """Base exception for immutability-related errors."""

    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """
    Attempted to modify an immutable record.

    Invoice line items keep a snapshot of the task they billed; those
    columns cannot change after insert.
    """

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Cannot modify immutable {entity_type} {entity_id}: {reason}"
        )


# Non-fatal conditions


@dataclass(frozen=True)
class InconsistentStateWarning:
    """
    A non-fatal inconsistency found while building a view.

    Example: a matched bank transaction whose reference no longer resolves.
    Collected and logged; the affected row is treated as unmatched.
    """

    entity_type: str
    entity_id: str
    reason: str
    code: str = "INCONSISTENT_STATE"
