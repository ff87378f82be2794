"""
Invoicing Module.

Builds invoices for every billing strategy on top of the task billing
ledger, and manages their lifecycle (edit, send, overdue, delete).

Percentages, amounts and line items come from shared engines.
"""

from billing_modules.invoicing.config import InvoicingConfig
from billing_modules.invoicing.ledger import TaskBillingLedger
from billing_modules.invoicing.models import (
    BillingRequest,
    Invoice,
    InvoiceLineItem,
    LineItemEdit,
    StatusChange,
)
from billing_modules.invoicing.service import InvoiceComposer

__all__ = [
    "BillingRequest",
    "Invoice",
    "InvoiceComposer",
    "InvoiceLineItem",
    "InvoicingConfig",
    "LineItemEdit",
    "StatusChange",
    "TaskBillingLedger",
]
