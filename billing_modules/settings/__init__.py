"""
Settings Module.

Company reference data: expense categories, expense codes and invoice
terms.
"""

from billing_modules.settings.models import Category, ExpenseCode, InvoiceTerm
from billing_modules.settings.service import SettingsService, default_invoice_term

__all__ = [
    "Category",
    "ExpenseCode",
    "InvoiceTerm",
    "SettingsService",
    "default_invoice_term",
]
