"""
Payments Module.

Selects a client's open invoices, proposes an allocation for an incoming
payment and applies it as one atomic batch.
"""

from billing_modules.payments.config import PaymentsConfig
from billing_modules.payments.models import PaymentInfo, PaymentResult
from billing_modules.payments.service import PaymentAllocator

__all__ = [
    "PaymentAllocator",
    "PaymentInfo",
    "PaymentResult",
    "PaymentsConfig",
]
