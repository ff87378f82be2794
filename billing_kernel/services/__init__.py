"""Services for the billing kernel (write side)."""

from billing_kernel.services.base import BaseService
from billing_kernel.services.retry_service import RetryPolicy
from billing_kernel.services.sequence_service import SequenceService

__all__ = [
    "BaseService",
    "RetryPolicy",
    "SequenceService",
]
