"""Selectors for the billing kernel (read side)."""

from billing_kernel.selectors.base import BaseSelector

__all__ = ["BaseSelector"]
