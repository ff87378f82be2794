"""
Pure domain layer.

No dependencies on ORM, database or I/O.  The only sanctioned source of
time is an injected Clock.
"""

from billing_kernel.domain.clock import Clock, DeterministicClock, SystemClock

__all__ = ["Clock", "DeterministicClock", "SystemClock"]
