"""
Billing Kernel

Shared infrastructure for the progressive billing engine:
- Structured JSON logging with request-scoped context
- Typed exception hierarchy with machine-readable codes
- SQLAlchemy base classes, engine/session management and guarded updates
- Injectable clock, invoice number sequences and transient-store retry policy
"""

__version__ = "0.1.0"
