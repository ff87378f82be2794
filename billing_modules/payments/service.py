"""
Payments Module Service - spreads one incoming payment over open invoices.

Thin glue layer that:
1. Reads a client's open invoices through OpenInvoiceSelector
2. Calls billing_engines.payment_allocation for candidate order,
   auto-match and validation of manual lines
3. Applies each line with ONE guarded UPDATE on the invoice row

Every line of a payment is applied in one transaction.  This service owns
the boundary: it commits on success and rolls back on any failure, so a
failing second line leaves the first invoice's amount_paid untouched.

Usage:
    allocator = PaymentAllocator(session, clock=clock)
    proposal = allocator.propose(client_id, Decimal("1523.47"))
    result = allocator.apply_payment(
        client_id,
        PaymentInfo(amount=Decimal("1523.47"), payment_date=today, method="check"),
        proposal.lines,
        actor_id=actor_id,
    )
"""

from __future__ import annotations

from decimal import Decimal
from typing import Sequence
from uuid import UUID

from sqlalchemy import DateTime, case, literal
from sqlalchemy.orm import Session

from billing_engines.payment_allocation import (
    AllocationLine,
    AllocationProposal,
    InvoiceStatus,
    OpenInvoice,
    propose_allocation,
    select_candidates,
    validate_allocation,
)
from billing_kernel.db.guarded import guarded_update, refetch
from billing_kernel.db.types import ZERO, to_decimal
from billing_kernel.domain.clock import Clock, SystemClock
from billing_kernel.exceptions import AllocationExceedsBalanceError, ValidationError
from billing_kernel.logging_config import LogContext, get_logger
from billing_kernel.services.retry_service import RetryPolicy
from billing_modules.invoicing.models import StatusChange
from billing_modules.invoicing.orm import InvoiceModel
from billing_modules.invoicing.service import StatusCallback, notify_status_changes
from billing_modules.payments.config import PaymentsConfig
from billing_modules.payments.models import PaymentInfo, PaymentResult
from billing_modules.payments.selectors import OpenInvoiceSelector

logger = get_logger("modules.payments.service")

# Numeric columns may round-trip through binary float; far below one cent.
_STORED_MONEY_EPSILON = Decimal("0.000000001")


class PaymentAllocator:
    """
    Proposes and applies payment allocations.

    Engine composition:
    - payment_allocation: candidate order, auto-match, validation
    - guarded_update: the per-invoice amount_paid increment

    Transaction boundary: this service commits on success, rolls back on failure.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        config: PaymentsConfig | None = None,
        retry_policy: RetryPolicy | None = None,
        on_status_change: StatusCallback | None = None,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._config = config or PaymentsConfig()
        self._retry = retry_policy or RetryPolicy()
        self._on_status_change = on_status_change
        self._selector = OpenInvoiceSelector(session)

    # =========================================================================
    # Queries
    # =========================================================================

    def open_invoices(
        self,
        client_id: UUID,
        project_id: UUID | None = None,
    ) -> tuple[OpenInvoice, ...]:
        """Unpaid invoices with an open balance, oldest due date first."""
        return select_candidates(
            self._selector.for_client(client_id, project_id),
            client_id,
            project_id,
        )

    def propose(
        self,
        client_id: UUID,
        payment_amount: Decimal,
        project_id: UUID | None = None,
    ) -> AllocationProposal:
        """Candidates plus an auto-matched line when one open balance equals the payment."""
        return propose_allocation(
            candidates=self.open_invoices(client_id, project_id),
            payment_amount=payment_amount,
            tolerance=self._config.match_tolerance,
        )

    # =========================================================================
    # Application
    # =========================================================================

    def _validate_payment(self, payment: PaymentInfo) -> None:
        if payment.method not in self._config.payment_methods:
            raise ValidationError("method", f"unknown payment method '{payment.method}'")
        if payment.notes and len(payment.notes) > self._config.notes_max_length:
            raise ValidationError(
                "notes", f"must be at most {self._config.notes_max_length} characters"
            )

    def apply_payment(
        self,
        client_id: UUID,
        payment: PaymentInfo,
        lines: Sequence[AllocationLine],
        actor_id: UUID,
        project_id: UUID | None = None,
    ) -> PaymentResult:
        """
        Apply allocation lines as one atomic batch.

        The payment comes from one client; every line must target one of
        that client's invoices (and the project's, when given).

        Raises:
            ValidationError: No lines, a non-positive amount, an unknown
                invoice, an invoice of another client or project, or
                invalid payment info.
            AllocationExceedsBalanceError: A line exceeds its invoice's open
                balance, checked before any write and again by each
                guarded UPDATE.
        """
        self._validate_payment(payment)
        with LogContext.bind(actor_id=actor_id, client_id=client_id):
            result, changes = self._retry.run(
                lambda: self._apply(client_id, project_id, payment, lines, actor_id),
                operation="apply_payment",
            )
        notify_status_changes(self._on_status_change, changes)
        return result

    def _apply(
        self,
        client_id: UUID,
        project_id: UUID | None,
        payment: PaymentInfo,
        lines: Sequence[AllocationLine],
        actor_id: UUID,
    ) -> tuple[PaymentResult, list[StatusChange]]:
        try:
            current = self._selector.by_ids(line.invoice_id for line in lines)
            merged = validate_allocation(lines, current, client_id, project_id)

            total_allocated = sum((line.amount for line in merged), ZERO)
            if total_allocated > payment.amount:
                logger.warning("payment_over_allocated", extra={
                    "payment_amount": str(payment.amount),
                    "total_allocated": str(total_allocated),
                })

            now = self._clock.now()
            for line in merged:
                self._apply_line(line, payment, actor_id, now)

            invoices = [refetch(self._session, InvoiceModel, line.invoice_id) for line in merged]
            self._session.commit()
        except Exception:
            self._session.rollback()
            logger.warning("payment_rolled_back", extra={
                "payment_amount": str(payment.amount),
                "line_count": len(lines),
            }, exc_info=True)
            raise

        changes: list[StatusChange] = []
        for invoice in invoices:
            before = current[invoice.id]
            after = InvoiceStatus(invoice.status)
            if after != before.status:
                changes.append(StatusChange(
                    invoice_id=invoice.id,
                    invoice_number=invoice.invoice_number,
                    from_status=before.status,
                    to_status=after,
                    changed_at=now,
                ))

        logger.info("payment_applied", extra={
            "payment_amount": str(payment.amount),
            "total_allocated": str(total_allocated),
            "invoice_count": len(merged),
            "paid_count": len(changes),
        })
        result = PaymentResult(
            payment=payment,
            lines=merged,
            invoices=tuple(invoice.to_dto() for invoice in invoices),
            newly_paid_invoice_ids=tuple(
                c.invoice_id for c in changes if c.to_status == InvoiceStatus.PAID
            ),
        )
        return result, changes

    def _apply_line(self, line: AllocationLine, payment: PaymentInfo, actor_id: UUID, now) -> None:
        tolerance = self._config.match_tolerance
        new_paid = InvoiceModel.amount_paid + line.amount
        becomes_paid = new_paid >= InvoiceModel.total - tolerance

        rows = guarded_update(
            self._session,
            InvoiceModel,
            line.invoice_id,
            guard=(
                InvoiceModel.status != InvoiceStatus.PAID.value,
                new_paid <= InvoiceModel.total + _STORED_MONEY_EPSILON,
            ),
            values={
                "amount_paid": new_paid,
                "status": case(
                    (becomes_paid, InvoiceStatus.PAID.value),
                    else_=InvoiceModel.status,
                ),
                "paid_at": case(
                    (becomes_paid, literal(now, DateTime(timezone=True))),
                    else_=InvoiceModel.paid_at,
                ),
                "payment_date": payment.payment_date,
                "payment_method": payment.method,
                "payment_reference": payment.reference,
                "payment_notes": payment.notes,
                "updated_by_id": actor_id,
            },
        )
        if rows == 0:
            invoice = refetch(self._session, InvoiceModel, line.invoice_id)
            open_balance = (
                ZERO if invoice is None or invoice.status == InvoiceStatus.PAID.value
                else to_decimal(invoice.total) - to_decimal(invoice.amount_paid)
            )
            raise AllocationExceedsBalanceError(
                invoice_id=str(line.invoice_id),
                amount=line.amount,
                open_balance=open_balance,
            )

        logger.debug("payment_line_applied", extra={
            "invoice_id": str(line.invoice_id),
            "amount": str(line.amount),
        })

