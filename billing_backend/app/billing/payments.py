"""Payment processing against invoices, refunds and reconciliation."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, List, Optional
from uuid import uuid4

from .exceptions import (
    AuthorizationError,
    ConflictError,
    InvalidStateError,
    NotFoundError,
    PaymentProcessingError,
    ValidationError,
)
from .gateway import PaymentGateway
from .models import (
    Invoice,
    InvoiceStatus,
    NotificationEvent,
    PaymentLog,
    PaymentStatus,
    can_transition,
    ensure_transition,
)
from .money import to_decimal
from .notifier import Notifier, notify_safely
from .store import EntityStore

logger = logging.getLogger(__name__)

_WRITE_ATTEMPTS = 3


def generate_transaction_id() -> str:
    return "TXN-" + uuid4().hex[:12].upper()


def _check_payable(invoice: Invoice) -> None:
    if can_transition(invoice.status, InvoiceStatus.PAID):
        return
    if invoice.status == InvoiceStatus.PAID:
        message = "Invoice is already paid"
    elif invoice.status == InvoiceStatus.CANCELLED:
        message = "Cannot pay a cancelled invoice"
    else:
        message = f"Cannot pay an invoice with status {invoice.status.value}"
    ensure_transition(invoice.status, InvoiceStatus.PAID, message)


class PaymentEngine:
    """Charges invoices through the gateway and keeps payment and invoice in step.

    The engine is the only writer allowed to touch an invoice as a side effect
    of a payment. Payment and invoice are separate records, so a success or
    refund is written to the payment first; if the invoice write then fails the
    caller gets a :class:`PaymentProcessingError` flagged for reconciliation and
    :meth:`reconcile` repairs the invoice later. Invoice writes only apply while
    the invoice still has the status the engine last read.
    """

    def __init__(
        self,
        store: EntityStore,
        gateway: PaymentGateway,
        notifier: Notifier,
        *,
        gateway_name: str = "razorpay",
        default_method: str = "card",
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._notifier = notifier
        self._gateway_name = gateway_name
        self._default_method = default_method
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def process_payment(
        self,
        user_id: str,
        invoice_id: str,
        amount: Decimal,
        currency: Optional[str] = None,
        method: Optional[str] = None,
    ) -> PaymentLog:
        invoice = self._store.get(Invoice, invoice_id)
        if invoice is None:
            raise NotFoundError.for_entity("Invoice", "id", invoice_id)
        if invoice.user_id != user_id:
            raise AuthorizationError(
                "Invoice does not belong to the current user",
                detail={"invoice_id": invoice_id},
            )
        _check_payable(invoice)

        try:
            requested = to_decimal(amount)
        except ValueError as exc:
            raise ValidationError(f"Invalid payment amount: {amount}") from exc
        if requested != invoice.total_amount:
            raise ValidationError(
                "Payment amount does not match invoice total",
                detail={"expected": str(invoice.total_amount), "received": str(requested)},
            )
        payment_currency = (currency or invoice.currency).upper()
        if payment_currency != invoice.currency:
            raise ValidationError(
                "Payment currency does not match invoice currency",
                detail={"expected": invoice.currency, "received": payment_currency},
            )

        payment = self._store.save(
            PaymentLog(
                user_id=user_id,
                invoice_id=invoice.id,
                user_email=invoice.user_email,
                invoice_number=invoice.invoice_number,
                transaction_id=generate_transaction_id(),
                amount=invoice.total_amount,
                currency=payment_currency,
                status=PaymentStatus.PENDING,
                payment_method=method or self._default_method,
                payment_gateway=self._gateway_name,
            )
        )

        try:
            result = self._gateway.charge(payment.transaction_id, payment.amount, payment.currency)
        except Exception as exc:
            logger.error(
                "Gateway error while charging %s for invoice %s: %s",
                payment.transaction_id,
                invoice.invoice_number,
                exc,
            )
            self._store.save(
                payment.model_copy(
                    update={
                        "status": PaymentStatus.FAILED,
                        "failure_reason": str(exc) or type(exc).__name__,
                        "processed_at": self._clock(),
                    }
                )
            )
            raise PaymentProcessingError(
                f"Payment processing failed: {exc}",
                detail={"transaction_id": payment.transaction_id},
            ) from exc

        if not result.success:
            failed = self._store.save(
                payment.model_copy(
                    update={
                        "status": PaymentStatus.FAILED,
                        "failure_reason": result.failure_reason,
                        "processed_at": self._clock(),
                    }
                )
            )
            logger.warning(
                "Payment %s declined for invoice %s: %s",
                failed.transaction_id,
                invoice.invoice_number,
                failed.failure_reason,
            )
            return failed

        ensure_transition(payment.status, PaymentStatus.SUCCESS, "Payment is no longer pending")
        succeeded = self._store.save(
            payment.model_copy(
                update={
                    "status": PaymentStatus.SUCCESS,
                    "external_payment_id": result.external_id,
                    "processed_at": self._clock(),
                }
            )
        )
        try:
            self._settle_invoice(invoice)
        except Exception as exc:
            logger.error(
                "Payment %s succeeded but invoice %s could not be updated: %s",
                succeeded.transaction_id,
                invoice.invoice_number,
                exc,
            )
            raise PaymentProcessingError(
                "Payment recorded but invoice update failed",
                detail={
                    "transaction_id": succeeded.transaction_id,
                    "payment_id": succeeded.id,
                    "invoice_id": invoice.id,
                    "reconciliation_required": True,
                },
            ) from exc

        logger.info(
            "Payment %s succeeded for invoice %s amount=%s %s",
            succeeded.transaction_id,
            invoice.invoice_number,
            succeeded.amount,
            succeeded.currency,
        )
        notify_safely(
            self._notifier,
            NotificationEvent.PAYMENT_CONFIRMED,
            {
                "payment_id": succeeded.id,
                "transaction_id": succeeded.transaction_id,
                "invoice_id": invoice.id,
                "invoice_number": invoice.invoice_number,
                "user_id": succeeded.user_id,
                "user_email": succeeded.user_email,
                "amount": str(succeeded.amount),
                "currency": succeeded.currency,
            },
        )
        return succeeded

    def refund(self, payment_id: str, reason: Optional[str] = None) -> PaymentLog:
        payment = self.get(payment_id)
        ensure_transition(
            payment.status,
            PaymentStatus.REFUNDED,
            f"Only successful payments can be refunded (status is {payment.status.value})",
        )

        try:
            result = self._gateway.refund(payment.external_payment_id, payment.amount)
        except Exception as exc:
            logger.error("Gateway error while refunding %s: %s", payment.transaction_id, exc)
            raise PaymentProcessingError(
                f"Refund processing failed: {exc}",
                detail={"transaction_id": payment.transaction_id},
            ) from exc
        if not result.success:
            logger.warning("Refund rejected for %s: %s", payment.transaction_id, result.failure_reason)
            raise PaymentProcessingError(
                f"Refund failed: {result.failure_reason}",
                detail={"transaction_id": payment.transaction_id},
            )

        refunded = self._store.save_if_status(
            payment.model_copy(
                update={
                    "status": PaymentStatus.REFUNDED,
                    "refunded_amount": payment.amount,
                    "refund_id": result.refund_id,
                    "refund_reason": reason,
                }
            ),
            PaymentStatus.SUCCESS,
        )
        if refunded is None:
            logger.error(
                "Payment %s changed while refund %s was processed",
                payment.transaction_id,
                result.refund_id,
            )
            raise InvalidStateError(
                "Payment was modified while the refund was processed",
                detail={"payment_id": payment.id, "refund_id": result.refund_id},
            )
        if refunded.invoice_id:
            try:
                self._refund_invoice(refunded)
            except Exception as exc:
                logger.error(
                    "Payment %s refunded but invoice %s could not be updated: %s",
                    refunded.transaction_id,
                    refunded.invoice_number,
                    exc,
                )
                raise PaymentProcessingError(
                    "Refund recorded but invoice update failed",
                    detail={
                        "transaction_id": refunded.transaction_id,
                        "payment_id": refunded.id,
                        "invoice_id": refunded.invoice_id,
                        "reconciliation_required": True,
                    },
                ) from exc
        logger.info("Payment %s refunded amount=%s", refunded.transaction_id, refunded.refunded_amount)
        return refunded

    def find_unreconciled(self) -> List[PaymentLog]:
        """Payments whose invoice does not reflect them.

        A successful payment whose invoice is still payable, or a refunded
        payment whose invoice is still PAID.
        """

        unreconciled: List[PaymentLog] = []
        for payment in self._store.query_by_field(PaymentLog, "status", PaymentStatus.SUCCESS):
            invoice = self._invoice_for(payment)
            if invoice is not None and invoice.is_payable:
                unreconciled.append(payment)
        for payment in self._store.query_by_field(PaymentLog, "status", PaymentStatus.REFUNDED):
            invoice = self._invoice_for(payment)
            if invoice is not None and can_transition(invoice.status, InvoiceStatus.REFUNDED):
                unreconciled.append(payment)
        return unreconciled

    def reconcile(self) -> List[Invoice]:
        """Bring the invoices of unreconciled payments in line with them."""

        repaired: List[Invoice] = []
        for payment in self.find_unreconciled():
            if payment.status == PaymentStatus.REFUNDED:
                invoice = self._refund_invoice(payment)
            else:
                current = self._invoice_for(payment)
                if current is None or not current.is_payable:
                    continue
                invoice = self._settle_invoice(current)
            if invoice is None:
                continue
            repaired.append(invoice)
            logger.info(
                "Reconciled invoice %s with payment %s status=%s",
                invoice.invoice_number,
                payment.transaction_id,
                invoice.status.value,
            )
        return repaired

    def get(self, payment_id: str) -> PaymentLog:
        payment = self._store.get(PaymentLog, payment_id)
        if payment is None:
            raise NotFoundError.for_entity("Payment", "id", payment_id)
        return payment

    def list_for_user(self, user_id: str) -> List[PaymentLog]:
        payments = self._store.query_by_field(PaymentLog, "user_id", user_id)
        return sorted(payments, key=_created_at, reverse=True)

    def list_by_status(self, status: PaymentStatus) -> List[PaymentLog]:
        return self._store.query_by_field(PaymentLog, "status", status)

    def list_for_invoice(self, invoice_id: str) -> List[PaymentLog]:
        return self._store.query_by_field(PaymentLog, "invoice_id", invoice_id)

    def _invoice_for(self, payment: PaymentLog) -> Optional[Invoice]:
        if not payment.invoice_id:
            return None
        return self._store.get(Invoice, payment.invoice_id)

    def _settle_invoice(self, invoice: Invoice) -> Invoice:
        for _ in range(_WRITE_ATTEMPTS):
            ensure_transition(invoice.status, InvoiceStatus.PAID, "Invoice can no longer be paid")
            settled = self._store.save_if_status(
                invoice.model_copy(
                    update={"status": InvoiceStatus.PAID, "paid_date": self._clock().date()}
                ),
                invoice.status,
            )
            if settled is not None:
                return settled
            current = self._store.get(Invoice, invoice.id)
            if current is None:
                raise NotFoundError.for_entity("Invoice", "id", invoice.id)
            invoice = current
        raise ConflictError(
            "Invoice was modified concurrently, please retry",
            detail={"invoice_id": invoice.id},
        )

    def _refund_invoice(self, payment: PaymentLog) -> Optional[Invoice]:
        for _ in range(_WRITE_ATTEMPTS):
            invoice = self._invoice_for(payment)
            if invoice is None:
                return None
            if not can_transition(invoice.status, InvoiceStatus.REFUNDED):
                logger.warning(
                    "Invoice %s left as %s after refund of %s",
                    invoice.invoice_number,
                    invoice.status.value,
                    payment.transaction_id,
                )
                return None
            updated = self._store.save_if_status(
                invoice.model_copy(update={"status": InvoiceStatus.REFUNDED}),
                invoice.status,
            )
            if updated is not None:
                return updated
        raise ConflictError(
            "Invoice was modified concurrently, please retry",
            detail={"invoice_id": payment.invoice_id},
        )


def _created_at(payment: PaymentLog) -> datetime:
    return payment.created_at or datetime.min.replace(tzinfo=timezone.utc)


__all__ = ["PaymentEngine", "generate_transaction_id"]
