"""Invoice generation and invoice status transitions."""
from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Callable, List, Optional
from uuid import uuid4

from .exceptions import ConflictError, NotFoundError
from .models import (
    Invoice,
    InvoiceStatus,
    NotificationEvent,
    Plan,
    Subscription,
    User,
    ensure_transition,
)
from .money import ZERO, add_days, add_months, compute_tax, quantize
from .notifier import Notifier, notify_safely
from .store import EntityStore

logger = logging.getLogger(__name__)

DEFAULT_TAX_RATE = Decimal("0.10")
_WRITE_ATTEMPTS = 3


def generate_invoice_number(today: date) -> str:
    """Human readable, month-prefixed invoice number with a random suffix."""

    return f"INV-{today:%Y%m}-{uuid4().hex[:8].upper()}"


class InvoiceEngine:
    """Computes, persists and transitions invoices."""

    def __init__(
        self,
        store: EntityStore,
        notifier: Notifier,
        *,
        tax_rate: Decimal = DEFAULT_TAX_RATE,
        due_days: int = 14,
        plan_change_due_days: int = 7,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._store = store
        self._notifier = notifier
        self._tax_rate = tax_rate
        self._due_days = due_days
        self._plan_change_due_days = plan_change_due_days
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _today(self) -> date:
        return self._clock().date()

    def generate_initial_invoice(self, subscription: Subscription, user: User, plan: Plan) -> Invoice:
        """Issue the invoice for a new or renewed billing period."""

        today = self._today()
        period_start = subscription.start_date.date() if subscription.start_date else today
        period_end = subscription.end_date.date() if subscription.end_date else add_months(today, 1)
        amount = quantize(plan.price)
        invoice = self._persist(
            Invoice(
                invoice_number=generate_invoice_number(today),
                user_id=user.id,
                subscription_id=subscription.id,
                user_email=user.email,
                user_name=user.name,
                plan_name=plan.name,
                amount=amount,
                tax_amount=compute_tax(amount, self._tax_rate),
                discount_amount=ZERO,
                currency=plan.currency,
                status=InvoiceStatus.PENDING,
                invoice_date=today,
                due_date=add_days(today, self._due_days),
                billing_period_start=period_start,
                billing_period_end=period_end,
                notes=f"Subscription charge for plan {plan.name} ({plan.billing_cycle.value})",
            )
        )
        logger.info(
            "Invoice %s generated for subscription %s total=%s %s",
            invoice.invoice_number,
            subscription.id,
            invoice.total_amount,
            invoice.currency,
        )
        return invoice

    def generate_plan_change_invoice(
        self,
        subscription: Subscription,
        user: User,
        old_plan: Plan,
        new_plan: Plan,
    ) -> Optional[Invoice]:
        """Charge the price difference of an upgrade; downgrades produce nothing."""

        delta = quantize(new_plan.price - old_plan.price)
        if delta <= 0:
            logger.info(
                "No plan change invoice for subscription %s (%s -> %s, delta=%s)",
                subscription.id,
                old_plan.name,
                new_plan.name,
                delta,
            )
            return None

        today = self._today()
        invoice = self._persist(
            Invoice(
                invoice_number=generate_invoice_number(today),
                user_id=user.id,
                subscription_id=subscription.id,
                user_email=user.email,
                user_name=user.name,
                plan_name=new_plan.name,
                amount=delta,
                tax_amount=compute_tax(delta, self._tax_rate),
                discount_amount=ZERO,
                currency=new_plan.currency,
                status=InvoiceStatus.PENDING,
                invoice_date=today,
                due_date=add_days(today, self._plan_change_due_days),
                billing_period_start=today,
                billing_period_end=subscription.end_date.date() if subscription.end_date else None,
                notes=(
                    f"Plan change from {old_plan.name} ({old_plan.price} {old_plan.currency}) "
                    f"to {new_plan.name} ({new_plan.price} {new_plan.currency})"
                ),
            )
        )
        logger.info(
            "Plan change invoice %s generated for subscription %s amount=%s",
            invoice.invoice_number,
            subscription.id,
            invoice.amount,
        )
        return invoice

    def mark_paid(self, invoice_id: str) -> Invoice:
        for _ in range(_WRITE_ATTEMPTS):
            invoice = self.get(invoice_id)
            if invoice.status == InvoiceStatus.PAID:
                ensure_transition(invoice.status, InvoiceStatus.PAID, "Invoice is already paid")
            ensure_transition(
                invoice.status, InvoiceStatus.PAID, f"Cannot mark a {invoice.status.value} invoice as paid"
            )
            updated = self._store.save_if_status(
                invoice.model_copy(update={"status": InvoiceStatus.PAID, "paid_date": self._today()}),
                invoice.status,
            )
            if updated is not None:
                logger.info("Invoice %s marked as paid", updated.invoice_number)
                return updated
            logger.info("Invoice %s changed while being marked paid; re-reading", invoice.invoice_number)
        raise _concurrent_update(invoice_id)

    def cancel(self, invoice_id: str) -> Invoice:
        for _ in range(_WRITE_ATTEMPTS):
            invoice = self.get(invoice_id)
            if invoice.status == InvoiceStatus.PAID:
                ensure_transition(invoice.status, InvoiceStatus.CANCELLED, "Cannot cancel a paid invoice")
            ensure_transition(
                invoice.status, InvoiceStatus.CANCELLED, f"Invoice is already {invoice.status.value}"
            )
            updated = self._store.save_if_status(
                invoice.model_copy(update={"status": InvoiceStatus.CANCELLED}),
                invoice.status,
            )
            if updated is not None:
                logger.info("Invoice %s cancelled", updated.invoice_number)
                return updated
            logger.info("Invoice %s changed while being cancelled; re-reading", invoice.invoice_number)
        raise _concurrent_update(invoice_id)

    def sweep_overdue(self) -> List[Invoice]:
        """Move pending invoices past their due date to OVERDUE.

        Each write is conditional on the invoice still being PENDING, so an
        invoice paid or cancelled after the scan is left alone.
        """

        today = self._today()
        swept: List[Invoice] = []
        for invoice in self._store.query_by_field(Invoice, "status", InvoiceStatus.PENDING):
            if invoice.due_date >= today:
                continue
            updated = self._store.save_if_status(
                invoice.model_copy(update={"status": InvoiceStatus.OVERDUE}),
                InvoiceStatus.PENDING,
            )
            if updated is None:
                logger.info("Invoice %s changed during overdue sweep; skipped", invoice.invoice_number)
                continue
            swept.append(updated)
        if swept:
            logger.info("Marked %d invoice(s) overdue", len(swept))
        return swept

    def get(self, invoice_id: str) -> Invoice:
        invoice = self._store.get(Invoice, invoice_id)
        if invoice is None:
            raise NotFoundError.for_entity("Invoice", "id", invoice_id)
        return invoice

    def get_for_user(self, invoice_id: str, user_id: str) -> Invoice:
        invoice = self._store.get(Invoice, invoice_id)
        if invoice is None or invoice.user_id != user_id:
            raise NotFoundError.for_entity("Invoice", "id", invoice_id)
        return invoice

    def list_for_user(self, user_id: str) -> List[Invoice]:
        invoices = self._store.query_by_field(Invoice, "user_id", user_id)
        return sorted(invoices, key=_newest_first, reverse=True)

    def list_by_status(self, status: InvoiceStatus) -> List[Invoice]:
        return self._store.query_by_field(Invoice, "status", status)

    def list_all(self) -> List[Invoice]:
        return sorted(self._store.list_all(Invoice), key=_newest_first, reverse=True)

    def _persist(self, invoice: Invoice) -> Invoice:
        stored = self._store.save(invoice)
        notify_safely(
            self._notifier,
            NotificationEvent.INVOICE_CREATED,
            {
                "invoice_id": stored.id,
                "invoice_number": stored.invoice_number,
                "user_id": stored.user_id,
                "user_email": stored.user_email,
                "total_amount": str(stored.total_amount),
                "currency": stored.currency,
                "due_date": stored.due_date.isoformat(),
            },
        )
        return stored


def _newest_first(invoice: Invoice) -> tuple:
    return (invoice.invoice_date, invoice.created_at or datetime.min.replace(tzinfo=timezone.utc))


def _concurrent_update(invoice_id: str) -> ConflictError:
    return ConflictError(
        "Invoice was modified concurrently, please retry",
        detail={"invoice_id": invoice_id},
    )


__all__ = ["DEFAULT_TAX_RATE", "InvoiceEngine", "generate_invoice_number"]
