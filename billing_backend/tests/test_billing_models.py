from datetime import date
from decimal import Decimal

import pytest

from billing_backend.app.billing import (
    InvalidStateError,
    Invoice,
    InvoiceStatus,
    PaymentOrderStatus,
    PaymentStatus,
    Plan,
    SubscriptionStatus,
    User,
    can_transition,
)
from billing_backend.app.billing.models import ensure_transition


def _invoice(**overrides) -> Invoice:
    values = dict(
        invoice_number="INV-202401-ABCDEF12",
        user_id="user-1",
        user_email="reader@example.com",
        amount=Decimal("100.00"),
        tax_amount=Decimal("10.00"),
        invoice_date=date(2024, 1, 31),
        due_date=date(2024, 2, 14),
    )
    values.update(overrides)
    return Invoice(**values)


def test_invoice_total_is_recomputed_from_parts():
    invoice = _invoice(discount_amount=Decimal("5.00"))
    assert invoice.total_amount == Decimal("105.00")

    updated = invoice.model_copy(update={"amount": Decimal("200.00"), "tax_amount": Decimal("20.00")})
    assert updated.total_amount == Decimal("215.00")
    assert updated.model_dump()["total_amount"] == Decimal("215.00")


def test_invoice_total_ignores_supplied_value():
    invoice = Invoice.model_validate({**_invoice().model_dump(), "total_amount": Decimal("1.00")})
    assert invoice.total_amount == Decimal("110.00")


def test_plan_payment_requirement():
    assert Plan(name="Pro", price=Decimal("100")).requires_payment
    assert not Plan(name="Free", price=Decimal("0")).requires_payment
    assert not Plan(name="Trial", price=Decimal("100"), trial_days=14).requires_payment
    assert Plan(name="Lower", price=Decimal("1"), currency="usd").currency == "USD"


def test_user_email_is_normalised():
    assert User(email="  Reader@Example.COM ").email == "reader@example.com"


@pytest.mark.parametrize(
    "current,target,allowed",
    [
        (InvoiceStatus.PENDING, InvoiceStatus.PAID, True),
        (InvoiceStatus.OVERDUE, InvoiceStatus.PAID, True),
        (InvoiceStatus.PAID, InvoiceStatus.PAID, False),
        (InvoiceStatus.PAID, InvoiceStatus.CANCELLED, False),
        (InvoiceStatus.PAID, InvoiceStatus.REFUNDED, True),
        (InvoiceStatus.CANCELLED, InvoiceStatus.PAID, False),
        (InvoiceStatus.OVERDUE, InvoiceStatus.PENDING, False),
        (PaymentStatus.PENDING, PaymentStatus.SUCCESS, True),
        (PaymentStatus.FAILED, PaymentStatus.SUCCESS, False),
        (PaymentStatus.REFUNDED, PaymentStatus.SUCCESS, False),
        (SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELLED, True),
        (SubscriptionStatus.CANCELLED, SubscriptionStatus.CANCELLED, False),
        (SubscriptionStatus.CANCELLED, SubscriptionStatus.ACTIVE, True),
        (SubscriptionStatus.ACTIVE, SubscriptionStatus.ACTIVE, False),
        (PaymentOrderStatus.SUCCESS, PaymentOrderStatus.FAILED, False),
    ],
)
def test_transition_tables(current, target, allowed):
    assert can_transition(current, target) is allowed


def test_can_transition_rejects_mixed_enums():
    with pytest.raises(TypeError):
        can_transition(InvoiceStatus.PENDING, PaymentStatus.SUCCESS)


def test_ensure_transition_reports_statuses():
    with pytest.raises(InvalidStateError) as excinfo:
        ensure_transition(InvoiceStatus.PAID, InvoiceStatus.PAID, "Invoice is already paid")

    assert excinfo.value.payload == {
        "error": "invalid_state",
        "message": "Invoice is already paid",
        "current_status": "paid",
        "target_status": "paid",
    }
    assert excinfo.value.to_http_exception().status_code == 409
