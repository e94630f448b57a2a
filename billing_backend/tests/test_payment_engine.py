from decimal import Decimal

import pytest

from billing_backend.app.billing import (
    AuthorizationError,
    ChargeResult,
    InMemoryEntityStore,
    InvalidStateError,
    Invoice,
    InvoiceEngine,
    InvoiceStatus,
    NotFoundError,
    NotificationEvent,
    PaymentEngine,
    PaymentLog,
    PaymentProcessingError,
    PaymentStatus,
    Plan,
    RefundResult,
    StorePlanCatalog,
    StoreUserDirectory,
    Subscription,
    SubscriptionStatus,
    User,
    ValidationError,
)
from billing_backend.app.billing.money import add_months


class FlakyInvoiceStore(InMemoryEntityStore):
    """Store that can be told to reject invoice writes."""

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self.fail_invoice_writes = False

    def save(self, entity):
        if self.fail_invoice_writes and isinstance(entity, Invoice):
            raise RuntimeError("invoice store unavailable")
        return super().save(entity)


def _issue_invoice(store, invoice_engine, user, plan, clock) -> Invoice:
    subscription = store.save(
        Subscription(
            user_id=user.id,
            plan_id=plan.id,
            user_email=user.email,
            plan_name=plan.name,
            plan_currency=plan.currency,
            status=SubscriptionStatus.ACTIVE,
            start_date=clock.now,
            end_date=add_months(clock.now, 1),
        )
    )
    return invoice_engine.generate_initial_invoice(subscription, user, plan)


@pytest.fixture
def invoice(store, invoice_engine, make_user, make_plan, clock):
    return _issue_invoice(store, invoice_engine, make_user(), make_plan(price="100.00"), clock)


def test_successful_payment_settles_invoice(payment_engine, invoice, store, gateway, notifier, clock):
    payment = payment_engine.process_payment(invoice.user_id, invoice.id, Decimal("110.00"))

    assert payment.status == PaymentStatus.SUCCESS
    assert payment.external_payment_id == "pay_test"
    assert payment.processed_at == clock.now
    assert payment.transaction_id.startswith("TXN-") and len(payment.transaction_id) == 16
    assert payment.payment_gateway == "razorpay"
    assert payment.payment_method == "card"
    assert (payment.user_email, payment.invoice_number) == (invoice.user_email, invoice.invoice_number)
    assert gateway.charges == [(payment.transaction_id, Decimal("110.00"), "USD")]

    settled = store.get(Invoice, invoice.id)
    assert settled.status == InvoiceStatus.PAID
    assert settled.paid_date == clock.now.date()
    assert notifier.events()[-1] == NotificationEvent.PAYMENT_CONFIRMED


def test_declined_payment_leaves_invoice_payable(payment_engine, invoice, store, gateway, notifier):
    gateway.charge_outcome = ChargeResult(success=False, failure_reason="Insufficient funds")

    payment = payment_engine.process_payment(invoice.user_id, invoice.id, Decimal("110.00"), method="upi")

    assert payment.status == PaymentStatus.FAILED
    assert payment.failure_reason == "Insufficient funds"
    assert payment.payment_method == "upi"
    assert store.get(Invoice, invoice.id).status == InvoiceStatus.PENDING
    assert NotificationEvent.PAYMENT_CONFIRMED not in notifier.events()


def test_gateway_exception_records_failed_attempt(payment_engine, invoice, store, gateway):
    gateway.charge_outcome = TimeoutError("gateway timed out")

    with pytest.raises(PaymentProcessingError) as excinfo:
        payment_engine.process_payment(invoice.user_id, invoice.id, Decimal("110.00"))

    [payment] = store.query_by_field(PaymentLog, "invoice_id", invoice.id)
    assert payment.status == PaymentStatus.FAILED
    assert payment.failure_reason == "gateway timed out"
    assert excinfo.value.payload["transaction_id"] == payment.transaction_id
    assert excinfo.value.status_code == 502
    assert store.get(Invoice, invoice.id).status == InvoiceStatus.PENDING


def test_amount_must_match_total_exactly(payment_engine, invoice, store, gateway):
    with pytest.raises(ValidationError):
        payment_engine.process_payment(invoice.user_id, invoice.id, Decimal("109.99"))

    assert store.list_all(PaymentLog) == []
    assert gateway.charges == []
    assert payment_engine.process_payment(invoice.user_id, invoice.id, Decimal("110")).status == PaymentStatus.SUCCESS


def test_currency_must_match_invoice(payment_engine, invoice):
    with pytest.raises(ValidationError):
        payment_engine.process_payment(invoice.user_id, invoice.id, Decimal("110.00"), currency="INR")


def test_precondition_errors(payment_engine, invoice):
    with pytest.raises(NotFoundError):
        payment_engine.process_payment(invoice.user_id, "missing", Decimal("110.00"))
    with pytest.raises(AuthorizationError):
        payment_engine.process_payment("someone-else", invoice.id, Decimal("110.00"))

    payment_engine.process_payment(invoice.user_id, invoice.id, Decimal("110.00"))
    with pytest.raises(InvalidStateError, match="already paid"):
        payment_engine.process_payment(invoice.user_id, invoice.id, Decimal("110.00"))


def test_cancelled_invoice_cannot_be_paid(payment_engine, invoice, invoice_engine):
    invoice_engine.cancel(invoice.id)

    with pytest.raises(InvalidStateError, match="cancelled"):
        payment_engine.process_payment(invoice.user_id, invoice.id, Decimal("110.00"))


def test_overdue_invoice_can_be_paid(payment_engine, invoice, invoice_engine, clock, store):
    clock.advance(days=30)
    invoice_engine.sweep_overdue()

    payment = payment_engine.process_payment(invoice.user_id, invoice.id, Decimal("110.00"))

    assert payment.status == PaymentStatus.SUCCESS
    assert store.get(Invoice, invoice.id).status == InvoiceStatus.PAID


def test_refund_cascades_to_invoice(payment_engine, invoice, store, gateway):
    payment = payment_engine.process_payment(invoice.user_id, invoice.id, Decimal("110.00"))

    refunded = payment_engine.refund(payment.id, reason="customer request")

    assert refunded.status == PaymentStatus.REFUNDED
    assert refunded.refunded_amount == Decimal("110.00")
    assert refunded.refund_id == "rfnd_test"
    assert refunded.refund_reason == "customer request"
    assert gateway.refunds == [("pay_test", Decimal("110.00"))]
    assert store.get(Invoice, invoice.id).status == InvoiceStatus.REFUNDED

    with pytest.raises(InvalidStateError):
        payment_engine.refund(payment.id)


def test_refund_rejection_keeps_payment_state(payment_engine, invoice, store, gateway):
    payment = payment_engine.process_payment(invoice.user_id, invoice.id, Decimal("110.00"))
    gateway.refund_outcome = RefundResult(success=False, failure_reason="Refund rejected by processor")

    with pytest.raises(PaymentProcessingError):
        payment_engine.refund(payment.id)

    assert payment_engine.get(payment.id).status == PaymentStatus.SUCCESS
    assert store.get(Invoice, invoice.id).status == InvoiceStatus.PAID


def test_failed_payment_cannot_be_refunded(payment_engine, invoice, gateway):
    gateway.charge_outcome = ChargeResult(success=False, failure_reason="Card declined by issuing bank")
    payment = payment_engine.process_payment(invoice.user_id, invoice.id, Decimal("110.00"))

    with pytest.raises(InvalidStateError):
        payment_engine.refund(payment.id)
    assert gateway.refunds == []


def test_partial_failure_is_flagged_and_reconciled(gateway, notifier, clock):
    store = FlakyInvoiceStore(clock=clock)
    user = StoreUserDirectory(store).register(User(email="reader@example.com", name="Reader"))
    plan = StorePlanCatalog(store).register(Plan(name="Pro", price=Decimal("100.00"), currency="USD"))
    invoices = InvoiceEngine(store, notifier, clock=clock)
    payments = PaymentEngine(store, gateway, notifier, clock=clock)
    invoice = _issue_invoice(store, invoices, user, plan, clock)

    store.fail_invoice_writes = True
    with pytest.raises(PaymentProcessingError) as excinfo:
        payments.process_payment(user.id, invoice.id, Decimal("110.00"))

    assert excinfo.value.payload["reconciliation_required"] is True
    [payment] = payments.find_unreconciled()
    assert payment.status == PaymentStatus.SUCCESS
    assert store.get(Invoice, invoice.id).status == InvoiceStatus.PENDING

    store.fail_invoice_writes = False
    clock.advance(days=1)
    [settled] = payments.reconcile()
    assert settled.status == InvoiceStatus.PAID
    assert settled.paid_date == clock.now.date()
    assert payments.find_unreconciled() == []


def test_listings(payment_engine, invoice, gateway, clock):
    gateway.charge_outcome = ChargeResult(success=False, failure_reason="Insufficient funds")
    failed = payment_engine.process_payment(invoice.user_id, invoice.id, Decimal("110.00"))
    clock.advance(minutes=5)
    gateway.charge_outcome = ChargeResult(success=True, external_id="pay_second")
    succeeded = payment_engine.process_payment(invoice.user_id, invoice.id, Decimal("110.00"))

    assert [p.id for p in payment_engine.list_for_user(invoice.user_id)] == [succeeded.id, failed.id]
    assert [p.id for p in payment_engine.list_by_status(PaymentStatus.FAILED)] == [failed.id]
    assert {p.id for p in payment_engine.list_for_invoice(invoice.id)} == {failed.id, succeeded.id}
    with pytest.raises(NotFoundError):
        payment_engine.get("missing")


class InterleavingStore(InMemoryEntityStore):
    """Store that runs a callback right after the next invoice status scan."""

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self.after_status_scan = None

    def query_by_field(self, kind, field, value):
        rows = super().query_by_field(kind, field, value)
        if kind is Invoice and field == "status" and self.after_status_scan is not None:
            callback, self.after_status_scan = self.after_status_scan, None
            callback()
        return rows


class SweepDuringChargeGateway:
    """Gateway that lets the overdue sweep run while a charge is in flight."""

    def __init__(self, invoices: InvoiceEngine) -> None:
        self._invoices = invoices
        self.charges = []

    def charge(self, order_ref, amount, currency):
        self.charges.append(order_ref)
        self._invoices.sweep_overdue()
        return ChargeResult(success=True, external_id="pay_late")

    def refund(self, external_payment_id, amount):
        return RefundResult(success=True, refund_id="rfnd_late")


def test_sweep_does_not_overwrite_invoice_paid_after_scan(gateway, notifier, clock):
    store = InterleavingStore(clock=clock)
    user = StoreUserDirectory(store).register(User(email="reader@example.com", name="Reader"))
    plan = StorePlanCatalog(store).register(Plan(name="Pro", price=Decimal("100.00"), currency="USD"))
    invoices = InvoiceEngine(store, notifier, clock=clock)
    payments = PaymentEngine(store, gateway, notifier, clock=clock)
    invoice = _issue_invoice(store, invoices, user, plan, clock)
    clock.advance(days=30)

    store.after_status_scan = lambda: payments.process_payment(user.id, invoice.id, Decimal("110.00"))
    swept = invoices.sweep_overdue()

    assert swept == []
    stored = store.get(Invoice, invoice.id)
    assert stored.status == InvoiceStatus.PAID
    assert stored.paid_date == clock.now.date()
    with pytest.raises(InvalidStateError, match="already paid"):
        payments.process_payment(user.id, invoice.id, Decimal("110.00"))
    assert len(gateway.charges) == 1


def test_payment_settles_invoice_swept_overdue_during_charge(store, invoice_engine, notifier, make_user, make_plan, clock):
    invoice = _issue_invoice(store, invoice_engine, make_user(), make_plan(price="100.00"), clock)
    clock.advance(days=30)
    payments = PaymentEngine(store, SweepDuringChargeGateway(invoice_engine), notifier, clock=clock)

    payment = payments.process_payment(invoice.user_id, invoice.id, Decimal("110.00"))

    assert payment.status == PaymentStatus.SUCCESS
    assert store.get(Invoice, invoice.id).status == InvoiceStatus.PAID
    assert payments.find_unreconciled() == []


def test_refund_partial_failure_is_flagged_and_reconciled(gateway, notifier, clock):
    store = FlakyInvoiceStore(clock=clock)
    user = StoreUserDirectory(store).register(User(email="reader@example.com", name="Reader"))
    plan = StorePlanCatalog(store).register(Plan(name="Pro", price=Decimal("100.00"), currency="USD"))
    invoices = InvoiceEngine(store, notifier, clock=clock)
    payments = PaymentEngine(store, gateway, notifier, clock=clock)
    invoice = _issue_invoice(store, invoices, user, plan, clock)
    payment = payments.process_payment(user.id, invoice.id, Decimal("110.00"))

    store.fail_invoice_writes = True
    with pytest.raises(PaymentProcessingError) as excinfo:
        payments.refund(payment.id, reason="duplicate")

    assert excinfo.value.payload["reconciliation_required"] is True
    assert excinfo.value.payload["payment_id"] == payment.id
    assert payments.get(payment.id).status == PaymentStatus.REFUNDED
    assert store.get(Invoice, invoice.id).status == InvoiceStatus.PAID
    assert [p.id for p in payments.find_unreconciled()] == [payment.id]

    store.fail_invoice_writes = False
    [repaired] = payments.reconcile()
    assert repaired.id == invoice.id
    assert repaired.status == InvoiceStatus.REFUNDED
    assert payments.find_unreconciled() == []
