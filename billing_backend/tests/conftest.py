"""Shared fakes and fixtures for the billing engine tests."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import List, Optional, Tuple, Union

import pytest

from billing_backend.app.billing import (
    BillingCycle,
    ChargeResult,
    HMACOrderSigner,
    InMemoryEntityStore,
    InvoiceEngine,
    MockOrderEngine,
    PaymentEngine,
    Plan,
    RecordingNotifier,
    RefundResult,
    StorePlanCatalog,
    StoreUserDirectory,
    SubscriptionEngine,
    User,
)

START = datetime(2024, 1, 31, 10, 0, tzinfo=timezone.utc)
TEST_SECRET = "test-order-secret"


class FixedClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class ScriptedGateway:
    """Gateway whose next outcome is set by the test."""

    def __init__(self) -> None:
        self.charge_outcome: Union[ChargeResult, Exception] = ChargeResult(success=True, external_id="pay_test")
        self.refund_outcome: Union[RefundResult, Exception] = RefundResult(success=True, refund_id="rfnd_test")
        self.charges: List[Tuple[str, Decimal, str]] = []
        self.refunds: List[Tuple[Optional[str], Decimal]] = []

    def charge(self, order_ref: str, amount: Decimal, currency: str) -> ChargeResult:
        self.charges.append((order_ref, amount, currency))
        if isinstance(self.charge_outcome, Exception):
            raise self.charge_outcome
        return self.charge_outcome

    def refund(self, external_payment_id: Optional[str], amount: Decimal) -> RefundResult:
        self.refunds.append((external_payment_id, amount))
        if isinstance(self.refund_outcome, Exception):
            raise self.refund_outcome
        return self.refund_outcome


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(START)


@pytest.fixture
def store(clock) -> InMemoryEntityStore:
    return InMemoryEntityStore(clock=clock)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def gateway() -> ScriptedGateway:
    return ScriptedGateway()


@pytest.fixture
def plans(store) -> StorePlanCatalog:
    return StorePlanCatalog(store)


@pytest.fixture
def users(store) -> StoreUserDirectory:
    return StoreUserDirectory(store)


@pytest.fixture
def make_user(users):
    def _make(email: str = "reader@example.com", name: str = "Reader", role: str = "user") -> User:
        return users.register(User(email=email, name=name, role=role))

    return _make


@pytest.fixture
def make_plan(plans):
    def _make(
        name: str = "Pro",
        price: str = "100.00",
        *,
        currency: str = "USD",
        trial_days: int = 0,
        cycle: BillingCycle = BillingCycle.MONTHLY,
        active: bool = True,
    ) -> Plan:
        return plans.register(
            Plan(
                name=name,
                price=Decimal(price),
                currency=currency,
                trial_days=trial_days,
                billing_cycle=cycle,
                active=active,
            )
        )

    return _make


@pytest.fixture
def invoice_engine(store, notifier, clock) -> InvoiceEngine:
    return InvoiceEngine(store, notifier, clock=clock)


@pytest.fixture
def payment_engine(store, gateway, notifier, clock) -> PaymentEngine:
    return PaymentEngine(store, gateway, notifier, clock=clock)


@pytest.fixture
def order_engine(store, plans, users) -> MockOrderEngine:
    return MockOrderEngine(store, plans, users, HMACOrderSigner(TEST_SECRET))


@pytest.fixture
def subscription_engine(store, plans, users, invoice_engine, order_engine, notifier, clock) -> SubscriptionEngine:
    return SubscriptionEngine(store, plans, users, invoice_engine, order_engine, notifier, clock=clock)


@pytest.fixture
def paid_order(order_engine):
    """Initiate and verify an order, returning its external order id."""

    def _pay(user: User, plan: Plan) -> str:
        initiation = order_engine.initiate(user.id, plan.id)
        signature = order_engine.sign(initiation.order_id, "pay_checkout_1")
        result = order_engine.verify(initiation.order_id, "pay_checkout_1", signature)
        assert result.verified
        return initiation.order_id

    return _pay
