"""Domain models and status machines for the billing lifecycle."""
from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, FrozenSet, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator

from .exceptions import InvalidStateError
from .money import ZERO, compute_total


class BillingCycle(str, Enum):
    """Supported billing frequencies."""

    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"

    @property
    def months(self) -> int:
        return {"monthly": 1, "quarterly": 3, "yearly": 12}[self.value]


class SubscriptionStatus(str, Enum):
    """Lifecycle state for subscriptions."""

    PENDING = "pending"
    TRIAL = "trial"
    ACTIVE = "active"
    INACTIVE = "inactive"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class InvoiceStatus(str, Enum):
    """Status of a persisted invoice record."""

    PENDING = "pending"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    PARTIALLY_PAID = "partially_paid"


class PaymentStatus(str, Enum):
    """Status of a single payment attempt."""

    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


class PaymentOrderStatus(str, Enum):
    """Status of a pre-subscription payment order."""

    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class NotificationEvent(str, Enum):
    """Events handed to the notifier."""

    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_CANCELLED = "subscription.cancelled"
    INVOICE_CREATED = "invoice.created"
    PAYMENT_CONFIRMED = "payment.confirmed"


CURRENT_SUBSCRIPTION_STATUSES: FrozenSet[SubscriptionStatus] = frozenset(
    {SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIAL}
)
PAYABLE_INVOICE_STATUSES: FrozenSet[InvoiceStatus] = frozenset(
    {InvoiceStatus.PENDING, InvoiceStatus.OVERDUE, InvoiceStatus.PARTIALLY_PAID}
)

_SUBSCRIPTION_TRANSITIONS: Mapping[SubscriptionStatus, FrozenSet[SubscriptionStatus]] = {
    SubscriptionStatus.PENDING: frozenset(
        {SubscriptionStatus.TRIAL, SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELLED}
    ),
    SubscriptionStatus.TRIAL: frozenset(
        {
            SubscriptionStatus.ACTIVE,
            SubscriptionStatus.CANCELLED,
            SubscriptionStatus.EXPIRED,
            SubscriptionStatus.INACTIVE,
        }
    ),
    SubscriptionStatus.ACTIVE: frozenset(
        {SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED, SubscriptionStatus.INACTIVE}
    ),
    SubscriptionStatus.INACTIVE: frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELLED}),
    SubscriptionStatus.CANCELLED: frozenset({SubscriptionStatus.ACTIVE}),
    SubscriptionStatus.EXPIRED: frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELLED}),
}

_INVOICE_TRANSITIONS: Mapping[InvoiceStatus, FrozenSet[InvoiceStatus]] = {
    InvoiceStatus.PENDING: frozenset({InvoiceStatus.PAID, InvoiceStatus.OVERDUE, InvoiceStatus.CANCELLED}),
    InvoiceStatus.OVERDUE: frozenset({InvoiceStatus.PAID, InvoiceStatus.CANCELLED}),
    InvoiceStatus.PARTIALLY_PAID: frozenset(
        {InvoiceStatus.PAID, InvoiceStatus.OVERDUE, InvoiceStatus.CANCELLED}
    ),
    InvoiceStatus.PAID: frozenset({InvoiceStatus.REFUNDED}),
    InvoiceStatus.CANCELLED: frozenset(),
    InvoiceStatus.REFUNDED: frozenset(),
}

_PAYMENT_TRANSITIONS: Mapping[PaymentStatus, FrozenSet[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.SUCCESS, PaymentStatus.FAILED, PaymentStatus.CANCELLED}),
    PaymentStatus.SUCCESS: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
    PaymentStatus.CANCELLED: frozenset(),
}

_ORDER_TRANSITIONS: Mapping[PaymentOrderStatus, FrozenSet[PaymentOrderStatus]] = {
    PaymentOrderStatus.PENDING: frozenset({PaymentOrderStatus.SUCCESS, PaymentOrderStatus.FAILED}),
    PaymentOrderStatus.SUCCESS: frozenset(),
    PaymentOrderStatus.FAILED: frozenset(),
}

_TRANSITION_TABLES: Dict[type, Mapping] = {
    SubscriptionStatus: _SUBSCRIPTION_TRANSITIONS,
    InvoiceStatus: _INVOICE_TRANSITIONS,
    PaymentStatus: _PAYMENT_TRANSITIONS,
    PaymentOrderStatus: _ORDER_TRANSITIONS,
}


def can_transition(current: Enum, target: Enum) -> bool:
    """Return ``True`` when ``current`` may move to ``target``."""

    if type(current) is not type(target):
        raise TypeError(f"Cannot compare {type(current).__name__} with {type(target).__name__}")
    table = _TRANSITION_TABLES[type(current)]
    return target in table.get(current, frozenset())


def ensure_transition(current: Enum, target: Enum, message: str) -> None:
    """Raise :class:`InvalidStateError` unless the transition is allowed."""

    if not can_transition(current, target):
        raise InvalidStateError(
            message,
            detail={"current_status": current.value, "target_status": target.value},
        )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Entity(BaseModel):
    """Fields populated by the entity store on save."""

    id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class User(Entity):
    """Account holder as seen by the billing engines."""

    email: str
    name: Optional[str] = None
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @field_validator("email")
    @classmethod
    def _lower_email(cls, value: str) -> str:
        return value.strip().lower()


class Plan(Entity):
    """Catalog entry describing pricing, cycle and trial terms."""

    name: str = Field(min_length=1)
    description: Optional[str] = None
    price: Decimal = Field(ge=0)
    currency: str = Field(default="INR", min_length=3, max_length=3)
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    trial_days: int = Field(default=0, ge=0)
    active: bool = True
    features: List[str] = Field(default_factory=list)
    sort_order: int = 0

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()

    @property
    def has_trial(self) -> bool:
        return self.trial_days > 0

    @property
    def requires_payment(self) -> bool:
        """Paid plans without a trial must be paid for before subscribing."""
        return not self.has_trial and self.price > 0


class Subscription(Entity):
    """A user's subscription with plan facts snapshotted at write time."""

    user_id: str
    plan_id: str
    user_email: str
    plan_name: str
    plan_currency: str
    status: SubscriptionStatus
    start_date: datetime
    end_date: datetime
    trial_end_date: Optional[datetime] = None
    next_billing_date: Optional[datetime] = None
    auto_renew: bool = True
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None

    @property
    def is_current(self) -> bool:
        """Return ``True`` when the subscription counts as the user's active one."""
        return self.status in CURRENT_SUBSCRIPTION_STATUSES


class Invoice(Entity):
    """Invoice issued for a subscription event."""

    invoice_number: str
    user_id: str
    subscription_id: Optional[str] = None
    user_email: str
    user_name: Optional[str] = None
    plan_name: Optional[str] = None
    amount: Decimal = Field(ge=0)
    tax_amount: Decimal = Field(default=ZERO, ge=0)
    discount_amount: Decimal = Field(default=ZERO, ge=0)
    currency: str = Field(default="INR", min_length=3, max_length=3)
    status: InvoiceStatus = InvoiceStatus.PENDING
    invoice_date: date
    due_date: date
    paid_date: Optional[date] = None
    billing_period_start: Optional[date] = None
    billing_period_end: Optional[date] = None
    notes: Optional[str] = None

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total_amount(self) -> Decimal:
        return compute_total(self.amount, self.tax_amount, self.discount_amount)

    @property
    def is_payable(self) -> bool:
        return self.status in PAYABLE_INVOICE_STATUSES


class PaymentLog(Entity):
    """One payment attempt against an invoice."""

    user_id: str
    invoice_id: Optional[str] = None
    user_email: str
    invoice_number: Optional[str] = None
    transaction_id: str
    external_payment_id: Optional[str] = None
    amount: Decimal = Field(ge=0)
    currency: str = Field(default="INR", min_length=3, max_length=3)
    status: PaymentStatus = PaymentStatus.PENDING
    payment_method: str = "card"
    payment_gateway: str
    failure_reason: Optional[str] = None
    refunded_amount: Decimal = ZERO
    refund_id: Optional[str] = None
    refund_reason: Optional[str] = None
    processed_at: Optional[datetime] = None


class PaymentOrder(Entity):
    """Pre-subscription payment order settled through the mock checkout."""

    user_id: str
    plan_id: str
    amount: Decimal = Field(ge=0)
    currency: str = Field(default="INR", min_length=3, max_length=3)
    status: PaymentOrderStatus = PaymentOrderStatus.PENDING
    external_order_id: str
    external_payment_id: Optional[str] = None
    external_signature: Optional[str] = None
    user_email: str
    plan_name: str
    failure_reason: Optional[str] = None


class ChargeResult(BaseModel):
    """Outcome of a gateway charge."""

    success: bool
    external_id: Optional[str] = None
    failure_reason: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class RefundResult(BaseModel):
    """Outcome of a gateway refund."""

    success: bool
    refund_id: Optional[str] = None
    failure_reason: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class OrderInitiation(BaseModel):
    """Return value of a payment order initiation."""

    requires_payment: bool
    plan_id: str
    plan_name: str
    order_id: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    key_id: Optional[str] = None
    message: str

    model_config = ConfigDict(frozen=True)


class OrderVerification(BaseModel):
    """Verification view of a payment order."""

    order_id: str
    payment_id: Optional[str] = None
    plan_id: str
    plan_name: str
    amount: Decimal
    currency: str
    status: PaymentOrderStatus
    verified: bool
    message: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(frozen=True)

    @classmethod
    def from_order(
        cls, order: PaymentOrder, *, verified: bool, message: Optional[str] = None
    ) -> "OrderVerification":
        return cls(
            order_id=order.external_order_id,
            payment_id=order.external_payment_id,
            plan_id=order.plan_id,
            plan_name=order.plan_name,
            amount=order.amount,
            currency=order.currency,
            status=order.status,
            verified=verified,
            message=message,
            created_at=order.created_at,
        )


class NotificationMessage(BaseModel):
    """Message handed to the outbound notification queue."""

    event: NotificationEvent
    payload: Dict[str, object] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(frozen=True)


__all__ = [
    "BillingCycle",
    "CURRENT_SUBSCRIPTION_STATUSES",
    "ChargeResult",
    "Entity",
    "Invoice",
    "InvoiceStatus",
    "NotificationEvent",
    "NotificationMessage",
    "OrderInitiation",
    "OrderVerification",
    "PAYABLE_INVOICE_STATUSES",
    "PaymentLog",
    "PaymentOrder",
    "PaymentOrderStatus",
    "PaymentStatus",
    "Plan",
    "RefundResult",
    "Subscription",
    "SubscriptionStatus",
    "User",
    "can_transition",
    "ensure_transition",
]
