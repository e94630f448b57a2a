"""Billing lifecycle engines for subscriptions, invoices, payments and orders."""

from .catalog import PlanCatalog, StorePlanCatalog, StoreUserDirectory, UserDirectory
from .exceptions import (
    AuthorizationError,
    BillingError,
    ConflictError,
    InvalidStateError,
    NotFoundError,
    PaymentProcessingError,
    PaymentRequiredError,
    ValidationError,
)
from .gateway import GatewayTimeoutError, PaymentGateway, SimulatedPaymentGateway
from .invoices import InvoiceEngine
from .models import (
    BillingCycle,
    ChargeResult,
    Invoice,
    InvoiceStatus,
    NotificationEvent,
    OrderInitiation,
    OrderVerification,
    PaymentLog,
    PaymentOrder,
    PaymentOrderStatus,
    PaymentStatus,
    Plan,
    RefundResult,
    Subscription,
    SubscriptionStatus,
    User,
    can_transition,
)
from .notifier import LoggingNotifier, Notifier, QueuedNotifier, RecordingNotifier
from .orders import HMACOrderSigner, MockOrderEngine
from .payments import PaymentEngine
from .store import EntityStore, InMemoryEntityStore
from .subscriptions import SubscriptionEngine

__all__ = [
    "AuthorizationError",
    "BillingCycle",
    "BillingError",
    "ChargeResult",
    "ConflictError",
    "EntityStore",
    "GatewayTimeoutError",
    "HMACOrderSigner",
    "InMemoryEntityStore",
    "InvalidStateError",
    "Invoice",
    "InvoiceEngine",
    "InvoiceStatus",
    "LoggingNotifier",
    "MockOrderEngine",
    "NotFoundError",
    "NotificationEvent",
    "Notifier",
    "OrderInitiation",
    "OrderVerification",
    "PaymentEngine",
    "PaymentGateway",
    "PaymentLog",
    "PaymentOrder",
    "PaymentOrderStatus",
    "PaymentProcessingError",
    "PaymentRequiredError",
    "PaymentStatus",
    "Plan",
    "PlanCatalog",
    "QueuedNotifier",
    "RecordingNotifier",
    "RefundResult",
    "SimulatedPaymentGateway",
    "StorePlanCatalog",
    "StoreUserDirectory",
    "Subscription",
    "SubscriptionEngine",
    "SubscriptionStatus",
    "User",
    "UserDirectory",
    "ValidationError",
    "can_transition",
]
