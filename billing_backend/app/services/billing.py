"""Application wiring for the billing engines."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

import psycopg2

from ..billing import (
    EntityStore,
    HMACOrderSigner,
    InMemoryEntityStore,
    InvoiceEngine,
    LoggingNotifier,
    MockOrderEngine,
    PaymentEngine,
    PaymentGateway,
    QueuedNotifier,
    SimulatedPaymentGateway,
    StorePlanCatalog,
    StoreUserDirectory,
    SubscriptionEngine,
)
from ..billing.repository import PostgresEntityStore
from ...config import BillingConfig, DatabaseConfig, load_billing_config

logger = logging.getLogger("billing")


@dataclass(frozen=True)
class BillingEngines:
    """The assembled engine graph shared by routes and background jobs."""

    config: BillingConfig
    store: EntityStore
    plans: StorePlanCatalog
    users: StoreUserDirectory
    notifier: QueuedNotifier
    invoices: InvoiceEngine
    payments: PaymentEngine
    orders: MockOrderEngine
    subscriptions: SubscriptionEngine


def connect(database: DatabaseConfig):
    """Open a psycopg2 connection using the configured settings."""

    return psycopg2.connect(
        host=database.host,
        port=database.port,
        dbname=database.name,
        user=database.user,
        password=database.password,
        connect_timeout=database.connect_timeout,
    )


def build_store(config: BillingConfig) -> EntityStore:
    if config.store_backend == "postgres":
        store = PostgresEntityStore()
        store.create_schema()
        return store
    return InMemoryEntityStore()


def build_gateway(config: BillingConfig) -> SimulatedPaymentGateway:
    return SimulatedPaymentGateway(
        success_rate=config.gateway_success_rate,
        refund_success_rate=config.gateway_refund_success_rate,
        min_latency=config.gateway_min_latency,
        max_latency=config.gateway_max_latency,
        timeout_seconds=config.gateway_timeout_seconds,
    )


def build_billing_engines(
    config: BillingConfig,
    *,
    store: Optional[EntityStore] = None,
    gateway: Optional[PaymentGateway] = None,
    notifier: Optional[QueuedNotifier] = None,
) -> BillingEngines:
    """Assemble every engine around one store, gateway and notifier."""

    store = store if store is not None else build_store(config)
    gateway = gateway if gateway is not None else build_gateway(config)
    notifier = notifier or QueuedNotifier(LoggingNotifier(), maxsize=config.notification_queue_size)
    plans = StorePlanCatalog(store)
    users = StoreUserDirectory(store)
    invoices = InvoiceEngine(
        store,
        notifier,
        tax_rate=config.tax_rate,
        due_days=config.invoice_due_days,
        plan_change_due_days=config.plan_change_due_days,
    )
    payments = PaymentEngine(
        store,
        gateway,
        notifier,
        gateway_name=config.gateway_name,
        default_method=config.default_payment_method,
    )
    orders = MockOrderEngine(
        store,
        plans,
        users,
        HMACOrderSigner(
            config.mock_payment_secret,
            allow_debug_signatures=config.allow_debug_signatures,
        ),
        key_id=config.mock_payment_key_id,
    )
    subscriptions = SubscriptionEngine(store, plans, users, invoices, orders, notifier)
    logger.info(
        "Billing engines assembled store=%s gateway=%s",
        config.store_backend,
        config.gateway_name,
    )
    return BillingEngines(
        config=config,
        store=store,
        plans=plans,
        users=users,
        notifier=notifier,
        invoices=invoices,
        payments=payments,
        orders=orders,
        subscriptions=subscriptions,
    )


@lru_cache(maxsize=1)
def get_billing_engines() -> BillingEngines:
    return build_billing_engines(load_billing_config())


__all__ = [
    "BillingEngines",
    "build_billing_engines",
    "build_gateway",
    "build_store",
    "connect",
    "get_billing_engines",
]
