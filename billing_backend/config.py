"""Billing configuration helpers."""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Mapping, Optional
import os


@dataclass(frozen=True)
class DatabaseConfig:
    """Connection settings for the PostgreSQL entity store."""

    host: str
    port: int
    name: str
    user: str
    password: str
    connect_timeout: int


@dataclass(frozen=True)
class BillingConfig:
    """Configuration for the billing engines and their collaborators."""

    store_backend: str
    database: DatabaseConfig
    tax_rate: Decimal
    invoice_due_days: int
    plan_change_due_days: int
    default_currency: str
    gateway_name: str
    default_payment_method: str
    gateway_success_rate: float
    gateway_refund_success_rate: float
    gateway_min_latency: float
    gateway_max_latency: float
    gateway_timeout_seconds: float
    mock_payment_key_id: str
    mock_payment_secret: str
    allow_debug_signatures: bool
    notification_queue_size: int
    overdue_sweep_interval_seconds: float


def _to_bool(value: Optional[str], *, default: bool) -> bool:
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    return default


def _to_int(value: Optional[str], *, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected integer value, got {value!r}") from exc


def _to_float(value: Optional[str], *, default: float) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected float value, got {value!r}") from exc


def _to_decimal(value: Optional[str], *, default: str) -> Decimal:
    if value is None or value == "":
        return Decimal(default)
    try:
        return Decimal(value.strip())
    except InvalidOperation as exc:
        raise ValueError(f"Expected decimal value, got {value!r}") from exc


def _clamp_rate(value: float) -> float:
    return min(1.0, max(0.0, value))


def load_billing_config(env: Optional[Mapping[str, str]] = None) -> BillingConfig:
    """Load :class:`BillingConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    store_backend = (env_mapping.get("BILLING_STORE") or "memory").strip().lower() or "memory"
    if store_backend not in {"memory", "postgres"}:
        raise ValueError(f"Unsupported BILLING_STORE {store_backend!r}")

    database = DatabaseConfig(
        host=env_mapping.get("DB_HOST", "127.0.0.1"),
        port=_to_int(env_mapping.get("DB_PORT"), default=5432),
        name=env_mapping.get("DB_NAME", "billing_db"),
        user=env_mapping.get("DB_USER", "billing_user"),
        password=env_mapping.get("DB_PASSWORD", "billing_pass"),
        connect_timeout=max(1, _to_int(env_mapping.get("DB_CONNECT_TIMEOUT"), default=5)),
    )

    tax_rate = _to_decimal(env_mapping.get("BILLING_TAX_RATE"), default="0.10")
    if tax_rate < 0:
        raise ValueError("BILLING_TAX_RATE must not be negative")

    min_latency = max(0.0, _to_float(env_mapping.get("GATEWAY_MIN_LATENCY"), default=0.1))
    max_latency = max(min_latency, _to_float(env_mapping.get("GATEWAY_MAX_LATENCY"), default=0.5))

    return BillingConfig(
        store_backend=store_backend,
        database=database,
        tax_rate=tax_rate,
        invoice_due_days=max(0, _to_int(env_mapping.get("INVOICE_DUE_DAYS"), default=14)),
        plan_change_due_days=max(0, _to_int(env_mapping.get("PLAN_CHANGE_DUE_DAYS"), default=7)),
        default_currency=(env_mapping.get("DEFAULT_CURRENCY") or "INR").strip().upper(),
        gateway_name=env_mapping.get("PAYMENT_GATEWAY_NAME", "razorpay"),
        default_payment_method=env_mapping.get("PAYMENT_DEFAULT_METHOD", "card"),
        gateway_success_rate=_clamp_rate(_to_float(env_mapping.get("GATEWAY_SUCCESS_RATE"), default=0.9)),
        gateway_refund_success_rate=_clamp_rate(
            _to_float(env_mapping.get("GATEWAY_REFUND_SUCCESS_RATE"), default=1.0)
        ),
        gateway_min_latency=min_latency,
        gateway_max_latency=max_latency,
        gateway_timeout_seconds=max(0.0, _to_float(env_mapping.get("GATEWAY_TIMEOUT_SECONDS"), default=5.0)),
        mock_payment_key_id=env_mapping.get("MOCK_PAYMENT_KEY_ID", "rzp_test_mock_key_123"),
        mock_payment_secret=env_mapping.get("MOCK_PAYMENT_SECRET") or "mock_secret_key_456",
        allow_debug_signatures=_to_bool(env_mapping.get("MOCK_PAYMENT_DEBUG_SIGNATURES"), default=False),
        notification_queue_size=max(1, _to_int(env_mapping.get("NOTIFICATION_QUEUE_SIZE"), default=1000)),
        overdue_sweep_interval_seconds=max(
            0.0, _to_float(env_mapping.get("OVERDUE_SWEEP_INTERVAL_SECONDS"), default=3600.0)
        ),
    )


__all__ = ["BillingConfig", "DatabaseConfig", "load_billing_config"]
