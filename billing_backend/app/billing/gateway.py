"""Payment gateway contract and a simulated processor for local use."""
from __future__ import annotations

import logging
import random
import time
from decimal import Decimal
from typing import Callable, Optional, Protocol
from uuid import uuid4

from .models import ChargeResult, RefundResult

logger = logging.getLogger(__name__)

_DECLINE_REASONS = (
    "Card declined by issuing bank",
    "Insufficient funds",
    "Payment authentication failed",
)


class PaymentGateway(Protocol):
    """External payment processor integration."""

    def charge(self, order_ref: str, amount: Decimal, currency: str) -> ChargeResult:
        ...

    def refund(self, external_payment_id: Optional[str], amount: Decimal) -> RefundResult:
        ...


class GatewayTimeoutError(TimeoutError):
    """The simulated processor did not answer within the configured bound."""


class SimulatedPaymentGateway:
    """Processor stub returning random outcomes after a bounded delay."""

    def __init__(
        self,
        *,
        success_rate: float = 0.9,
        refund_success_rate: float = 1.0,
        min_latency: float = 0.1,
        max_latency: float = 0.5,
        timeout_seconds: float = 5.0,
        rng: Optional[random.Random] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ) -> None:
        if not 0.0 <= success_rate <= 1.0 or not 0.0 <= refund_success_rate <= 1.0:
            raise ValueError("success rates must be between 0 and 1")
        if min_latency < 0 or max_latency < min_latency:
            raise ValueError("latency bounds must satisfy 0 <= min_latency <= max_latency")
        self._success_rate = success_rate
        self._refund_success_rate = refund_success_rate
        self._min_latency = min_latency
        self._max_latency = max_latency
        self._timeout_seconds = max(timeout_seconds, 0.0)
        self._rng = rng or random.Random()
        self._sleep = sleep or time.sleep

    def charge(self, order_ref: str, amount: Decimal, currency: str) -> ChargeResult:
        self._simulate_latency(f"charge {order_ref}")
        if amount <= 0:
            return ChargeResult(success=False, failure_reason="Invalid payment amount")
        if self._rng.random() < self._success_rate:
            external_id = f"pay_{uuid4().hex[:14]}"
            logger.info("Simulated charge succeeded ref=%s amount=%s %s id=%s", order_ref, amount, currency, external_id)
            return ChargeResult(success=True, external_id=external_id)
        reason = self._rng.choice(_DECLINE_REASONS)
        logger.info("Simulated charge declined ref=%s reason=%s", order_ref, reason)
        return ChargeResult(success=False, failure_reason=reason)

    def refund(self, external_payment_id: Optional[str], amount: Decimal) -> RefundResult:
        self._simulate_latency(f"refund {external_payment_id}")
        if not external_payment_id:
            return RefundResult(success=False, failure_reason="Missing gateway payment reference")
        if self._rng.random() < self._refund_success_rate:
            return RefundResult(success=True, refund_id=f"rfnd_{uuid4().hex[:14]}")
        return RefundResult(success=False, failure_reason="Refund rejected by processor")

    def _simulate_latency(self, operation: str) -> None:
        delay = self._rng.uniform(self._min_latency, self._max_latency)
        if delay > self._timeout_seconds:
            self._sleep(self._timeout_seconds)
            raise GatewayTimeoutError(
                f"Gateway {operation} timed out after {self._timeout_seconds:.2f}s"
            )
        if delay:
            self._sleep(delay)


__all__ = ["GatewayTimeoutError", "PaymentGateway", "SimulatedPaymentGateway"]
