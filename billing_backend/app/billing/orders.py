"""Pre-subscription payment orders settled through a mock checkout."""
from __future__ import annotations

import hashlib
import hmac
import logging
from typing import Optional, Protocol
from uuid import uuid4

from .catalog import PlanCatalog, UserDirectory
from .exceptions import InvalidStateError, NotFoundError
from .models import (
    OrderInitiation,
    OrderVerification,
    PaymentOrder,
    PaymentOrderStatus,
    ensure_transition,
)
from .store import EntityStore

logger = logging.getLogger(__name__)

DEFAULT_KEY_ID = "rzp_test_mock_key_123"
DEBUG_SIGNATURE_PREFIX = "mock_sig_"


class SignatureVerifier(Protocol):
    def sign(self, order_id: str, payment_id: str) -> str:
        ...

    def verify(self, order_id: str, payment_id: str, signature: str) -> bool:
        ...


class HMACOrderSigner:
    """HMAC-SHA256 signer for ``order_id|payment_id`` checkout callbacks."""

    def __init__(self, secret: str, *, allow_debug_signatures: bool = False) -> None:
        if not secret:
            raise ValueError("secret must be provided")
        self._secret = secret.encode("utf-8")
        self._allow_debug_signatures = allow_debug_signatures

    def sign(self, order_id: str, payment_id: str) -> str:
        message = f"{order_id}|{payment_id}".encode("utf-8")
        return hmac.new(self._secret, message, hashlib.sha256).hexdigest()

    def verify(self, order_id: str, payment_id: str, signature: str) -> bool:
        if not signature:
            return False
        if self._allow_debug_signatures and signature.startswith(DEBUG_SIGNATURE_PREFIX):
            logger.warning("Accepting debug signature for order %s", order_id)
            return True
        return hmac.compare_digest(self.sign(order_id, payment_id), signature)


def generate_order_id() -> str:
    return "order_" + uuid4().hex[:14]


class MockOrderEngine:
    """Creates and verifies payment orders that gate paid subscriptions."""

    def __init__(
        self,
        store: EntityStore,
        plans: PlanCatalog,
        users: UserDirectory,
        signer: SignatureVerifier,
        *,
        key_id: str = DEFAULT_KEY_ID,
    ) -> None:
        self._store = store
        self._plans = plans
        self._users = users
        self._signer = signer
        self._key_id = key_id

    def initiate(self, user_id: str, plan_id: str) -> OrderInitiation:
        user = self._users.get_by_id(user_id)
        if user is None:
            raise NotFoundError.for_entity("User", "id", user_id)
        plan = self._plans.get_by_id(plan_id)
        if plan is None:
            raise NotFoundError.for_entity("Plan", "id", plan_id)
        if not plan.active:
            raise InvalidStateError(
                f"Plan '{plan.name}' is not available",
                detail={"plan_id": plan_id},
            )

        if not plan.requires_payment:
            reason = "trial" if plan.has_trial else "free"
            return OrderInitiation(
                requires_payment=False,
                plan_id=plan.id,
                plan_name=plan.name,
                message=f"No payment required for {reason} plan",
            )

        order = self._store.save(
            PaymentOrder(
                user_id=user.id,
                plan_id=plan.id,
                amount=plan.price,
                currency=plan.currency,
                status=PaymentOrderStatus.PENDING,
                external_order_id=generate_order_id(),
                user_email=user.email,
                plan_name=plan.name,
            )
        )
        logger.info(
            "Payment order %s created for user %s plan %s amount=%s %s",
            order.external_order_id,
            user.id,
            plan.name,
            order.amount,
            order.currency,
        )
        return OrderInitiation(
            requires_payment=True,
            plan_id=plan.id,
            plan_name=plan.name,
            order_id=order.external_order_id,
            amount=order.amount,
            currency=order.currency,
            key_id=self._key_id,
            message="Complete payment to activate the subscription",
        )

    def verify(
        self, order_id: str, payment_id: str, signature: str, *, user_id: Optional[str] = None
    ) -> OrderVerification:
        order = self._get_order(order_id, user_id=user_id)
        if order.status == PaymentOrderStatus.SUCCESS:
            return OrderVerification.from_order(order, verified=True, message="Payment already verified")
        if order.status == PaymentOrderStatus.FAILED:
            return OrderVerification.from_order(
                order, verified=False, message=order.failure_reason or "Payment verification failed"
            )

        if not self._signer.verify(order_id, payment_id, signature):
            ensure_transition(order.status, PaymentOrderStatus.FAILED, "Order is no longer pending")
            failed = self._store.save(
                order.model_copy(
                    update={
                        "status": PaymentOrderStatus.FAILED,
                        "external_payment_id": payment_id,
                        "failure_reason": "Invalid payment signature",
                    }
                )
            )
            logger.warning("Signature mismatch for payment order %s", order_id)
            return OrderVerification.from_order(failed, verified=False, message="Invalid payment signature")

        ensure_transition(order.status, PaymentOrderStatus.SUCCESS, "Order is no longer pending")
        verified = self._store.save(
            order.model_copy(
                update={
                    "status": PaymentOrderStatus.SUCCESS,
                    "external_payment_id": payment_id,
                    "external_signature": signature,
                    "failure_reason": None,
                }
            )
        )
        logger.info("Payment order %s verified payment=%s", order_id, payment_id)
        return OrderVerification.from_order(verified, verified=True, message="Payment verified successfully")

    def status(self, order_id: str, *, user_id: Optional[str] = None) -> OrderVerification:
        """Current state of ``order_id``; ``user_id`` limits the lookup to that user's orders."""

        order = self._get_order(order_id, user_id=user_id)
        return OrderVerification.from_order(
            order,
            verified=order.status == PaymentOrderStatus.SUCCESS,
            message=order.failure_reason,
        )

    def is_verified(self, order_id: str) -> bool:
        order = self._store.get_by_unique_field(PaymentOrder, "external_order_id", order_id)
        return order is not None and order.status == PaymentOrderStatus.SUCCESS

    def plan_id_for(self, order_id: str) -> str:
        return self._get_order(order_id).plan_id

    def sign(self, order_id: str, payment_id: str) -> str:
        """Produce the signature a checkout would send back for ``payment_id``."""

        return self._signer.sign(order_id, payment_id)

    def _get_order(self, order_id: str, *, user_id: Optional[str] = None) -> PaymentOrder:
        order: Optional[PaymentOrder] = self._store.get_by_unique_field(
            PaymentOrder, "external_order_id", order_id
        )
        if order is None or (user_id is not None and order.user_id != user_id):
            raise NotFoundError.for_entity("Payment order", "order id", order_id)
        return order


__all__ = [
    "DEBUG_SIGNATURE_PREFIX",
    "DEFAULT_KEY_ID",
    "HMACOrderSigner",
    "MockOrderEngine",
    "SignatureVerifier",
    "generate_order_id",
]
