"""Subscription lifecycle orchestration."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional

from .catalog import PlanCatalog, UserDirectory
from .exceptions import ConflictError, InvalidStateError, NotFoundError, PaymentRequiredError
from .invoices import InvoiceEngine
from .models import (
    CURRENT_SUBSCRIPTION_STATUSES,
    NotificationEvent,
    Plan,
    Subscription,
    SubscriptionStatus,
    ensure_transition,
)
from .money import add_days, end_of_cycle
from .notifier import Notifier, notify_safely
from .orders import MockOrderEngine
from .store import EntityStore

logger = logging.getLogger(__name__)


class SubscriptionEngine:
    """Creates, cancels, changes and renews subscriptions.

    Plan and user facts are copied onto the subscription when it is written
    and are not refreshed if the plan or user changes afterwards. Invoices are
    delegated to :class:`InvoiceEngine`; the payment gate for paid plans
    without a trial is answered by :class:`MockOrderEngine`.
    """

    def __init__(
        self,
        store: EntityStore,
        plans: PlanCatalog,
        users: UserDirectory,
        invoices: InvoiceEngine,
        orders: MockOrderEngine,
        notifier: Notifier,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._store = store
        self._plans = plans
        self._users = users
        self._invoices = invoices
        self._orders = orders
        self._notifier = notifier
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def create(
        self,
        user_id: str,
        plan_id: str,
        auto_renew: Optional[bool] = True,
        payment_order_id: Optional[str] = None,
    ) -> Subscription:
        logger.info("Creating subscription for user %s with plan %s", user_id, plan_id)
        user = self._users.get_by_id(user_id)
        if user is None:
            raise NotFoundError.for_entity("User", "id", user_id)
        plan = self._require_plan(plan_id)
        self._ensure_active_plan(plan)

        if self.get_active_for_user(user_id) is not None:
            raise ConflictError(
                "User already has an active subscription",
                detail={"user_id": user_id},
            )

        if plan.requires_payment:
            self._check_payment(plan, payment_order_id)

        start = self._clock()
        end = end_of_cycle(start, plan.billing_cycle)
        trial_end = add_days(start, plan.trial_days) if plan.has_trial else None
        subscription = self._store.save(
            Subscription(
                user_id=user.id,
                plan_id=plan.id,
                user_email=user.email,
                plan_name=plan.name,
                plan_currency=plan.currency,
                status=SubscriptionStatus.TRIAL if plan.has_trial else SubscriptionStatus.ACTIVE,
                start_date=start,
                end_date=end,
                trial_end_date=trial_end,
                next_billing_date=trial_end or end,
                auto_renew=True if auto_renew is None else auto_renew,
            )
        )
        logger.info(
            "Subscription %s created status=%s plan=%s",
            subscription.id,
            subscription.status.value,
            plan.name,
        )

        if not plan.has_trial and plan.price > 0:
            self._invoices.generate_initial_invoice(subscription, user, plan)

        notify_safely(
            self._notifier,
            NotificationEvent.SUBSCRIPTION_CREATED,
            _subscription_payload(subscription),
        )
        return subscription

    def cancel(self, subscription_id: str, reason: Optional[str] = None) -> Subscription:
        subscription = self.get(subscription_id)
        ensure_transition(
            subscription.status,
            SubscriptionStatus.CANCELLED,
            "Subscription is already cancelled",
        )
        cancelled = self._store.save(
            subscription.model_copy(
                update={
                    "status": SubscriptionStatus.CANCELLED,
                    "cancelled_at": self._clock(),
                    "cancellation_reason": reason,
                    "auto_renew": False,
                }
            )
        )
        logger.info("Subscription %s cancelled", subscription_id)
        payload = _subscription_payload(cancelled)
        payload["cancellation_reason"] = reason
        notify_safely(self._notifier, NotificationEvent.SUBSCRIPTION_CANCELLED, payload)
        return cancelled

    def change_plan(self, subscription_id: str, new_plan_id: str) -> Subscription:
        subscription = self.get(subscription_id)
        new_plan = self._require_plan(new_plan_id)
        self._ensure_active_plan(new_plan)
        old_plan = self._plans.get_by_id(subscription.plan_id)

        new_end = end_of_cycle(self._clock(), new_plan.billing_cycle)
        changed = self._store.save(
            subscription.model_copy(
                update={
                    "plan_id": new_plan.id,
                    "plan_name": new_plan.name,
                    "plan_currency": new_plan.currency,
                    "end_date": new_end,
                    "next_billing_date": new_end,
                }
            )
        )
        logger.info(
            "Subscription %s changed from plan %s to plan %s",
            subscription_id,
            old_plan.name if old_plan else subscription.plan_id,
            new_plan.name,
        )

        user = self._users.get_by_id(changed.user_id)
        if user is not None and old_plan is not None:
            self._invoices.generate_plan_change_invoice(changed, user, old_plan, new_plan)
        return changed

    def renew(self, subscription_id: str) -> Subscription:
        subscription = self.get(subscription_id)
        ensure_transition(
            subscription.status,
            SubscriptionStatus.ACTIVE,
            "Subscription is already active",
        )
        current = self.get_active_for_user(subscription.user_id)
        if current is not None and current.id != subscription.id:
            raise ConflictError(
                "User already has an active subscription",
                detail={"user_id": subscription.user_id, "subscription_id": current.id},
            )
        plan = self._require_plan(subscription.plan_id)

        start = self._clock()
        end = end_of_cycle(start, plan.billing_cycle)
        renewed = self._store.save(
            subscription.model_copy(
                update={
                    "status": SubscriptionStatus.ACTIVE,
                    "start_date": start,
                    "end_date": end,
                    "next_billing_date": end,
                    "cancelled_at": None,
                    "cancellation_reason": None,
                }
            )
        )
        logger.info("Subscription %s renewed until %s", subscription_id, end.isoformat())

        user = self._users.get_by_id(renewed.user_id)
        if user is not None:
            self._invoices.generate_initial_invoice(renewed, user, plan)
        return renewed

    def toggle_auto_renew(self, subscription_id: str, auto_renew: bool) -> Subscription:
        subscription = self.get(subscription_id)
        updated = self._store.save(subscription.model_copy(update={"auto_renew": auto_renew}))
        logger.info("Subscription %s auto-renew set to %s", subscription_id, auto_renew)
        return updated

    def get(self, subscription_id: str) -> Subscription:
        subscription = self._store.get(Subscription, subscription_id)
        if subscription is None:
            raise NotFoundError.for_entity("Subscription", "id", subscription_id)
        return subscription

    def get_for_user(self, subscription_id: str, user_id: str) -> Subscription:
        subscription = self._store.get(Subscription, subscription_id)
        if subscription is None or subscription.user_id != user_id:
            raise NotFoundError.for_entity("Subscription", "id", subscription_id)
        return subscription

    def list_for_user(self, user_id: str) -> List[Subscription]:
        return self._store.query_by_field(Subscription, "user_id", user_id)

    def get_active_for_user(self, user_id: str) -> Optional[Subscription]:
        for subscription in self.list_for_user(user_id):
            if subscription.status in CURRENT_SUBSCRIPTION_STATUSES:
                return subscription
        return None

    def list_by_status(self, status: SubscriptionStatus) -> List[Subscription]:
        return self._store.query_by_field(Subscription, "status", status)

    def count_active(self) -> int:
        return len(self.list_by_status(SubscriptionStatus.ACTIVE))

    def _require_plan(self, plan_id: str) -> Plan:
        plan = self._plans.get_by_id(plan_id)
        if plan is None:
            raise NotFoundError.for_entity("Plan", "id", plan_id)
        return plan

    @staticmethod
    def _ensure_active_plan(plan: Plan) -> None:
        if not plan.active:
            raise InvalidStateError(
                "Selected plan is not active",
                detail={"plan_id": plan.id},
            )

    def _check_payment(self, plan: Plan, payment_order_id: Optional[str]) -> None:
        if not payment_order_id or not payment_order_id.strip():
            raise PaymentRequiredError(
                "Payment is required for this plan. Please complete payment first.",
                detail={"plan_id": plan.id},
            )
        if not self._orders.is_verified(payment_order_id):
            raise PaymentRequiredError(
                "Payment not verified. Please complete payment before subscribing.",
                detail={"order_id": payment_order_id},
            )
        if self._orders.plan_id_for(payment_order_id) != plan.id:
            raise PaymentRequiredError(
                "Payment was made for a different plan.",
                detail={"order_id": payment_order_id, "plan_id": plan.id},
            )
        logger.info("Payment verified for order %s", payment_order_id)


def _subscription_payload(subscription: Subscription) -> dict:
    return {
        "subscription_id": subscription.id,
        "user_id": subscription.user_id,
        "user_email": subscription.user_email,
        "plan_id": subscription.plan_id,
        "plan_name": subscription.plan_name,
        "status": subscription.status.value,
        "start_date": subscription.start_date.isoformat(),
        "end_date": subscription.end_date.isoformat(),
    }


__all__ = ["SubscriptionEngine"]
