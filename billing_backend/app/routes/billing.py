"""API routes exposing the billing lifecycle engines."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status

from ..billing import (
    BillingError,
    Invoice,
    InvoiceStatus,
    NotFoundError,
    OrderInitiation,
    OrderVerification,
    PaymentLog,
    Plan,
    Subscription,
)
from ..schemas.billing import (
    AutoRenewRequest,
    InvoiceListResponse,
    OrderInitiateRequest,
    OrderVerifyRequest,
    PaymentListResponse,
    PaymentRequest,
    PlanChangeRequest,
    PlanCreateRequest,
    PlanListResponse,
    RefundRequest,
    SubscriptionCancelRequest,
    SubscriptionCreateRequest,
    SubscriptionListResponse,
)
from ..services.billing import get_billing_engines
from ... import app_context


def _get_current_user(user_id: Optional[str] = Header(None, alias="X-User-Id")):
    return app_context.get_current_user(user_id=user_id)


def _require_admin(current_user) -> None:
    if not getattr(current_user, "is_admin", False):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Administrator access required")


def _owned_subscription(subscription_id: str, current_user) -> Subscription:
    engines = get_billing_engines()
    if getattr(current_user, "is_admin", False):
        return engines.subscriptions.get(subscription_id)
    return engines.subscriptions.get_for_user(subscription_id, str(current_user.id))


def _order_owner(current_user) -> Optional[str]:
    return None if getattr(current_user, "is_admin", False) else str(current_user.id)


router = APIRouter(prefix="/api/billing", tags=["billing"])


@router.get("/plans", response_model=PlanListResponse)
def list_plans() -> PlanListResponse:
    return PlanListResponse(plans=get_billing_engines().plans.list_active())


@router.post("/plans", response_model=Plan, status_code=status.HTTP_201_CREATED)
def create_plan(payload: PlanCreateRequest, *, current_user=Depends(_get_current_user)) -> Plan:
    _require_admin(current_user)
    engines = get_billing_engines()
    try:
        return engines.plans.register(payload.to_plan(engines.config.default_currency))
    except BillingError as exc:
        raise exc.to_http_exception() from exc


@router.post("/subscriptions", response_model=Subscription, status_code=status.HTTP_201_CREATED)
def create_subscription(
    payload: SubscriptionCreateRequest,
    *,
    current_user=Depends(_get_current_user),
) -> Subscription:
    engines = get_billing_engines()
    try:
        return engines.subscriptions.create(
            str(current_user.id),
            payload.plan_id,
            auto_renew=payload.auto_renew,
            payment_order_id=payload.payment_order_id,
        )
    except BillingError as exc:
        raise exc.to_http_exception() from exc


@router.get("/subscriptions", response_model=SubscriptionListResponse)
def list_subscriptions(*, current_user=Depends(_get_current_user)) -> SubscriptionListResponse:
    engines = get_billing_engines()
    return SubscriptionListResponse(subscriptions=engines.subscriptions.list_for_user(str(current_user.id)))


@router.get("/subscriptions/active", response_model=Optional[Subscription])
def get_active_subscription(*, current_user=Depends(_get_current_user)) -> Optional[Subscription]:
    return get_billing_engines().subscriptions.get_active_for_user(str(current_user.id))


@router.get("/subscriptions/{subscription_id}", response_model=Subscription)
def get_subscription(subscription_id: str, *, current_user=Depends(_get_current_user)) -> Subscription:
    try:
        return _owned_subscription(subscription_id, current_user)
    except BillingError as exc:
        raise exc.to_http_exception() from exc


@router.post("/subscriptions/{subscription_id}/cancel", response_model=Subscription)
def cancel_subscription(
    subscription_id: str,
    payload: Optional[SubscriptionCancelRequest] = None,
    *,
    current_user=Depends(_get_current_user),
) -> Subscription:
    engines = get_billing_engines()
    try:
        _owned_subscription(subscription_id, current_user)
        return engines.subscriptions.cancel(subscription_id, payload.reason if payload else None)
    except BillingError as exc:
        raise exc.to_http_exception() from exc


@router.post("/subscriptions/{subscription_id}/change-plan", response_model=Subscription)
def change_plan(
    subscription_id: str,
    payload: PlanChangeRequest,
    *,
    current_user=Depends(_get_current_user),
) -> Subscription:
    engines = get_billing_engines()
    try:
        _owned_subscription(subscription_id, current_user)
        return engines.subscriptions.change_plan(subscription_id, payload.new_plan_id)
    except BillingError as exc:
        raise exc.to_http_exception() from exc


@router.post("/subscriptions/{subscription_id}/renew", response_model=Subscription)
def renew_subscription(subscription_id: str, *, current_user=Depends(_get_current_user)) -> Subscription:
    engines = get_billing_engines()
    try:
        _owned_subscription(subscription_id, current_user)
        return engines.subscriptions.renew(subscription_id)
    except BillingError as exc:
        raise exc.to_http_exception() from exc


@router.patch("/subscriptions/{subscription_id}/auto-renew", response_model=Subscription)
def toggle_auto_renew(
    subscription_id: str,
    payload: AutoRenewRequest,
    *,
    current_user=Depends(_get_current_user),
) -> Subscription:
    engines = get_billing_engines()
    try:
        _owned_subscription(subscription_id, current_user)
        return engines.subscriptions.toggle_auto_renew(subscription_id, payload.auto_renew)
    except BillingError as exc:
        raise exc.to_http_exception() from exc


@router.get("/invoices", response_model=InvoiceListResponse)
def list_invoices(
    invoice_status: Optional[InvoiceStatus] = Query(None, alias="status"),
    *,
    current_user=Depends(_get_current_user),
) -> InvoiceListResponse:
    engines = get_billing_engines()
    if invoice_status is not None:
        _require_admin(current_user)
        return InvoiceListResponse(invoices=engines.invoices.list_by_status(invoice_status))
    return InvoiceListResponse(invoices=engines.invoices.list_for_user(str(current_user.id)))


@router.post("/invoices/sweep-overdue", response_model=InvoiceListResponse)
def sweep_overdue_invoices(*, current_user=Depends(_get_current_user)) -> InvoiceListResponse:
    _require_admin(current_user)
    return InvoiceListResponse(invoices=get_billing_engines().invoices.sweep_overdue())


@router.get("/invoices/{invoice_id}", response_model=Invoice)
def get_invoice(invoice_id: str, *, current_user=Depends(_get_current_user)) -> Invoice:
    engines = get_billing_engines()
    try:
        if getattr(current_user, "is_admin", False):
            return engines.invoices.get(invoice_id)
        return engines.invoices.get_for_user(invoice_id, str(current_user.id))
    except BillingError as exc:
        raise exc.to_http_exception() from exc


@router.post("/invoices/{invoice_id}/mark-paid", response_model=Invoice)
def mark_invoice_paid(invoice_id: str, *, current_user=Depends(_get_current_user)) -> Invoice:
    _require_admin(current_user)
    try:
        return get_billing_engines().invoices.mark_paid(invoice_id)
    except BillingError as exc:
        raise exc.to_http_exception() from exc


@router.post("/invoices/{invoice_id}/cancel", response_model=Invoice)
def cancel_invoice(invoice_id: str, *, current_user=Depends(_get_current_user)) -> Invoice:
    _require_admin(current_user)
    try:
        return get_billing_engines().invoices.cancel(invoice_id)
    except BillingError as exc:
        raise exc.to_http_exception() from exc


@router.post("/payments", response_model=PaymentLog, status_code=status.HTTP_201_CREATED)
def process_payment(payload: PaymentRequest, *, current_user=Depends(_get_current_user)) -> PaymentLog:
    engines = get_billing_engines()
    try:
        return engines.payments.process_payment(
            str(current_user.id),
            payload.invoice_id,
            payload.amount,
            currency=payload.currency,
            method=payload.payment_method,
        )
    except BillingError as exc:
        raise exc.to_http_exception() from exc


@router.get("/payments", response_model=PaymentListResponse)
def list_payments(*, current_user=Depends(_get_current_user)) -> PaymentListResponse:
    engines = get_billing_engines()
    return PaymentListResponse(payments=engines.payments.list_for_user(str(current_user.id)))


@router.post("/payments/reconcile", response_model=InvoiceListResponse)
def reconcile_payments(*, current_user=Depends(_get_current_user)) -> InvoiceListResponse:
    _require_admin(current_user)
    return InvoiceListResponse(invoices=get_billing_engines().payments.reconcile())


@router.get("/payments/{payment_id}", response_model=PaymentLog)
def get_payment(payment_id: str, *, current_user=Depends(_get_current_user)) -> PaymentLog:
    engines = get_billing_engines()
    try:
        payment = engines.payments.get(payment_id)
        if payment.user_id != str(current_user.id) and not getattr(current_user, "is_admin", False):
            raise NotFoundError.for_entity("Payment", "id", payment_id)
        return payment
    except BillingError as exc:
        raise exc.to_http_exception() from exc


@router.post("/payments/{payment_id}/refund", response_model=PaymentLog)
def refund_payment(
    payment_id: str,
    payload: Optional[RefundRequest] = None,
    *,
    current_user=Depends(_get_current_user),
) -> PaymentLog:
    _require_admin(current_user)
    try:
        return get_billing_engines().payments.refund(payment_id, payload.reason if payload else None)
    except BillingError as exc:
        raise exc.to_http_exception() from exc


@router.post("/orders", response_model=OrderInitiation, status_code=status.HTTP_201_CREATED)
def initiate_order(payload: OrderInitiateRequest, *, current_user=Depends(_get_current_user)) -> OrderInitiation:
    try:
        return get_billing_engines().orders.initiate(str(current_user.id), payload.plan_id)
    except BillingError as exc:
        raise exc.to_http_exception() from exc


@router.post("/orders/verify", response_model=OrderVerification)
def verify_order(payload: OrderVerifyRequest, *, current_user=Depends(_get_current_user)) -> OrderVerification:
    try:
        return get_billing_engines().orders.verify(
            payload.order_id, payload.payment_id, payload.signature, user_id=_order_owner(current_user)
        )
    except BillingError as exc:
        raise exc.to_http_exception() from exc


@router.get("/orders/{order_id}", response_model=OrderVerification)
def get_order_status(order_id: str, *, current_user=Depends(_get_current_user)) -> OrderVerification:
    try:
        return get_billing_engines().orders.status(order_id, user_id=_order_owner(current_user))
    except BillingError as exc:
        raise exc.to_http_exception() from exc


__all__ = ["router"]
