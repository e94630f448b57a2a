"""API schemas for billing endpoints."""
from __future__ import annotations

from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..billing import (
    BillingCycle,
    Invoice,
    PaymentLog,
    Plan,
    Subscription,
)


class SubscriptionCreateRequest(BaseModel):
    plan_id: str = Field(alias="planId")
    auto_renew: Optional[bool] = Field(alias="autoRenew", default=True)
    payment_order_id: Optional[str] = Field(alias="paymentOrderId", default=None)

    model_config = ConfigDict(populate_by_name=True)


class SubscriptionCancelRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)

    model_config = ConfigDict(populate_by_name=True)


class PlanChangeRequest(BaseModel):
    new_plan_id: str = Field(alias="newPlanId")

    model_config = ConfigDict(populate_by_name=True)


class AutoRenewRequest(BaseModel):
    auto_renew: bool = Field(alias="autoRenew")

    model_config = ConfigDict(populate_by_name=True)


class PaymentRequest(BaseModel):
    invoice_id: str = Field(alias="invoiceId")
    amount: Decimal = Field(gt=0)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    payment_method: Optional[str] = Field(alias="paymentMethod", default=None)

    model_config = ConfigDict(populate_by_name=True)


class RefundRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)

    model_config = ConfigDict(populate_by_name=True)


class OrderInitiateRequest(BaseModel):
    plan_id: str = Field(alias="planId")

    model_config = ConfigDict(populate_by_name=True)


class OrderVerifyRequest(BaseModel):
    order_id: str = Field(alias="orderId")
    payment_id: str = Field(alias="paymentId")
    signature: str

    model_config = ConfigDict(populate_by_name=True)


class PlanCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    description: Optional[str] = None
    price: Decimal = Field(ge=0)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    billing_cycle: BillingCycle = Field(alias="billingCycle", default=BillingCycle.MONTHLY)
    trial_days: int = Field(alias="trialDays", default=0, ge=0)
    features: List[str] = Field(default_factory=list)
    sort_order: int = Field(alias="sortOrder", default=0)

    model_config = ConfigDict(populate_by_name=True)

    def to_plan(self, default_currency: str) -> Plan:
        return Plan(
            name=self.name,
            description=self.description,
            price=self.price,
            currency=self.currency or default_currency,
            billing_cycle=self.billing_cycle,
            trial_days=self.trial_days,
            features=list(self.features),
            sort_order=self.sort_order,
        )


class SubscriptionListResponse(BaseModel):
    subscriptions: List[Subscription]


class InvoiceListResponse(BaseModel):
    invoices: List[Invoice]


class PaymentListResponse(BaseModel):
    payments: List[PaymentLog]


class PlanListResponse(BaseModel):
    plans: List[Plan]


__all__ = [
    "AutoRenewRequest",
    "InvoiceListResponse",
    "OrderInitiateRequest",
    "OrderVerifyRequest",
    "PaymentListResponse",
    "PaymentRequest",
    "PlanChangeRequest",
    "PlanCreateRequest",
    "PlanListResponse",
    "RefundRequest",
    "SubscriptionCancelRequest",
    "SubscriptionCreateRequest",
    "SubscriptionListResponse",
]
