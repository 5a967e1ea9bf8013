"""
Billing API schemas - request/response types for plan and subscription endpoints.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Any

from ninja import Schema


class PlanResponse(Schema):
    """Catalog plan offered to an organization."""

    slug: str
    name: str
    amount: Decimal
    currency: str
    interval: str
    interval_count: int
    trial_days: int
    feature_limits: dict[str, Any]
    overage_rates: dict[str, Any]


class SubscriptionResponse(Schema):
    """Subscription state and current period."""

    subscription_id: str
    plan: str
    state: str
    previous_state: str
    billing_amount: Decimal
    billing_currency: str
    billing_interval: str
    current_period_start: datetime
    current_period_end: datetime
    current_period_amount: Decimal
    current_period_paid: bool
    trial_end: datetime | None
    next_renewal_date: datetime | None
    auto_renew: bool
    failed_attempts: int
    requires_payment_update: bool
    pending_plan: str | None
    cancellation_effective_at: datetime | None
    churn_risk_score: int
    version: int

    @staticmethod
    def resolve_plan(obj) -> str:
        return obj.plan.slug

    @staticmethod
    def resolve_pending_plan(obj) -> str | None:
        return obj.pending_plan.slug if obj.pending_plan_id else None


class SubscriptionListResponse(Schema):
    items: list[SubscriptionResponse]


class CreateSubscriptionRequest(Schema):
    plan: str  # Plan slug
    payment_method_id: str = ""
    trial_days: int | None = None  # None uses the plan's trial_days


class VersionedRequest(Schema):
    expected_version: int | None = None


class CancelSubscriptionRequest(VersionedRequest):
    reason: str = ""
    feedback: str = ""
    immediate: bool = False


class PauseSubscriptionRequest(VersionedRequest):
    resume_date: datetime | None = None
    reason: str = ""


class ChangePlanRequest(VersionedRequest):
    plan: str
    immediate: bool = True


class PlanChangeResponse(Schema):
    from_plan: str
    to_plan: str
    old_amount: Decimal
    new_amount: Decimal
    proration_amount: Decimal
    immediate: bool
    status: str
    effective_at: datetime

    @staticmethod
    def resolve_from_plan(obj) -> str:
        return obj.from_plan.slug

    @staticmethod
    def resolve_to_plan(obj) -> str:
        return obj.to_plan.slug


class RecordPaymentRequest(VersionedRequest):
    amount: Decimal
    payment_ref: str = ""


class FailedPaymentRequest(VersionedRequest):
    reason: str = ""


class AddonRequest(VersionedRequest):
    addon_id: str
    unit_price: Decimal
    quantity: int = 1
    name: str = ""


class AddonResponse(Schema):
    addon_id: str
    name: str
    unit_price: Decimal
    quantity: int
    added_at: datetime


class FeatureUsageRequest(Schema):
    metric: str
    value: float


class UsageLimitsResponse(Schema):
    limits: dict[str, Any]
    overages: dict[str, Any]
    has_overages: bool


class StateChangeResponse(Schema):
    state: str
    previous_state: str
    changed_at: datetime
    reason: str


class RevenueMetricsQuery(Schema):
    date_from: date | None = None
    date_to: date | None = None
