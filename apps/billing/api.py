"""
Billing API endpoints.

Plan catalog, subscription lifecycle and revenue metrics. Billing errors
are mapped to HTTP responses by the handlers registered in config/api.py.
"""

from django.http import HttpRequest
from ninja import Query, Router

from apps.billing import metrics
from apps.billing import services as billing_services
from apps.billing.schemas import (
    AddonRequest,
    AddonResponse,
    CancelSubscriptionRequest,
    ChangePlanRequest,
    CreateSubscriptionRequest,
    FailedPaymentRequest,
    FeatureUsageRequest,
    PauseSubscriptionRequest,
    PlanChangeResponse,
    PlanResponse,
    RecordPaymentRequest,
    RevenueMetricsQuery,
    StateChangeResponse,
    SubscriptionListResponse,
    SubscriptionResponse,
    UsageLimitsResponse,
    VersionedRequest,
)
from apps.core.schemas import ErrorResponse
from apps.core.security import BearerAuth, get_actor_id
from apps.organizations.services import get_organization

router = Router(tags=["billing"], auth=BearerAuth())

ERRORS = {400: ErrorResponse, 404: ErrorResponse, 409: ErrorResponse, 503: ErrorResponse}

SUBSCRIPTION_PATH = "/organizations/{organization_id}/subscriptions/{subscription_id}"


def _subscription(organization_id: int, subscription_id: str):
    return billing_services.get_subscription(get_organization(organization_id), subscription_id)


@router.get(
    "/organizations/{organization_id}/plans",
    response={200: list[PlanResponse], **ERRORS},
    operation_id="listPlans",
    summary="List plans available to an organization",
)
def list_plans(request: HttpRequest, organization_id: int):
    return billing_services.list_available_plans(get_organization(organization_id))


@router.get(
    "/organizations/{organization_id}/subscriptions",
    response={200: SubscriptionListResponse, **ERRORS},
    operation_id="listSubscriptions",
    summary="List subscriptions",
)
def list_subscriptions(request: HttpRequest, organization_id: int, state: str | None = None):
    organization = get_organization(organization_id)
    return {"items": billing_services.list_subscriptions(organization, state=state)}


@router.post(
    "/organizations/{organization_id}/subscriptions",
    response={201: SubscriptionResponse, **ERRORS},
    operation_id="createSubscription",
    summary="Subscribe to a plan",
)
def create_subscription(request: HttpRequest, organization_id: int, payload: CreateSubscriptionRequest):
    """Starts trialing when the plan (or request) grants trial days, otherwise pending."""
    organization = get_organization(organization_id)
    subscription = billing_services.create_subscription(
        organization,
        billing_services.get_plan(payload.plan),
        payment_method_id=payload.payment_method_id,
        trial_days=payload.trial_days,
        actor_id=get_actor_id(request),
    )
    return 201, subscription


@router.get(
    SUBSCRIPTION_PATH,
    response={200: SubscriptionResponse, **ERRORS},
    operation_id="getSubscription",
    summary="Get a subscription",
)
def get_subscription(request: HttpRequest, organization_id: int, subscription_id: str):
    return _subscription(organization_id, subscription_id)


@router.post(
    f"{SUBSCRIPTION_PATH}/activate",
    response={200: SubscriptionResponse, **ERRORS},
    operation_id="activateSubscription",
    summary="Activate a pending or trialing subscription",
)
def activate_subscription(
    request: HttpRequest, organization_id: int, subscription_id: str, payload: VersionedRequest
):
    return billing_services.activate(
        _subscription(organization_id, subscription_id),
        actor_id=get_actor_id(request),
        expected_version=payload.expected_version,
    )


@router.post(
    f"{SUBSCRIPTION_PATH}/cancel",
    response={200: SubscriptionResponse, **ERRORS},
    operation_id="cancelSubscription",
    summary="Cancel a subscription",
)
def cancel_subscription(
    request: HttpRequest, organization_id: int, subscription_id: str, payload: CancelSubscriptionRequest
):
    return billing_services.cancel(
        _subscription(organization_id, subscription_id),
        reason=payload.reason,
        feedback=payload.feedback,
        immediate=payload.immediate,
        actor_id=get_actor_id(request),
        expected_version=payload.expected_version,
    )


@router.post(
    f"{SUBSCRIPTION_PATH}/pause",
    response={200: SubscriptionResponse, **ERRORS},
    operation_id="pauseSubscription",
    summary="Pause an active subscription",
)
def pause_subscription(
    request: HttpRequest, organization_id: int, subscription_id: str, payload: PauseSubscriptionRequest
):
    return billing_services.pause(
        _subscription(organization_id, subscription_id),
        resume_date=payload.resume_date,
        reason=payload.reason,
        actor_id=get_actor_id(request),
        expected_version=payload.expected_version,
    )


@router.post(
    f"{SUBSCRIPTION_PATH}/resume",
    response={200: SubscriptionResponse, **ERRORS},
    operation_id="resumeSubscription",
    summary="Resume a paused subscription",
)
def resume_subscription(
    request: HttpRequest, organization_id: int, subscription_id: str, payload: VersionedRequest
):
    return billing_services.resume(
        _subscription(organization_id, subscription_id),
        actor_id=get_actor_id(request),
        expected_version=payload.expected_version,
    )


@router.post(
    f"{SUBSCRIPTION_PATH}/change-plan",
    response={200: PlanChangeResponse, **ERRORS},
    operation_id="changeSubscriptionPlan",
    summary="Upgrade or downgrade the plan",
)
def change_plan(request: HttpRequest, organization_id: int, subscription_id: str, payload: ChangePlanRequest):
    """Returns the plan change with the proration for the rest of the period."""
    return billing_services.upgrade_plan(
        _subscription(organization_id, subscription_id),
        billing_services.get_plan(payload.plan),
        immediate=payload.immediate,
        actor_id=get_actor_id(request),
        expected_version=payload.expected_version,
    )


@router.post(
    f"{SUBSCRIPTION_PATH}/payments",
    response={200: SubscriptionResponse, **ERRORS},
    operation_id="recordSubscriptionPayment",
    summary="Record a successful payment",
)
def record_payment(request: HttpRequest, organization_id: int, subscription_id: str, payload: RecordPaymentRequest):
    return billing_services.record_payment(
        _subscription(organization_id, subscription_id),
        payload.amount,
        payment_ref=payload.payment_ref,
        expected_version=payload.expected_version,
    )


@router.post(
    f"{SUBSCRIPTION_PATH}/payment-failures",
    response={200: SubscriptionResponse, **ERRORS},
    operation_id="recordSubscriptionPaymentFailure",
    summary="Record a failed payment",
)
def record_failed_payment(
    request: HttpRequest, organization_id: int, subscription_id: str, payload: FailedPaymentRequest
):
    return billing_services.record_failed_payment(
        _subscription(organization_id, subscription_id),
        reason=payload.reason,
        expected_version=payload.expected_version,
    )


@router.post(
    f"{SUBSCRIPTION_PATH}/feature-usage",
    response={200: UsageLimitsResponse, **ERRORS},
    operation_id="updateFeatureUsage",
    summary="Report current usage of a limited feature",
)
def update_feature_usage(
    request: HttpRequest, organization_id: int, subscription_id: str, payload: FeatureUsageRequest
):
    value = int(payload.value) if payload.value.is_integer() else payload.value
    subscription = billing_services.update_feature_usage(
        _subscription(organization_id, subscription_id), payload.metric, value
    )
    return billing_services.check_usage_limits(subscription)


@router.get(
    f"{SUBSCRIPTION_PATH}/usage-limits",
    response={200: UsageLimitsResponse, **ERRORS},
    operation_id="getUsageLimits",
    summary="Feature usage against plan limits",
)
def get_usage_limits(request: HttpRequest, organization_id: int, subscription_id: str):
    return billing_services.check_usage_limits(_subscription(organization_id, subscription_id))


@router.get(
    f"{SUBSCRIPTION_PATH}/addons",
    response={200: list[AddonResponse], **ERRORS},
    operation_id="listSubscriptionAddons",
    summary="List add-ons attached to a subscription",
)
def list_addons(request: HttpRequest, organization_id: int, subscription_id: str):
    return list(_subscription(organization_id, subscription_id).addons.all())


@router.post(
    f"{SUBSCRIPTION_PATH}/addons",
    response={200: AddonResponse, **ERRORS},
    operation_id="addSubscriptionAddon",
    summary="Attach an add-on or raise its quantity",
)
def add_addon(request: HttpRequest, organization_id: int, subscription_id: str, payload: AddonRequest):
    return billing_services.add_addon(
        _subscription(organization_id, subscription_id),
        payload.addon_id,
        payload.unit_price,
        quantity=payload.quantity,
        name=payload.name,
        actor_id=get_actor_id(request),
        expected_version=payload.expected_version,
    )


@router.delete(
    f"{SUBSCRIPTION_PATH}/addons/{{addon_id}}",
    response={200: SubscriptionResponse, **ERRORS},
    operation_id="removeSubscriptionAddon",
    summary="Detach an add-on",
)
def remove_addon(
    request: HttpRequest,
    organization_id: int,
    subscription_id: str,
    addon_id: str,
    expected_version: int | None = None,
):
    return billing_services.remove_addon(
        _subscription(organization_id, subscription_id),
        addon_id,
        actor_id=get_actor_id(request),
        expected_version=expected_version,
    )


@router.get(
    f"{SUBSCRIPTION_PATH}/history",
    response={200: list[StateChangeResponse], **ERRORS},
    operation_id="getSubscriptionHistory",
    summary="State transition history",
)
def get_history(request: HttpRequest, organization_id: int, subscription_id: str):
    return list(_subscription(organization_id, subscription_id).state_changes.all())


@router.get(
    "/metrics",
    response={200: dict, **ERRORS},
    operation_id="getRevenueMetrics",
    summary="Platform-wide revenue metrics",
)
def get_platform_metrics(request: HttpRequest, filters: Query[RevenueMetricsQuery]):
    return metrics.get_revenue_metrics(date_range=_date_range(filters))


@router.get(
    "/organizations/{organization_id}/metrics",
    response={200: dict, **ERRORS},
    operation_id="getTenantRevenueMetrics",
    summary="Revenue metrics for the organization's tenant",
)
def get_tenant_metrics(request: HttpRequest, organization_id: int, filters: Query[RevenueMetricsQuery]):
    organization = get_organization(organization_id)
    return metrics.get_revenue_metrics(tenant_id=organization.tenant_id, date_range=_date_range(filters))


def _date_range(filters: RevenueMetricsQuery):
    if filters.date_from and filters.date_to:
        return filters.date_from, filters.date_to
    return None
