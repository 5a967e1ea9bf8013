"""
Usage API endpoints - ingestion, billing-status changes and reports.
"""

from datetime import datetime

from django.http import HttpRequest
from ninja import Query, Router

from apps.core.schemas import ErrorResponse
from apps.core.security import BearerAuth, get_actor_id
from apps.organizations.services import get_organization
from apps.usage import aggregation, anomalies, reports
from apps.usage import services as usage_services
from apps.usage.schemas import (
    AdjustCostRequest,
    AggregateRequest,
    BillingReportQuery,
    DetectAnomaliesRequest,
    ReasonRequest,
    RecordUsageRequest,
    ReviewRequest,
    UnbilledUsageResponse,
    UsageRecordResponse,
    UsageSummaryItem,
    UsageSummaryQuery,
)

router = Router(tags=["usage"], auth=BearerAuth())

ERRORS = {400: ErrorResponse, 404: ErrorResponse, 409: ErrorResponse, 503: ErrorResponse}

USAGE_PATH = "/organizations/{organization_id}/usage"
RECORD_PATH = f"{USAGE_PATH}/records/{{record_id}}"


def _record(organization_id: int, record_id: str):
    return usage_services.get_usage_record(get_organization(organization_id), record_id)


@router.post(
    USAGE_PATH,
    response={201: UsageRecordResponse, **ERRORS},
    operation_id="recordUsage",
    summary="Record a metered measurement",
)
def record_usage(request: HttpRequest, organization_id: int, payload: RecordUsageRequest):
    """
    Priced and validated against the active subscription's plan.

    Records flagged as anomalies or duplicates are stored but not billable
    until reviewed.
    """
    period = None
    if payload.period_start or payload.period_end:
        period = (payload.period_start or payload.period_end, payload.period_end or payload.period_start)

    record = usage_services.record_usage(
        get_organization(organization_id),
        payload.metric,
        payload.quantity,
        resource=payload.resource.model_dump() if payload.resource else None,
        period=period,
        previous_quantity=payload.previous_quantity,
        unit=payload.unit,
        category=payload.category,
        source=payload.source,
    )
    return 201, record


@router.get(
    f"{USAGE_PATH}/summary",
    response={200: list[UsageSummaryItem], **ERRORS},
    operation_id="getUsageSummary",
    summary="Usage totals per metric",
)
def get_usage_summary(request: HttpRequest, organization_id: int, filters: Query[UsageSummaryQuery]):
    date_range = (filters.date_from, filters.date_to) if filters.date_from and filters.date_to else None
    return reports.get_usage_summary(
        get_organization(organization_id),
        metric=filters.metric,
        date_range=date_range,
        resource_id=filters.resource_id,
    )


@router.get(
    f"{USAGE_PATH}/unbilled",
    response={200: UnbilledUsageResponse, **ERRORS},
    operation_id="getUnbilledUsage",
    summary="Valid usage not yet billed",
)
def get_unbilled_usage(request: HttpRequest, organization_id: int, end_date: datetime | None = None):
    return usage_services.get_unbilled_usage(get_organization(organization_id), end_date=end_date)


@router.get(
    f"{USAGE_PATH}/report",
    response={200: dict, **ERRORS},
    operation_id="getBillingReport",
    summary="Monthly usage billing report",
)
def get_billing_report(request: HttpRequest, organization_id: int, filters: Query[BillingReportQuery]):
    return reports.generate_billing_report(get_organization(organization_id), filters.month, filters.year)


@router.post(
    f"{USAGE_PATH}/aggregate",
    response={200: list[UsageRecordResponse], **ERRORS},
    operation_id="aggregateUsage",
    summary="Roll raw usage up by time bucket",
)
def aggregate_usage(request: HttpRequest, organization_id: int, payload: AggregateRequest):
    return aggregation.aggregate_usage(
        get_organization(organization_id),
        payload.metric,
        payload.from_date,
        payload.to_date,
        granularity=payload.granularity,
    )


@router.post(
    f"{USAGE_PATH}/anomalies",
    response={200: list[UsageRecordResponse], **ERRORS},
    operation_id="detectUsageAnomalies",
    summary="Flag statistical outliers for review",
)
def detect_anomalies(request: HttpRequest, organization_id: int, payload: DetectAnomaliesRequest):
    return anomalies.detect_anomalies(
        get_organization(organization_id),
        payload.metric,
        lookback_days=payload.lookback_days,
        threshold=payload.threshold,
    )


@router.get(
    RECORD_PATH,
    response={200: UsageRecordResponse, **ERRORS},
    operation_id="getUsageRecord",
    summary="Get a usage record",
)
def get_usage_record(request: HttpRequest, organization_id: int, record_id: str):
    return _record(organization_id, record_id)


@router.post(
    f"{RECORD_PATH}/dispute",
    response={200: UsageRecordResponse, **ERRORS},
    operation_id="disputeUsage",
    summary="Dispute billed usage",
)
def dispute_usage(request: HttpRequest, organization_id: int, record_id: str, payload: ReasonRequest):
    return usage_services.dispute(_record(organization_id, record_id), payload.reason, actor_id=get_actor_id(request))


@router.post(
    f"{RECORD_PATH}/waive",
    response={200: UsageRecordResponse, **ERRORS},
    operation_id="waiveUsage",
    summary="Waive usage charges",
)
def waive_usage(request: HttpRequest, organization_id: int, record_id: str, payload: ReasonRequest):
    return usage_services.waive(_record(organization_id, record_id), payload.reason, actor_id=get_actor_id(request))


@router.post(
    f"{RECORD_PATH}/adjust",
    response={200: UsageRecordResponse, **ERRORS},
    operation_id="adjustUsageCost",
    summary="Override the calculated cost",
)
def adjust_cost(request: HttpRequest, organization_id: int, record_id: str, payload: AdjustCostRequest):
    return usage_services.adjust_cost(
        _record(organization_id, record_id),
        payload.cost,
        payload.reason,
        actor_id=get_actor_id(request),
    )


@router.post(
    f"{RECORD_PATH}/review",
    response={200: UsageRecordResponse, **ERRORS},
    operation_id="reviewUsage",
    summary="Approve or reject a flagged record",
)
def review_usage(request: HttpRequest, organization_id: int, record_id: str, payload: ReviewRequest):
    return usage_services.review(
        _record(organization_id, record_id),
        payload.approve,
        reviewer_id=get_actor_id(request) or "api",
        note=payload.note,
    )
