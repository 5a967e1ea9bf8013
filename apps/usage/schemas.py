"""
Usage API schemas.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any

from ninja import Schema


class ResourceRef(Schema):
    type: str = ""
    id: str = ""
    name: str = ""


class RecordUsageRequest(Schema):
    metric: str
    quantity: Decimal
    previous_quantity: Decimal = Decimal("0")
    resource: ResourceRef | None = None
    period_start: datetime | None = None
    period_end: datetime | None = None
    unit: str | None = None
    category: str | None = None
    source: str = "api"


class UsageRecordResponse(Schema):
    record_id: str
    subscription_id: str | None
    metric_name: str
    metric_unit: str
    quantity: Decimal
    previous_quantity: Decimal
    delta: Decimal
    period_start: datetime
    period_end: datetime
    resource_id: str
    billing_status: str
    validation_status: str
    cost_calculated: Decimal
    cost_final: Decimal
    is_included: bool
    anomaly_detected: bool
    anomaly_score: Decimal | None
    soft_limit_exceeded: bool
    hard_limit_exceeded: bool
    is_aggregate: bool
    version: int

    @staticmethod
    def resolve_subscription_id(obj) -> str | None:
        return obj.subscription.subscription_id if obj.subscription_id else None


class ReasonRequest(Schema):
    reason: str


class AdjustCostRequest(Schema):
    cost: Decimal
    reason: str


class ReviewRequest(Schema):
    approve: bool
    note: str = ""


class UsageSummaryQuery(Schema):
    metric: str | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    resource_id: str | None = None


class UsageSummaryItem(Schema):
    metric: str
    unit: str
    total_quantity: Decimal
    total_cost: Decimal
    record_count: int
    first_usage: datetime
    last_usage: datetime
    avg_quantity: Decimal
    max_quantity: Decimal


class UnbilledUsageResponse(Schema):
    records: list[UsageRecordResponse]
    summary: dict[str, Any]


class BillingReportQuery(Schema):
    month: int
    year: int


class AggregateRequest(Schema):
    metric: str
    from_date: datetime
    to_date: datetime
    granularity: str = "day"


class DetectAnomaliesRequest(Schema):
    metric: str
    lookback_days: int | None = None
    threshold: float | None = None
