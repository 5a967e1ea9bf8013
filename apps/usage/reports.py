"""
Usage summaries and monthly billing reports.

Both read raw records only; aggregate parents would double count the
children they were built from.
"""

import calendar
from collections import defaultdict
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from apps.core.exceptions import ValidationError
from apps.core.money import money, quantity
from apps.organizations.models import Organization
from apps.usage.models import UsageRecord


def get_usage_summary(
    organization: Organization,
    metric: str | None = None,
    date_range: tuple[datetime, datetime] | None = None,
    resource_id: str | None = None,
) -> list[dict[str, Any]]:
    """Totals per (metric, unit): quantity, cost, count, first/last, avg, max."""
    qs = UsageRecord.objects.filter(organization=organization, is_aggregate=False)
    if metric:
        qs = qs.filter(metric_name=metric)
    if date_range:
        qs = qs.filter(period_start__gte=date_range[0], period_start__lte=date_range[1])
    if resource_id:
        qs = qs.filter(resource_id=resource_id)

    groups: dict[tuple[str, str], list[UsageRecord]] = defaultdict(list)
    for record in qs.order_by("period_start", "id"):
        groups[(record.metric_name, record.metric_unit)].append(record)

    summary = []
    for (metric_name, unit), records in sorted(groups.items()):
        total_quantity = sum((r.quantity for r in records), Decimal("0"))
        summary.append(
            {
                "metric": metric_name,
                "unit": unit,
                "total_quantity": quantity(total_quantity),
                "total_cost": money(sum((r.cost_final for r in records), Decimal("0"))),
                "record_count": len(records),
                "first_usage": min(r.period_start for r in records),
                "last_usage": max(r.period_end for r in records),
                "avg_quantity": money(total_quantity / len(records)),
                "max_quantity": max(r.quantity for r in records),
            }
        )
    return summary


def generate_billing_report(organization: Organization, month: int, year: int) -> dict[str, Any]:
    """
    Monthly report over valid, unbilled or billed raw records.

    Sections: summary, breakdown by metric and by resource, daily trend.
    """
    if not 1 <= month <= 12:
        raise ValidationError(f"Invalid month: {month}", code="INVALID_PERIOD")

    last_day = calendar.monthrange(year, month)[1]
    start_date = datetime(year, month, 1, tzinfo=UTC)
    end_date = datetime(year, month, last_day, 23, 59, 59, 999999, tzinfo=UTC)

    records = list(
        UsageRecord.objects.filter(
            organization=organization,
            is_aggregate=False,
            period_start__gte=start_date,
            period_start__lte=end_date,
            billing_status__in=[UsageRecord.BillingStatus.UNBILLED, UsageRecord.BillingStatus.BILLED],
            validation_status=UsageRecord.ValidationStatus.VALID,
        ).order_by("period_start", "id")
    )

    by_metric: dict[str, dict[str, Any]] = {}
    by_resource: dict[tuple[str, str], dict[str, Any]] = {}
    daily: dict[int, dict[str, Any]] = {}

    for record in records:
        metric_row = by_metric.setdefault(
            record.metric_name,
            {
                "metric": record.metric_name,
                "unit": record.metric_unit,
                "quantity": Decimal("0"),
                "cost": Decimal("0"),
                "records": 0,
            },
        )
        metric_row["quantity"] += record.quantity
        metric_row["cost"] += record.cost_final
        metric_row["records"] += 1

        resource_row = by_resource.setdefault(
            (record.resource_type, record.resource_name),
            {"type": record.resource_type, "name": record.resource_name, "cost": Decimal("0"), "records": 0},
        )
        resource_row["cost"] += record.cost_final
        resource_row["records"] += 1

        day_row = daily.setdefault(
            record.period_start.day,
            {"day": record.period_start.day, "cost": Decimal("0"), "quantity": Decimal("0")},
        )
        day_row["cost"] += record.cost_final
        day_row["quantity"] += record.quantity

    for row in by_metric.values():
        row["quantity"] = quantity(row["quantity"])
        row["cost"] = money(row["cost"])
    for row in by_resource.values():
        row["cost"] = money(row["cost"])
    for row in daily.values():
        row["cost"] = money(row["cost"])
        row["quantity"] = quantity(row["quantity"])

    return {
        "period": {"month": month, "year": year, "start_date": start_date, "end_date": end_date},
        "summary": {
            "total_cost": money(sum((r.cost_final for r in records), Decimal("0"))),
            "total_records": len(records),
            "metrics": sorted(by_metric),
        },
        "breakdown": {
            "by_metric": list(by_metric.values()),
            "by_resource": list(by_resource.values()),
        },
        "trends": {"daily": [daily[day] for day in sorted(daily)]},
    }
