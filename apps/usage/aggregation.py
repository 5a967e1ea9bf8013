"""
Usage rollups.

aggregate() folds raw records into a parent record; aggregate_usage() is the
periodic sweep that buckets unbilled raw records by hour, day, week or month.
Children are marked billed and linked to their parent, so a second sweep
finds nothing new to aggregate.
"""

from collections.abc import Sequence
from datetime import datetime, timedelta
from decimal import Decimal
from itertools import groupby

from django.db import transaction
from django.db.models import F
from django.utils import timezone

from apps.billing.calculations import percentile
from apps.core.exceptions import DomainRuleViolation, ValidationError
from apps.core.logging import get_logger
from apps.core.money import quantity
from apps.organizations.models import Organization
from apps.usage.models import UsageRecord
from apps.usage.services import calculate_cost

logger = get_logger(__name__)


def bucket_start(moment: datetime, granularity: str) -> datetime:
    """Start of the hour/day/ISO week/month containing moment."""
    hour = moment.replace(minute=0, second=0, microsecond=0)
    if granularity == UsageRecord.Granularity.HOUR:
        return hour
    day = hour.replace(hour=0)
    if granularity == UsageRecord.Granularity.DAY:
        return day
    if granularity == UsageRecord.Granularity.WEEK:
        return day - timedelta(days=day.weekday())
    if granularity == UsageRecord.Granularity.MONTH:
        return day.replace(day=1)
    raise ValidationError(f"Unknown granularity: {granularity}", code="INVALID_GRANULARITY")


def compute_stats(quantities: Sequence[Decimal]) -> dict[str, Decimal | int]:
    """min, max, sum, count, avg, p95 and p99 over the quantities."""
    ordered = sorted(quantities)
    total = sum(ordered, Decimal("0"))
    return {
        "min": ordered[0],
        "max": ordered[-1],
        "sum": quantity(total),
        "count": len(ordered),
        "avg": quantity(total / len(ordered)),
        "p95": percentile(ordered, 0.95),
        "p99": percentile(ordered, 0.99),
    }


def _aggregated_quantity(aggregation_type: str, stats: dict, children: Sequence[UsageRecord]) -> Decimal:
    match aggregation_type:
        case UsageRecord.AggregationType.MAX:
            return stats["max"]
        case UsageRecord.AggregationType.AVG:
            return stats["avg"]
        case UsageRecord.AggregationType.LAST:
            return children[-1].quantity
        case _:
            return stats["sum"]


def aggregate(
    parent: UsageRecord,
    children: Sequence[UsageRecord],
    now: datetime | None = None,
) -> UsageRecord:
    """
    Roll children into parent.

    The parent's quantity follows its aggregation_type; every child is
    marked billed and linked to the parent.

    Raises:
        DomainRuleViolation: NO_RECORDS for an empty input,
            ALREADY_AGGREGATED when a child already has a parent.
    """
    if not children:
        raise DomainRuleViolation("No records to aggregate", code="NO_RECORDS")

    now = now or timezone.now()
    child_ids = [child.pk for child in children]

    with transaction.atomic():
        locked = list(
            UsageRecord.objects.select_for_update().filter(pk__in=child_ids).order_by("period_end", "id")
        )
        already = [child.record_id for child in locked if child.parent_id is not None or child.is_aggregate]
        if already:
            raise DomainRuleViolation(
                "Usage records were already aggregated",
                code="ALREADY_AGGREGATED",
                details={"record_ids": already},
            )

        stats = compute_stats([child.quantity for child in locked])
        parent.quantity = _aggregated_quantity(parent.aggregation_type, stats, locked)
        parent.delta = parent.quantity - parent.previous_quantity
        parent.is_aggregate = True
        parent.aggregated_at = now
        parent.stats = {key: value if isinstance(value, int) else str(value) for key, value in stats.items()}
        parent.validation_status = UsageRecord.ValidationStatus.VALID
        calculate_cost(parent)
        parent.save()

        UsageRecord.objects.filter(pk__in=child_ids).update(
            parent=parent,
            billing_status=UsageRecord.BillingStatus.BILLED,
            version=F("version") + 1,
            updated_at=now,
        )

    logger.info(
        "usage_aggregated",
        parent_record_id=parent.record_id,
        child_count=len(locked),
        quantity=parent.quantity,
    )
    return parent


def _parent_for(organization: Organization, group: Sequence[UsageRecord], granularity: str) -> UsageRecord:
    first = group[0]
    return UsageRecord(
        organization=organization,
        tenant_id=organization.tenant_id,
        subscription=first.subscription,
        metric_name=first.metric_name,
        metric_unit=first.metric_unit,
        metric_category=first.metric_category,
        quantity=Decimal("0"),
        aggregation_type=first.aggregation_type,
        period_start=min(record.period_start for record in group),
        period_end=max(record.period_end for record in group),
        period_granularity=granularity,
        rollup_level=granularity,
        source=UsageRecord.Source.CALCULATED,
        rate_amount=first.rate_amount,
        rate_per=first.rate_per,
        rate_minimum=first.rate_minimum,
        rate_currency=first.rate_currency,
        discount_percentage=first.discount_percentage,
        discount_amount=first.discount_amount,
        included_allowance=first.included_allowance,
    )


def aggregate_usage(
    organization: Organization,
    metric: str,
    from_date: datetime,
    to_date: datetime,
    granularity: str = UsageRecord.Granularity.DAY,
    now: datetime | None = None,
) -> list[UsageRecord]:
    """
    Create one parent per time bucket over unbilled, valid raw records.

    Returns the parents created. Re-running over the same window is a no-op.
    """
    if granularity not in UsageRecord.Granularity.values:
        raise ValidationError(f"Unknown granularity: {granularity}", code="INVALID_GRANULARITY")
    if from_date > to_date:
        raise ValidationError("from_date must not be after to_date", code="INVALID_PERIOD")

    records = list(
        UsageRecord.objects.filter(
            organization=organization,
            metric_name=metric,
            period_start__gte=from_date,
            period_start__lte=to_date,
            is_aggregate=False,
            parent__isnull=True,
            billing_status=UsageRecord.BillingStatus.UNBILLED,
            validation_status=UsageRecord.ValidationStatus.VALID,
        )
        .select_related("subscription")
        .order_by("period_start", "id")
    )

    parents = []
    for _, bucket in groupby(records, key=lambda record: bucket_start(record.period_start, granularity)):
        group = list(bucket)
        parents.append(aggregate(_parent_for(organization, group, granularity), group, now=now))

    logger.info(
        "usage_aggregation_completed",
        organization_id=organization.pk,
        metric=metric,
        granularity=granularity,
        group_count=len(parents),
        record_count=len(records),
    )
    return parents


def aggregation_targets(from_date: datetime, to_date: datetime) -> list[tuple[int, str]]:
    """(organization_id, metric) pairs with raw records awaiting aggregation."""
    return list(
        UsageRecord.objects.filter(
            period_start__gte=from_date,
            period_start__lte=to_date,
            is_aggregate=False,
            parent__isnull=True,
            billing_status=UsageRecord.BillingStatus.UNBILLED,
            validation_status=UsageRecord.ValidationStatus.VALID,
        )
        .values_list("organization_id", "metric_name")
        .distinct()
        .order_by("organization_id", "metric_name")
    )
