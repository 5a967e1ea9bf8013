"""
Usage services - ingestion, pricing, validation and billing-status changes.

Pricing and validation rules come from the plan of the organization's
active (or trialing) subscription:

    plan.overage_rates[metric] -> rate, per, minimum, included allowance
    plan.usage_rules[metric]   -> min, max, max_delta, soft/hard limits
"""

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from django.db import transaction
from django.db.models import F
from django.utils import timezone

from apps.billing.models import Subscription
from apps.billing.policy import BillingPolicy, get_billing_policy
from apps.core.exceptions import DomainRuleViolation, NotFoundError, ValidationError
from apps.core.logging import get_logger
from apps.core.money import ZERO, money, to_decimal
from apps.core.money import quantity as to_quantity
from apps.events.services import dispatch_notification, record_audit
from apps.invoices.models import Invoice
from apps.organizations.models import Organization
from apps.usage.models import UsageNote, UsageRecord

logger = get_logger(__name__)

REVIEWABLE_STATUSES = frozenset({UsageRecord.ValidationStatus.ANOMALY, UsageRecord.ValidationStatus.INVALID})
WAIVABLE_STATUSES = frozenset(
    {
        UsageRecord.BillingStatus.UNBILLED,
        UsageRecord.BillingStatus.BILLED,
        UsageRecord.BillingStatus.DISPUTED,
    }
)


def _optional_decimal(value: Any) -> Decimal | None:
    return None if value is None else to_decimal(value)


def get_active_subscription(organization: Organization) -> Subscription | None:
    """Most recent active or trialing subscription, if any."""
    return (
        Subscription.objects.filter(
            organization=organization,
            state__in=[Subscription.State.ACTIVE, Subscription.State.TRIALING],
        )
        .select_related("plan")
        .order_by("-created_at")
        .first()
    )


def get_usage_record(organization: Organization, record_id: str) -> UsageRecord:
    try:
        return UsageRecord.objects.get(organization=organization, record_id=record_id)
    except UsageRecord.DoesNotExist as e:
        raise NotFoundError(f"Usage record {record_id} not found", code="USAGE_RECORD_NOT_FOUND") from e


# =============================================================================
# Pricing and validation
# =============================================================================


def calculate_cost(record: UsageRecord) -> Decimal:
    """
    Price the record in place and return the calculated cost.

    The included allowance is subtracted first; the minimum charge applies
    only when something is billable; discounts never take the cost below 0.
    """
    qty = to_decimal(record.quantity)
    billable = qty

    if record.included_allowance is not None:
        allowance = to_decimal(record.included_allowance)
        billable = max(Decimal("0"), qty - allowance)
        record.included_remaining = to_quantity(max(Decimal("0"), allowance - qty))
        record.is_included = billable == 0
    else:
        record.included_remaining = None
        record.is_included = False

    if not record.rate_amount:
        cost = Decimal("0")
    else:
        per = to_decimal(record.rate_per or 1)
        cost = billable / per * to_decimal(record.rate_amount)

        if record.rate_minimum and cost < record.rate_minimum and billable > 0:
            cost = to_decimal(record.rate_minimum)

        if record.discount_percentage:
            cost = max(Decimal("0"), cost * (1 - to_decimal(record.discount_percentage) / 100))
        elif record.discount_amount:
            cost = max(Decimal("0"), cost - to_decimal(record.discount_amount))

    record.cost_calculated = money(cost)
    record.cost_final = record.cost_adjusted if record.cost_adjusted is not None else record.cost_calculated
    return record.cost_calculated


def find_duplicate(record: UsageRecord) -> UsageRecord | None:
    """Another record for the same org, metric, period and resource."""
    qs = UsageRecord.objects.filter(
        organization_id=record.organization_id,
        metric_name=record.metric_name,
        period_start=record.period_start,
        period_end=record.period_end,
        resource_id=record.resource_id,
        is_aggregate=record.is_aggregate,
    )
    if record.pk:
        qs = qs.exclude(pk=record.pk)
    return qs.order_by("id").first()


def run_validation(
    record: UsageRecord,
    duplicate: UsageRecord | None = None,
    policy: BillingPolicy | None = None,
) -> str:
    """
    Run range, delta, duplicate and anomaly checks in place.

    An anomaly forces validation_status to 'anomaly' even when every other
    check passed. Returns the resulting status.
    """
    policy = policy or get_billing_policy()
    qty = to_decimal(record.quantity)
    is_valid = True

    if record.range_min is not None or record.range_max is not None:
        record.range_passed = (record.range_min is None or qty >= record.range_min) and (
            record.range_max is None or qty <= record.range_max
        )
        is_valid = is_valid and record.range_passed

    if record.max_delta is not None:
        record.actual_delta = abs(to_decimal(record.delta))
        record.delta_passed = record.actual_delta <= record.max_delta
        is_valid = is_valid and record.delta_passed

    record.duplicate_of = duplicate
    if duplicate is not None:
        is_valid = False

    record.anomaly_detected = False
    record.anomaly_score = None
    record.anomaly_reason = ""
    record.anomaly_baseline = None
    record.anomaly_deviation = None

    previous = to_decimal(record.previous_quantity or 0)
    if previous != 0:
        change_percent = abs(to_decimal(record.delta) / previous * 100)
        if change_percent > policy.anomaly_change_percent:
            record.anomaly_detected = True
            record.anomaly_score = money(min(change_percent / 10, Decimal("100")))
            record.anomaly_reason = "Significant change detected"
            record.anomaly_baseline = previous
            record.anomaly_deviation = to_quantity(change_percent)

    if record.anomaly_detected:
        record.validation_status = UsageRecord.ValidationStatus.ANOMALY
    elif is_valid:
        record.validation_status = UsageRecord.ValidationStatus.VALID
    else:
        record.validation_status = UsageRecord.ValidationStatus.INVALID
    return record.validation_status


def check_limits(record: UsageRecord, now: datetime) -> bool:
    """Flag soft/hard limit breaches. Returns True when a limit was crossed."""
    qty = to_decimal(record.quantity)
    crossed = False
    if record.soft_limit is not None and qty >= record.soft_limit:
        record.soft_limit_exceeded = True
        crossed = True
    if record.hard_limit is not None and qty >= record.hard_limit:
        record.hard_limit_exceeded = True
        crossed = True
    if crossed and record.limit_exceeded_at is None:
        record.limit_exceeded_at = now
    return crossed


# =============================================================================
# Ingestion
# =============================================================================


def record_usage(
    organization: Organization,
    metric: str,
    quantity: Decimal | int | float | str,
    *,
    resource: dict[str, str] | None = None,
    period: tuple[datetime, datetime] | None = None,
    previous_quantity: Decimal | int | float | str = 0,
    unit: str | None = None,
    category: str | None = None,
    source: str = UsageRecord.Source.API,
    policy: BillingPolicy | None = None,
    now: datetime | None = None,
) -> UsageRecord:
    """
    Ingest one metered measurement.

    Resolves the organization's active subscription and the plan's rate
    and rules for the metric, then prices and validates the record.

    Raises:
        ValidationError: Empty metric, negative quantity, bad period.
        DomainRuleViolation: INVALID_METRIC when the plan does not meter it.
    """
    metric = (metric or "").strip()
    if not metric:
        raise ValidationError("Metric name is required")

    qty = to_quantity(quantity)
    previous = to_quantity(previous_quantity or 0)
    if qty < 0 or previous < 0:
        raise ValidationError("Usage quantity cannot be negative", code="INVALID_QUANTITY")

    now = now or timezone.now()
    period_start, period_end = period or (now, now)
    if period_start > period_end:
        raise ValidationError("Usage period start is after its end", code="INVALID_PERIOD")

    if source not in UsageRecord.Source.values:
        raise ValidationError(f"Unknown usage source: {source}")

    subscription = get_active_subscription(organization)
    plan = subscription.plan if subscription else None
    if plan is not None and not plan.tracks_metric(metric):
        raise DomainRuleViolation(
            f"Plan {plan.slug} does not meter {metric}",
            code="INVALID_METRIC",
            details={"metric": metric, "plan": plan.slug},
        )

    policy = policy or get_billing_policy(organization, plan)
    rate = (plan.rate_for(metric) if plan else None) or {}
    rules = plan.rules_for(metric) if plan else {}
    resource = resource or {}

    aggregation_type = rules.get("aggregation_type", UsageRecord.AggregationType.SUM)
    if aggregation_type not in UsageRecord.AggregationType.values:
        aggregation_type = UsageRecord.AggregationType.SUM

    record = UsageRecord(
        organization=organization,
        tenant_id=organization.tenant_id,
        subscription=subscription,
        metric_name=metric,
        metric_unit=unit or rules.get("unit") or "count",
        metric_category=category or rules.get("category") or "",
        quantity=qty,
        previous_quantity=previous,
        delta=qty - previous,
        aggregation_type=aggregation_type,
        period_start=period_start,
        period_end=period_end,
        resource_type=resource.get("type", ""),
        resource_id=resource.get("id", ""),
        resource_name=resource.get("name", ""),
        source=source,
        rate_amount=_optional_decimal(rate.get("amount")),
        rate_per=to_decimal(rate.get("per") or 1),
        rate_minimum=_optional_decimal(rate.get("minimum")),
        rate_currency=rate.get("currency") or (subscription.billing_currency if subscription else "USD"),
        discount_percentage=_optional_decimal(rate.get("discount_percentage")),
        discount_amount=_optional_decimal(rate.get("discount_amount")),
        included_allowance=_optional_decimal(rate.get("included")),
        range_min=_optional_decimal(rules.get("min")),
        range_max=_optional_decimal(rules.get("max")),
        max_delta=_optional_decimal(rules.get("max_delta")),
        soft_limit=_optional_decimal(rules.get("soft_limit")),
        hard_limit=_optional_decimal(rules.get("hard_limit")),
    )

    with transaction.atomic():
        calculate_cost(record)
        run_validation(record, duplicate=find_duplicate(record), policy=policy)
        crossed = check_limits(record, now)
        record.save()

    if crossed:
        dispatch_notification(
            "usage.limit_exceeded",
            record,
            {
                "metric": metric,
                "quantity": str(record.quantity),
                "soft_limit_exceeded": record.soft_limit_exceeded,
                "hard_limit_exceeded": record.hard_limit_exceeded,
            },
        )

    logger.info(
        "usage_recorded",
        record_id=record.record_id,
        organization_id=organization.pk,
        metric=metric,
        quantity=record.quantity,
        validation_status=record.validation_status,
        cost=record.cost_final,
    )
    return record


# =============================================================================
# Billing-status transitions
# =============================================================================


def _lock(record: UsageRecord, expected_version: int | None = None) -> UsageRecord:
    return UsageRecord.lock_for_update(record.pk, expected_version=expected_version)


def _add_note(record: UsageRecord, note_type: str, content: str, actor_id: str | None, now: datetime) -> None:
    UsageNote.objects.create(
        record=record,
        note_type=note_type,
        content=content,
        added_by=actor_id or "system",
        added_at=now,
    )


def bill(
    record: UsageRecord,
    invoice: Invoice | None = None,
    line_item_id: str = "",
    expected_version: int | None = None,
) -> UsageRecord:
    """
    unbilled -> billed.

    Raises:
        DomainRuleViolation: ALREADY_BILLED, or INVALID_RECORD when the
            record has not passed validation.
    """
    with transaction.atomic():
        record = _lock(record, expected_version)
        if record.billing_status != UsageRecord.BillingStatus.UNBILLED:
            raise DomainRuleViolation(
                "Usage record already billed",
                code="ALREADY_BILLED",
                details={"billing_status": record.billing_status},
            )
        if record.validation_status != UsageRecord.ValidationStatus.VALID:
            raise DomainRuleViolation(
                "Cannot bill a usage record that is not valid",
                code="INVALID_RECORD",
                details={"validation_status": record.validation_status},
            )

        record.billing_status = UsageRecord.BillingStatus.BILLED
        record.invoice = invoice
        record.line_item_id = str(line_item_id or "")
        record.save()

    logger.info(
        "usage_billed",
        record_id=record.record_id,
        invoice_id=invoice.pk if invoice else None,
        amount=record.cost_final,
    )
    return record


def dispute(record: UsageRecord, reason: str, actor_id: str | None = None, now: datetime | None = None) -> UsageRecord:
    """
    billed|invoiced -> disputed.

    Raises:
        DomainRuleViolation: NOT_BILLED for any other billing status.
    """
    now = now or timezone.now()
    with transaction.atomic():
        record = _lock(record)
        if record.billing_status not in (UsageRecord.BillingStatus.BILLED, UsageRecord.BillingStatus.INVOICED):
            raise DomainRuleViolation("Can only dispute billed records", code="NOT_BILLED")

        record.billing_status = UsageRecord.BillingStatus.DISPUTED
        record.validation_status = UsageRecord.ValidationStatus.DISPUTED
        record.save()
        _add_note(record, UsageNote.Type.DISPUTE, f"Disputed: {reason}", actor_id, now)
        record_audit("usage.disputed", record, actor_id=actor_id, metadata={"reason": reason})

    dispatch_notification(
        "usage.disputed",
        record,
        {"record_id": record.record_id, "metric": record.metric_name, "reason": reason},
        actor_id=actor_id,
    )
    logger.warning("usage_disputed", record_id=record.record_id, reason=reason)
    return record


def waive(record: UsageRecord, reason: str, actor_id: str | None = None, now: datetime | None = None) -> UsageRecord:
    """
    unbilled|billed|disputed -> waived, zeroing the cost.

    Raises:
        DomainRuleViolation: ALREADY_INVOICED once invoiced, INVALID_STATUS
            when already waived or credited.
    """
    now = now or timezone.now()
    with transaction.atomic():
        record = _lock(record)
        if record.billing_status == UsageRecord.BillingStatus.INVOICED:
            raise DomainRuleViolation("Cannot waive invoiced usage", code="ALREADY_INVOICED")
        if record.billing_status not in WAIVABLE_STATUSES:
            raise DomainRuleViolation(
                f"Cannot waive a {record.billing_status} usage record",
                code="INVALID_STATUS",
            )

        previous_status = record.billing_status
        record.billing_status = UsageRecord.BillingStatus.WAIVED
        record.cost_adjusted = ZERO
        record.cost_final = ZERO
        record.save()
        _add_note(record, UsageNote.Type.WAIVER, f"Waived: {reason}", actor_id, now)
        record_audit(
            "usage.waived",
            record,
            actor_id=actor_id,
            diff={"old": {"billing_status": previous_status}, "new": {"billing_status": record.billing_status}},
            metadata={"reason": reason},
        )

    logger.info("usage_waived", record_id=record.record_id, reason=reason)
    return record


def adjust_cost(
    record: UsageRecord,
    new_cost: Decimal | str,
    reason: str,
    actor_id: str | None = None,
    now: datetime | None = None,
) -> UsageRecord:
    """
    Override the calculated cost.

    Raises:
        ValidationError: INVALID_AMOUNT for a negative cost.
        DomainRuleViolation: ALREADY_INVOICED once invoiced.
    """
    new_cost = money(new_cost)
    if new_cost < 0:
        raise ValidationError("Adjusted cost cannot be negative", code="INVALID_AMOUNT")

    now = now or timezone.now()
    with transaction.atomic():
        record = _lock(record)
        if record.billing_status == UsageRecord.BillingStatus.INVOICED:
            raise DomainRuleViolation("Cannot adjust invoiced usage", code="ALREADY_INVOICED")

        previous_cost = record.cost_final
        record.cost_adjusted = new_cost
        record.cost_final = new_cost
        record.save()
        _add_note(record, UsageNote.Type.ADJUSTMENT, f"Cost adjusted: {reason}", actor_id, now)
        record_audit(
            "usage.cost_adjusted",
            record,
            actor_id=actor_id,
            diff={"old": {"cost_final": previous_cost}, "new": {"cost_final": new_cost}},
            metadata={"reason": reason, "calculated": record.cost_calculated},
        )

    logger.info(
        "usage_cost_adjusted",
        record_id=record.record_id,
        original_cost=record.cost_calculated,
        new_cost=new_cost,
    )
    return record


def review(
    record: UsageRecord,
    approve: bool,
    reviewer_id: str,
    note: str = "",
    now: datetime | None = None,
) -> UsageRecord:
    """
    Resolve a record held for review: approve -> valid, reject -> invalid.

    Raises:
        DomainRuleViolation: NOT_UNDER_REVIEW unless the record is flagged
            as an anomaly or invalid.
    """
    now = now or timezone.now()
    with transaction.atomic():
        record = _lock(record)
        if record.validation_status not in REVIEWABLE_STATUSES:
            raise DomainRuleViolation(
                "Usage record is not awaiting review",
                code="NOT_UNDER_REVIEW",
                details={"validation_status": record.validation_status},
            )

        previous_status = record.validation_status
        record.validation_status = (
            UsageRecord.ValidationStatus.VALID if approve else UsageRecord.ValidationStatus.INVALID
        )
        record.reviewed_at = now
        record.reviewed_by = reviewer_id
        record.save()

        verdict = "Approved" if approve else "Rejected"
        _add_note(record, UsageNote.Type.REVIEW, f"{verdict}: {note}" if note else verdict, reviewer_id, now)
        record_audit(
            "usage.reviewed",
            record,
            actor_id=reviewer_id,
            diff={
                "old": {"validation_status": previous_status},
                "new": {"validation_status": record.validation_status},
            },
        )

    logger.info("usage_reviewed", record_id=record.record_id, approved=approve)
    return record


def mark_invoiced(invoice: Invoice, now: datetime | None = None) -> int:
    """Billed records attached to a sent invoice become invoiced."""
    now = now or timezone.now()
    updated = UsageRecord.objects.filter(
        invoice=invoice,
        billing_status=UsageRecord.BillingStatus.BILLED,
    ).update(
        billing_status=UsageRecord.BillingStatus.INVOICED,
        version=F("version") + 1,
        updated_at=now,
    )
    logger.info("usage_marked_invoiced", invoice_id=invoice.pk, count=updated)
    return updated


# =============================================================================
# Queries and retention
# =============================================================================


def get_unbilled_usage(organization: Organization, end_date: datetime | None = None) -> dict[str, Any]:
    """Valid, unbilled records (oldest first) with a cost summary."""
    qs = UsageRecord.objects.filter(
        organization=organization,
        billing_status=UsageRecord.BillingStatus.UNBILLED,
        validation_status=UsageRecord.ValidationStatus.VALID,
    )
    if end_date is not None:
        qs = qs.filter(period_end__lte=end_date)

    records = list(qs.order_by("period_start", "id"))
    total_cost = money(sum((r.cost_final for r in records), Decimal("0")))
    return {
        "records": records,
        "summary": {
            "total_cost": total_cost,
            "record_count": len(records),
            "metrics": sorted({r.metric_name for r in records}),
        },
    }


def purge_expired_usage(
    retention_days: int | None = None,
    now: datetime | None = None,
    dry_run: bool = False,
) -> int:
    """
    Delete raw records past retention that were already rolled into a parent.

    Without an explicit retention_days each organization's policy decides.
    Returns the number of records deleted (or that would be, on dry run).
    """
    now = now or timezone.now()
    total = 0

    organizations = Organization.objects.filter(
        pk__in=UsageRecord.objects.filter(is_aggregate=False, parent__isnull=False).values("organization_id")
    )
    for organization in organizations:
        days = retention_days if retention_days is not None else get_billing_policy(organization).usage_retention_days
        qs = UsageRecord.objects.filter(
            organization=organization,
            is_aggregate=False,
            parent__isnull=False,
            period_end__lt=now - timedelta(days=days),
        )
        count = qs.count()
        if count and not dry_run:
            qs.delete()
        total += count
        logger.info(
            "usage_records_purged",
            organization_id=organization.pk,
            retention_days=days,
            count=count,
            dry_run=dry_run,
        )

    return total
