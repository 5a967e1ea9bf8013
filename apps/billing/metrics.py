"""
Revenue metrics - subscription and invoice aggregates for dashboards.

Queries are tenant-scoped when tenant_id is given, otherwise platform-wide.
"""

from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any

from django.db.models import Avg, Count, Q, Sum
from django.db.models.functions import TruncMonth
from django.utils import timezone

from apps.billing.calculations import calculate_arr, calculate_mrr, group_churn_reasons
from apps.billing.models import Subscription
from apps.core.money import ZERO, money
from apps.invoices.models import Invoice

State = Subscription.State

RECURRING_STATES = (State.ACTIVE, State.PAST_DUE)
CHURN_WINDOW_DAYS = 30
REVENUE_MONTHS = 12

COLLECTED_STATUSES = (Invoice.Status.PAID, Invoice.Status.PARTIAL)


def _subscription_metrics(subscriptions, now: datetime) -> dict[str, Any]:
    counts = dict(subscriptions.values_list("state").annotate(n=Count("id")).order_by())
    recurring = subscriptions.filter(state__in=RECURRING_STATES)

    mrr = calculate_mrr(recurring.values_list("billing_amount", flat=True))
    recurring_count = sum(counts.get(state, 0) for state in RECURRING_STATES)

    churned = subscriptions.filter(
        state=State.CANCELLED,
        cancellation_requested_at__gte=now - timedelta(days=CHURN_WINDOW_DAYS),
    )

    by_plan = [
        {
            "plan": row["plan__slug"],
            "name": row["plan__name"],
            "subscriptions": row["count"],
            "mrr": money(row["mrr"] or 0),
        }
        for row in recurring.values("plan__slug", "plan__name")
        .annotate(count=Count("id"), mrr=Sum("billing_amount"))
        .order_by("-mrr", "plan__slug")
    ]

    return {
        "subscriptions": {
            "total": sum(counts.values()),
            "active": counts.get(State.ACTIVE, 0),
            "trialing": counts.get(State.TRIALING, 0),
            "past_due": counts.get(State.PAST_DUE, 0),
            "paused": counts.get(State.PAUSED, 0),
            "cancelled": counts.get(State.CANCELLED, 0),
            "expired": counts.get(State.EXPIRED, 0),
        },
        "revenue": {
            "mrr": mrr,
            "arr": calculate_arr(mrr),
            "average_revenue_per_subscription": money(mrr / recurring_count) if recurring_count else ZERO,
        },
        "churn": {
            "window_days": CHURN_WINDOW_DAYS,
            "count": churned.count(),
            "reasons": group_churn_reasons(churned.values_list("cancellation_reason", flat=True)),
        },
        "by_plan": by_plan,
    }


def _invoice_metrics(invoices, now: datetime) -> dict[str, Any]:
    totals = invoices.exclude(status=Invoice.Status.VOID).aggregate(
        count=Count("id"),
        paid_count=Count("id", filter=Q(status=Invoice.Status.PAID)),
        average_total=Avg("total"),
        collected=Sum("amount_paid", filter=Q(status__in=COLLECTED_STATUSES)),
        outstanding=Sum("amount_due", filter=Q(amount_due__gt=0)),
    )

    first_month = (now.date().replace(day=1) - timedelta(days=31 * (REVENUE_MONTHS - 1))).replace(day=1)
    monthly = [
        {
            "month": row["month"].strftime("%Y-%m"),
            "revenue": money(row["revenue"] or 0),
            "invoices": row["count"],
        }
        for row in invoices.filter(status__in=COLLECTED_STATUSES, issue_date__gte=first_month)
        .annotate(month=TruncMonth("issue_date"))
        .values("month")
        .annotate(revenue=Sum("amount_paid"), count=Count("id"))
        .order_by("month")
    ]

    by_type = {
        row["invoice_type"]: {"revenue": money(row["revenue"] or 0), "invoices": row["count"]}
        for row in invoices.filter(status__in=COLLECTED_STATUSES)
        .values("invoice_type")
        .annotate(revenue=Sum("amount_paid"), count=Count("id"))
        .order_by("invoice_type")
    }

    return {
        "summary": {
            "invoice_count": totals["count"],
            "paid_count": totals["paid_count"],
            "total_collected": money(totals["collected"] or 0),
            "average_invoice_total": money(totals["average_total"] or Decimal("0")),
        },
        "monthly": monthly,
        "by_type": by_type,
        "outstanding": money(totals["outstanding"] or 0),
    }


def get_revenue_metrics(
    tenant_id: str | None = None,
    date_range: tuple[date, date] | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """
    MRR/ARR, subscription counts, 30-day churn reasons, revenue by plan and
    invoice revenue.

    date_range limits the invoice section by issue date.
    """
    now = now or timezone.now()

    subscriptions = Subscription.objects.all()
    invoices = Invoice.objects.all()
    if tenant_id:
        subscriptions = subscriptions.filter(tenant_id=tenant_id)
        invoices = invoices.filter(tenant_id=tenant_id)
    if date_range:
        invoices = invoices.filter(issue_date__gte=date_range[0], issue_date__lte=date_range[1])

    return {
        "generated_at": now,
        "tenant_id": tenant_id,
        **_subscription_metrics(subscriptions, now),
        "invoices": _invoice_metrics(invoices, now),
    }
