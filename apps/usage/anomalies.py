"""
Statistical anomaly detection over a trailing window of usage.
"""

from datetime import datetime, timedelta
from decimal import Decimal

from django.db import transaction
from django.utils import timezone

from apps.billing.policy import BillingPolicy, get_billing_policy
from apps.core.logging import get_logger
from apps.core.money import money, quantity
from apps.organizations.models import Organization
from apps.usage.models import UsageRecord

logger = get_logger(__name__)


def detect_anomalies(
    organization: Organization,
    metric: str,
    lookback_days: int | None = None,
    threshold: float | None = None,
    policy: BillingPolicy | None = None,
    now: datetime | None = None,
) -> list[UsageRecord]:
    """
    Flag unbilled records whose z-score exceeds the threshold.

    Uses the population standard deviation of valid raw records in the
    window. Windows with fewer than anomaly_min_history records, or with no
    variance, flag nothing.
    """
    policy = policy or get_billing_policy(organization)
    lookback_days = lookback_days or policy.anomaly_lookback_days
    threshold = Decimal(str(threshold if threshold is not None else policy.anomaly_zscore))
    now = now or timezone.now()

    history = list(
        UsageRecord.objects.filter(
            organization=organization,
            metric_name=metric,
            period_start__gte=now - timedelta(days=lookback_days),
            validation_status=UsageRecord.ValidationStatus.VALID,
            is_aggregate=False,
        ).order_by("period_start", "id")
    )
    if len(history) < policy.anomaly_min_history:
        logger.debug("anomaly_detection_skipped", metric=metric, records=len(history))
        return []

    quantities = [record.quantity for record in history]
    mean = sum(quantities, Decimal("0")) / len(quantities)
    variance = sum(((q - mean) ** 2 for q in quantities), Decimal("0")) / len(quantities)
    std_dev = variance.sqrt()
    if std_dev == 0:
        return []

    flagged = []
    for record in history:
        z_score = abs((record.quantity - mean) / std_dev)
        if z_score <= threshold or record.billing_status != UsageRecord.BillingStatus.UNBILLED:
            continue

        with transaction.atomic():
            locked = UsageRecord.lock_for_update(record.pk)
            if locked.validation_status != UsageRecord.ValidationStatus.VALID:
                continue
            locked.anomaly_detected = True
            locked.anomaly_score = money(min(z_score * 10, Decimal("100")))
            locked.anomaly_reason = "Statistical anomaly detected"
            locked.anomaly_baseline = quantity(mean)
            locked.anomaly_deviation = quantity(abs(locked.quantity - mean))
            locked.validation_status = UsageRecord.ValidationStatus.ANOMALY
            locked.save()
        flagged.append(locked)

    logger.info(
        "anomaly_detection_completed",
        organization_id=organization.pk,
        metric=metric,
        total_records=len(history),
        anomalies_found=len(flagged),
    )
    return flagged
