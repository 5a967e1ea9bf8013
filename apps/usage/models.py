"""
Usage models - metered usage records, their rollups and review notes.
"""

import secrets

from django.db import models

from apps.core.models import VersionedModel


def generate_record_id() -> str:
    return f"usg_{secrets.token_hex(12)}"


class UsageRecord(VersionedModel):
    """
    One metered measurement, or an aggregate rolled up from raw records.

    Children of an aggregate are marked billed and linked through parent,
    so they never reach an invoice on their own.
    """

    class AggregationType(models.TextChoices):
        SUM = "sum", "Sum"
        MAX = "max", "Max"
        AVG = "avg", "Average"
        LAST = "last", "Last"

    class Granularity(models.TextChoices):
        HOUR = "hour", "Hour"
        DAY = "day", "Day"
        WEEK = "week", "Week"
        MONTH = "month", "Month"

    class Source(models.TextChoices):
        API = "api", "API"
        AGENT = "agent", "Agent"
        IMPORT = "import", "Import"
        CALCULATED = "calculated", "Calculated"

    class BillingStatus(models.TextChoices):
        UNBILLED = "unbilled", "Unbilled"
        BILLED = "billed", "Billed"
        INVOICED = "invoiced", "Invoiced"
        DISPUTED = "disputed", "Disputed"
        WAIVED = "waived", "Waived"
        CREDITED = "credited", "Credited"

    class ValidationStatus(models.TextChoices):
        PENDING = "pending", "Pending"
        VALID = "valid", "Valid"
        INVALID = "invalid", "Invalid"
        ANOMALY = "anomaly", "Anomaly"
        DISPUTED = "disputed", "Disputed"

    record_id = models.CharField(max_length=40, unique=True, default=generate_record_id)
    subscription = models.ForeignKey(
        "billing.Subscription",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="usage_records",
    )

    # Metric
    metric_name = models.CharField(max_length=100, db_index=True)
    metric_unit = models.CharField(max_length=50, default="count")
    metric_category = models.CharField(max_length=50, blank=True)

    # Measurement
    quantity = models.DecimalField(max_digits=20, decimal_places=4)
    previous_quantity = models.DecimalField(max_digits=20, decimal_places=4, default=0)
    delta = models.DecimalField(max_digits=20, decimal_places=4, default=0)
    aggregation_type = models.CharField(
        max_length=10,
        choices=AggregationType.choices,
        default=AggregationType.SUM,
    )

    # Period
    period_start = models.DateTimeField(db_index=True)
    period_end = models.DateTimeField()
    period_granularity = models.CharField(max_length=10, choices=Granularity.choices, blank=True)

    # Resource
    resource_type = models.CharField(max_length=100, blank=True)
    resource_id = models.CharField(max_length=255, blank=True)
    resource_name = models.CharField(max_length=255, blank=True)
    source = models.CharField(max_length=20, choices=Source.choices, default=Source.API)

    # Billing
    billing_status = models.CharField(
        max_length=20,
        choices=BillingStatus.choices,
        default=BillingStatus.UNBILLED,
        db_index=True,
    )
    invoice = models.ForeignKey(
        "invoices.Invoice",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="usage_records",
    )
    line_item_id = models.CharField(max_length=100, blank=True)
    rate_amount = models.DecimalField(max_digits=14, decimal_places=4, null=True, blank=True)
    rate_per = models.DecimalField(max_digits=16, decimal_places=4, default=1)
    rate_minimum = models.DecimalField(max_digits=14, decimal_places=2, null=True, blank=True)
    rate_currency = models.CharField(max_length=3, default="USD")
    discount_percentage = models.DecimalField(max_digits=6, decimal_places=3, null=True, blank=True)
    discount_amount = models.DecimalField(max_digits=14, decimal_places=2, null=True, blank=True)
    included_allowance = models.DecimalField(max_digits=20, decimal_places=4, null=True, blank=True)
    included_remaining = models.DecimalField(max_digits=20, decimal_places=4, null=True, blank=True)
    is_included = models.BooleanField(default=False)
    cost_calculated = models.DecimalField(max_digits=14, decimal_places=2, default=0)
    cost_adjusted = models.DecimalField(max_digits=14, decimal_places=2, null=True, blank=True)
    cost_final = models.DecimalField(max_digits=14, decimal_places=2, default=0)

    # Validation
    validation_status = models.CharField(
        max_length=20,
        choices=ValidationStatus.choices,
        default=ValidationStatus.PENDING,
        db_index=True,
    )
    range_min = models.DecimalField(max_digits=20, decimal_places=4, null=True, blank=True)
    range_max = models.DecimalField(max_digits=20, decimal_places=4, null=True, blank=True)
    range_passed = models.BooleanField(null=True)
    max_delta = models.DecimalField(max_digits=20, decimal_places=4, null=True, blank=True)
    actual_delta = models.DecimalField(max_digits=20, decimal_places=4, null=True, blank=True)
    delta_passed = models.BooleanField(null=True)
    duplicate_of = models.ForeignKey(
        "self",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="+",
    )
    anomaly_detected = models.BooleanField(default=False)
    anomaly_score = models.DecimalField(max_digits=6, decimal_places=2, null=True, blank=True)
    anomaly_reason = models.CharField(max_length=255, blank=True)
    anomaly_baseline = models.DecimalField(max_digits=20, decimal_places=4, null=True, blank=True)
    anomaly_deviation = models.DecimalField(max_digits=20, decimal_places=4, null=True, blank=True)
    reviewed_at = models.DateTimeField(null=True, blank=True)
    reviewed_by = models.CharField(max_length=255, blank=True)

    # Limits
    soft_limit = models.DecimalField(max_digits=20, decimal_places=4, null=True, blank=True)
    hard_limit = models.DecimalField(max_digits=20, decimal_places=4, null=True, blank=True)
    soft_limit_exceeded = models.BooleanField(default=False)
    hard_limit_exceeded = models.BooleanField(default=False)
    limit_exceeded_at = models.DateTimeField(null=True, blank=True)

    # Aggregation
    is_aggregate = models.BooleanField(default=False, db_index=True)
    parent = models.ForeignKey(
        "self",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="children",
    )
    rollup_level = models.CharField(max_length=10, choices=Granularity.choices, blank=True)
    stats = models.JSONField(default=dict, blank=True)
    aggregated_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["period_start", "id"]
        indexes = [
            models.Index(fields=["organization", "metric_name", "period_start"]),
            models.Index(fields=["organization", "billing_status", "validation_status"]),
        ]

    def __str__(self) -> str:
        return f"{self.record_id} {self.metric_name}={self.quantity}"

    @property
    def is_billable(self) -> bool:
        """Valid, not yet billed, and not fully covered by the allowance."""
        return (
            self.validation_status == self.ValidationStatus.VALID
            and self.billing_status == self.BillingStatus.UNBILLED
            and not self.is_included
        )


class UsageNote(models.Model):
    """Dispute, waiver, adjustment and review notes on a usage record."""

    class Type(models.TextChoices):
        DISPUTE = "dispute", "Dispute"
        ADJUSTMENT = "adjustment", "Adjustment"
        WAIVER = "waiver", "Waiver"
        REVIEW = "review", "Review"

    record = models.ForeignKey(UsageRecord, on_delete=models.CASCADE, related_name="notes")
    note_type = models.CharField(max_length=20, choices=Type.choices)
    content = models.TextField()
    added_by = models.CharField(max_length=255, blank=True)
    added_at = models.DateTimeField()

    class Meta:
        ordering = ["added_at", "id"]
