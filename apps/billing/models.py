"""
Billing models - plan catalog, subscriptions and their history tables.
"""

import secrets

from django.db import models

from apps.core.models import TimestampedModel, VersionedModel
from apps.core.rollout import is_in_rollout


def generate_subscription_id() -> str:
    return f"sub_{secrets.token_hex(12)}"


class Interval(models.TextChoices):
    MONTHLY = "monthly", "Monthly"
    QUARTERLY = "quarterly", "Quarterly"
    SEMI_ANNUAL = "semi-annual", "Semi-annual"
    ANNUAL = "annual", "Annual"
    BIENNIAL = "biennial", "Biennial"


class Plan(TimestampedModel):
    """
    Catalog entry: pricing, overage rates and feature limits.

    overage_rates maps a metric name to its rate:
        {"api_calls": {"amount": "0.50", "per": 1000, "minimum": "1.00",
                       "included": 10000, "currency": "USD"}}
    usage_rules maps a metric name to validation bounds:
        {"api_calls": {"min": 0, "max": 1000000, "max_delta": 50000,
                       "unit": "calls", "category": "api", "aggregation_type": "sum"}}
    """

    class Status(models.TextChoices):
        ACTIVE = "active", "Active"
        DEPRECATED = "deprecated", "Deprecated"
        ARCHIVED = "archived", "Archived"

    name = models.CharField(max_length=255)
    slug = models.SlugField(max_length=100, unique=True)
    status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.ACTIVE,
        db_index=True,
    )
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    currency = models.CharField(max_length=3, default="USD")
    interval = models.CharField(max_length=20, choices=Interval.choices, default=Interval.MONTHLY)
    interval_count = models.PositiveIntegerField(default=1)
    trial_days = models.PositiveIntegerField(default=0)

    overage_rates = models.JSONField(default=dict, blank=True)
    usage_rules = models.JSONField(default=dict, blank=True)
    feature_limits = models.JSONField(
        default=dict,
        blank=True,
        help_text="Metric name to limit, e.g. {'seats': 10, 'projects': 50}",
    )
    rollout_percentage = models.PositiveSmallIntegerField(
        default=100,
        help_text="Share of organizations (0-100) the plan is offered to",
    )
    allowed_tenants = models.JSONField(default=list, blank=True, help_text="Tenant IDs; empty offers the plan to all")
    excluded_tenants = models.JSONField(default=list, blank=True)
    policy_overrides = models.JSONField(default=dict, blank=True)

    class Meta:
        ordering = ["amount", "name"]

    def __str__(self) -> str:
        return f"{self.name} ({self.amount} {self.currency}/{self.interval})"

    def is_available_for(self, organization) -> bool:
        """Active, offered to the tenant, and inside its rollout bucket."""
        if self.status != self.Status.ACTIVE:
            return False
        if organization.tenant_id in self.excluded_tenants:
            return False
        if self.allowed_tenants and organization.tenant_id not in self.allowed_tenants:
            return False
        return is_in_rollout(organization.tenant_id or str(organization.pk), self.rollout_percentage, salt=self.slug)

    def rate_for(self, metric: str) -> dict | None:
        return self.overage_rates.get(metric)

    def rules_for(self, metric: str) -> dict:
        return self.usage_rules.get(metric, {})

    def tracks_metric(self, metric: str) -> bool:
        return metric in self.overage_rates or metric in self.usage_rules or metric in self.feature_limits


class Subscription(VersionedModel):
    """
    An organization's subscription to a plan.

    State transitions are only made by apps.billing.services; every
    transition appends a SubscriptionStateChange row.
    """

    class State(models.TextChoices):
        PENDING = "pending", "Pending"
        TRIALING = "trialing", "Trialing"
        ACTIVE = "active", "Active"
        PAST_DUE = "past_due", "Past Due"
        CANCELLED = "cancelled", "Cancelled"
        EXPIRED = "expired", "Expired"
        PAUSED = "paused", "Paused"

    subscription_id = models.CharField(
        max_length=40,
        unique=True,
        default=generate_subscription_id,
        help_text="Opaque public identifier, e.g. 'sub_3f2a...'",
    )
    plan = models.ForeignKey(Plan, on_delete=models.PROTECT, related_name="subscriptions")

    # Billing terms
    billing_amount = models.DecimalField(max_digits=12, decimal_places=2)
    billing_currency = models.CharField(max_length=3, default="USD")
    billing_interval = models.CharField(max_length=20, choices=Interval.choices, default=Interval.MONTHLY)
    billing_interval_count = models.PositiveIntegerField(default=1)

    state = models.CharField(
        max_length=20,
        choices=State.choices,
        default=State.PENDING,
        db_index=True,
    )
    previous_state = models.CharField(max_length=20, choices=State.choices, blank=True)

    # Trial
    trial_start = models.DateTimeField(null=True, blank=True)
    trial_end = models.DateTimeField(null=True, blank=True)
    trial_converted = models.BooleanField(default=False)

    # Current period
    current_period_start = models.DateTimeField()
    current_period_end = models.DateTimeField(db_index=True)
    current_period_billing_date = models.DateTimeField(null=True, blank=True)
    current_period_amount = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    current_period_paid = models.BooleanField(default=False)
    current_period_payment_ref = models.CharField(max_length=255, blank=True)

    # Next period
    next_period_start = models.DateTimeField(null=True, blank=True)
    next_period_end = models.DateTimeField(null=True, blank=True)

    # Payment
    payment_method_id = models.CharField(max_length=255, blank=True)
    auto_renew = models.BooleanField(default=True)
    failed_attempts = models.PositiveIntegerField(default=0)
    last_failure_date = models.DateTimeField(null=True, blank=True)
    last_failure_reason = models.CharField(max_length=500, blank=True)
    requires_payment_update = models.BooleanField(default=False)
    last_payment_date = models.DateTimeField(null=True, blank=True)
    last_payment_amount = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)

    # Feature usage vs. limits
    feature_usage = models.JSONField(default=dict, blank=True)
    feature_overrides = models.JSONField(
        default=dict,
        blank=True,
        help_text="Per-subscription limits that replace the plan's feature_limits",
    )

    # Cancellation
    cancellation_requested_at = models.DateTimeField(null=True, blank=True)
    cancellation_effective_at = models.DateTimeField(null=True, blank=True)
    cancellation_reason = models.CharField(max_length=255, blank=True)
    cancellation_feedback = models.TextField(blank=True)
    cancelled_by = models.CharField(max_length=255, blank=True)

    # Pause
    paused_at = models.DateTimeField(null=True, blank=True)
    resume_date = models.DateTimeField(null=True, blank=True)
    pause_reason = models.CharField(max_length=255, blank=True)
    paused_by = models.CharField(max_length=255, blank=True)

    # Deferred plan change, applied at the period boundary
    pending_plan = models.ForeignKey(
        Plan,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="+",
    )
    pending_plan_effective_at = models.DateTimeField(null=True, blank=True)

    # Renewal
    next_renewal_date = models.DateTimeField(null=True, blank=True, db_index=True)
    reminders_enabled = models.BooleanField(default=True)
    reminder_offsets_days = models.JSONField(
        default=list,
        blank=True,
        help_text="Days before renewal to remind; empty uses the billing policy",
    )

    # Analytics
    lifetime_value = models.DecimalField(max_digits=14, decimal_places=2, default=0)
    total_payments = models.DecimalField(max_digits=14, decimal_places=2, default=0)
    payment_count = models.PositiveIntegerField(default=0)
    average_payment = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    last_login_at = models.DateTimeField(null=True, blank=True)
    churn_risk_score = models.PositiveSmallIntegerField(default=0)
    churn_risk_factors = models.JSONField(default=list, blank=True)
    churn_risk_calculated_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["tenant_id", "state"]),
            models.Index(fields=["organization", "state"]),
        ]

    def __str__(self) -> str:
        return f"{self.subscription_id} ({self.state})"

    @property
    def is_active(self) -> bool:
        """Usable state: usage is metered against it."""
        return self.state in (self.State.ACTIVE, self.State.TRIALING)

    @property
    def feature_limits(self) -> dict:
        return {**self.plan.feature_limits, **self.feature_overrides}


class SubscriptionStateChange(models.Model):
    """Append-only state history of a subscription."""

    subscription = models.ForeignKey(Subscription, on_delete=models.CASCADE, related_name="state_changes")
    state = models.CharField(max_length=20, choices=Subscription.State.choices)
    previous_state = models.CharField(max_length=20, choices=Subscription.State.choices, blank=True)
    changed_at = models.DateTimeField()
    reason = models.CharField(max_length=255, blank=True)

    class Meta:
        ordering = ["changed_at", "id"]


class BillingPeriod(models.Model):
    """Closed billing period, rolled out of the subscription's current period."""

    subscription = models.ForeignKey(Subscription, on_delete=models.CASCADE, related_name="billing_periods")
    start = models.DateTimeField()
    end = models.DateTimeField()
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    paid = models.BooleanField(default=False)
    payment_reference = models.CharField(max_length=255, blank=True)
    invoice = models.ForeignKey(
        "invoices.Invoice",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="+",
    )
    closed_at = models.DateTimeField()

    class Meta:
        ordering = ["start"]


class PaymentRetry(models.Model):
    """Scheduled retry of a failed payment."""

    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        SUCCEEDED = "succeeded", "Succeeded"
        FAILED = "failed", "Failed"
        CANCELLED = "cancelled", "Cancelled"

    subscription = models.ForeignKey(Subscription, on_delete=models.CASCADE, related_name="payment_retries")
    attempt = models.PositiveIntegerField()
    scheduled_for = models.DateTimeField(db_index=True)
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.PENDING, db_index=True)
    attempted_at = models.DateTimeField(null=True, blank=True)
    failure_reason = models.CharField(max_length=500, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["scheduled_for"]


class PlanChange(models.Model):
    """Upgrade/downgrade history with the proration it produced."""

    class Status(models.TextChoices):
        APPLIED = "applied", "Applied"
        SCHEDULED = "scheduled", "Scheduled"

    subscription = models.ForeignKey(Subscription, on_delete=models.CASCADE, related_name="plan_changes")
    from_plan = models.ForeignKey(Plan, on_delete=models.PROTECT, related_name="+")
    to_plan = models.ForeignKey(Plan, on_delete=models.PROTECT, related_name="+")
    old_amount = models.DecimalField(max_digits=12, decimal_places=2)
    new_amount = models.DecimalField(max_digits=12, decimal_places=2)
    proration_amount = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    immediate = models.BooleanField(default=True)
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.APPLIED)
    requested_at = models.DateTimeField()
    effective_at = models.DateTimeField()

    class Meta:
        ordering = ["requested_at", "id"]


class RenewalReminder(models.Model):
    """One sent renewal reminder; unique per renewal date and offset."""

    subscription = models.ForeignKey(Subscription, on_delete=models.CASCADE, related_name="renewal_reminders")
    renewal_date = models.DateTimeField()
    offset_days = models.PositiveSmallIntegerField()
    sent_at = models.DateTimeField()

    class Meta:
        ordering = ["sent_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["subscription", "renewal_date", "offset_days"],
                name="unique_renewal_reminder_per_offset",
            )
        ]


class SubscriptionAddon(models.Model):
    """Add-on attached to a subscription, invoiced each period next to the plan fee."""

    subscription = models.ForeignKey(Subscription, on_delete=models.CASCADE, related_name="addons")
    addon_id = models.CharField(max_length=100)
    name = models.CharField(max_length=255, blank=True)
    unit_price = models.DecimalField(max_digits=12, decimal_places=2)
    quantity = models.PositiveIntegerField(default=1)
    added_at = models.DateTimeField()

    class Meta:
        ordering = ["added_at", "id"]
        constraints = [
            models.UniqueConstraint(
                fields=["subscription", "addon_id"],
                name="unique_addon_per_subscription",
            )
        ]

    def __str__(self) -> str:
        return f"{self.addon_id} x{self.quantity}"

    @property
    def amount(self):
        return self.unit_price * self.quantity
