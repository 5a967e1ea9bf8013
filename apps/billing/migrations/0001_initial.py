import django.db.models.deletion
from django.db import migrations, models

import apps.billing.models

INTERVAL_CHOICES = [
    ("monthly", "Monthly"),
    ("quarterly", "Quarterly"),
    ("semi-annual", "Semi-annual"),
    ("annual", "Annual"),
    ("biennial", "Biennial"),
]

STATE_CHOICES = [
    ("pending", "Pending"),
    ("trialing", "Trialing"),
    ("active", "Active"),
    ("past_due", "Past Due"),
    ("cancelled", "Cancelled"),
    ("expired", "Expired"),
    ("paused", "Paused"),
]


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        ("organizations", "0001_initial"),
    ]

    operations = [
        migrations.CreateModel(
            name="Plan",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("name", models.CharField(max_length=255)),
                ("slug", models.SlugField(max_length=100, unique=True)),
                (
                    "status",
                    models.CharField(
                        choices=[("active", "Active"), ("deprecated", "Deprecated"), ("archived", "Archived")],
                        db_index=True,
                        default="active",
                        max_length=20,
                    ),
                ),
                ("amount", models.DecimalField(decimal_places=2, max_digits=12)),
                ("currency", models.CharField(default="USD", max_length=3)),
                ("interval", models.CharField(choices=INTERVAL_CHOICES, default="monthly", max_length=20)),
                ("interval_count", models.PositiveIntegerField(default=1)),
                ("trial_days", models.PositiveIntegerField(default=0)),
                ("overage_rates", models.JSONField(blank=True, default=dict)),
                ("usage_rules", models.JSONField(blank=True, default=dict)),
                (
                    "feature_limits",
                    models.JSONField(
                        blank=True,
                        default=dict,
                        help_text="Metric name to limit, e.g. {'seats': 10, 'projects': 50}",
                    ),
                ),
                (
                    "rollout_percentage",
                    models.PositiveSmallIntegerField(
                        default=100, help_text="Share of organizations (0-100) the plan is offered to"
                    ),
                ),
                (
                    "allowed_tenants",
                    models.JSONField(blank=True, default=list, help_text="Tenant IDs; empty offers the plan to all"),
                ),
                ("excluded_tenants", models.JSONField(blank=True, default=list)),
                ("policy_overrides", models.JSONField(blank=True, default=dict)),
            ],
            options={
                "ordering": ["amount", "name"],
            },
        ),
        migrations.CreateModel(
            name="Subscription",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("tenant_id", models.CharField(blank=True, db_index=True, max_length=100)),
                ("version", models.PositiveBigIntegerField(default=0)),
                (
                    "subscription_id",
                    models.CharField(
                        default=apps.billing.models.generate_subscription_id,
                        help_text="Opaque public identifier, e.g. 'sub_3f2a...'",
                        max_length=40,
                        unique=True,
                    ),
                ),
                ("billing_amount", models.DecimalField(decimal_places=2, max_digits=12)),
                ("billing_currency", models.CharField(default="USD", max_length=3)),
                ("billing_interval", models.CharField(choices=INTERVAL_CHOICES, default="monthly", max_length=20)),
                ("billing_interval_count", models.PositiveIntegerField(default=1)),
                (
                    "state",
                    models.CharField(choices=STATE_CHOICES, db_index=True, default="pending", max_length=20),
                ),
                ("previous_state", models.CharField(blank=True, choices=STATE_CHOICES, max_length=20)),
                ("trial_start", models.DateTimeField(blank=True, null=True)),
                ("trial_end", models.DateTimeField(blank=True, null=True)),
                ("trial_converted", models.BooleanField(default=False)),
                ("current_period_start", models.DateTimeField()),
                ("current_period_end", models.DateTimeField(db_index=True)),
                ("current_period_billing_date", models.DateTimeField(blank=True, null=True)),
                ("current_period_amount", models.DecimalField(decimal_places=2, default=0, max_digits=12)),
                ("current_period_paid", models.BooleanField(default=False)),
                ("current_period_payment_ref", models.CharField(blank=True, max_length=255)),
                ("next_period_start", models.DateTimeField(blank=True, null=True)),
                ("next_period_end", models.DateTimeField(blank=True, null=True)),
                ("payment_method_id", models.CharField(blank=True, max_length=255)),
                ("auto_renew", models.BooleanField(default=True)),
                ("failed_attempts", models.PositiveIntegerField(default=0)),
                ("last_failure_date", models.DateTimeField(blank=True, null=True)),
                ("last_failure_reason", models.CharField(blank=True, max_length=500)),
                ("requires_payment_update", models.BooleanField(default=False)),
                ("last_payment_date", models.DateTimeField(blank=True, null=True)),
                (
                    "last_payment_amount",
                    models.DecimalField(blank=True, decimal_places=2, max_digits=12, null=True),
                ),
                ("feature_usage", models.JSONField(blank=True, default=dict)),
                (
                    "feature_overrides",
                    models.JSONField(
                        blank=True,
                        default=dict,
                        help_text="Per-subscription limits that replace the plan's feature_limits",
                    ),
                ),
                ("cancellation_requested_at", models.DateTimeField(blank=True, null=True)),
                ("cancellation_effective_at", models.DateTimeField(blank=True, null=True)),
                ("cancellation_reason", models.CharField(blank=True, max_length=255)),
                ("cancellation_feedback", models.TextField(blank=True)),
                ("cancelled_by", models.CharField(blank=True, max_length=255)),
                ("paused_at", models.DateTimeField(blank=True, null=True)),
                ("resume_date", models.DateTimeField(blank=True, null=True)),
                ("pause_reason", models.CharField(blank=True, max_length=255)),
                ("paused_by", models.CharField(blank=True, max_length=255)),
                ("pending_plan_effective_at", models.DateTimeField(blank=True, null=True)),
                ("next_renewal_date", models.DateTimeField(blank=True, db_index=True, null=True)),
                ("reminders_enabled", models.BooleanField(default=True)),
                (
                    "reminder_offsets_days",
                    models.JSONField(
                        blank=True,
                        default=list,
                        help_text="Days before renewal to remind; empty uses the billing policy",
                    ),
                ),
                ("lifetime_value", models.DecimalField(decimal_places=2, default=0, max_digits=14)),
                ("total_payments", models.DecimalField(decimal_places=2, default=0, max_digits=14)),
                ("payment_count", models.PositiveIntegerField(default=0)),
                ("average_payment", models.DecimalField(decimal_places=2, default=0, max_digits=12)),
                ("last_login_at", models.DateTimeField(blank=True, null=True)),
                ("churn_risk_score", models.PositiveSmallIntegerField(default=0)),
                ("churn_risk_factors", models.JSONField(blank=True, default=list)),
                ("churn_risk_calculated_at", models.DateTimeField(blank=True, null=True)),
                (
                    "organization",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="subscription_set",
                        to="organizations.organization",
                    ),
                ),
                (
                    "plan",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="subscriptions",
                        to="billing.plan",
                    ),
                ),
                (
                    "pending_plan",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="+",
                        to="billing.plan",
                    ),
                ),
            ],
            options={
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["tenant_id", "state"], name="billing_sub_tenant__57cafc_idx"),
                    models.Index(fields=["organization", "state"], name="billing_sub_organiz_749a39_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="BillingPeriod",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("start", models.DateTimeField()),
                ("end", models.DateTimeField()),
                ("amount", models.DecimalField(decimal_places=2, max_digits=12)),
                ("paid", models.BooleanField(default=False)),
                ("payment_reference", models.CharField(blank=True, max_length=255)),
                ("closed_at", models.DateTimeField()),
                (
                    "subscription",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="billing_periods",
                        to="billing.subscription",
                    ),
                ),
            ],
            options={
                "ordering": ["start"],
            },
        ),
        migrations.CreateModel(
            name="PaymentRetry",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("attempt", models.PositiveIntegerField()),
                ("scheduled_for", models.DateTimeField(db_index=True)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("succeeded", "Succeeded"),
                            ("failed", "Failed"),
                            ("cancelled", "Cancelled"),
                        ],
                        db_index=True,
                        default="pending",
                        max_length=20,
                    ),
                ),
                ("attempted_at", models.DateTimeField(blank=True, null=True)),
                ("failure_reason", models.CharField(blank=True, max_length=500)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "subscription",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="payment_retries",
                        to="billing.subscription",
                    ),
                ),
            ],
            options={
                "ordering": ["scheduled_for"],
            },
        ),
        migrations.CreateModel(
            name="PlanChange",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("old_amount", models.DecimalField(decimal_places=2, max_digits=12)),
                ("new_amount", models.DecimalField(decimal_places=2, max_digits=12)),
                ("proration_amount", models.DecimalField(decimal_places=2, default=0, max_digits=12)),
                ("immediate", models.BooleanField(default=True)),
                (
                    "status",
                    models.CharField(
                        choices=[("applied", "Applied"), ("scheduled", "Scheduled")],
                        default="applied",
                        max_length=20,
                    ),
                ),
                ("requested_at", models.DateTimeField()),
                ("effective_at", models.DateTimeField()),
                (
                    "from_plan",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT, related_name="+", to="billing.plan"
                    ),
                ),
                (
                    "to_plan",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT, related_name="+", to="billing.plan"
                    ),
                ),
                (
                    "subscription",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="plan_changes",
                        to="billing.subscription",
                    ),
                ),
            ],
            options={
                "ordering": ["requested_at", "id"],
            },
        ),
        migrations.CreateModel(
            name="RenewalReminder",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("renewal_date", models.DateTimeField()),
                ("offset_days", models.PositiveSmallIntegerField()),
                ("sent_at", models.DateTimeField()),
                (
                    "subscription",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="renewal_reminders",
                        to="billing.subscription",
                    ),
                ),
            ],
            options={
                "ordering": ["sent_at"],
                "constraints": [
                    models.UniqueConstraint(
                        fields=("subscription", "renewal_date", "offset_days"),
                        name="unique_renewal_reminder_per_offset",
                    )
                ],
            },
        ),
        migrations.CreateModel(
            name="SubscriptionAddon",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("addon_id", models.CharField(max_length=100)),
                ("name", models.CharField(blank=True, max_length=255)),
                ("unit_price", models.DecimalField(decimal_places=2, max_digits=12)),
                ("quantity", models.PositiveIntegerField(default=1)),
                ("added_at", models.DateTimeField()),
                (
                    "subscription",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="addons",
                        to="billing.subscription",
                    ),
                ),
            ],
            options={
                "ordering": ["added_at", "id"],
                "constraints": [
                    models.UniqueConstraint(
                        fields=("subscription", "addon_id"),
                        name="unique_addon_per_subscription",
                    )
                ],
            },
        ),
        migrations.CreateModel(
            name="SubscriptionStateChange",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("state", models.CharField(choices=STATE_CHOICES, max_length=20)),
                ("previous_state", models.CharField(blank=True, choices=STATE_CHOICES, max_length=20)),
                ("changed_at", models.DateTimeField()),
                ("reason", models.CharField(blank=True, max_length=255)),
                (
                    "subscription",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="state_changes",
                        to="billing.subscription",
                    ),
                ),
            ],
            options={
                "ordering": ["changed_at", "id"],
            },
        ),
    ]
