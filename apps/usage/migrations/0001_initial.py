import django.db.models.deletion
from django.db import migrations, models

import apps.usage.models

GRANULARITY_CHOICES = [("hour", "Hour"), ("day", "Day"), ("week", "Week"), ("month", "Month")]


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        ("billing", "0001_initial"),
        ("invoices", "0001_initial"),
        ("organizations", "0001_initial"),
    ]

    operations = [
        migrations.CreateModel(
            name="UsageRecord",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("tenant_id", models.CharField(blank=True, db_index=True, max_length=100)),
                ("version", models.PositiveBigIntegerField(default=0)),
                (
                    "record_id",
                    models.CharField(default=apps.usage.models.generate_record_id, max_length=40, unique=True),
                ),
                ("metric_name", models.CharField(db_index=True, max_length=100)),
                ("metric_unit", models.CharField(default="count", max_length=50)),
                ("metric_category", models.CharField(blank=True, max_length=50)),
                ("quantity", models.DecimalField(decimal_places=4, max_digits=20)),
                ("previous_quantity", models.DecimalField(decimal_places=4, default=0, max_digits=20)),
                ("delta", models.DecimalField(decimal_places=4, default=0, max_digits=20)),
                (
                    "aggregation_type",
                    models.CharField(
                        choices=[("sum", "Sum"), ("max", "Max"), ("avg", "Average"), ("last", "Last")],
                        default="sum",
                        max_length=10,
                    ),
                ),
                ("period_start", models.DateTimeField(db_index=True)),
                ("period_end", models.DateTimeField()),
                (
                    "period_granularity",
                    models.CharField(blank=True, choices=GRANULARITY_CHOICES, max_length=10),
                ),
                ("resource_type", models.CharField(blank=True, max_length=100)),
                ("resource_id", models.CharField(blank=True, max_length=255)),
                ("resource_name", models.CharField(blank=True, max_length=255)),
                (
                    "source",
                    models.CharField(
                        choices=[
                            ("api", "API"),
                            ("agent", "Agent"),
                            ("import", "Import"),
                            ("calculated", "Calculated"),
                        ],
                        default="api",
                        max_length=20,
                    ),
                ),
                (
                    "billing_status",
                    models.CharField(
                        choices=[
                            ("unbilled", "Unbilled"),
                            ("billed", "Billed"),
                            ("invoiced", "Invoiced"),
                            ("disputed", "Disputed"),
                            ("waived", "Waived"),
                            ("credited", "Credited"),
                        ],
                        db_index=True,
                        default="unbilled",
                        max_length=20,
                    ),
                ),
                ("line_item_id", models.CharField(blank=True, max_length=100)),
                ("rate_amount", models.DecimalField(blank=True, decimal_places=4, max_digits=14, null=True)),
                ("rate_per", models.DecimalField(decimal_places=4, default=1, max_digits=16)),
                ("rate_minimum", models.DecimalField(blank=True, decimal_places=2, max_digits=14, null=True)),
                ("rate_currency", models.CharField(default="USD", max_length=3)),
                (
                    "discount_percentage",
                    models.DecimalField(blank=True, decimal_places=3, max_digits=6, null=True),
                ),
                ("discount_amount", models.DecimalField(blank=True, decimal_places=2, max_digits=14, null=True)),
                (
                    "included_allowance",
                    models.DecimalField(blank=True, decimal_places=4, max_digits=20, null=True),
                ),
                (
                    "included_remaining",
                    models.DecimalField(blank=True, decimal_places=4, max_digits=20, null=True),
                ),
                ("is_included", models.BooleanField(default=False)),
                ("cost_calculated", models.DecimalField(decimal_places=2, default=0, max_digits=14)),
                ("cost_adjusted", models.DecimalField(blank=True, decimal_places=2, max_digits=14, null=True)),
                ("cost_final", models.DecimalField(decimal_places=2, default=0, max_digits=14)),
                (
                    "validation_status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("valid", "Valid"),
                            ("invalid", "Invalid"),
                            ("anomaly", "Anomaly"),
                            ("disputed", "Disputed"),
                        ],
                        db_index=True,
                        default="pending",
                        max_length=20,
                    ),
                ),
                ("range_min", models.DecimalField(blank=True, decimal_places=4, max_digits=20, null=True)),
                ("range_max", models.DecimalField(blank=True, decimal_places=4, max_digits=20, null=True)),
                ("range_passed", models.BooleanField(null=True)),
                ("max_delta", models.DecimalField(blank=True, decimal_places=4, max_digits=20, null=True)),
                ("actual_delta", models.DecimalField(blank=True, decimal_places=4, max_digits=20, null=True)),
                ("delta_passed", models.BooleanField(null=True)),
                ("anomaly_detected", models.BooleanField(default=False)),
                ("anomaly_score", models.DecimalField(blank=True, decimal_places=2, max_digits=6, null=True)),
                ("anomaly_reason", models.CharField(blank=True, max_length=255)),
                (
                    "anomaly_baseline",
                    models.DecimalField(blank=True, decimal_places=4, max_digits=20, null=True),
                ),
                (
                    "anomaly_deviation",
                    models.DecimalField(blank=True, decimal_places=4, max_digits=20, null=True),
                ),
                ("reviewed_at", models.DateTimeField(blank=True, null=True)),
                ("reviewed_by", models.CharField(blank=True, max_length=255)),
                ("soft_limit", models.DecimalField(blank=True, decimal_places=4, max_digits=20, null=True)),
                ("hard_limit", models.DecimalField(blank=True, decimal_places=4, max_digits=20, null=True)),
                ("soft_limit_exceeded", models.BooleanField(default=False)),
                ("hard_limit_exceeded", models.BooleanField(default=False)),
                ("limit_exceeded_at", models.DateTimeField(blank=True, null=True)),
                ("is_aggregate", models.BooleanField(db_index=True, default=False)),
                ("rollup_level", models.CharField(blank=True, choices=GRANULARITY_CHOICES, max_length=10)),
                ("stats", models.JSONField(blank=True, default=dict)),
                ("aggregated_at", models.DateTimeField(blank=True, null=True)),
                (
                    "organization",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="usagerecord_set",
                        to="organizations.organization",
                    ),
                ),
                (
                    "subscription",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="usage_records",
                        to="billing.subscription",
                    ),
                ),
                (
                    "invoice",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="usage_records",
                        to="invoices.invoice",
                    ),
                ),
                (
                    "duplicate_of",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="+",
                        to="usage.usagerecord",
                    ),
                ),
                (
                    "parent",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="children",
                        to="usage.usagerecord",
                    ),
                ),
            ],
            options={
                "ordering": ["period_start", "id"],
                "indexes": [
                    models.Index(
                        fields=["organization", "metric_name", "period_start"], name="usage_usage_organiz_740a21_idx"
                    ),
                    models.Index(
                        fields=["organization", "billing_status", "validation_status"],
                        name="usage_usage_organiz_ea2c77_idx",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="UsageNote",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                (
                    "note_type",
                    models.CharField(
                        choices=[
                            ("dispute", "Dispute"),
                            ("adjustment", "Adjustment"),
                            ("waiver", "Waiver"),
                            ("review", "Review"),
                        ],
                        max_length=20,
                    ),
                ),
                ("content", models.TextField()),
                ("added_by", models.CharField(blank=True, max_length=255)),
                ("added_at", models.DateTimeField()),
                (
                    "record",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="notes",
                        to="usage.usagerecord",
                    ),
                ),
            ],
            options={
                "ordering": ["added_at", "id"],
            },
        ),
    ]
