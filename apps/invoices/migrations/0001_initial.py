import django.db.models.deletion
from django.db import migrations, models


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        ("billing", "0001_initial"),
        ("organizations", "0001_initial"),
    ]

    operations = [
        migrations.CreateModel(
            name="Invoice",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("tenant_id", models.CharField(blank=True, db_index=True, max_length=100)),
                ("version", models.PositiveBigIntegerField(default=0)),
                (
                    "number",
                    models.CharField(help_text="PREFIX-YYYYMM-NNNN, sequential per tenant and month", max_length=50),
                ),
                (
                    "invoice_type",
                    models.CharField(
                        choices=[
                            ("subscription", "Subscription"),
                            ("one-time", "One-time"),
                            ("usage", "Usage"),
                            ("credit", "Credit"),
                            ("refund", "Refund"),
                            ("adjustment", "Adjustment"),
                        ],
                        default="subscription",
                        max_length=20,
                    ),
                ),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("draft", "Draft"),
                            ("pending", "Pending"),
                            ("sent", "Sent"),
                            ("paid", "Paid"),
                            ("partial", "Partially Paid"),
                            ("overdue", "Overdue"),
                            ("void", "Void"),
                            ("uncollectible", "Uncollectible"),
                            ("refunded", "Refunded"),
                            ("disputed", "Disputed"),
                        ],
                        db_index=True,
                        default="draft",
                        max_length=20,
                    ),
                ),
                ("from_date", models.DateField(blank=True, null=True)),
                ("to_date", models.DateField(blank=True, null=True)),
                ("issue_date", models.DateField()),
                ("due_date", models.DateField(db_index=True)),
                (
                    "terms",
                    models.CharField(
                        choices=[
                            ("due_on_receipt", "Due on receipt"),
                            ("net_7", "Net 7"),
                            ("net_15", "Net 15"),
                            ("net_30", "Net 30"),
                            ("net_45", "Net 45"),
                            ("net_60", "Net 60"),
                            ("custom", "Custom"),
                        ],
                        default="net_30",
                        max_length=20,
                    ),
                ),
                ("customer", models.JSONField(default=dict, help_text="Billing profile snapshot taken at creation")),
                ("currency", models.CharField(default="USD", max_length=3)),
                ("subtotal", models.DecimalField(decimal_places=2, default=0, max_digits=14)),
                ("discount_total", models.DecimalField(decimal_places=2, default=0, max_digits=14)),
                ("tax_total", models.DecimalField(decimal_places=2, default=0, max_digits=14)),
                ("total", models.DecimalField(decimal_places=2, default=0, max_digits=14)),
                ("amount_paid", models.DecimalField(decimal_places=2, default=0, max_digits=14)),
                ("amount_due", models.DecimalField(decimal_places=2, default=0, max_digits=14)),
                ("credits_applied", models.DecimalField(decimal_places=2, default=0, max_digits=14)),
                ("amount_refunded", models.DecimalField(decimal_places=2, default=0, max_digits=14)),
                ("send_count", models.PositiveIntegerField(default=0)),
                ("last_sent_at", models.DateTimeField(blank=True, null=True)),
                ("reminders_enabled", models.BooleanField(default=True)),
                ("voided_at", models.DateTimeField(blank=True, null=True)),
                ("void_reason", models.CharField(blank=True, max_length=500)),
                ("disputed_at", models.DateTimeField(blank=True, null=True)),
                ("dispute_reason", models.CharField(blank=True, max_length=500)),
                ("exported_at", models.DateTimeField(blank=True, null=True)),
                ("accounting_system", models.CharField(blank=True, max_length=100)),
                ("accounting_reference", models.CharField(blank=True, max_length=255)),
                ("journal_entries", models.JSONField(blank=True, default=list)),
                ("notes", models.TextField(blank=True)),
                (
                    "organization",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="invoice_set",
                        to="organizations.organization",
                    ),
                ),
                (
                    "subscription",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="invoices",
                        to="billing.subscription",
                    ),
                ),
            ],
            options={
                "ordering": ["-issue_date", "-number"],
                "indexes": [
                    models.Index(fields=["organization", "status"], name="invoices_in_organiz_01efe4_idx"),
                    models.Index(fields=["status", "due_date"], name="invoices_in_status_041490_idx"),
                ],
                "constraints": [
                    models.UniqueConstraint(fields=("tenant_id", "number"), name="unique_invoice_number_per_tenant")
                ],
            },
        ),
        migrations.CreateModel(
            name="CreditApplication",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("credit_transaction_id", models.CharField(max_length=255)),
                ("amount", models.DecimalField(decimal_places=2, max_digits=14)),
                ("applied_at", models.DateTimeField()),
                (
                    "invoice",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="credit_applications",
                        to="invoices.invoice",
                    ),
                ),
            ],
            options={
                "ordering": ["applied_at", "id"],
            },
        ),
        migrations.CreateModel(
            name="InvoiceDelivery",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                (
                    "kind",
                    models.CharField(
                        choices=[("sent", "Sent"), ("reminder", "Reminder")], default="sent", max_length=20
                    ),
                ),
                ("method", models.CharField(default="email", max_length=50)),
                ("recipient", models.EmailField(blank=True, max_length=254)),
                ("days_until_due", models.IntegerField(blank=True, null=True)),
                ("sent_at", models.DateTimeField()),
                (
                    "invoice",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="deliveries",
                        to="invoices.invoice",
                    ),
                ),
            ],
            options={
                "verbose_name_plural": "invoice deliveries",
                "ordering": ["sent_at", "id"],
            },
        ),
        migrations.CreateModel(
            name="InvoiceLineItem",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("position", models.PositiveIntegerField(default=0)),
                (
                    "item_type",
                    models.CharField(
                        choices=[
                            ("subscription", "Subscription"),
                            ("addon", "Add-on"),
                            ("usage", "Usage"),
                            ("setup", "Setup"),
                            ("discount", "Discount"),
                            ("credit", "Credit"),
                            ("tax", "Tax"),
                            ("adjustment", "Adjustment"),
                        ],
                        default="subscription",
                        max_length=20,
                    ),
                ),
                ("description", models.CharField(max_length=500)),
                ("quantity", models.DecimalField(decimal_places=4, default=1, max_digits=16)),
                ("unit_price", models.DecimalField(decimal_places=2, max_digits=14)),
                ("amount", models.DecimalField(decimal_places=2, default=0, max_digits=14)),
                (
                    "discount_type",
                    models.CharField(
                        blank=True,
                        choices=[("percentage", "Percentage"), ("fixed", "Fixed")],
                        max_length=20,
                    ),
                ),
                ("discount_value", models.DecimalField(decimal_places=2, default=0, max_digits=14)),
                ("discount_amount", models.DecimalField(decimal_places=2, default=0, max_digits=14)),
                ("tax_rate", models.DecimalField(decimal_places=3, default=0, max_digits=6)),
                ("tax_amount", models.DecimalField(decimal_places=2, default=0, max_digits=14)),
                ("taxable", models.BooleanField(default=True)),
                ("metadata", models.JSONField(blank=True, default=dict)),
                ("is_refund", models.BooleanField(default=False)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "invoice",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="line_items",
                        to="invoices.invoice",
                    ),
                ),
            ],
            options={
                "ordering": ["position", "id"],
            },
        ),
        migrations.CreateModel(
            name="PaymentTransaction",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                (
                    "kind",
                    models.CharField(
                        choices=[("payment", "Payment"), ("refund", "Refund")], default="payment", max_length=20
                    ),
                ),
                ("payment_id", models.CharField(blank=True, help_text="Gateway payment ID", max_length=255)),
                ("amount", models.DecimalField(decimal_places=2, max_digits=14)),
                ("currency", models.CharField(max_length=3)),
                ("method", models.CharField(blank=True, max_length=50)),
                ("reference", models.CharField(blank=True, max_length=255)),
                ("reason", models.CharField(blank=True, max_length=500)),
                ("status", models.CharField(default="succeeded", max_length=20)),
                ("processed_at", models.DateTimeField()),
                (
                    "invoice",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="transactions",
                        to="invoices.invoice",
                    ),
                ),
            ],
            options={
                "ordering": ["processed_at", "id"],
            },
        ),
    ]
