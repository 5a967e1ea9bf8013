from django.db import migrations, models


class Migration(migrations.Migration):
    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="Organization",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                (
                    "tenant_id",
                    models.CharField(
                        db_index=True,
                        help_text="Owning tenant, e.g. 'tnt_acme'. Invoice numbers are sequenced per tenant.",
                        max_length=100,
                    ),
                ),
                ("name", models.CharField(max_length=255)),
                (
                    "slug",
                    models.SlugField(help_text="URL-safe identifier, e.g. 'acme-corp'", max_length=255, unique=True),
                ),
                ("display_name", models.CharField(blank=True, max_length=255)),
                ("billing_contact_name", models.CharField(blank=True, max_length=255)),
                ("billing_email", models.EmailField(blank=True, max_length=254)),
                ("billing_phone", models.CharField(blank=True, max_length=50)),
                ("billing_address_line1", models.CharField(blank=True, max_length=255)),
                ("billing_address_line2", models.CharField(blank=True, max_length=255)),
                ("billing_city", models.CharField(blank=True, max_length=100)),
                ("billing_state", models.CharField(blank=True, max_length=100)),
                ("billing_postal_code", models.CharField(blank=True, max_length=20)),
                (
                    "billing_country",
                    models.CharField(blank=True, help_text="ISO 3166-1 alpha-2 country code", max_length=2),
                ),
                ("tax_id", models.CharField(blank=True, max_length=50)),
                ("vat_id", models.CharField(blank=True, max_length=50)),
                ("currency", models.CharField(default="USD", max_length=3)),
                (
                    "billing_policy_overrides",
                    models.JSONField(
                        blank=True,
                        default=dict,
                        help_text=(
                            "Per-tenant overrides of billing policy defaults, e.g. {'past_due_after_failures': 4}"
                        ),
                    ),
                ),
                (
                    "stripe_customer_id",
                    models.CharField(
                        blank=True, db_index=True, help_text="Stripe customer ID, e.g. 'cus_xxx'", max_length=255
                    ),
                ),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "ordering": ["-created_at"],
            },
        ),
    ]
