"""
Organizations models - multi-tenancy foundation and billing profile.
"""

from django.db import models


class Organization(models.Model):
    """
    Customer organization.

    Holds the billing profile that invoices snapshot at creation time.
    Identity and membership are owned by the tenant registry upstream;
    this model only carries what billing needs.
    """

    tenant_id = models.CharField(
        max_length=100,
        db_index=True,
        help_text="Owning tenant, e.g. 'tnt_acme'. Invoice numbers are sequenced per tenant.",
    )
    name = models.CharField(max_length=255)
    slug = models.SlugField(
        max_length=255,
        unique=True,
        help_text="URL-safe identifier, e.g. 'acme-corp'",
    )
    display_name = models.CharField(max_length=255, blank=True)

    # Billing contact
    billing_contact_name = models.CharField(max_length=255, blank=True)
    billing_email = models.EmailField(blank=True)
    billing_phone = models.CharField(max_length=50, blank=True)

    # Billing address
    billing_address_line1 = models.CharField(max_length=255, blank=True)
    billing_address_line2 = models.CharField(max_length=255, blank=True)
    billing_city = models.CharField(max_length=100, blank=True)
    billing_state = models.CharField(max_length=100, blank=True)
    billing_postal_code = models.CharField(max_length=20, blank=True)
    billing_country = models.CharField(
        max_length=2,
        blank=True,
        help_text="ISO 3166-1 alpha-2 country code",
    )

    tax_id = models.CharField(max_length=50, blank=True)
    vat_id = models.CharField(max_length=50, blank=True)
    currency = models.CharField(max_length=3, default="USD")

    billing_policy_overrides = models.JSONField(
        default=dict,
        blank=True,
        help_text="Per-tenant overrides of billing policy defaults, e.g. {'past_due_after_failures': 4}",
    )

    stripe_customer_id = models.CharField(
        max_length=255,
        blank=True,
        db_index=True,
        help_text="Stripe customer ID, e.g. 'cus_xxx'",
    )

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]

    def __str__(self) -> str:
        return self.display_name or self.name

    def billing_snapshot(self) -> dict:
        """Customer info captured into an invoice. Never updated afterwards."""
        return {
            "organization_name": self.display_name or self.name,
            "contact_name": self.billing_contact_name,
            "email": self.billing_email,
            "phone": self.billing_phone,
            "address": {
                "line1": self.billing_address_line1,
                "line2": self.billing_address_line2,
                "city": self.billing_city,
                "state": self.billing_state,
                "postal_code": self.billing_postal_code,
                "country": self.billing_country,
            },
            "tax_id": self.tax_id,
            "vat_id": self.vat_id,
        }
