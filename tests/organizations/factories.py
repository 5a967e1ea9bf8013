"""
Factories for organizations app models.

Used in tests to create test data.
"""

import factory
from factory.django import DjangoModelFactory

from apps.organizations.models import Organization


class OrganizationFactory(DjangoModelFactory):
    """Factory for Organization model with a filled-in billing profile."""

    class Meta:
        model = Organization

    tenant_id = factory.Sequence(lambda n: f"tnt_test_{n}")
    name = factory.Faker("company")
    slug = factory.Sequence(lambda n: f"org-{n}")
    billing_contact_name = "Ada Billing"
    billing_email = "billing@acme.test"
    billing_address_line1 = "1 Market Street"
    billing_city = "San Francisco"
    billing_postal_code = "94105"
    billing_country = "US"
    currency = "USD"
