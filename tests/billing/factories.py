"""
Factories for billing app models.

Used in tests to create test data.
"""

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import factory
from factory.django import DjangoModelFactory

from apps.billing.models import Plan, Subscription
from tests.organizations.factories import OrganizationFactory

PERIOD_START = datetime(2024, 3, 1, tzinfo=UTC)


class PlanFactory(DjangoModelFactory):
    """Factory for Plan model. Monthly, 30.00 USD, no trial."""

    class Meta:
        model = Plan

    name = factory.Sequence(lambda n: f"Plan {n}")
    slug = factory.Sequence(lambda n: f"plan-{n}")
    status = Plan.Status.ACTIVE
    amount = Decimal("30.00")
    currency = "USD"
    interval = "monthly"
    interval_count = 1
    trial_days = 0
    feature_limits = factory.LazyFunction(lambda: {"seats": 10, "projects": -1})


class SubscriptionFactory(DjangoModelFactory):
    """
    Factory for an active Subscription with a 30-day current period.

    Pass period_start to move the period; the end follows it.
    """

    class Meta:
        model = Subscription

    class Params:
        period_start = PERIOD_START

    organization = factory.SubFactory(OrganizationFactory)
    tenant_id = factory.SelfAttribute("organization.tenant_id")
    plan = factory.SubFactory(PlanFactory)
    billing_amount = factory.SelfAttribute("plan.amount")
    billing_currency = factory.SelfAttribute("plan.currency")
    billing_interval = factory.SelfAttribute("plan.interval")
    billing_interval_count = factory.SelfAttribute("plan.interval_count")
    state = Subscription.State.ACTIVE
    payment_method_id = "pm_test_card"
    current_period_start = factory.SelfAttribute("period_start")
    current_period_end = factory.LazyAttribute(lambda o: o.period_start + timedelta(days=30))
    current_period_amount = factory.SelfAttribute("plan.amount")
    next_renewal_date = factory.LazyAttribute(lambda o: o.period_start + timedelta(days=30))
