"""
Shared pytest fixtures for all tests.

This module provides common fixtures used across multiple test modules.
Individual test modules can override these fixtures if needed.

Factories
---------
Import factories directly from their modules:

    from tests.organizations.factories import OrganizationFactory
    from tests.billing.factories import PlanFactory, SubscriptionFactory
    from tests.invoices.factories import make_invoice
    from tests.usage.factories import UsageRecordFactory

Example usage:

    @pytest.mark.django_db
    def test_something(now):
        org = OrganizationFactory.create(tenant_id="tnt_acme")
        sub = SubscriptionFactory.create(organization=org, period_start=now)
"""

from datetime import UTC, datetime

import pytest
from django.test import Client, RequestFactory

from apps.core.logging import clear_contextvars

API_TOKEN = "test-token"


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Context bound by one test must not leak into the next."""
    yield
    clear_contextvars()


@pytest.fixture
def now() -> datetime:
    """
    Fixed reference time for time-dependent billing logic.

    Services take an explicit `now`; pass this fixture instead of relying on
    the wall clock.
    """
    return datetime(2024, 3, 15, 12, 0, tzinfo=UTC)


@pytest.fixture
def request_factory() -> RequestFactory:
    """
    Django request factory for unit testing views.

    Use this when you need to call an endpoint function directly without going
    through the full HTTP stack.
    """
    return RequestFactory()


@pytest.fixture
def api_client() -> Client:
    """
    Django test client that sends a bearer token with every request.

    Example:
        def test_api_returns_200(api_client):
            response = api_client.get("/api/v1/health")
            assert response.status_code == 200
    """
    return Client(HTTP_AUTHORIZATION=f"Bearer {API_TOKEN}", HTTP_X_ACTOR_ID="usr_test")


@pytest.fixture
def organization(db):
    """
    Create an organization with a complete billing profile.

    Example:
        def test_invoice_snapshot(organization):
            assert organization.billing_email == "billing@acme.test"
    """
    from tests.organizations.factories import OrganizationFactory

    return OrganizationFactory.create()
