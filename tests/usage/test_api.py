"""
Tests for usage API endpoints.
"""

import json
from decimal import Decimal

import pytest
from django.test import Client

from apps.usage.models import UsageRecord
from tests.billing.factories import PlanFactory, SubscriptionFactory

from .factories import UsageRecordFactory

BASE = "/api/v1/usage"


def post_json(client: Client, url: str, payload: dict | None = None):
    return client.post(url, data=json.dumps(payload or {}), content_type="application/json")


def usage_url(organization, path: str = "") -> str:
    url = f"{BASE}/organizations/{organization.pk}/usage"
    return f"{url}/{path}" if path else url


@pytest.fixture
def metered(organization):
    plan = PlanFactory.create(overage_rates={"api_calls": {"amount": "0.50", "per": 1000}})
    SubscriptionFactory.create(organization=organization, plan=plan)
    return organization


@pytest.mark.django_db
class TestRecordUsageEndpoint:
    """Tests for POST /usage."""

    def test_records_usage(self, api_client: Client, metered) -> None:
        """Should price the record against the active plan."""
        response = post_json(
            api_client,
            usage_url(metered),
            {
                "metric": "api_calls",
                "quantity": "4000",
                "resource": {"type": "project", "id": "p1"},
                "period_start": "2024-03-10T00:00:00Z",
                "period_end": "2024-03-10T01:00:00Z",
            },
        )

        assert response.status_code == 201
        body = response.json()
        assert body["record_id"].startswith("usg_")
        assert body["validation_status"] == "valid"
        assert Decimal(body["cost_final"]) == Decimal("2.00")
        assert body["resource_id"] == "p1"
        assert body["subscription_id"] is not None

    def test_unmetered_metric_returns_409(self, api_client: Client, metered) -> None:
        """Should reject metrics the plan does not meter."""
        response = post_json(api_client, usage_url(metered), {"metric": "bandwidth", "quantity": "1"})

        assert response.status_code == 409
        assert response.json()["code"] == "INVALID_METRIC"

    def test_negative_quantity_returns_400(self, api_client: Client, metered) -> None:
        """Should reject negative quantities."""
        response = post_json(api_client, usage_url(metered), {"metric": "api_calls", "quantity": "-5"})

        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_QUANTITY"


@pytest.mark.django_db
class TestRecordEndpoints:
    """Tests for per-record billing-status endpoints."""

    def test_get_record(self, api_client: Client, organization) -> None:
        """Should fetch a record by its public id."""
        record = UsageRecordFactory.create(organization=organization)

        response = api_client.get(usage_url(organization, f"records/{record.record_id}"))

        assert response.status_code == 200
        assert response.json()["record_id"] == record.record_id

    def test_unknown_record_returns_404(self, api_client: Client, organization) -> None:
        """Should return USAGE_RECORD_NOT_FOUND."""
        response = api_client.get(usage_url(organization, "records/usg_missing"))

        assert response.status_code == 404
        assert response.json()["code"] == "USAGE_RECORD_NOT_FOUND"

    def test_dispute_and_waive(self, api_client: Client, organization) -> None:
        """Should dispute billed usage and then waive it."""
        record = UsageRecordFactory.create(organization=organization, billing_status=UsageRecord.BillingStatus.BILLED)
        path = f"records/{record.record_id}"

        disputed = post_json(api_client, usage_url(organization, f"{path}/dispute"), {"reason": "double count"})
        waived = post_json(api_client, usage_url(organization, f"{path}/waive"), {"reason": "agreed"})

        assert disputed.json()["billing_status"] == "disputed"
        assert waived.json()["billing_status"] == "waived"
        assert Decimal(waived.json()["cost_final"]) == Decimal("0.00")
        assert record.notes.first().added_by == "usr_test"

    def test_dispute_unbilled_returns_409(self, api_client: Client, organization) -> None:
        """Should return NOT_BILLED."""
        record = UsageRecordFactory.create(organization=organization)

        response = post_json(
            api_client,
            usage_url(organization, f"records/{record.record_id}/dispute"),
            {"reason": "why"},
        )

        assert response.status_code == 409
        assert response.json()["code"] == "NOT_BILLED"

    def test_adjust_and_review(self, api_client: Client, organization) -> None:
        """Should adjust the cost and approve a flagged record."""
        record = UsageRecordFactory.create(
            organization=organization,
            validation_status=UsageRecord.ValidationStatus.ANOMALY,
        )
        path = f"records/{record.record_id}"

        adjusted = post_json(api_client, usage_url(organization, f"{path}/adjust"), {"cost": "3.30", "reason": "deal"})
        reviewed = post_json(api_client, usage_url(organization, f"{path}/review"), {"approve": True})

        assert Decimal(adjusted.json()["cost_final"]) == Decimal("3.30")
        assert reviewed.json()["validation_status"] == "valid"


@pytest.mark.django_db
class TestQueryEndpoints:
    """Tests for summaries, reports and sweeps exposed over the API."""

    def test_summary_and_unbilled(self, api_client: Client, organization) -> None:
        """Should report totals and unbilled usage."""
        UsageRecordFactory.create(organization=organization, cost_calculated=Decimal("1.50"))
        UsageRecordFactory.create(organization=organization, cost_calculated=Decimal("2.50"))

        summary = api_client.get(usage_url(organization, "summary?metric=api_calls"))
        unbilled = api_client.get(usage_url(organization, "unbilled"))

        assert summary.status_code == 200
        assert summary.json()[0]["record_count"] == 2
        assert len(unbilled.json()["records"]) == 2
        assert unbilled.json()["summary"]["record_count"] == 2

    def test_billing_report(self, api_client: Client, organization) -> None:
        """Should build the monthly report."""
        UsageRecordFactory.create(organization=organization, cost_calculated=Decimal("1.50"))

        response = api_client.get(usage_url(organization, "report?month=3&year=2024"))

        assert response.status_code == 200
        assert response.json()["summary"]["total_records"] == 1

    def test_invalid_report_month(self, api_client: Client, organization) -> None:
        """Should return 400 for an impossible month."""
        response = api_client.get(usage_url(organization, "report?month=13&year=2024"))

        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_PERIOD"

    def test_aggregate(self, api_client: Client, organization) -> None:
        """Should roll records up into a daily aggregate."""
        UsageRecordFactory.create(organization=organization)
        UsageRecordFactory.create(organization=organization)

        response = post_json(
            api_client,
            usage_url(organization, "aggregate"),
            {"metric": "api_calls", "from_date": "2024-03-01T00:00:00Z", "to_date": "2024-03-31T00:00:00Z"},
        )

        assert response.status_code == 200
        assert len(response.json()) == 1
        assert response.json()[0]["is_aggregate"] is True
        assert Decimal(response.json()[0]["quantity"]) == Decimal("200")

    def test_detect_anomalies(self, api_client: Client, organization) -> None:
        """Should return nothing without enough history."""
        UsageRecordFactory.create(organization=organization)

        response = post_json(api_client, usage_url(organization, "anomalies"), {"metric": "api_calls"})

        assert response.status_code == 200
        assert response.json() == []
