"""
Tests for invoice API endpoints.
"""

import json
from decimal import Decimal

import pytest
from django.test import Client
from django.utils import timezone

from apps.invoices.models import Invoice
from apps.usage.models import UsageRecord
from tests.billing.factories import SubscriptionFactory
from tests.invoices.factories import make_invoice
from tests.organizations.factories import OrganizationFactory
from tests.usage.factories import UsageRecordFactory

BASE = "/api/v1/invoices"


def post_json(client: Client, url: str, payload: dict | None = None):
    return client.post(url, data=json.dumps(payload or {}), content_type="application/json")


def invoice_url(invoice: Invoice, action: str = "") -> str:
    url = f"{BASE}/organizations/{invoice.organization_id}/invoices/{invoice.pk}"
    return f"{url}/{action}" if action else url


@pytest.mark.django_db
class TestCreateAndRead:
    """Tests for creating, listing and fetching invoices."""

    def test_requires_token(self, organization) -> None:
        """Should reject unauthenticated requests."""
        response = Client().get(f"{BASE}/organizations/{organization.pk}/invoices")

        assert response.status_code == 401

    def test_create_invoice(self, api_client: Client, organization) -> None:
        """Should create a draft with computed totals and line items."""
        response = post_json(
            api_client,
            f"{BASE}/organizations/{organization.pk}/invoices",
            {
                "line_items": [
                    {"description": "Pro plan", "unit_price": "100.00", "tax_rate": "8"},
                    {"description": "Onboarding", "item_type": "setup", "unit_price": "50.00", "taxable": False},
                ],
                "terms": "net_15",
            },
        )

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "draft"
        assert body["number"].startswith("INV-")
        assert Decimal(body["subtotal"]) == Decimal("150.00")
        assert Decimal(body["tax_total"]) == Decimal("8.00")
        assert Decimal(body["total"]) == Decimal("158.00")
        assert Decimal(body["amount_due"]) == Decimal("158.00")
        assert [line["position"] for line in body["line_items"]] == [1, 2]
        assert body["customer"]["email"] == "billing@acme.test"
        assert body["subscription_id"] is None

    def test_create_for_subscription(self, api_client: Client) -> None:
        """Should link the invoice to the subscription."""
        sub = SubscriptionFactory.create()

        response = post_json(
            api_client,
            f"{BASE}/organizations/{sub.organization_id}/invoices",
            {"line_items": [{"description": "Plan", "unit_price": "30.00"}], "subscription_id": sub.subscription_id},
        )

        assert response.status_code == 201
        assert response.json()["subscription_id"] == sub.subscription_id

    def test_create_without_line_items(self, api_client: Client, organization) -> None:
        """Should return 400 NO_LINE_ITEMS."""
        response = post_json(api_client, f"{BASE}/organizations/{organization.pk}/invoices", {"line_items": []})

        assert response.status_code == 400
        assert response.json()["code"] == "NO_LINE_ITEMS"

    def test_list_invoices(self, api_client: Client, organization) -> None:
        """Should filter by status and report the total count."""
        make_invoice(organization)
        make_invoice(organization)
        make_invoice(OrganizationFactory.create())

        response = api_client.get(f"{BASE}/organizations/{organization.pk}/invoices?status=draft&limit=1")

        assert response.status_code == 200
        assert response.json()["total"] == 2
        assert len(response.json()["items"]) == 1

    def test_get_other_organizations_invoice(self, api_client: Client, organization) -> None:
        """Should return 404 for an invoice of another organization."""
        invoice = make_invoice(OrganizationFactory.create())

        response = api_client.get(f"{BASE}/organizations/{organization.pk}/invoices/{invoice.pk}")

        assert response.status_code == 404
        assert response.json()["code"] == "INVOICE_NOT_FOUND"


@pytest.mark.django_db
class TestInvoiceActions:
    """Tests for invoice state-changing endpoints."""

    def test_line_item_edits(self, api_client: Client, organization) -> None:
        """Should add and remove lines while the invoice is a draft."""
        invoice = make_invoice(organization)

        added = post_json(api_client, invoice_url(invoice, "line-items"), {"description": "Setup", "unit_price": "20"})
        line_id = added.json()["line_items"][-1]["id"]
        removed = api_client.delete(invoice_url(invoice, f"line-items/{line_id}"))

        assert Decimal(added.json()["total"]) == Decimal("120.00")
        assert Decimal(removed.json()["total"]) == Decimal("100.00")

    def test_send_marks_usage_invoiced(self, api_client: Client, organization) -> None:
        """Should send the invoice and move its billed usage to invoiced."""
        invoice = make_invoice(organization, now=timezone.now())
        record = UsageRecordFactory.create(
            organization=organization,
            billing_status=UsageRecord.BillingStatus.BILLED,
            invoice=invoice,
        )

        response = post_json(api_client, invoice_url(invoice, "send"), {"method": "email"})

        assert response.status_code == 200
        assert response.json()["status"] == "sent"
        assert response.json()["send_count"] == 1
        record.refresh_from_db()
        assert record.billing_status == UsageRecord.BillingStatus.INVOICED

    def test_sent_invoice_cannot_be_edited(self, api_client: Client, organization) -> None:
        """Should return 409 INVALID_STATUS."""
        invoice = make_invoice(organization)
        post_json(api_client, invoice_url(invoice, "send"))

        response = post_json(api_client, invoice_url(invoice, "line-items"), {"description": "x", "unit_price": "1"})

        assert response.status_code == 409
        assert response.json()["code"] == "INVALID_STATUS"

    def test_payments(self, api_client: Client, organization) -> None:
        """Should take partial payment and reject overpayment with its details."""
        invoice = make_invoice(organization)

        partial = post_json(api_client, invoice_url(invoice, "payments"), {"amount": "60.00", "method": "card"})
        excess = post_json(api_client, invoice_url(invoice, "payments"), {"amount": "50.00"})

        assert partial.json()["status"] == "partial"
        assert Decimal(partial.json()["amount_due"]) == Decimal("40.00")
        assert excess.status_code == 409
        assert excess.json()["code"] == "EXCESS_PAYMENT"
        assert excess.json()["details"] == {"amount": "50.00", "amount_due": "40.00"}

    def test_payment_with_stale_version(self, api_client: Client, organization) -> None:
        """Should return 503 CONCURRENT_MODIFICATION."""
        invoice = make_invoice(organization)

        response = post_json(
            api_client,
            invoice_url(invoice, "payments"),
            {"amount": "10.00", "expected_version": invoice.version + 1},
        )

        assert response.status_code == 503
        assert response.json()["code"] == "CONCURRENT_MODIFICATION"

    def test_apply_credit(self, api_client: Client, organization) -> None:
        """Should report the applied and unused credit."""
        invoice = make_invoice(organization)

        response = post_json(
            api_client,
            invoice_url(invoice, "credits"),
            {"amount": "150.00", "credit_transaction_id": "ct_1"},
        )

        assert response.status_code == 200
        assert Decimal(response.json()["applied"]) == Decimal("100.00")
        assert Decimal(response.json()["remaining"]) == Decimal("50.00")

    def test_void(self, api_client: Client, organization) -> None:
        """Should void an unpaid invoice once."""
        invoice = make_invoice(organization)

        first = post_json(api_client, invoice_url(invoice, "void"), {"reason": "duplicate"})
        second = post_json(api_client, invoice_url(invoice, "void"), {"reason": "duplicate"})

        assert first.json()["status"] == "void"
        assert first.json()["voided_at"] is not None
        assert second.status_code == 409
        assert second.json()["code"] == "ALREADY_VOID"

    def test_refund_and_dispute(self, api_client: Client, organization) -> None:
        """Should refund part of a payment and then flag a dispute."""
        invoice = make_invoice(organization)
        post_json(api_client, invoice_url(invoice, "payments"), {"amount": "100.00"})

        refunded = post_json(api_client, invoice_url(invoice, "refunds"), {"amount": "25.00", "reason": "goodwill"})
        disputed = post_json(api_client, invoice_url(invoice, "dispute"), {"reason": "fraudulent"})

        assert refunded.json()["status"] == "partial"
        assert Decimal(refunded.json()["amount_refunded"]) == Decimal("25.00")
        assert refunded.json()["line_items"][-1]["is_refund"] is True
        assert disputed.json()["status"] == "disputed"

    def test_reminder_and_export(self, api_client: Client, organization) -> None:
        """Should send a reminder and export once."""
        invoice = make_invoice(organization)
        post_json(api_client, invoice_url(invoice, "send"))

        reminder = post_json(api_client, invoice_url(invoice, "reminders"))
        exported = post_json(api_client, invoice_url(invoice, "export"), {"system": "xero", "reference": "X-1"})
        again = post_json(api_client, invoice_url(invoice, "export"), {"system": "xero", "reference": "X-2"})

        assert reminder.json()["send_count"] == 2
        assert exported.json()["accounting_reference"] == "X-1"
        assert again.status_code == 409
        assert again.json()["code"] == "ALREADY_EXPORTED"
