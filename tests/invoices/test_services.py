"""
Tests for invoice services.
"""

from datetime import date, timedelta
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest
from django.db import DatabaseError

from apps.core.exceptions import (
    ConcurrencyConflict,
    DomainRuleViolation,
    NotFoundError,
    TransientError,
    ValidationError,
)
from apps.events.models import AuditLog, OutboxEvent
from apps.invoices import services
from apps.invoices.models import Invoice, InvoiceDelivery, InvoiceLineItem, PaymentTransaction
from tests.invoices.factories import ISSUED_AT, make_invoice
from tests.organizations.factories import OrganizationFactory

Status = Invoice.Status


class TestCalculateTotals:
    """Tests for calculate_totals."""

    def test_discounts_taxes_and_tax_lines(self) -> None:
        """Should discount before tax and count tax lines toward tax only."""
        items = [
            services.build_line_item(
                {
                    "description": "Seats",
                    "quantity": 2,
                    "unit_price": "50.00",
                    "discount_type": "percentage",
                    "discount_value": "10",
                    "tax_rate": "8",
                },
                1,
            ),
            services.build_line_item(
                {
                    "description": "Setup",
                    "item_type": "setup",
                    "unit_price": "30.00",
                    "discount_type": "fixed",
                    "discount_value": "5.00",
                    "taxable": False,
                    "tax_rate": "8",
                },
                2,
            ),
            services.build_line_item({"description": "State tax", "item_type": "tax", "unit_price": "5.00"}, 3),
            InvoiceLineItem(description="Refund", unit_price=Decimal("-10.00"), quantity=1, is_refund=True),
        ]

        totals = services.calculate_totals(items)

        assert totals.subtotal == Decimal("115.00")
        assert totals.discount_total == Decimal("15.00")
        assert totals.tax_total == Decimal("12.20")
        assert totals.total == Decimal("127.20")
        assert items[0].amount == Decimal("90.00")
        assert items[0].tax_amount == Decimal("7.20")
        assert items[1].amount == Decimal("25.00")
        assert items[1].tax_amount == Decimal("0.00")

    def test_rounds_half_up(self) -> None:
        """Should round half a cent up."""
        item = services.build_line_item({"description": "Calls", "quantity": "0.5", "unit_price": "0.25"}, 1)

        totals = services.calculate_totals([item])

        assert totals.total == Decimal("0.13")

    def test_empty(self) -> None:
        """Should be zero without lines."""
        assert services.calculate_totals([]).total == Decimal("0.00")


class TestBuildLineItem:
    """Tests for build_line_item validation."""

    @pytest.mark.parametrize(
        "data",
        [
            {"unit_price": "10.00"},
            {"description": "Plan"},
            {"description": "Plan", "unit_price": "10.00", "quantity": 0},
            {"description": "Plan", "unit_price": "10.00", "item_type": "bogus"},
            {"description": "Plan", "unit_price": "10.00", "discount_type": "bogus"},
            {"description": "Plan", "unit_price": "10.00", "tax_rate": "-1"},
        ],
    )
    def test_invalid_line_items(self, data: dict) -> None:
        """Should reject malformed lines."""
        with pytest.raises(ValidationError) as exc_info:
            services.build_line_item(data, 1)

        assert exc_info.value.code == "INVALID_LINE_ITEM"


class TestDeriveStatus:
    """Tests for derive_status."""

    def _invoice(self, **kwargs) -> Invoice:
        defaults = {
            "status": Status.SENT,
            "total": Decimal("100.00"),
            "amount_paid": Decimal("0.00"),
            "amount_due": Decimal("100.00"),
            "due_date": date(2024, 3, 1),
        }
        return Invoice(**{**defaults, **kwargs})

    def test_paid_when_nothing_due(self) -> None:
        """Should be paid once amount_due is zero."""
        invoice = self._invoice(amount_paid=Decimal("100.00"), amount_due=Decimal("0.00"))
        assert services.derive_status(invoice, date(2024, 3, 15)) == Status.PAID

    def test_partial_beats_overdue(self) -> None:
        """Should report partial even after the due date."""
        invoice = self._invoice(amount_paid=Decimal("40.00"), amount_due=Decimal("60.00"))
        assert services.derive_status(invoice, date(2024, 3, 15)) == Status.PARTIAL

    def test_overdue_only_when_sent(self) -> None:
        """Should only move sent invoices to overdue."""
        assert services.derive_status(self._invoice(), date(2024, 3, 15)) == Status.OVERDUE
        assert services.derive_status(self._invoice(status=Status.DRAFT), date(2024, 3, 15)) == Status.DRAFT
        assert services.derive_status(self._invoice(), date(2024, 3, 1)) == Status.SENT

    def test_explicit_statuses_kept(self) -> None:
        """Should never derive away from void, disputed, uncollectible or a fully refunded invoice."""
        for status in (Status.VOID, Status.REFUNDED, Status.DISPUTED, Status.UNCOLLECTIBLE):
            invoice = self._invoice(status=status, amount_due=Decimal("0.00"))
            assert services.derive_status(invoice, date(2024, 3, 15)) == status

    def test_refunded_invoice_paid_again(self) -> None:
        """Should derive paid or partial once money is paid on a refunded invoice."""
        paid = self._invoice(status=Status.REFUNDED, amount_paid=Decimal("100.00"), amount_due=Decimal("0.00"))
        partial = self._invoice(status=Status.REFUNDED, amount_paid=Decimal("40.00"), amount_due=Decimal("60.00"))

        assert services.derive_status(paid, date(2024, 3, 15)) == Status.PAID
        assert services.derive_status(partial, date(2024, 3, 15)) == Status.PARTIAL


class TestCalculateDueDate:
    """Tests for calculate_due_date."""

    @pytest.mark.parametrize(
        ("terms", "days"),
        [("due_on_receipt", 0), ("net_7", 7), ("net_15", 15), ("net_30", 30), ("net_60", 60), ("custom", 30)],
    )
    def test_term_days(self, terms: str, days: int) -> None:
        """Should add the term's days to the issue date."""
        assert services.calculate_due_date(date(2024, 3, 15), terms) == date(2024, 3, 15) + timedelta(days=days)


@pytest.mark.django_db
class TestGenerateInvoiceNumber:
    """Tests for per-tenant sequential numbering."""

    def test_sequence_per_tenant_and_month(self, organization) -> None:
        """Should count up within a tenant and month only."""
        first = make_invoice(organization)
        second = make_invoice(organization)
        other_tenant = make_invoice(OrganizationFactory.create())
        next_month = make_invoice(organization, now=ISSUED_AT + timedelta(days=20))

        assert first.number == "INV-202403-0001"
        assert second.number == "INV-202403-0002"
        assert other_tenant.number == "INV-202403-0001"
        assert next_month.number == "INV-202404-0001"

    def test_custom_prefix(self, organization) -> None:
        """Should honour an explicit prefix."""
        assert services.generate_invoice_number(organization.tenant_id, prefix="CR", now=ISSUED_AT) == "CR-202403-0001"


@pytest.mark.django_db
class TestCreateInvoice:
    """Tests for create_invoice."""

    def test_creates_draft_with_snapshot(self, organization) -> None:
        """Should snapshot the billing profile and compute the balance."""
        invoice = make_invoice(organization, notes="Thanks")

        assert invoice.status == Status.DRAFT
        assert invoice.tenant_id == organization.tenant_id
        assert invoice.issue_date == date(2024, 3, 15)
        assert invoice.due_date == date(2024, 4, 14)
        assert invoice.total == Decimal("100.00")
        assert invoice.amount_due == Decimal("100.00")
        assert invoice.currency == "USD"
        assert invoice.customer["email"] == "billing@acme.test"
        assert invoice.line_items.count() == 1
        assert AuditLog.objects.filter(action="invoice.created").count() == 1

    def test_snapshot_survives_profile_change(self, organization) -> None:
        """Should keep the customer as it was when invoiced."""
        invoice = make_invoice(organization)
        organization.billing_email = "new@acme.test"
        organization.save()

        invoice.refresh_from_db()
        assert invoice.customer["email"] == "billing@acme.test"

    def test_terms_and_explicit_due_date(self, organization) -> None:
        """Should use the terms unless a due date is given."""
        on_receipt = make_invoice(organization, terms="due_on_receipt")
        explicit = make_invoice(organization, due_date=date(2024, 5, 1))

        assert on_receipt.due_date == on_receipt.issue_date
        assert explicit.due_date == date(2024, 5, 1)

    def test_currency_normalized(self, organization) -> None:
        """Should upper-case the currency code."""
        assert make_invoice(organization, currency="eur").currency == "EUR"

    @pytest.mark.parametrize(
        ("kwargs", "code"),
        [
            ({"line_items": [{"description": "x"}]}, "INVALID_LINE_ITEM"),
            ({"invoice_type": "bogus"}, "INVALID_TYPE"),
            ({"terms": "net_90"}, "INVALID_TERMS"),
            ({"from_date": date(2024, 3, 31), "to_date": date(2024, 3, 1)}, "INVALID_PERIOD"),
            ({"currency": "EURO"}, "INVALID_CURRENCY"),
        ],
    )
    def test_invalid_input(self, organization, kwargs: dict, code: str) -> None:
        """Should reject bad input without creating anything."""
        with pytest.raises(ValidationError) as exc_info:
            make_invoice(organization, **kwargs)

        assert exc_info.value.code == code
        assert Invoice.objects.count() == 0

    def test_no_line_items(self, organization) -> None:
        """Should require at least one line item."""
        with pytest.raises(ValidationError) as exc_info:
            services.create_invoice(organization, [])

        assert exc_info.value.code == "NO_LINE_ITEMS"

    def test_missing_organization(self) -> None:
        """Should raise ORGANIZATION_NOT_FOUND."""
        with pytest.raises(NotFoundError) as exc_info:
            services.create_invoice(None, [{"description": "Plan", "unit_price": "1.00"}])

        assert exc_info.value.code == "ORGANIZATION_NOT_FOUND"

    @patch("apps.invoices.services.generate_invoice_number")
    def test_number_collision_retried(self, mock_number: MagicMock, organization) -> None:
        """Should retry with a fresh number when another writer took it."""
        mock_number.side_effect = ["INV-202403-0001", "INV-202403-0001", "INV-202403-0002"]
        make_invoice(organization)

        invoice = make_invoice(organization)

        assert invoice.number == "INV-202403-0002"
        assert Invoice.objects.count() == 2

    @patch("apps.invoices.services.generate_invoice_number")
    def test_number_collision_exhausted(self, mock_number: MagicMock, organization) -> None:
        """Should give up with a transient error after repeated collisions."""
        mock_number.return_value = "INV-202403-0001"
        make_invoice(organization)

        with pytest.raises(TransientError) as exc_info:
            make_invoice(organization)

        assert exc_info.value.code == "INVOICE_NUMBER_CONFLICT"
        assert Invoice.objects.count() == 1


@pytest.mark.django_db
class TestRecordPayment:
    """Tests for record_payment."""

    def test_partial_then_full_payment(self, organization) -> None:
        """Should go partial at 60 of 100, reject 50 and settle with 40."""
        invoice = make_invoice(organization)

        invoice = services.record_payment(invoice, "60.00", method="card", now=ISSUED_AT)
        assert invoice.status == Status.PARTIAL
        assert invoice.amount_due == Decimal("40.00")

        version = invoice.version
        with pytest.raises(DomainRuleViolation) as exc_info:
            services.record_payment(invoice, "50.00", now=ISSUED_AT)
        assert exc_info.value.code == "EXCESS_PAYMENT"
        assert exc_info.value.details == {"amount": "50.00", "amount_due": "40.00"}

        invoice.refresh_from_db()
        assert invoice.amount_paid == Decimal("60.00")
        assert invoice.amount_due == Decimal("40.00")
        assert invoice.version == version
        assert invoice.transactions.count() == 1

        invoice = services.record_payment(invoice, "40.00", now=ISSUED_AT)
        assert invoice.status == Status.PAID
        assert invoice.amount_due == Decimal("0.00")
        assert invoice.is_paid is True

    def test_non_positive_amount(self, organization) -> None:
        """Should raise INVALID_AMOUNT."""
        invoice = make_invoice(organization)

        with pytest.raises(ValidationError) as exc_info:
            services.record_payment(invoice, "-5")

        assert exc_info.value.code == "INVALID_AMOUNT"

    def test_void_invoice(self, organization) -> None:
        """Should not accept payments on void invoices."""
        invoice = services.void_invoice(make_invoice(organization), "duplicate")

        with pytest.raises(DomainRuleViolation) as exc_info:
            services.record_payment(invoice, "10.00")

        assert exc_info.value.code == "INVALID_STATUS"

    def test_stale_version(self, organization) -> None:
        """Should raise ConcurrencyConflict for an outdated version."""
        invoice = make_invoice(organization)

        with pytest.raises(ConcurrencyConflict):
            services.record_payment(invoice, "10.00", expected_version=invoice.version - 1)

    @patch("apps.events.services.create_audit_log")
    def test_audit_failure_does_not_abort_payment(self, mock_audit: MagicMock, organization) -> None:
        """Should keep the payment when the audit write fails."""
        invoice = make_invoice(organization)
        mock_audit.side_effect = DatabaseError("audit table unavailable")

        services.record_payment(invoice, "100.00")

        invoice.refresh_from_db()
        assert invoice.status == Status.PAID
        assert PaymentTransaction.objects.filter(invoice=invoice).count() == 1

    def test_payment_on_overdue_invoice(self, organization) -> None:
        """Should move an overdue invoice to partial."""
        invoice = services.mark_as_sent(make_invoice(organization), now=ISSUED_AT)
        services.mark_overdue_invoices(now=ISSUED_AT + timedelta(days=45))

        invoice = services.record_payment(invoice, "10.00", now=ISSUED_AT + timedelta(days=45))

        assert invoice.status == Status.PARTIAL


@pytest.mark.django_db
class TestApplyCredit:
    """Tests for apply_credit."""

    def test_applies_up_to_amount_due(self, organization) -> None:
        """Should cap the credit at the balance and report the unused part."""
        invoice = make_invoice(organization)

        first = services.apply_credit(invoice, "30.00", "ct_1")
        second = services.apply_credit(invoice, "200.00", "ct_2")

        assert first == {"applied": Decimal("30.00"), "remaining": Decimal("0.00")}
        assert second == {"applied": Decimal("70.00"), "remaining": Decimal("130.00")}
        invoice.refresh_from_db()
        assert invoice.credits_applied == Decimal("100.00")
        assert invoice.amount_paid == Decimal("100.00")
        assert invoice.status == Status.PAID
        assert invoice.credit_applications.count() == 2

    def test_nothing_due(self, organization) -> None:
        """Should raise ALREADY_PAID on a settled invoice."""
        invoice = services.record_payment(make_invoice(organization), "100.00")

        with pytest.raises(DomainRuleViolation) as exc_info:
            services.apply_credit(invoice, "10.00", "ct_1")

        assert exc_info.value.code == "ALREADY_PAID"


@pytest.mark.django_db
class TestVoidInvoice:
    """Tests for void_invoice."""

    def test_voids_unpaid_invoice(self, organization) -> None:
        """Should void and audit with the previous status."""
        invoice = services.void_invoice(make_invoice(organization), "duplicate", actor_id="usr_1", now=ISSUED_AT)

        assert invoice.status == Status.VOID
        assert invoice.voided_at == ISSUED_AT
        entry = AuditLog.objects.get(action="invoice.voided")
        assert entry.diff == {"old": {"status": "draft"}, "new": {"status": "void"}}

    def test_has_payments(self, organization) -> None:
        """Should refuse to void once anything was paid."""
        invoice = services.record_payment(make_invoice(organization), "10.00")
        version = invoice.version

        with pytest.raises(DomainRuleViolation) as exc_info:
            services.void_invoice(invoice, "mistake")

        assert exc_info.value.code == "HAS_PAYMENTS"
        invoice.refresh_from_db()
        assert invoice.version == version
        assert invoice.status == Status.PARTIAL
        assert invoice.amount_paid == Decimal("10.00")
        assert invoice.voided_at is None
        assert invoice.transactions.count() == 1
        assert not AuditLog.objects.filter(action="invoice.voided").exists()

    def test_already_void(self, organization) -> None:
        """Should raise ALREADY_VOID."""
        invoice = services.void_invoice(make_invoice(organization), "duplicate")

        with pytest.raises(DomainRuleViolation) as exc_info:
            services.void_invoice(invoice, "again")

        assert exc_info.value.code == "ALREADY_VOID"


@pytest.mark.django_db
class TestRefund:
    """Tests for refund."""

    def test_partial_then_full_refund(self, organization) -> None:
        """Should record a refund line outside the totals."""
        invoice = services.record_payment(make_invoice(organization), "100.00")

        invoice = services.refund(invoice, "30.00", "damaged", payment_id="re_1")

        assert invoice.status == Status.PARTIAL
        assert invoice.amount_paid == Decimal("70.00")
        assert invoice.amount_refunded == Decimal("30.00")
        assert invoice.amount_due == Decimal("30.00")
        assert invoice.total == Decimal("100.00")
        line = invoice.line_items.get(is_refund=True)
        assert line.amount == Decimal("-30.00")
        assert line.description == "Refund: damaged"
        assert invoice.transactions.filter(kind=PaymentTransaction.Kind.REFUND).count() == 1

        invoice = services.refund(invoice, "70.00", "cancelled")
        assert invoice.status == Status.REFUNDED
        assert invoice.amount_paid == Decimal("0.00")

    def test_payment_after_full_refund(self, organization) -> None:
        """Should settle a refunded invoice that is paid again."""
        invoice = services.record_payment(make_invoice(organization), "100.00")
        invoice = services.refund(invoice, "100.00", "charged twice")
        assert invoice.status == Status.REFUNDED

        invoice = services.record_payment(invoice, "100.00", reference="repaid")

        assert invoice.status == Status.PAID
        assert invoice.amount_due == Decimal("0.00")
        assert invoice.amount_refunded == Decimal("100.00")

    def test_excess_refund(self, organization) -> None:
        """Should not refund more than was paid."""
        invoice = services.record_payment(make_invoice(organization), "50.00")
        version = invoice.version
        line_count = invoice.line_items.count()

        with pytest.raises(DomainRuleViolation) as exc_info:
            services.refund(invoice, "60.00", "too much")

        assert exc_info.value.code == "EXCESS_REFUND"
        invoice.refresh_from_db()
        assert invoice.version == version
        assert invoice.status == Status.PARTIAL
        assert invoice.amount_paid == Decimal("50.00")
        assert invoice.amount_refunded == Decimal("0.00")
        assert invoice.line_items.count() == line_count
        assert not invoice.transactions.filter(kind=PaymentTransaction.Kind.REFUND).exists()


@pytest.mark.django_db
class TestMarkDisputed:
    """Tests for mark_disputed."""

    def test_marks_and_notifies(self, organization) -> None:
        """Should flag the invoice and publish an event."""
        invoice = services.record_payment(make_invoice(organization), "100.00")

        invoice = services.mark_disputed(invoice, "fraudulent")

        assert invoice.status == Status.DISPUTED
        assert invoice.dispute_reason == "fraudulent"
        assert OutboxEvent.objects.filter(event_type="invoice.disputed").count() == 1

        with pytest.raises(DomainRuleViolation) as exc_info:
            services.mark_disputed(invoice, "again")
        assert exc_info.value.code == "ALREADY_DISPUTED"


@pytest.mark.django_db
class TestLineItems:
    """Tests for add_line_item and remove_line_item."""

    def test_add_and_remove_recompute_totals(self, organization) -> None:
        """Should recompute totals after each edit."""
        invoice = make_invoice(organization)

        invoice = services.add_line_item(invoice, {"description": "Setup", "item_type": "setup", "unit_price": "25"})
        assert invoice.total == Decimal("125.00")
        assert invoice.amount_due == Decimal("125.00")
        added = invoice.line_items.get(position=2)

        invoice = services.remove_line_item(invoice, added.pk)
        assert invoice.total == Decimal("100.00")

    def test_sent_invoice_is_locked(self, organization) -> None:
        """Should refuse edits once sent."""
        invoice = services.mark_as_sent(make_invoice(organization))

        with pytest.raises(DomainRuleViolation) as exc_info:
            services.add_line_item(invoice, {"description": "Setup", "unit_price": "25"})

        assert exc_info.value.code == "INVALID_STATUS"

    def test_remove_unknown_line(self, organization) -> None:
        """Should raise LINE_ITEM_NOT_FOUND."""
        with pytest.raises(NotFoundError) as exc_info:
            services.remove_line_item(make_invoice(organization), 999999)

        assert exc_info.value.code == "LINE_ITEM_NOT_FOUND"


@pytest.mark.django_db
class TestSending:
    """Tests for mark_as_sent and send_reminder."""

    def test_mark_as_sent(self, organization) -> None:
        """Should record the delivery and notify."""
        invoice = services.mark_as_sent(make_invoice(organization), now=ISSUED_AT)

        assert invoice.status == Status.SENT
        assert invoice.send_count == 1
        delivery = invoice.deliveries.get()
        assert delivery.kind == InvoiceDelivery.Kind.SENT
        assert delivery.recipient == "billing@acme.test"
        assert delivery.days_until_due == 30
        assert OutboxEvent.objects.filter(event_type="invoice.sent").count() == 1

    def test_cannot_send_paid(self, organization) -> None:
        """Should raise INVALID_STATUS for paid invoices."""
        invoice = services.record_payment(make_invoice(organization), "100.00")

        with pytest.raises(DomainRuleViolation) as exc_info:
            services.mark_as_sent(invoice)

        assert exc_info.value.code == "INVALID_STATUS"

    def test_reminder_records_days_until_due(self, organization) -> None:
        """Should record the offset to the due date."""
        invoice = services.mark_as_sent(make_invoice(organization), now=ISSUED_AT)

        invoice = services.send_reminder(invoice, now=ISSUED_AT + timedelta(days=20))

        reminder = invoice.deliveries.get(kind=InvoiceDelivery.Kind.REMINDER)
        assert reminder.days_until_due == 10
        assert invoice.send_count == 2

    def test_reminders_disabled(self, organization) -> None:
        """Should raise REMINDERS_DISABLED."""
        invoice = make_invoice(organization)
        Invoice.objects.filter(pk=invoice.pk).update(reminders_enabled=False)

        with pytest.raises(DomainRuleViolation) as exc_info:
            services.send_reminder(invoice)

        assert exc_info.value.code == "REMINDERS_DISABLED"

    def test_reminder_for_paid_invoice(self, organization) -> None:
        """Should raise ALREADY_PAID."""
        invoice = services.record_payment(make_invoice(organization), "100.00")

        with pytest.raises(DomainRuleViolation) as exc_info:
            services.send_reminder(invoice)

        assert exc_info.value.code == "ALREADY_PAID"


@pytest.mark.django_db
class TestExportToAccounting:
    """Tests for export_to_accounting."""

    def test_journal_entries_with_tax(self, organization) -> None:
        """Should debit receivables and credit revenue and sales tax."""
        invoice = make_invoice(organization, [{"description": "Pro", "unit_price": "100.00", "tax_rate": "10"}])

        invoice = services.export_to_accounting(invoice, "quickbooks", "QB-1", now=ISSUED_AT)

        assert invoice.accounting_system == "quickbooks"
        assert invoice.exported_at == ISSUED_AT
        assert [(e["account"], e["debit"], e["credit"]) for e in invoice.journal_entries] == [
            ("accounts_receivable", "110.00", "0.00"),
            ("revenue", "0.00", "100.00"),
            ("sales_tax_payable", "0.00", "10.00"),
        ]

    def test_without_tax(self, organization) -> None:
        """Should skip the sales tax entry."""
        invoice = services.export_to_accounting(make_invoice(organization), "xero", "X-1")

        assert len(invoice.journal_entries) == 2

    def test_already_exported(self, organization) -> None:
        """Should raise ALREADY_EXPORTED."""
        invoice = services.export_to_accounting(make_invoice(organization), "xero", "X-1")

        with pytest.raises(DomainRuleViolation) as exc_info:
            services.export_to_accounting(invoice, "xero", "X-2")

        assert exc_info.value.code == "ALREADY_EXPORTED"


@pytest.mark.django_db
class TestOverdueInvoices:
    """Tests for find_overdue_invoices and mark_overdue_invoices."""

    def test_mark_overdue_is_idempotent(self, organization) -> None:
        """Should move sent invoices past due once."""
        invoice = services.mark_as_sent(make_invoice(organization), now=ISSUED_AT)
        later = ISSUED_AT + timedelta(days=36)

        assert services.mark_overdue_invoices(now=later, dry_run=True) == [invoice.number]
        invoice.refresh_from_db()
        assert invoice.status == Status.SENT

        assert services.mark_overdue_invoices(now=later) == [invoice.number]
        assert services.mark_overdue_invoices(now=later) == []
        invoice.refresh_from_db()
        assert invoice.status == Status.OVERDUE

    def test_not_yet_due(self, organization) -> None:
        """Should leave invoices inside their terms alone."""
        services.mark_as_sent(make_invoice(organization), now=ISSUED_AT)

        assert services.mark_overdue_invoices(now=ISSUED_AT + timedelta(days=10)) == []

    def test_find_overdue(self, organization) -> None:
        """Should list unsettled invoices past due, filtered by days overdue."""
        overdue = services.mark_as_sent(make_invoice(organization), now=ISSUED_AT)
        services.record_payment(make_invoice(organization), "100.00")

        assert services.find_overdue_invoices(today=date(2024, 4, 20)) == [overdue]
        assert services.find_overdue_invoices(tenant_id=organization.tenant_id, today=date(2024, 4, 20)) == [overdue]
        assert services.find_overdue_invoices(min_days_overdue=10, today=date(2024, 4, 20)) == []


@pytest.mark.django_db
class TestListInvoices:
    """Tests for list_invoices and get_invoice."""

    def test_filters_and_pagination(self, organization) -> None:
        """Should filter by status and report the unpaginated total."""
        for _ in range(3):
            make_invoice(organization)
        services.void_invoice(make_invoice(organization), "duplicate")

        drafts, total = services.list_invoices(organization, status=Status.DRAFT, limit=2)

        assert total == 3
        assert len(drafts) == 2
        assert drafts[0].number == "INV-202403-0003"

    def test_get_invoice_scoped(self, organization) -> None:
        """Should not return another organization's invoice."""
        invoice = make_invoice(organization)

        assert services.get_invoice(organization, invoice.pk) == invoice
        with pytest.raises(NotFoundError) as exc_info:
            services.get_invoice(OrganizationFactory.create(), invoice.pk)
        assert exc_info.value.code == "INVOICE_NOT_FOUND"
