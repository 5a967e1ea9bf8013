"""
Invoice services - totals, numbering, payments, credits, refunds and sends.

Every mutation locks the invoice row, checks its preconditions, then
writes. A rejected operation raises before anything is written, so the
invoice is left exactly as it was.
"""

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any

from django.db import IntegrityError, transaction
from django.utils import timezone

from apps.core.exceptions import DomainRuleViolation, NotFoundError, TransientError, ValidationError
from apps.core.logging import get_logger
from apps.core.money import ZERO, money, quantity, require_positive, to_decimal, validate_currency
from apps.events.services import dispatch_notification, record_audit
from apps.invoices.models import (
    CreditApplication,
    Invoice,
    InvoiceDelivery,
    InvoiceLineItem,
    PaymentTransaction,
)
from apps.organizations.models import Organization
from config.settings.base import settings

logger = get_logger(__name__)

TERM_DAYS: dict[str, int] = {
    Invoice.Terms.DUE_ON_RECEIPT: 0,
    Invoice.Terms.NET_7: 7,
    Invoice.Terms.NET_15: 15,
    Invoice.Terms.NET_30: 30,
    Invoice.Terms.NET_45: 45,
    Invoice.Terms.NET_60: 60,
}
DEFAULT_TERM_DAYS = 30

# Statuses only reachable through explicit operations
EXPLICIT_STATUSES = frozenset(
    {
        Invoice.Status.VOID,
        Invoice.Status.DISPUTED,
        Invoice.Status.UNCOLLECTIBLE,
    }
)
EDITABLE_STATUSES = frozenset({Invoice.Status.DRAFT, Invoice.Status.PENDING})

NUMBER_ATTEMPTS = 5


@dataclass(frozen=True)
class InvoiceTotals:
    subtotal: Decimal
    discount_total: Decimal
    tax_total: Decimal
    total: Decimal


# =============================================================================
# Pure calculations
# =============================================================================


def calculate_totals(line_items: Iterable[InvoiceLineItem]) -> InvoiceTotals:
    """
    Compute line amounts and the invoice summary.

    Sets amount, discount_amount and tax_amount on each line in place.
    Tax-type lines count toward tax_total only. Refund lines are skipped.
    Every intermediate value is rounded to cents.
    """
    subtotal = ZERO
    discount_total = ZERO
    tax_total = ZERO

    for item in line_items:
        if item.is_refund:
            continue

        gross = money(to_decimal(item.quantity) * to_decimal(item.unit_price))
        discount = ZERO
        if item.discount_type and item.discount_value:
            if item.discount_type == InvoiceLineItem.DiscountType.PERCENTAGE:
                discount = money(gross * to_decimal(item.discount_value) / 100)
            else:
                discount = money(item.discount_value)

        item.discount_amount = discount
        item.amount = money(gross - discount)
        discount_total = money(discount_total + discount)

        if item.item_type == InvoiceLineItem.Type.TAX:
            item.tax_amount = ZERO
            tax_total = money(tax_total + item.amount)
            continue

        subtotal = money(subtotal + item.amount)
        if item.taxable and item.tax_rate:
            item.tax_amount = money(item.amount * to_decimal(item.tax_rate) / 100)
            tax_total = money(tax_total + item.tax_amount)
        else:
            item.tax_amount = ZERO

    return InvoiceTotals(
        subtotal=subtotal,
        discount_total=discount_total,
        tax_total=tax_total,
        total=money(subtotal + tax_total),
    )


def derive_status(invoice: Invoice, today: date) -> str:
    """
    Status implied by the balance, in priority order: paid, partial, overdue.

    void, disputed and uncollectible are set by explicit operations and are
    returned unchanged. refunded holds only while nothing is paid; a later
    payment on a refunded invoice derives paid or partial again.
    """
    if invoice.status in EXPLICIT_STATUSES:
        return invoice.status
    if invoice.status == Invoice.Status.REFUNDED and invoice.amount_paid == 0:
        return invoice.status
    if invoice.amount_due == 0:
        return Invoice.Status.PAID
    if 0 < invoice.amount_paid < invoice.total:
        return Invoice.Status.PARTIAL
    if invoice.status == Invoice.Status.SENT and invoice.due_date and today > invoice.due_date:
        return Invoice.Status.OVERDUE
    return invoice.status


def calculate_due_date(issue_date: date, terms: str) -> date:
    """Issue date plus the term's days. Custom terms default to net 30."""
    return issue_date + timedelta(days=TERM_DAYS.get(terms, DEFAULT_TERM_DAYS))


def generate_invoice_number(tenant_id: str, prefix: str | None = None, now: datetime | None = None) -> str:
    """
    Next invoice number for the tenant's current month: PREFIX-YYYYMM-NNNN.

    Concurrent creators can compute the same number; the unique constraint
    on (tenant_id, number) rejects the loser and create_invoice retries.
    """
    now = now or timezone.now()
    stem = f"{prefix or settings.INVOICE_PREFIX}-{now:%Y%m}-"

    highest = 0
    for number in Invoice.objects.filter(tenant_id=tenant_id, number__startswith=stem).values_list(
        "number", flat=True
    ):
        try:
            highest = max(highest, int(number.rsplit("-", 1)[-1]))
        except ValueError:
            continue

    return f"{stem}{highest + 1:04d}"


def _apply_balance(invoice: Invoice, today: date) -> None:
    invoice.amount_due = max(ZERO, money(invoice.total - invoice.amount_paid))
    invoice.status = derive_status(invoice, today)


def _set_totals(invoice: Invoice, totals: InvoiceTotals) -> None:
    invoice.subtotal = totals.subtotal
    invoice.discount_total = totals.discount_total
    invoice.tax_total = totals.tax_total
    invoice.total = totals.total


# =============================================================================
# Line items
# =============================================================================


def build_line_item(data: dict[str, Any], position: int) -> InvoiceLineItem:
    """
    Validate raw line-item input and return an unsaved InvoiceLineItem.

    Raises:
        ValidationError: Missing description/unit price, unknown type,
            non-positive quantity or negative discount/tax.
    """
    description = (data.get("description") or "").strip()
    if not description:
        raise ValidationError("Line item description is required", code="INVALID_LINE_ITEM")

    item_type = data.get("item_type") or data.get("type") or InvoiceLineItem.Type.SUBSCRIPTION
    if item_type not in InvoiceLineItem.Type.values:
        raise ValidationError(f"Unknown line item type: {item_type}", code="INVALID_LINE_ITEM")

    if data.get("unit_price") is None:
        raise ValidationError("Line item unit_price is required", code="INVALID_LINE_ITEM")

    qty = quantity(data.get("quantity", 1))
    if qty <= 0:
        raise ValidationError("Line item quantity must be positive", code="INVALID_LINE_ITEM")

    discount_type = data.get("discount_type") or ""
    if discount_type and discount_type not in InvoiceLineItem.DiscountType.values:
        raise ValidationError(f"Unknown discount type: {discount_type}", code="INVALID_LINE_ITEM")
    discount_value = money(data.get("discount_value") or 0)
    tax_rate = to_decimal(data.get("tax_rate") or 0)
    if discount_value < 0 or tax_rate < 0:
        raise ValidationError("Discounts and tax rates cannot be negative", code="INVALID_LINE_ITEM")

    return InvoiceLineItem(
        position=position,
        item_type=item_type,
        description=description,
        quantity=qty,
        unit_price=money(data["unit_price"]),
        discount_type=discount_type,
        discount_value=discount_value,
        tax_rate=tax_rate,
        taxable=data.get("taxable", True),
        metadata=data.get("metadata") or {},
    )


def _recalculate(invoice: Invoice) -> None:
    items = list(invoice.line_items.all())
    totals = calculate_totals(items)
    InvoiceLineItem.objects.bulk_update(items, ["amount", "discount_amount", "tax_amount"])
    _set_totals(invoice, totals)


def _lock(invoice: Invoice, expected_version: int | None) -> Invoice:
    return Invoice.lock_for_update(invoice.pk, expected_version=expected_version)


# =============================================================================
# Creation
# =============================================================================


def create_invoice(
    organization: Organization,
    line_items: list[dict[str, Any]],
    *,
    subscription=None,
    invoice_type: str = Invoice.Type.SUBSCRIPTION,
    from_date: date | None = None,
    to_date: date | None = None,
    terms: str = Invoice.Terms.NET_30,
    due_date: date | None = None,
    currency: str | None = None,
    notes: str = "",
    actor_id: str | None = None,
    now: datetime | None = None,
) -> Invoice:
    """
    Create an invoice from raw line items.

    The organization's billing profile is snapshotted into invoice.customer.

    Raises:
        NotFoundError: Organization does not exist.
        ValidationError: No line items, invalid line item, unknown type or
            terms, bad currency code, or from_date after to_date.
    """
    if organization is None or organization.pk is None:
        raise NotFoundError("Organization not found", code="ORGANIZATION_NOT_FOUND")
    if not line_items:
        raise ValidationError("An invoice needs at least one line item", code="NO_LINE_ITEMS")
    if invoice_type not in Invoice.Type.values:
        raise ValidationError(f"Unknown invoice type: {invoice_type}", code="INVALID_TYPE")
    if terms not in Invoice.Terms.values:
        raise ValidationError(f"Unknown payment terms: {terms}", code="INVALID_TERMS")
    if from_date and to_date and from_date > to_date:
        raise ValidationError("from_date must not be after to_date", code="INVALID_PERIOD")

    currency = validate_currency(currency or organization.currency or settings.DEFAULT_CURRENCY)
    items = [build_line_item(data, position) for position, data in enumerate(line_items, start=1)]
    totals = calculate_totals(items)

    now = now or timezone.now()
    issue_date = now.date()

    for attempt in range(1, NUMBER_ATTEMPTS + 1):
        try:
            with transaction.atomic():
                invoice = Invoice(
                    organization=organization,
                    tenant_id=organization.tenant_id,
                    number=generate_invoice_number(organization.tenant_id, now=now),
                    subscription=subscription,
                    invoice_type=invoice_type,
                    status=Invoice.Status.DRAFT,
                    from_date=from_date,
                    to_date=to_date,
                    issue_date=issue_date,
                    due_date=due_date or calculate_due_date(issue_date, terms),
                    terms=terms,
                    customer=organization.billing_snapshot(),
                    currency=currency,
                    notes=notes,
                )
                _set_totals(invoice, totals)
                _apply_balance(invoice, issue_date)
                invoice.save()

                for item in items:
                    item.invoice = invoice
                InvoiceLineItem.objects.bulk_create(items)
            break
        except IntegrityError:
            if attempt == NUMBER_ATTEMPTS:
                raise TransientError(
                    "Could not allocate an invoice number", code="INVOICE_NUMBER_CONFLICT"
                ) from None
            logger.warning("invoice_number_collision", tenant_id=organization.tenant_id, attempt=attempt)

    record_audit(
        "invoice.created",
        invoice,
        actor_id=actor_id,
        metadata={"number": invoice.number, "total": invoice.total, "type": invoice_type},
    )
    logger.info(
        "invoice_created",
        invoice_id=invoice.pk,
        number=invoice.number,
        organization_id=organization.pk,
        total=invoice.total,
    )
    return invoice


# =============================================================================
# Sending
# =============================================================================


def mark_as_sent(
    invoice: Invoice,
    method: str = "email",
    expected_version: int | None = None,
    now: datetime | None = None,
) -> Invoice:
    """
    Mark the invoice sent and record the delivery.

    Raises:
        DomainRuleViolation: INVALID_STATUS for paid or void invoices.
    """
    now = now or timezone.now()
    with transaction.atomic():
        invoice = _lock(invoice, expected_version)
        if invoice.status in (Invoice.Status.PAID, Invoice.Status.VOID):
            raise DomainRuleViolation(
                f"Cannot send a {invoice.status} invoice",
                code="INVALID_STATUS",
                details={"status": invoice.status},
            )

        invoice.status = Invoice.Status.SENT
        invoice.send_count += 1
        invoice.last_sent_at = now
        _apply_balance(invoice, now.date())
        invoice.save()

        InvoiceDelivery.objects.create(
            invoice=invoice,
            kind=InvoiceDelivery.Kind.SENT,
            method=method,
            recipient=invoice.customer.get("email", ""),
            days_until_due=(invoice.due_date - now.date()).days,
            sent_at=now,
        )

    dispatch_notification(
        "invoice.sent",
        invoice,
        {"number": invoice.number, "total": str(invoice.total), "due_date": invoice.due_date.isoformat()},
    )
    logger.info("invoice_sent", invoice_id=invoice.pk, number=invoice.number, send_count=invoice.send_count)
    return invoice


def send_reminder(invoice: Invoice, method: str = "email", now: datetime | None = None) -> Invoice:
    """
    Record a payment reminder with the days-to-due offset.

    Raises:
        DomainRuleViolation: REMINDERS_DISABLED, ALREADY_PAID, or
            INVALID_STATUS for void/refunded invoices.
    """
    now = now or timezone.now()
    with transaction.atomic():
        invoice = _lock(invoice, None)
        if not invoice.reminders_enabled:
            raise DomainRuleViolation("Reminders are disabled for this invoice", code="REMINDERS_DISABLED")
        if invoice.status == Invoice.Status.PAID or invoice.amount_due == 0:
            raise DomainRuleViolation("Cannot remind about a paid invoice", code="ALREADY_PAID")
        if invoice.status in (Invoice.Status.VOID, Invoice.Status.REFUNDED):
            raise DomainRuleViolation(f"Cannot remind about a {invoice.status} invoice", code="INVALID_STATUS")

        days_until_due = (invoice.due_date - now.date()).days
        invoice.send_count += 1
        invoice.last_sent_at = now
        invoice.save(update_fields=["send_count", "last_sent_at"])

        InvoiceDelivery.objects.create(
            invoice=invoice,
            kind=InvoiceDelivery.Kind.REMINDER,
            method=method,
            recipient=invoice.customer.get("email", ""),
            days_until_due=days_until_due,
            sent_at=now,
        )

    dispatch_notification(
        "invoice.reminder",
        invoice,
        {"number": invoice.number, "amount_due": str(invoice.amount_due), "days_until_due": days_until_due},
    )
    logger.info("invoice_reminder_sent", invoice_id=invoice.pk, days_until_due=days_until_due)
    return invoice


# =============================================================================
# Money movements
# =============================================================================


def record_payment(
    invoice: Invoice,
    amount: Decimal | str,
    method: str = "",
    reference: str = "",
    payment_id: str = "",
    expected_version: int | None = None,
    now: datetime | None = None,
) -> Invoice:
    """
    Apply a payment.

    Raises:
        ValidationError: INVALID_AMOUNT when amount <= 0.
        DomainRuleViolation: EXCESS_PAYMENT when amount > amount_due,
            INVALID_STATUS on void invoices.
    """
    amount = require_positive(amount)
    now = now or timezone.now()

    with transaction.atomic():
        invoice = _lock(invoice, expected_version)
        if invoice.status == Invoice.Status.VOID:
            raise DomainRuleViolation("Cannot pay a void invoice", code="INVALID_STATUS")
        if amount > invoice.amount_due:
            raise DomainRuleViolation(
                "Payment exceeds amount due",
                code="EXCESS_PAYMENT",
                details={"amount": str(amount), "amount_due": str(invoice.amount_due)},
            )

        PaymentTransaction.objects.create(
            invoice=invoice,
            kind=PaymentTransaction.Kind.PAYMENT,
            payment_id=payment_id,
            amount=amount,
            currency=invoice.currency,
            method=method,
            reference=reference,
            processed_at=now,
        )
        invoice.amount_paid = money(invoice.amount_paid + amount)
        _apply_balance(invoice, now.date())
        invoice.save()

        record_audit(
            "invoice.payment_recorded",
            invoice,
            metadata={"amount": amount, "method": method, "reference": reference},
        )

    logger.info(
        "invoice_payment_recorded",
        invoice_id=invoice.pk,
        number=invoice.number,
        amount=amount,
        amount_due=invoice.amount_due,
        status=invoice.status,
    )
    return invoice


def apply_credit(
    invoice: Invoice,
    credit_amount: Decimal | str,
    credit_transaction_id: str,
    now: datetime | None = None,
) -> dict[str, Decimal]:
    """
    Apply up to credit_amount of customer credit.

    Returns {"applied": ..., "remaining": ...} where remaining is the unused
    part of the credit.

    Raises:
        ValidationError: INVALID_AMOUNT when credit_amount <= 0.
        DomainRuleViolation: ALREADY_PAID when nothing is due,
            INVALID_STATUS on void invoices.
    """
    credit_amount = require_positive(credit_amount, field="credit_amount")
    now = now or timezone.now()

    with transaction.atomic():
        invoice = _lock(invoice, None)
        if invoice.status == Invoice.Status.VOID:
            raise DomainRuleViolation("Cannot credit a void invoice", code="INVALID_STATUS")

        applied = min(credit_amount, invoice.amount_due)
        if applied <= 0:
            raise DomainRuleViolation("Invoice already paid", code="ALREADY_PAID")

        CreditApplication.objects.create(
            invoice=invoice,
            credit_transaction_id=credit_transaction_id,
            amount=applied,
            applied_at=now,
        )
        invoice.credits_applied = money(invoice.credits_applied + applied)
        invoice.amount_paid = money(invoice.amount_paid + applied)
        _apply_balance(invoice, now.date())
        invoice.save()

    remaining = money(credit_amount - applied)
    logger.info("invoice_credit_applied", invoice_id=invoice.pk, applied=applied, remaining=remaining)
    return {"applied": applied, "remaining": remaining}


def void_invoice(
    invoice: Invoice,
    reason: str,
    actor_id: str | None = None,
    expected_version: int | None = None,
    now: datetime | None = None,
) -> Invoice:
    """
    Void an unpaid invoice.

    Raises:
        DomainRuleViolation: ALREADY_VOID, or HAS_PAYMENTS when anything
            has been paid or credited.
    """
    now = now or timezone.now()
    with transaction.atomic():
        invoice = _lock(invoice, expected_version)
        if invoice.status == Invoice.Status.VOID:
            raise DomainRuleViolation("Invoice is already void", code="ALREADY_VOID")
        if invoice.amount_paid > 0:
            raise DomainRuleViolation(
                "Cannot void an invoice with payments",
                code="HAS_PAYMENTS",
                details={"amount_paid": str(invoice.amount_paid)},
            )

        previous_status = invoice.status
        invoice.status = Invoice.Status.VOID
        invoice.voided_at = now
        invoice.void_reason = reason
        invoice.save()

        record_audit(
            "invoice.voided",
            invoice,
            actor_id=actor_id,
            diff={"old": {"status": previous_status}, "new": {"status": invoice.status}},
            metadata={"reason": reason},
        )

    logger.warning("invoice_voided", invoice_id=invoice.pk, number=invoice.number, reason=reason)
    return invoice


def refund(
    invoice: Invoice,
    amount: Decimal | str,
    reason: str,
    actor_id: str | None = None,
    payment_id: str = "",
    now: datetime | None = None,
) -> Invoice:
    """
    Refund part or all of what was paid.

    Appends a negative credit line (a ledger entry that does not change the
    totals), decrements amount_paid and sets status refunded when nothing
    paid remains, else partial.

    Raises:
        ValidationError: INVALID_AMOUNT when amount <= 0.
        DomainRuleViolation: EXCESS_REFUND when amount > amount_paid.
    """
    amount = require_positive(amount)
    now = now or timezone.now()

    with transaction.atomic():
        invoice = _lock(invoice, None)
        if amount > invoice.amount_paid:
            raise DomainRuleViolation(
                "Refund exceeds paid amount",
                code="EXCESS_REFUND",
                details={"amount": str(amount), "amount_paid": str(invoice.amount_paid)},
            )

        last_position = invoice.line_items.order_by("-position").values_list("position", flat=True).first() or 0
        InvoiceLineItem.objects.create(
            invoice=invoice,
            position=last_position + 1,
            item_type=InvoiceLineItem.Type.CREDIT,
            description=f"Refund: {reason}",
            quantity=Decimal("1"),
            unit_price=-amount,
            amount=-amount,
            taxable=False,
            is_refund=True,
        )
        PaymentTransaction.objects.create(
            invoice=invoice,
            kind=PaymentTransaction.Kind.REFUND,
            payment_id=payment_id,
            amount=amount,
            currency=invoice.currency,
            reason=reason,
            processed_at=now,
        )

        invoice.amount_paid = money(invoice.amount_paid - amount)
        invoice.amount_refunded = money(invoice.amount_refunded + amount)
        invoice.amount_due = max(ZERO, money(invoice.total - invoice.amount_paid))
        invoice.status = Invoice.Status.REFUNDED if invoice.amount_paid == 0 else Invoice.Status.PARTIAL
        invoice.save()

        record_audit(
            "invoice.refunded",
            invoice,
            actor_id=actor_id,
            metadata={"amount": amount, "reason": reason},
        )

    logger.info("invoice_refunded", invoice_id=invoice.pk, number=invoice.number, amount=amount, reason=reason)
    return invoice


def mark_disputed(invoice: Invoice, reason: str, now: datetime | None = None) -> Invoice:
    """
    Flag a paid invoice as disputed (chargeback opened at the gateway).

    Raises:
        DomainRuleViolation: ALREADY_DISPUTED, or INVALID_STATUS for void
            invoices.
    """
    now = now or timezone.now()
    with transaction.atomic():
        invoice = _lock(invoice, None)
        if invoice.status == Invoice.Status.DISPUTED:
            raise DomainRuleViolation("Invoice is already disputed", code="ALREADY_DISPUTED")
        if invoice.status == Invoice.Status.VOID:
            raise DomainRuleViolation("Cannot dispute a void invoice", code="INVALID_STATUS")

        invoice.status = Invoice.Status.DISPUTED
        invoice.disputed_at = now
        invoice.dispute_reason = reason
        invoice.save()
        record_audit("invoice.disputed", invoice, metadata={"reason": reason})

    dispatch_notification("invoice.disputed", invoice, {"number": invoice.number, "reason": reason})
    logger.warning("invoice_disputed", invoice_id=invoice.pk, number=invoice.number)
    return invoice


# =============================================================================
# Editing
# =============================================================================


def _require_editable(invoice: Invoice) -> None:
    if invoice.status not in EDITABLE_STATUSES:
        raise DomainRuleViolation(
            f"Line items cannot change on a {invoice.status} invoice",
            code="INVALID_STATUS",
            details={"status": invoice.status},
        )


def add_line_item(invoice: Invoice, data: dict[str, Any], now: datetime | None = None) -> Invoice:
    """
    Append a line item to a draft or pending invoice and recompute totals.

    Raises:
        ValidationError: Invalid line item.
        DomainRuleViolation: INVALID_STATUS once the invoice has been sent.
    """
    now = now or timezone.now()
    with transaction.atomic():
        invoice = _lock(invoice, None)
        _require_editable(invoice)

        last_position = invoice.line_items.order_by("-position").values_list("position", flat=True).first() or 0
        item = build_line_item(data, last_position + 1)
        item.invoice = invoice
        item.save()

        _recalculate(invoice)
        _apply_balance(invoice, now.date())
        invoice.save()

    logger.info("invoice_line_item_added", invoice_id=invoice.pk, line_item_id=item.pk, total=invoice.total)
    return invoice


def remove_line_item(invoice: Invoice, line_item_id: int, now: datetime | None = None) -> Invoice:
    """
    Remove a line item from a draft or pending invoice and recompute totals.

    Raises:
        NotFoundError: Line item is not on this invoice.
        DomainRuleViolation: INVALID_STATUS once the invoice has been sent.
    """
    now = now or timezone.now()
    with transaction.atomic():
        invoice = _lock(invoice, None)
        _require_editable(invoice)

        deleted, _ = invoice.line_items.filter(pk=line_item_id).delete()
        if not deleted:
            raise NotFoundError(f"Line item {line_item_id} not found", code="LINE_ITEM_NOT_FOUND")

        _recalculate(invoice)
        _apply_balance(invoice, now.date())
        invoice.save()

    logger.info("invoice_line_item_removed", invoice_id=invoice.pk, line_item_id=line_item_id, total=invoice.total)
    return invoice


# =============================================================================
# Accounting export
# =============================================================================


def export_to_accounting(
    invoice: Invoice,
    system: str,
    reference: str,
    now: datetime | None = None,
) -> Invoice:
    """
    Post the invoice to an accounting system as journal entries.

    Debit accounts receivable for the total, credit revenue for the
    subtotal and sales tax payable for any tax.

    Raises:
        DomainRuleViolation: ALREADY_EXPORTED.
    """
    now = now or timezone.now()
    with transaction.atomic():
        invoice = _lock(invoice, None)
        if invoice.is_exported:
            raise DomainRuleViolation("Invoice already exported", code="ALREADY_EXPORTED")

        entries = [
            {
                "account": "accounts_receivable",
                "debit": str(invoice.total),
                "credit": str(ZERO),
                "description": f"Invoice {invoice.number}",
            },
            {
                "account": "revenue",
                "debit": str(ZERO),
                "credit": str(invoice.subtotal),
                "description": f"Revenue for Invoice {invoice.number}",
            },
        ]
        if invoice.tax_total > 0:
            entries.append(
                {
                    "account": "sales_tax_payable",
                    "debit": str(ZERO),
                    "credit": str(invoice.tax_total),
                    "description": f"Sales tax for Invoice {invoice.number}",
                }
            )

        invoice.exported_at = now
        invoice.accounting_system = system
        invoice.accounting_reference = reference
        invoice.journal_entries = entries
        invoice.save()

    logger.info("invoice_exported", invoice_id=invoice.pk, system=system, reference=reference)
    return invoice


# =============================================================================
# Queries and sweeps
# =============================================================================


def get_invoice(organization: Organization, invoice_id: int) -> Invoice:
    try:
        return Invoice.objects.get(organization=organization, pk=invoice_id)
    except Invoice.DoesNotExist as e:
        raise NotFoundError(f"Invoice {invoice_id} not found", code="INVOICE_NOT_FOUND") from e


def list_invoices(
    organization: Organization,
    status: str | None = None,
    invoice_type: str | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[Invoice], int]:
    """Invoices for an organization, newest first, with the unpaginated count."""
    qs = Invoice.objects.filter(organization=organization)
    if status:
        qs = qs.filter(status=status)
    if invoice_type:
        qs = qs.filter(invoice_type=invoice_type)
    if date_from:
        qs = qs.filter(issue_date__gte=date_from)
    if date_to:
        qs = qs.filter(issue_date__lte=date_to)

    total = qs.count()
    return list(qs.order_by("-issue_date", "-number")[offset : offset + limit]), total


def find_overdue_invoices(
    tenant_id: str | None = None,
    min_days_overdue: int = 0,
    today: date | None = None,
) -> list[Invoice]:
    """Unsettled invoices past their due date, oldest due date first."""
    today = today or timezone.now().date()
    cutoff = today - timedelta(days=min_days_overdue)

    qs = Invoice.objects.exclude(
        status__in=[Invoice.Status.PAID, Invoice.Status.VOID, Invoice.Status.REFUNDED]
    ).filter(due_date__lt=cutoff)
    if tenant_id:
        qs = qs.filter(tenant_id=tenant_id)
    return list(qs.select_related("organization").order_by("due_date"))


def mark_overdue_invoices(now: datetime | None = None, dry_run: bool = False) -> list[str]:
    """
    Move sent invoices past their due date to overdue.

    Returns the affected invoice numbers. Safe to re-run.
    """
    now = now or timezone.now()
    today = now.date()
    candidates = list(
        Invoice.objects.filter(status=Invoice.Status.SENT, due_date__lt=today).values_list("pk", flat=True)
    )

    marked: list[str] = []
    for pk in candidates:
        with transaction.atomic():
            invoice = Invoice.lock_for_update(pk)
            if derive_status(invoice, today) != Invoice.Status.OVERDUE:
                continue
            marked.append(invoice.number)
            if dry_run:
                continue
            invoice.status = Invoice.Status.OVERDUE
            invoice.save(update_fields=["status"])

    logger.info("overdue_invoices_marked", count=len(marked), dry_run=dry_run)
    return marked
