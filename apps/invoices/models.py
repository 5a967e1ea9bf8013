"""
Invoice models - documents, line items and the payment/credit/delivery ledgers.
"""

from django.db import models

from apps.core.models import VersionedModel


class Invoice(VersionedModel):
    """
    Invoice document.

    Financial summary fields are maintained by apps.invoices.services;
    after every mutation amount_due == max(0, total - amount_paid).
    The customer snapshot is captured at creation and never rewritten.
    """

    class Type(models.TextChoices):
        SUBSCRIPTION = "subscription", "Subscription"
        ONE_TIME = "one-time", "One-time"
        USAGE = "usage", "Usage"
        CREDIT = "credit", "Credit"
        REFUND = "refund", "Refund"
        ADJUSTMENT = "adjustment", "Adjustment"

    class Status(models.TextChoices):
        DRAFT = "draft", "Draft"
        PENDING = "pending", "Pending"
        SENT = "sent", "Sent"
        PAID = "paid", "Paid"
        PARTIAL = "partial", "Partially Paid"
        OVERDUE = "overdue", "Overdue"
        VOID = "void", "Void"
        UNCOLLECTIBLE = "uncollectible", "Uncollectible"
        REFUNDED = "refunded", "Refunded"
        DISPUTED = "disputed", "Disputed"

    class Terms(models.TextChoices):
        DUE_ON_RECEIPT = "due_on_receipt", "Due on receipt"
        NET_7 = "net_7", "Net 7"
        NET_15 = "net_15", "Net 15"
        NET_30 = "net_30", "Net 30"
        NET_45 = "net_45", "Net 45"
        NET_60 = "net_60", "Net 60"
        CUSTOM = "custom", "Custom"

    number = models.CharField(max_length=50, help_text="PREFIX-YYYYMM-NNNN, sequential per tenant and month")
    subscription = models.ForeignKey(
        "billing.Subscription",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="invoices",
    )
    invoice_type = models.CharField(max_length=20, choices=Type.choices, default=Type.SUBSCRIPTION)
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.DRAFT, db_index=True)

    # Billing dates
    from_date = models.DateField(null=True, blank=True)
    to_date = models.DateField(null=True, blank=True)
    issue_date = models.DateField()
    due_date = models.DateField(db_index=True)
    terms = models.CharField(max_length=20, choices=Terms.choices, default=Terms.NET_30)

    customer = models.JSONField(default=dict, help_text="Billing profile snapshot taken at creation")

    # Financial summary
    currency = models.CharField(max_length=3, default="USD")
    subtotal = models.DecimalField(max_digits=14, decimal_places=2, default=0)
    discount_total = models.DecimalField(max_digits=14, decimal_places=2, default=0)
    tax_total = models.DecimalField(max_digits=14, decimal_places=2, default=0)
    total = models.DecimalField(max_digits=14, decimal_places=2, default=0)
    amount_paid = models.DecimalField(max_digits=14, decimal_places=2, default=0)
    amount_due = models.DecimalField(max_digits=14, decimal_places=2, default=0)
    credits_applied = models.DecimalField(max_digits=14, decimal_places=2, default=0)
    amount_refunded = models.DecimalField(max_digits=14, decimal_places=2, default=0)

    # Communication
    send_count = models.PositiveIntegerField(default=0)
    last_sent_at = models.DateTimeField(null=True, blank=True)
    reminders_enabled = models.BooleanField(default=True)

    # Void / dispute
    voided_at = models.DateTimeField(null=True, blank=True)
    void_reason = models.CharField(max_length=500, blank=True)
    disputed_at = models.DateTimeField(null=True, blank=True)
    dispute_reason = models.CharField(max_length=500, blank=True)

    # Accounting export
    exported_at = models.DateTimeField(null=True, blank=True)
    accounting_system = models.CharField(max_length=100, blank=True)
    accounting_reference = models.CharField(max_length=255, blank=True)
    journal_entries = models.JSONField(default=list, blank=True)

    notes = models.TextField(blank=True)

    class Meta:
        ordering = ["-issue_date", "-number"]
        constraints = [
            models.UniqueConstraint(fields=["tenant_id", "number"], name="unique_invoice_number_per_tenant"),
        ]
        indexes = [
            models.Index(fields=["organization", "status"]),
            models.Index(fields=["status", "due_date"]),
        ]

    def __str__(self) -> str:
        return f"{self.number} ({self.status})"

    @property
    def is_paid(self) -> bool:
        return self.status == self.Status.PAID or (self.amount_due == 0 and self.total > 0)

    @property
    def is_exported(self) -> bool:
        return self.exported_at is not None


class InvoiceLineItem(models.Model):
    """
    One line of an invoice.

    Refund lines (is_refund=True) are negative credit entries recorded by
    refunds; they document the refund and are not part of the totals.
    """

    class Type(models.TextChoices):
        SUBSCRIPTION = "subscription", "Subscription"
        ADDON = "addon", "Add-on"
        USAGE = "usage", "Usage"
        SETUP = "setup", "Setup"
        DISCOUNT = "discount", "Discount"
        CREDIT = "credit", "Credit"
        TAX = "tax", "Tax"
        ADJUSTMENT = "adjustment", "Adjustment"

    class DiscountType(models.TextChoices):
        PERCENTAGE = "percentage", "Percentage"
        FIXED = "fixed", "Fixed"

    invoice = models.ForeignKey(Invoice, on_delete=models.CASCADE, related_name="line_items")
    position = models.PositiveIntegerField(default=0)
    item_type = models.CharField(max_length=20, choices=Type.choices, default=Type.SUBSCRIPTION)
    description = models.CharField(max_length=500)
    quantity = models.DecimalField(max_digits=16, decimal_places=4, default=1)
    unit_price = models.DecimalField(max_digits=14, decimal_places=2)
    amount = models.DecimalField(max_digits=14, decimal_places=2, default=0)

    discount_type = models.CharField(max_length=20, choices=DiscountType.choices, blank=True)
    discount_value = models.DecimalField(max_digits=14, decimal_places=2, default=0)
    discount_amount = models.DecimalField(max_digits=14, decimal_places=2, default=0)

    tax_rate = models.DecimalField(max_digits=6, decimal_places=3, default=0)
    tax_amount = models.DecimalField(max_digits=14, decimal_places=2, default=0)
    taxable = models.BooleanField(default=True)

    metadata = models.JSONField(default=dict, blank=True)
    is_refund = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["position", "id"]

    def __str__(self) -> str:
        return f"{self.description} x{self.quantity}"


class PaymentTransaction(models.Model):
    """Payment or refund applied to an invoice."""

    class Kind(models.TextChoices):
        PAYMENT = "payment", "Payment"
        REFUND = "refund", "Refund"

    invoice = models.ForeignKey(Invoice, on_delete=models.CASCADE, related_name="transactions")
    kind = models.CharField(max_length=20, choices=Kind.choices, default=Kind.PAYMENT)
    payment_id = models.CharField(max_length=255, blank=True, help_text="Gateway payment ID")
    amount = models.DecimalField(max_digits=14, decimal_places=2)
    currency = models.CharField(max_length=3)
    method = models.CharField(max_length=50, blank=True)
    reference = models.CharField(max_length=255, blank=True)
    reason = models.CharField(max_length=500, blank=True)
    status = models.CharField(max_length=20, default="succeeded")
    processed_at = models.DateTimeField()

    class Meta:
        ordering = ["processed_at", "id"]


class CreditApplication(models.Model):
    """Customer credit applied against an invoice."""

    invoice = models.ForeignKey(Invoice, on_delete=models.CASCADE, related_name="credit_applications")
    credit_transaction_id = models.CharField(max_length=255)
    amount = models.DecimalField(max_digits=14, decimal_places=2)
    applied_at = models.DateTimeField()

    class Meta:
        ordering = ["applied_at", "id"]


class InvoiceDelivery(models.Model):
    """Send history: initial sends and reminders."""

    class Kind(models.TextChoices):
        SENT = "sent", "Sent"
        REMINDER = "reminder", "Reminder"

    invoice = models.ForeignKey(Invoice, on_delete=models.CASCADE, related_name="deliveries")
    kind = models.CharField(max_length=20, choices=Kind.choices, default=Kind.SENT)
    method = models.CharField(max_length=50, default="email")
    recipient = models.EmailField(blank=True)
    days_until_due = models.IntegerField(null=True, blank=True)
    sent_at = models.DateTimeField()

    class Meta:
        ordering = ["sent_at", "id"]
        verbose_name_plural = "invoice deliveries"
