"""
Invoice API schemas.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Any

from ninja import Schema


class LineItemRequest(Schema):
    item_type: str = "subscription"
    description: str
    quantity: Decimal = Decimal("1")
    unit_price: Decimal
    discount_type: str = ""
    discount_value: Decimal = Decimal("0")
    tax_rate: Decimal = Decimal("0")
    taxable: bool = True
    metadata: dict[str, Any] = {}


class LineItemResponse(Schema):
    id: int
    position: int
    item_type: str
    description: str
    quantity: Decimal
    unit_price: Decimal
    amount: Decimal
    discount_amount: Decimal
    tax_rate: Decimal
    tax_amount: Decimal
    is_refund: bool


class CreateInvoiceRequest(Schema):
    line_items: list[LineItemRequest]
    subscription_id: str | None = None
    invoice_type: str = "subscription"
    from_date: date | None = None
    to_date: date | None = None
    terms: str = "net_30"
    due_date: date | None = None
    currency: str | None = None
    notes: str = ""


class InvoiceResponse(Schema):
    id: int
    number: str
    invoice_type: str
    status: str
    subscription_id: str | None
    issue_date: date
    due_date: date
    terms: str
    currency: str
    customer: dict[str, Any]
    subtotal: Decimal
    discount_total: Decimal
    tax_total: Decimal
    total: Decimal
    amount_paid: Decimal
    amount_due: Decimal
    credits_applied: Decimal
    amount_refunded: Decimal
    send_count: int
    voided_at: datetime | None
    accounting_reference: str
    version: int
    line_items: list[LineItemResponse]

    @staticmethod
    def resolve_subscription_id(obj) -> str | None:
        return obj.subscription.subscription_id if obj.subscription_id else None

    @staticmethod
    def resolve_line_items(obj) -> list:
        return list(obj.line_items.all())


class InvoiceSummaryResponse(Schema):
    id: int
    number: str
    invoice_type: str
    status: str
    issue_date: date
    due_date: date
    currency: str
    total: Decimal
    amount_due: Decimal


class InvoiceListResponse(Schema):
    items: list[InvoiceSummaryResponse]
    total: int


class InvoiceListQuery(Schema):
    status: str | None = None
    invoice_type: str | None = None
    date_from: date | None = None
    date_to: date | None = None
    limit: int = 50
    offset: int = 0


class SendInvoiceRequest(Schema):
    method: str = "email"
    expected_version: int | None = None


class InvoicePaymentRequest(Schema):
    amount: Decimal
    method: str = ""
    reference: str = ""
    payment_id: str = ""
    expected_version: int | None = None


class ApplyCreditRequest(Schema):
    amount: Decimal
    credit_transaction_id: str


class ApplyCreditResponse(Schema):
    applied: Decimal
    remaining: Decimal


class VoidInvoiceRequest(Schema):
    reason: str
    expected_version: int | None = None


class RefundRequest(Schema):
    amount: Decimal
    reason: str
    payment_id: str = ""


class DisputeRequest(Schema):
    reason: str


class ExportRequest(Schema):
    system: str
    reference: str
