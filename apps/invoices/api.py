"""
Invoice API endpoints.
"""

from django.http import HttpRequest
from ninja import Query, Router

from apps.billing import services as billing_services
from apps.core.schemas import ErrorResponse
from apps.core.security import BearerAuth, get_actor_id
from apps.invoices import services as invoice_services
from apps.invoices.schemas import (
    ApplyCreditRequest,
    ApplyCreditResponse,
    CreateInvoiceRequest,
    DisputeRequest,
    ExportRequest,
    InvoiceListQuery,
    InvoiceListResponse,
    InvoicePaymentRequest,
    InvoiceResponse,
    LineItemRequest,
    RefundRequest,
    SendInvoiceRequest,
    VoidInvoiceRequest,
)
from apps.organizations.services import get_organization

router = Router(tags=["invoices"], auth=BearerAuth())

ERRORS = {400: ErrorResponse, 404: ErrorResponse, 409: ErrorResponse, 503: ErrorResponse}

INVOICES_PATH = "/organizations/{organization_id}/invoices"
INVOICE_PATH = f"{INVOICES_PATH}/{{invoice_id}}"


def _invoice(organization_id: int, invoice_id: int):
    return invoice_services.get_invoice(get_organization(organization_id), invoice_id)


@router.get(
    INVOICES_PATH,
    response={200: InvoiceListResponse, **ERRORS},
    operation_id="listInvoices",
    summary="List invoices",
)
def list_invoices(request: HttpRequest, organization_id: int, filters: Query[InvoiceListQuery]):
    items, total = invoice_services.list_invoices(
        get_organization(organization_id),
        status=filters.status,
        invoice_type=filters.invoice_type,
        date_from=filters.date_from,
        date_to=filters.date_to,
        limit=min(filters.limit, 200),
        offset=filters.offset,
    )
    return {"items": items, "total": total}


@router.post(
    INVOICES_PATH,
    response={201: InvoiceResponse, **ERRORS},
    operation_id="createInvoice",
    summary="Create an invoice",
)
def create_invoice(request: HttpRequest, organization_id: int, payload: CreateInvoiceRequest):
    organization = get_organization(organization_id)
    subscription = (
        billing_services.get_subscription(organization, payload.subscription_id) if payload.subscription_id else None
    )
    invoice = invoice_services.create_invoice(
        organization,
        [item.model_dump() for item in payload.line_items],
        subscription=subscription,
        invoice_type=payload.invoice_type,
        from_date=payload.from_date,
        to_date=payload.to_date,
        terms=payload.terms,
        due_date=payload.due_date,
        currency=payload.currency,
        notes=payload.notes,
        actor_id=get_actor_id(request),
    )
    return 201, invoice


@router.get(
    INVOICE_PATH,
    response={200: InvoiceResponse, **ERRORS},
    operation_id="getInvoice",
    summary="Get an invoice",
)
def get_invoice(request: HttpRequest, organization_id: int, invoice_id: int):
    return _invoice(organization_id, invoice_id)


@router.post(
    f"{INVOICE_PATH}/line-items",
    response={200: InvoiceResponse, **ERRORS},
    operation_id="addInvoiceLineItem",
    summary="Add a line item to a draft or pending invoice",
)
def add_line_item(request: HttpRequest, organization_id: int, invoice_id: int, payload: LineItemRequest):
    return invoice_services.add_line_item(_invoice(organization_id, invoice_id), payload.model_dump())


@router.delete(
    f"{INVOICE_PATH}/line-items/{{line_item_id}}",
    response={200: InvoiceResponse, **ERRORS},
    operation_id="removeInvoiceLineItem",
    summary="Remove a line item from a draft or pending invoice",
)
def remove_line_item(request: HttpRequest, organization_id: int, invoice_id: int, line_item_id: int):
    return invoice_services.remove_line_item(_invoice(organization_id, invoice_id), line_item_id)


@router.post(
    f"{INVOICE_PATH}/send",
    response={200: InvoiceResponse, **ERRORS},
    operation_id="sendInvoice",
    summary="Send an invoice",
)
def send_invoice(request: HttpRequest, organization_id: int, invoice_id: int, payload: SendInvoiceRequest):
    """Usage billed onto the invoice moves to invoiced."""
    return billing_services.send_invoice(_invoice(organization_id, invoice_id), method=payload.method)


@router.post(
    f"{INVOICE_PATH}/reminders",
    response={200: InvoiceResponse, **ERRORS},
    operation_id="sendInvoiceReminder",
    summary="Send a payment reminder",
)
def send_reminder(request: HttpRequest, organization_id: int, invoice_id: int, payload: SendInvoiceRequest):
    return invoice_services.send_reminder(_invoice(organization_id, invoice_id), method=payload.method)


@router.post(
    f"{INVOICE_PATH}/payments",
    response={200: InvoiceResponse, **ERRORS},
    operation_id="recordInvoicePayment",
    summary="Record a payment",
)
def record_payment(request: HttpRequest, organization_id: int, invoice_id: int, payload: InvoicePaymentRequest):
    return invoice_services.record_payment(
        _invoice(organization_id, invoice_id),
        payload.amount,
        method=payload.method,
        reference=payload.reference,
        payment_id=payload.payment_id,
        expected_version=payload.expected_version,
    )


@router.post(
    f"{INVOICE_PATH}/credits",
    response={200: ApplyCreditResponse, **ERRORS},
    operation_id="applyInvoiceCredit",
    summary="Apply customer credit",
)
def apply_credit(request: HttpRequest, organization_id: int, invoice_id: int, payload: ApplyCreditRequest):
    return invoice_services.apply_credit(
        _invoice(organization_id, invoice_id),
        payload.amount,
        payload.credit_transaction_id,
    )


@router.post(
    f"{INVOICE_PATH}/void",
    response={200: InvoiceResponse, **ERRORS},
    operation_id="voidInvoice",
    summary="Void an unpaid invoice",
)
def void_invoice(request: HttpRequest, organization_id: int, invoice_id: int, payload: VoidInvoiceRequest):
    return invoice_services.void_invoice(
        _invoice(organization_id, invoice_id),
        payload.reason,
        actor_id=get_actor_id(request),
        expected_version=payload.expected_version,
    )


@router.post(
    f"{INVOICE_PATH}/refunds",
    response={200: InvoiceResponse, **ERRORS},
    operation_id="refundInvoice",
    summary="Refund part or all of the amount paid",
)
def refund_invoice(request: HttpRequest, organization_id: int, invoice_id: int, payload: RefundRequest):
    return invoice_services.refund(
        _invoice(organization_id, invoice_id),
        payload.amount,
        payload.reason,
        actor_id=get_actor_id(request),
        payment_id=payload.payment_id,
    )


@router.post(
    f"{INVOICE_PATH}/dispute",
    response={200: InvoiceResponse, **ERRORS},
    operation_id="disputeInvoice",
    summary="Flag an invoice as disputed",
)
def dispute_invoice(request: HttpRequest, organization_id: int, invoice_id: int, payload: DisputeRequest):
    return invoice_services.mark_disputed(_invoice(organization_id, invoice_id), payload.reason)


@router.post(
    f"{INVOICE_PATH}/export",
    response={200: InvoiceResponse, **ERRORS},
    operation_id="exportInvoice",
    summary="Export to an accounting system",
)
def export_invoice(request: HttpRequest, organization_id: int, invoice_id: int, payload: ExportRequest):
    return invoice_services.export_to_accounting(
        _invoice(organization_id, invoice_id),
        payload.system,
        payload.reference,
    )
