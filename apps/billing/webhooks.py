"""
Stripe webhook handler.

Feeds payment outcomes reported by Stripe back into the subscription and
invoice services. This is a separate view (not Django Ninja) for raw
request handling needed to verify Stripe signatures.
"""

from decimal import Decimal

import stripe
from django.db import transaction
from django.http import HttpRequest, HttpResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_POST

from apps.billing import services as billing_services
from apps.billing.models import Subscription
from apps.billing.stripe_client import get_stripe
from apps.core.exceptions import DomainRuleViolation, NotFoundError, ValidationError
from apps.core.logging import get_logger
from apps.core.money import money
from apps.core.webhooks import mark_webhook_processed
from apps.invoices import services as invoice_services
from apps.invoices.models import Invoice, PaymentTransaction
from config.settings.base import settings

logger = get_logger(__name__)

LIVE_STATES = (
    Subscription.State.ACTIVE,
    Subscription.State.PAST_DUE,
    Subscription.State.TRIALING,
    Subscription.State.PENDING,
)


def _from_minor_units(amount: int | None) -> Decimal:
    return money(Decimal(amount or 0) / 100)


def _subscription_for(stripe_object: dict) -> Subscription:
    """Resolve our subscription from metadata, falling back to the Stripe customer."""
    subscription_id = (stripe_object.get("metadata") or {}).get("subscription_id")
    qs = Subscription.objects.select_related("organization", "plan")
    if subscription_id:
        subscription = qs.filter(subscription_id=subscription_id).first()
    else:
        subscription = (
            qs.filter(organization__stripe_customer_id=stripe_object.get("customer") or "", state__in=LIVE_STATES)
            .order_by("-created_at")
            .first()
        )
    if subscription is None:
        raise NotFoundError(
            "No subscription for Stripe object",
            code="SUBSCRIPTION_NOT_FOUND",
            details={"stripe_id": stripe_object.get("id"), "customer": stripe_object.get("customer")},
        )
    return subscription


def _invoice_for(stripe_object: dict, subscription: Subscription) -> Invoice | None:
    """Invoice numbers repeat across tenants, so match inside the subscription's organization."""
    number = (stripe_object.get("metadata") or {}).get("invoice_number")
    if not number:
        return None
    return Invoice.objects.filter(organization_id=subscription.organization_id, number=number).first()


def handle_invoice_paid(stripe_invoice: dict) -> None:
    """invoice.paid: record the payment on the subscription and our invoice."""
    subscription = _subscription_for(stripe_invoice)
    amount = _from_minor_units(stripe_invoice.get("amount_paid"))
    payment_ref = stripe_invoice.get("payment_intent") or stripe_invoice["id"]

    billing_services.record_payment(subscription, amount, payment_ref=payment_ref)

    invoice = _invoice_for(stripe_invoice, subscription)
    if invoice is not None and not invoice.is_paid:
        invoice_services.record_payment(
            invoice,
            min(amount, invoice.amount_due),
            method="stripe",
            reference=stripe_invoice["id"],
            payment_id=payment_ref,
        )


def handle_invoice_payment_failed(stripe_invoice: dict) -> None:
    """invoice.payment_failed: count the failure and schedule a retry."""
    subscription = _subscription_for(stripe_invoice)
    error = stripe_invoice.get("last_finalization_error") or {}
    reason = error.get("message") or stripe_invoice.get("billing_reason") or "payment_failed"
    billing_services.record_failed_payment(subscription, reason=reason)


def handle_dispute_created(dispute: dict) -> None:
    """charge.dispute.created: flag the invoice the disputed charge paid."""
    references = [ref for ref in (dispute.get("charge"), dispute.get("payment_intent")) if ref]
    transaction_row = (
        PaymentTransaction.objects.filter(kind=PaymentTransaction.Kind.PAYMENT, payment_id__in=references)
        .select_related("invoice")
        .first()
    )
    if transaction_row is None:
        logger.warning("stripe_dispute_unmatched", dispute_id=dispute.get("id"), charge=dispute.get("charge"))
        return
    invoice_services.mark_disputed(transaction_row.invoice, reason=dispute.get("reason") or "disputed")


@csrf_exempt
@require_POST
def stripe_webhook(request: HttpRequest) -> HttpResponse:
    """
    Handle Stripe webhook events.

    Verifies the signature, skips already processed events and dispatches
    to the handlers above. Rejected business operations are acknowledged;
    unexpected failures return 500 so Stripe retries.
    """
    payload = request.body
    sig_header = request.headers.get("Stripe-Signature")

    if not sig_header:
        logger.warning("stripe_webhook_missing_signature")
        return HttpResponse(status=400)

    if not settings.STRIPE_WEBHOOK_SECRET:
        logger.error("stripe_webhook_secret_not_configured")
        return HttpResponse(status=500)

    get_stripe()
    try:
        event = stripe.Webhook.construct_event(
            payload,
            sig_header,
            settings.STRIPE_WEBHOOK_SECRET,
        )
    except ValueError as e:
        logger.warning("stripe_webhook_invalid_payload", error=str(e))
        return HttpResponse(status=400)
    except stripe.SignatureVerificationError as e:
        logger.warning("stripe_webhook_invalid_signature", error=str(e))
        return HttpResponse(status=400)

    logger.info("stripe_webhook_received", event_type=event["type"], event_id=event["id"])

    try:
        with transaction.atomic():
            if not mark_webhook_processed("stripe", event["id"]):
                return HttpResponse(status=200)

            data_object = event["data"]["object"]
            try:
                match event["type"]:
                    case "invoice.paid":
                        handle_invoice_paid(data_object)
                    case "invoice.payment_failed":
                        handle_invoice_payment_failed(data_object)
                    case "charge.dispute.created":
                        handle_dispute_created(data_object)
                    case _:
                        logger.debug("stripe_webhook_unhandled_event", event_type=event["type"])
            except (ValidationError, DomainRuleViolation, NotFoundError) as e:
                logger.warning(
                    "stripe_webhook_rejected",
                    event_type=event["type"],
                    event_id=event["id"],
                    error_code=e.code,
                    error=e.message,
                )

    except Exception:
        logger.exception("stripe_webhook_handler_error", event_type=event["type"])
        # Return 500 so Stripe will retry with exponential backoff
        return HttpResponse(status=500)

    return HttpResponse(status=200)
