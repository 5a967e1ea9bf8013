"""
Payment gateway adapter - charges a subscription's saved payment method.

The lifecycle services never call Stripe directly. Callers run charge()
outside any database transaction and feed the outcome back through
record_payment / record_failed_payment.
"""

from dataclasses import dataclass
from decimal import Decimal

import stripe

from apps.billing.models import Subscription
from apps.billing.stripe_client import get_stripe, is_configured
from apps.core.exceptions import TransientError
from apps.core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class ChargeResult:
    succeeded: bool
    payment_ref: str = ""
    failure_reason: str = ""


def to_minor_units(amount: Decimal) -> int:
    return int((amount * 100).to_integral_value())


def charge(subscription: Subscription, amount: Decimal, idempotency_key: str) -> ChargeResult:
    """
    Charge amount off-session.

    Card declines come back as a failed ChargeResult.

    Raises:
        TransientError: Network failure or rate limiting at the gateway.
    """
    customer_id = subscription.organization.stripe_customer_id
    if not customer_id or not subscription.payment_method_id:
        return ChargeResult(succeeded=False, failure_reason="no_payment_method")
    if not is_configured():
        raise TransientError("Payment gateway is not configured", code="GATEWAY_NOT_CONFIGURED")

    client = get_stripe()
    try:
        intent = client.PaymentIntent.create(
            amount=to_minor_units(amount),
            currency=subscription.billing_currency.lower(),
            customer=customer_id,
            payment_method=subscription.payment_method_id,
            off_session=True,
            confirm=True,
            metadata={
                "subscription_id": subscription.subscription_id,
                "organization_id": str(subscription.organization_id),
            },
            idempotency_key=idempotency_key,
        )
    except stripe.CardError as e:
        logger.info("gateway_charge_declined", subscription_id=subscription.subscription_id, code=e.code)
        return ChargeResult(succeeded=False, failure_reason=e.code or "card_declined")
    except (stripe.APIConnectionError, stripe.RateLimitError) as e:
        raise TransientError(f"Payment gateway unavailable: {e}", code="GATEWAY_TIMEOUT") from e

    if intent.status == "succeeded":
        return ChargeResult(succeeded=True, payment_ref=intent.id)
    return ChargeResult(succeeded=False, payment_ref=intent.id, failure_reason=f"payment_intent_{intent.status}")
