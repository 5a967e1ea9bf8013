"""
Stripe SDK setup shared by the payment gateway adapter and the webhook view.
"""

from types import ModuleType

import stripe

from config.settings.base import settings

# Pinned so PaymentIntent and webhook payload shapes do not drift
STRIPE_API_VERSION = "2025-06-30.basil"

# Off-session charges always carry an idempotency key, so SDK retries
# cannot double charge.
STRIPE_MAX_NETWORK_RETRIES = 2


def is_configured() -> bool:
    return bool(settings.STRIPE_SECRET_KEY)


def configure_stripe() -> None:
    stripe.api_key = settings.STRIPE_SECRET_KEY
    stripe.api_version = STRIPE_API_VERSION
    stripe.max_network_retries = STRIPE_MAX_NETWORK_RETRIES


def get_stripe() -> ModuleType:
    """Stripe module with the API key and version applied."""
    configure_stripe()
    return stripe
