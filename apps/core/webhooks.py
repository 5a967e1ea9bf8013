"""
Exactly-once handling for inbound payment provider webhooks.

Providers deliver at least once. The handler claims the event ID before
applying it; the claim commits or rolls back with the billing changes.
"""

from django.db import IntegrityError, transaction

from apps.core.logging import get_logger
from apps.core.models import ProcessedWebhook

logger = get_logger(__name__)


def mark_webhook_processed(source: str, event_id: str) -> bool:
    """
    Claim a webhook event for processing.

    Call inside the transaction.atomic() block that handles the event, so a
    failing handler rolls the claim back and the provider's retry is
    processed again.

    Returns:
        True if claimed, False if the event was already processed
    """
    try:
        with transaction.atomic():
            ProcessedWebhook.objects.create(source=source, event_id=event_id)
        return True
    except IntegrityError:
        logger.info("webhook_already_processed", source=source, event_id=event_id)
        return False
