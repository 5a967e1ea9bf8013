"""
Event services - outbox publishing, audit records and notifications.

publish_event and create_audit_log raise on failure. Billing code calls the
dispatch_notification / record_audit wrappers instead: those run inside a
savepoint and log failures, so a broken outbox or audit table never aborts
or rolls back a billing mutation.
"""

from datetime import UTC, datetime
from decimal import Decimal
from typing import Any
from uuid import uuid4

import structlog
from django.db import models, transaction

from apps.core.logging import get_logger
from apps.events.models import AuditLog, OutboxEvent
from apps.events.schemas import MAX_PAYLOAD_SIZE_BYTES, EventEnvelope

logger = get_logger(__name__)


def get_correlation_id() -> str | None:
    """Trace ID bound by request middleware or job_context()."""
    ctx = structlog.contextvars.get_contextvars()
    return ctx.get("trace_id") or ctx.get("correlation_id")


def _organization_id_for(aggregate: models.Model) -> str:
    if hasattr(aggregate, "organization_id"):
        return str(aggregate.organization_id)
    if aggregate.__class__.__name__ == "Organization":
        return str(aggregate.pk)
    raise ValueError(
        f"Cannot determine organization_id for {aggregate.__class__.__name__}. "
        "Pass organization_id explicitly."
    )


def publish_event(
    event_type: str,
    aggregate: models.Model,
    data: dict[str, Any],
    actor_id: str | None = None,
    organization_id: str | None = None,
    schema_version: int = 1,
) -> OutboxEvent:
    """
    Write an event to the transactional outbox.

    Call inside the transaction.atomic() block of the mutation it describes.

    Raises:
        ValueError: If the serialized envelope exceeds MAX_PAYLOAD_SIZE_BYTES
    """
    aggregate_type = aggregate.__class__.__name__.lower()
    aggregate_id = str(aggregate.pk)
    organization_id = organization_id or _organization_id_for(aggregate)

    event_id = uuid4()
    envelope = EventEnvelope(
        event_id=event_id,
        event_type=event_type,
        schema_version=schema_version,
        occurred_at=datetime.now(UTC),
        aggregate_id=aggregate_id,
        aggregate_type=aggregate_type,
        organization_id=organization_id,
        correlation_id=get_correlation_id(),
        actor_id=actor_id or "system",
        data=data,
    )

    payload_json = envelope.model_dump_json()
    if len(payload_json.encode("utf-8")) > MAX_PAYLOAD_SIZE_BYTES:
        raise ValueError(f"Event payload exceeds {MAX_PAYLOAD_SIZE_BYTES} bytes limit.")

    outbox_event = OutboxEvent.objects.create(
        event_id=event_id,
        event_type=event_type,
        aggregate_type=aggregate_type,
        aggregate_id=aggregate_id,
        organization_id=organization_id,
        schema_version=schema_version,
        payload=envelope.model_dump(mode="json"),
    )

    logger.debug("outbox_event_created", event_type=event_type, event_id=str(event_id))
    return outbox_event


def create_audit_log(
    action: str,
    aggregate: models.Model,
    actor_id: str | None = None,
    diff: dict[str, Any] | None = None,
    metadata: dict[str, Any] | None = None,
) -> AuditLog:
    """
    Create an audit log entry.

    Args:
        action: Action type, e.g. 'invoice.refunded'
        aggregate: The model instance this action affected
        actor_id: User who performed the action (None for system jobs)
        diff: Field-level changes {'old': {...}, 'new': {...}}
        metadata: Additional context (reason, amounts)
    """
    return AuditLog.objects.create(
        action=action,
        aggregate_type=aggregate.__class__.__name__.lower(),
        aggregate_id=str(aggregate.pk),
        organization_id=_organization_id_for(aggregate),
        actor_id=actor_id or "system",
        correlation_id=get_correlation_id() or "",
        diff=_jsonable(diff or {}),
        metadata=_jsonable(metadata or {}),
    )


def dispatch_notification(
    event_type: str,
    aggregate: models.Model,
    data: dict[str, Any],
    actor_id: str | None = None,
) -> OutboxEvent | None:
    """Fire-and-forget notification (invoice sent, reminders, disputes)."""
    try:
        with transaction.atomic():
            return publish_event(event_type, aggregate, data, actor_id=actor_id)
    except Exception:
        logger.exception(
            "notification_dispatch_failed",
            event_type=event_type,
            aggregate_id=str(aggregate.pk),
        )
        return None


def record_audit(
    action: str,
    aggregate: models.Model,
    actor_id: str | None = None,
    diff: dict[str, Any] | None = None,
    metadata: dict[str, Any] | None = None,
) -> AuditLog | None:
    """Write an audit record without letting a failure abort the caller."""
    try:
        with transaction.atomic():
            return create_audit_log(action, aggregate, actor_id=actor_id, diff=diff, metadata=metadata)
    except Exception:
        logger.exception("audit_log_write_failed", action=action, aggregate_id=str(aggregate.pk))
        return None


def _jsonable(value: Any) -> Any:
    """Make Decimal and datetime values JSONField-safe."""
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, list | tuple):
        return [_jsonable(v) for v in value]
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    return value


def deliver_pending_events(batch_size: int = 100) -> int:
    """
    Hand one batch of pending outbox events to the notification channel.

    Rows are claimed with SELECT FOR UPDATE SKIP LOCKED so concurrent workers
    never deliver the same event twice. An event whose payload no longer
    parses as an EventEnvelope is marked failed and skipped.

    Returns:
        Number of events delivered.
    """
    delivered = 0
    with transaction.atomic():
        events = list(
            OutboxEvent.objects.select_for_update(skip_locked=True)
            .filter(status=OutboxEvent.Status.PENDING)
            .order_by("created_at")[:batch_size]
        )
        for event in events:
            try:
                envelope = EventEnvelope(**event.payload)
            except ValueError as e:
                logger.error("event_payload_parse_failed", event_id=str(event.event_id), error=str(e))
                event.status = OutboxEvent.Status.FAILED
                event.save(update_fields=["status"])
                continue

            logger.info(
                "notification_delivered",
                event_type=envelope.event_type,
                event_id=str(envelope.event_id),
                aggregate_type=envelope.aggregate_type,
                aggregate_id=envelope.aggregate_id,
                organization_id=envelope.organization_id,
            )
            event.status = OutboxEvent.Status.PUBLISHED
            event.published_at = datetime.now(UTC)
            event.save(update_fields=["status", "published_at"])
            delivered += 1
    return delivered
