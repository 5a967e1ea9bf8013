"""
Events models - transactional outbox and billing audit trail.
"""

import uuid

from django.db import models


class OutboxEvent(models.Model):
    """
    Transactional outbox for billing events.

    Rows are written in the same transaction as the billing mutation. The
    notification dispatcher and downstream consumers read from here, so a
    rolled-back mutation never leaks an event.
    """

    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        PUBLISHED = "published", "Published"
        FAILED = "failed", "Failed"

    id = models.BigAutoField(primary_key=True)

    event_id = models.UUIDField(
        unique=True,
        default=uuid.uuid4,
        db_index=True,
        help_text="Unique event identifier for consumer idempotency",
    )
    event_type = models.CharField(
        max_length=100,
        db_index=True,
        help_text="Event type, e.g. 'invoice.sent'",
    )
    aggregate_type = models.CharField(max_length=50, help_text="Entity type, e.g. 'invoice'")
    aggregate_id = models.CharField(max_length=100)
    organization_id = models.CharField(max_length=100, db_index=True)
    schema_version = models.PositiveIntegerField(default=1)

    payload = models.JSONField(help_text="Complete event envelope")

    status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.PENDING,
        db_index=True,
    )
    created_at = models.DateTimeField(auto_now_add=True)
    published_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["created_at"]
        indexes = [
            models.Index(fields=["aggregate_type", "aggregate_id"]),
        ]

    def __str__(self) -> str:
        return f"{self.event_type} ({self.status})"


class AuditLog(models.Model):
    """
    Permanent audit record for billing mutations (void, refund, waive, cost
    adjustments, cancellations). Retained for compliance.
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    action = models.CharField(
        max_length=100,
        db_index=True,
        help_text="Action type, e.g. 'invoice.voided'",
    )
    aggregate_type = models.CharField(max_length=50)
    aggregate_id = models.CharField(max_length=100)
    organization_id = models.CharField(max_length=100, db_index=True)

    actor_id = models.CharField(
        max_length=100,
        db_index=True,
        help_text="User or system ID that performed the action",
    )
    correlation_id = models.CharField(max_length=64, blank=True, db_index=True)

    diff = models.JSONField(
        default=dict,
        blank=True,
        help_text="Field-level changes: {'old': {...}, 'new': {...}}",
    )
    metadata = models.JSONField(default=dict, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["organization_id", "created_at"]),
            models.Index(fields=["aggregate_type", "aggregate_id"]),
        ]

    def __str__(self) -> str:
        return f"{self.action} by {self.actor_id}"
