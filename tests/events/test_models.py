"""
Tests for event models.
"""

import pytest
from django.db import IntegrityError

from apps.events.models import AuditLog, OutboxEvent


@pytest.mark.django_db
class TestOutboxEvent:
    """Tests for OutboxEvent model."""

    def test_create_outbox_event(self):
        """Test creating an outbox event with required fields."""
        event = OutboxEvent.objects.create(
            event_type="invoice.sent",
            aggregate_type="invoice",
            aggregate_id="17",
            organization_id="4",
            payload={"event_type": "invoice.sent", "data": {"number": "INV-202403-0001"}},
        )

        assert event.event_id is not None
        assert event.status == OutboxEvent.Status.PENDING
        assert event.published_at is None
        assert str(event) == "invoice.sent (pending)"

    def test_event_id_unique(self):
        """Test that event_id is unique for consumer idempotency."""
        first = OutboxEvent.objects.create(
            event_type="invoice.sent",
            aggregate_type="invoice",
            aggregate_id="1",
            organization_id="1",
            payload={},
        )

        with pytest.raises(IntegrityError):
            OutboxEvent.objects.create(
                event_id=first.event_id,
                event_type="invoice.sent",
                aggregate_type="invoice",
                aggregate_id="2",
                organization_id="1",
                payload={},
            )


@pytest.mark.django_db
class TestAuditLog:
    """Tests for AuditLog model."""

    def test_create_audit_log(self):
        """Test creating an audit entry."""
        entry = AuditLog.objects.create(
            action="invoice.voided",
            aggregate_type="invoice",
            aggregate_id="17",
            organization_id="4",
            actor_id="usr_1",
            diff={"old": {"status": "sent"}, "new": {"status": "void"}},
        )

        assert entry.id is not None
        assert entry.metadata == {}
        assert str(entry) == "invoice.voided by usr_1"
