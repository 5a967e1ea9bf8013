"""
Tests for EventEnvelope schema.
"""

from datetime import UTC, datetime
from uuid import uuid4

import pytest
from pydantic import ValidationError

from apps.events.schemas import EventEnvelope


class TestEventEnvelope:
    """Tests for EventEnvelope schema."""

    def test_create_valid_envelope(self):
        """Test creating a valid event envelope with defaults."""
        envelope = EventEnvelope(
            event_id=uuid4(),
            event_type="subscription.past_due",
            occurred_at=datetime(2024, 3, 15, tzinfo=UTC),
            aggregate_id="9",
            aggregate_type="subscription",
            organization_id="4",
        )

        assert envelope.schema_version == 1
        assert envelope.actor_id == "system"
        assert envelope.correlation_id is None
        assert envelope.data == {}

    def test_json_round_trip_keeps_event_id(self):
        """Test that JSON serialization keeps the event ID as a string."""
        event_id = uuid4()
        envelope = EventEnvelope(
            event_id=event_id,
            event_type="invoice.sent",
            occurred_at=datetime(2024, 3, 15, tzinfo=UTC),
            aggregate_id="1",
            aggregate_type="invoice",
            organization_id="1",
            data={"total": "100.00"},
        )

        dumped = envelope.model_dump(mode="json")

        assert dumped["event_id"] == str(event_id)
        assert dumped["data"]["total"] == "100.00"

    def test_requires_aggregate(self):
        """Test that aggregate fields are required."""
        with pytest.raises(ValidationError):
            EventEnvelope(
                event_id=uuid4(),
                event_type="invoice.sent",
                occurred_at=datetime(2024, 3, 15, tzinfo=UTC),
            )
