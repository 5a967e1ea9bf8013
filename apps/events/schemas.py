"""
Event schemas - Pydantic models for the outbox envelope.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field


class EventEnvelope(BaseModel):
    """Envelope shared by every billing event written to the outbox."""

    event_id: UUID = Field(description="Unique event ID for idempotency")
    event_type: str = Field(description="Event type, e.g. 'invoice.sent'")
    schema_version: int = Field(default=1)

    occurred_at: datetime = Field(description="When the event happened (UTC)")

    aggregate_id: str
    aggregate_type: str
    organization_id: str

    correlation_id: str | None = Field(default=None, description="Request or job trace ID")
    actor_id: str = Field(default="system", description="User ID or 'system'")

    data: dict[str, Any] = Field(default_factory=dict)


# Upper bound on serialized envelope size accepted by the dispatcher
MAX_PAYLOAD_SIZE_BYTES = 256 * 1024
