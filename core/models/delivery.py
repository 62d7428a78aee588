"""Delivery attempt domain models."""

from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, Field

from core.models.contact import Channel, RecipientRole


class DeliveryOutcome(str, Enum):
    """Result of one send attempt."""

    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class DeliveryAttempt(BaseModel):
    """One try at delivering one rendered message to one address."""

    id: UUID
    event_id: UUID
    ticket_id: UUID
    recipient_role: RecipientRole
    recipient: str
    channel: Channel
    template_id: str
    subject: str | None = None
    body: str
    attempt_number: int = Field(..., ge=1)
    outcome: DeliveryOutcome
    error: str | None = None
    permanent_failure: bool = False
    message_id: str | None = None
    attempted_at: datetime
    completed_at: datetime | None = None

    model_config = {"from_attributes": True}

    @property
    def key(self) -> tuple[UUID, str, Channel]:
        """Idempotency key: at most one sent attempt per key."""
        return (self.event_id, self.recipient, self.channel)
