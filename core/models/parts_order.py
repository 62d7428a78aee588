"""Parts order domain models."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, Field


class PartsOrderStatus(str, Enum):
    """Parts order lifecycle status."""

    PENDING = "pending"
    ORDERED = "ordered"
    RECEIVED = "received"
    CANCELLED = "cancelled"


class PartsUrgency(str, Enum):
    """How quickly the part is needed."""

    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class PartsOrderCreate(BaseModel):
    """Data required to request a part for a ticket."""

    part_description: str = Field(..., min_length=1, max_length=255)
    urgency: PartsUrgency = PartsUrgency.NORMAL
    estimated_cost: Decimal | None = Field(None, ge=0)


class PartsOrder(BaseModel):
    """Full parts order entity as stored."""

    id: UUID
    ticket_id: UUID
    part_description: str
    ordered_by: str
    status: PartsOrderStatus
    urgency: PartsUrgency
    estimated_cost: Decimal | None
    actual_cost: Decimal | None
    created_at: datetime
    ordered_at: datetime | None = None
    received_at: datetime | None = None
    cancelled_at: datetime | None = None

    model_config = {"from_attributes": True}

    @property
    def is_open(self) -> bool:
        """Pending or ordered orders count against the one-open-order rule."""
        return self.status in (PartsOrderStatus.PENDING, PartsOrderStatus.ORDERED)
