"""Service ticket domain models."""

from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, Field, model_validator


class TicketStatus(str, Enum):
    """Repair ticket lifecycle status."""

    INTAKE = "intake"
    DIAGNOSED = "diagnosed"
    AWAITING_PARTS = "awaiting_parts"
    PARTS_ORDERED = "parts_ordered"
    PARTS_RECEIVED = "parts_received"
    IN_REPAIR = "in_repair"
    COMPLETED = "completed"
    BILLED = "billed"
    CANCELLED = "cancelled"


class SupplierKind(str, Enum):
    """External parts vendor a ticket is billed through."""

    NONE = "none"
    SUPPLIER_A = "supplier_a"
    SUPPLIER_B = "supplier_b"


def _check_supplier_exclusive(business_partner_id: UUID | None, supplier_kind: "SupplierKind") -> None:
    if business_partner_id is not None and supplier_kind != SupplierKind.NONE:
        raise ValueError(
            "A ticket serviced for a business partner cannot also carry a supplier kind"
        )


class TicketCreate(BaseModel):
    """Data required to open a ticket."""

    client_id: UUID
    technician_id: UUID | None = None
    business_partner_id: UUID | None = None
    supplier_kind: SupplierKind = SupplierKind.NONE
    device_type: str = Field(..., min_length=1, max_length=100)
    manufacturer: str | None = Field(None, max_length=100)
    problem_description: str | None = Field(None, max_length=2000)

    @model_validator(mode="after")
    def supplier_excludes_partner(self) -> "TicketCreate":
        _check_supplier_exclusive(self.business_partner_id, self.supplier_kind)
        return self


class ServiceTicket(BaseModel):
    """Full ticket entity as stored."""

    id: UUID
    status: TicketStatus
    client_id: UUID
    technician_id: UUID | None
    business_partner_id: UUID | None
    supplier_kind: SupplierKind
    device_type: str
    manufacturer: str | None
    problem_description: str | None
    created_at: datetime
    last_transition_at: datetime

    model_config = {"from_attributes": True}

    @model_validator(mode="after")
    def supplier_excludes_partner(self) -> "ServiceTicket":
        _check_supplier_exclusive(self.business_partner_id, self.supplier_kind)
        return self

    @property
    def reference(self) -> str:
        """Short human-facing ticket number used in messages."""
        return self.id.hex[:8].upper()

    @property
    def is_terminal(self) -> bool:
        """Whether the ticket can no longer change status."""
        return self.status in (TicketStatus.BILLED, TicketStatus.CANCELLED)
