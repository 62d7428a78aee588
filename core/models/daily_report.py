"""Supplier daily billing digest models."""

from datetime import date, datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, Field

from core.models.ticket import SupplierKind


class ReportStatus(str, Enum):
    """Digest delivery status."""

    PENDING = "pending"
    SENT = "sent"


class DailyReport(BaseModel):
    """One digest per supplier per local calendar day."""

    id: UUID
    supplier_kind: SupplierKind
    report_date: date
    event_ids: list[UUID] = Field(default_factory=list)
    no_activity: bool = False
    status: ReportStatus = ReportStatus.PENDING
    delivered_to: list[str] = Field(default_factory=list)
    last_error: str | None = None
    generated_at: datetime
    sent_at: datetime | None = None

    model_config = {"from_attributes": True}

    @property
    def is_sent(self) -> bool:
        return self.status == ReportStatus.SENT
