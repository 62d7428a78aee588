"""
Notification events emitted by the ticket lifecycle.

Exactly one NotificationEvent is produced per committed status transition.
Events are immutable and persisted in the same commit as the status change,
then published on the event bus for the dispatcher.

Event kinds map 1:1 to notification templates. Some kinds are "billable"
(they appear in a supplier's daily digest) and some are "repair relevant"
(the assigned technician hears about them).
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from utils.timezone import now_utc


class EventKind(str, Enum):
    """What happened to the ticket."""

    STATUS_CHANGED = "status_changed"
    AWAITING_PARTS = "awaiting_parts"
    ADDITIONAL_PARTS_NEEDED = "additional_parts_needed"
    PARTS_ORDERED = "parts_ordered"
    PARTS_RECEIVED = "parts_received"
    SERVICE_COMPLETED = "service_completed"
    SERVICE_BILLED = "service_billed"
    SERVICE_CANCELLED = "service_cancelled"
    # Not tied to a transition; used only to resolve the digest template.
    DAILY_REPORT = "daily_report"


BILLABLE_KINDS = frozenset({
    EventKind.PARTS_ORDERED,
    EventKind.PARTS_RECEIVED,
    EventKind.SERVICE_COMPLETED,
})

REPAIR_RELEVANT_KINDS = frozenset({
    EventKind.PARTS_ORDERED,
    EventKind.PARTS_RECEIVED,
    EventKind.ADDITIONAL_PARTS_NEEDED,
    EventKind.SERVICE_CANCELLED,
})


@dataclass(frozen=True, kw_only=True)
class NotificationEvent:
    """A committed ticket transition, as seen by the notification layer."""

    ticket_id: UUID
    kind: EventKind
    payload: dict[str, Any] = field(default_factory=dict)
    event_id: UUID = field(default_factory=uuid4)
    occurred_at: datetime = field(default_factory=now_utc)

    @classmethod
    def create(cls, ticket_id: UUID, kind: EventKind, payload: dict[str, Any]) -> "NotificationEvent":
        return cls(ticket_id=ticket_id, kind=kind, payload=dict(payload))

    @property
    def is_billable(self) -> bool:
        return self.kind in BILLABLE_KINDS
