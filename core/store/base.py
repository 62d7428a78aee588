"""
Persistence contract for the lifecycle and notification core.

Implementations must enforce, at the storage layer:
- at most one open (pending/ordered) parts order per ticket
- at most one pending-or-sent delivery attempt per (event, recipient, channel)
- each attempt_number used at most once per (event, recipient, channel)
- at most one daily report per (supplier kind, report date)
- commit_transition() writes the status, the parts-order flip and the event
  atomically, and only if the ticket still has the expected status
"""

from abc import ABC, abstractmethod
from datetime import date, datetime
from uuid import UUID

from core.events import EventKind, NotificationEvent
from core.models import (
    DailyReport,
    DeliveryAttempt,
    DeliveryOutcome,
    PartsOrder,
    ServiceTicket,
    SupplierKind,
    TicketStatus,
)


class ServiceDeskRepository(ABC):
    """Transactional storage for tickets, parts orders, events, attempts and reports."""

    # -- tickets ---------------------------------------------------------

    @abstractmethod
    def add_ticket(self, ticket: ServiceTicket) -> ServiceTicket: ...

    @abstractmethod
    def get_ticket(self, ticket_id: UUID) -> ServiceTicket | None: ...

    @abstractmethod
    def commit_transition(
        self,
        ticket: ServiceTicket,
        expected_status: TicketStatus,
        event: NotificationEvent,
        parts_order: PartsOrder | None = None,
    ) -> ServiceTicket:
        """
        Persist a status change together with its event.

        Raises:
            NotFoundError: Ticket does not exist
            InvalidTransitionError: Stored status is no longer expected_status
        """

    # -- parts orders ----------------------------------------------------

    @abstractmethod
    def add_parts_order(self, order: PartsOrder) -> PartsOrder:
        """
        Raises:
            PartsOrderConflictError: Ticket already has an open order
        """

    @abstractmethod
    def save_parts_order(self, order: PartsOrder) -> PartsOrder: ...

    @abstractmethod
    def get_parts_order(self, order_id: UUID) -> PartsOrder | None: ...

    @abstractmethod
    def list_parts_orders(self, ticket_id: UUID) -> list[PartsOrder]: ...

    def get_open_parts_order(self, ticket_id: UUID) -> PartsOrder | None:
        for order in self.list_parts_orders(ticket_id):
            if order.is_open:
                return order
        return None

    # -- events ----------------------------------------------------------

    @abstractmethod
    def get_event(self, event_id: UUID) -> NotificationEvent | None: ...

    @abstractmethod
    def list_events(self, ticket_id: UUID) -> list[NotificationEvent]: ...

    @abstractmethod
    def add_event(self, event: NotificationEvent) -> NotificationEvent:
        """
        Store an event outside a transition (imports and replays).

        Raises:
            NotFoundError: Ticket does not exist
        """

    @abstractmethod
    def list_supplier_events(
        self,
        supplier_kind: SupplierKind,
        kinds: frozenset[EventKind],
        start: datetime,
        end: datetime,
    ) -> list[NotificationEvent]:
        """Events of the given kinds on the supplier's tickets, start <= occurred_at < end."""

    # -- delivery attempts -----------------------------------------------

    @abstractmethod
    def claim_attempt(self, attempt: DeliveryAttempt) -> bool:
        """
        Insert a PENDING attempt unless the triple is already pending or sent,
        or its attempt_number has already been used for the triple.

        Returns:
            True if inserted, False if another attempt holds the triple or the number
        """

    @abstractmethod
    def complete_attempt(
        self,
        attempt_id: UUID,
        outcome: DeliveryOutcome,
        completed_at: datetime,
        error: str | None = None,
        message_id: str | None = None,
        permanent_failure: bool = False,
    ) -> DeliveryAttempt: ...

    @abstractmethod
    def list_attempts(self, event_id: UUID) -> list[DeliveryAttempt]: ...

    @abstractmethod
    def list_ticket_attempts(self, ticket_id: UUID) -> list[DeliveryAttempt]: ...

    @abstractmethod
    def expire_pending_attempts(self, started_before: datetime, completed_at: datetime) -> int:
        """Mark attempts stuck in PENDING (crashed sender) as FAILED. Returns count."""

    # -- daily reports ---------------------------------------------------

    @abstractmethod
    def get_daily_report(self, supplier_kind: SupplierKind, report_date: date) -> DailyReport | None: ...

    @abstractmethod
    def create_daily_report(self, report: DailyReport) -> DailyReport:
        """
        Raises:
            DuplicateReportError: A report already exists for (supplier_kind, report_date)
        """

    @abstractmethod
    def save_daily_report(self, report: DailyReport) -> DailyReport: ...
