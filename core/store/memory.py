"""
In-memory repository.

Every method runs under one re-entrant lock, which makes each call a
transaction. Models are copied on the way in and out so callers never
share mutable state with the store.
"""

import threading
from dataclasses import replace
from datetime import date, datetime
from uuid import UUID

from core.events import EventKind, NotificationEvent
from core.exceptions import (
    DuplicateReportError,
    InvalidTransitionError,
    NotFoundError,
    PartsOrderConflictError,
)
from core.models import (
    DailyReport,
    DeliveryAttempt,
    DeliveryOutcome,
    PartsOrder,
    ServiceTicket,
    SupplierKind,
    TicketStatus,
)
from core.store.base import ServiceDeskRepository


def _copy_event(event: NotificationEvent) -> NotificationEvent:
    return replace(event, payload=dict(event.payload))


class InMemoryRepository(ServiceDeskRepository):
    """Process-local storage with the same guarantees as the SQL store."""

    def __init__(self):
        self._lock = threading.RLock()
        self._tickets: dict[UUID, ServiceTicket] = {}
        self._parts_orders: dict[UUID, PartsOrder] = {}
        self._events: dict[UUID, NotificationEvent] = {}
        self._attempts: dict[UUID, DeliveryAttempt] = {}
        self._reports: dict[tuple[SupplierKind, date], DailyReport] = {}

    # -- tickets ---------------------------------------------------------

    def add_ticket(self, ticket: ServiceTicket) -> ServiceTicket:
        with self._lock:
            self._tickets[ticket.id] = ticket.model_copy()
            return ticket.model_copy()

    def get_ticket(self, ticket_id: UUID) -> ServiceTicket | None:
        with self._lock:
            ticket = self._tickets.get(ticket_id)
            return ticket.model_copy() if ticket else None

    def commit_transition(
        self,
        ticket: ServiceTicket,
        expected_status: TicketStatus,
        event: NotificationEvent,
        parts_order: PartsOrder | None = None,
    ) -> ServiceTicket:
        with self._lock:
            stored = self._tickets.get(ticket.id)
            if stored is None:
                raise NotFoundError("Ticket", ticket.id)
            if stored.status != expected_status:
                raise InvalidTransitionError(
                    stored.status.value, ticket.status.value, "ticket changed concurrently"
                )
            if parts_order is not None and parts_order.id not in self._parts_orders:
                raise NotFoundError("Parts order", parts_order.id)

            self._tickets[ticket.id] = ticket.model_copy()
            if parts_order is not None:
                self._parts_orders[parts_order.id] = parts_order.model_copy()
            self._events[event.event_id] = _copy_event(event)
            return ticket.model_copy()

    # -- parts orders ----------------------------------------------------

    def add_parts_order(self, order: PartsOrder) -> PartsOrder:
        with self._lock:
            if order.is_open and self.get_open_parts_order(order.ticket_id) is not None:
                raise PartsOrderConflictError(
                    f"Ticket {order.ticket_id} already has an open parts order"
                )
            self._parts_orders[order.id] = order.model_copy()
            return order.model_copy()

    def save_parts_order(self, order: PartsOrder) -> PartsOrder:
        with self._lock:
            if order.id not in self._parts_orders:
                raise NotFoundError("Parts order", order.id)
            self._parts_orders[order.id] = order.model_copy()
            return order.model_copy()

    def get_parts_order(self, order_id: UUID) -> PartsOrder | None:
        with self._lock:
            order = self._parts_orders.get(order_id)
            return order.model_copy() if order else None

    def list_parts_orders(self, ticket_id: UUID) -> list[PartsOrder]:
        with self._lock:
            orders = [o for o in self._parts_orders.values() if o.ticket_id == ticket_id]
            return [o.model_copy() for o in sorted(orders, key=lambda o: o.created_at)]

    # -- events ----------------------------------------------------------

    def get_event(self, event_id: UUID) -> NotificationEvent | None:
        with self._lock:
            event = self._events.get(event_id)
            return _copy_event(event) if event else None

    def list_events(self, ticket_id: UUID) -> list[NotificationEvent]:
        with self._lock:
            events = [e for e in self._events.values() if e.ticket_id == ticket_id]
            return [_copy_event(e) for e in sorted(events, key=lambda e: e.occurred_at)]

    def add_event(self, event: NotificationEvent) -> NotificationEvent:
        """Store an event outside a transition (imports and replays)."""
        with self._lock:
            if event.ticket_id not in self._tickets:
                raise NotFoundError("Ticket", event.ticket_id)
            self._events[event.event_id] = _copy_event(event)
            return _copy_event(event)

    def list_supplier_events(
        self,
        supplier_kind: SupplierKind,
        kinds: frozenset[EventKind],
        start: datetime,
        end: datetime,
    ) -> list[NotificationEvent]:
        with self._lock:
            matches = [
                e for e in self._events.values()
                if e.kind in kinds
                and start <= e.occurred_at < end
                and self._tickets[e.ticket_id].supplier_kind == supplier_kind
            ]
            return [_copy_event(e) for e in sorted(matches, key=lambda e: e.occurred_at)]

    # -- delivery attempts -----------------------------------------------

    def claim_attempt(self, attempt: DeliveryAttempt) -> bool:
        with self._lock:
            for existing in self._attempts.values():
                if existing.key != attempt.key:
                    continue
                if existing.outcome in (DeliveryOutcome.PENDING, DeliveryOutcome.SENT):
                    return False
                if existing.attempt_number == attempt.attempt_number:
                    return False
            self._attempts[attempt.id] = attempt.model_copy()
            return True

    def complete_attempt(
        self,
        attempt_id: UUID,
        outcome: DeliveryOutcome,
        completed_at: datetime,
        error: str | None = None,
        message_id: str | None = None,
        permanent_failure: bool = False,
    ) -> DeliveryAttempt:
        with self._lock:
            current = self._attempts.get(attempt_id)
            if current is None:
                raise NotFoundError("Delivery attempt", attempt_id)
            updated = current.model_copy(update={
                "outcome": outcome,
                "completed_at": completed_at,
                "error": error,
                "message_id": message_id,
                "permanent_failure": permanent_failure,
            })
            self._attempts[attempt_id] = updated
            return updated.model_copy()

    def list_attempts(self, event_id: UUID) -> list[DeliveryAttempt]:
        with self._lock:
            attempts = [a for a in self._attempts.values() if a.event_id == event_id]
            return [a.model_copy() for a in self._sorted_attempts(attempts)]

    def list_ticket_attempts(self, ticket_id: UUID) -> list[DeliveryAttempt]:
        with self._lock:
            attempts = [a for a in self._attempts.values() if a.ticket_id == ticket_id]
            return [a.model_copy() for a in self._sorted_attempts(attempts)]

    @staticmethod
    def _sorted_attempts(attempts: list[DeliveryAttempt]) -> list[DeliveryAttempt]:
        return sorted(attempts, key=lambda a: (a.attempted_at, a.recipient, a.channel.value, a.attempt_number))

    def expire_pending_attempts(self, started_before: datetime, completed_at: datetime) -> int:
        with self._lock:
            stale = [
                a for a in self._attempts.values()
                if a.outcome == DeliveryOutcome.PENDING and a.attempted_at < started_before
            ]
            for attempt in stale:
                self._attempts[attempt.id] = attempt.model_copy(update={
                    "outcome": DeliveryOutcome.FAILED,
                    "completed_at": completed_at,
                    "error": "Sender did not report an outcome",
                })
            return len(stale)

    # -- daily reports ---------------------------------------------------

    def get_daily_report(self, supplier_kind: SupplierKind, report_date: date) -> DailyReport | None:
        with self._lock:
            report = self._reports.get((supplier_kind, report_date))
            return report.model_copy(deep=True) if report else None

    def create_daily_report(self, report: DailyReport) -> DailyReport:
        with self._lock:
            key = (report.supplier_kind, report.report_date)
            if key in self._reports:
                raise DuplicateReportError(
                    f"Daily report for {report.supplier_kind.value} on {report.report_date} already exists"
                )
            self._reports[key] = report.model_copy(deep=True)
            return report.model_copy(deep=True)

    def save_daily_report(self, report: DailyReport) -> DailyReport:
        with self._lock:
            key = (report.supplier_kind, report.report_date)
            existing = self._reports.get(key)
            if existing is None or existing.id != report.id:
                raise NotFoundError("Daily report", report.id)
            self._reports[key] = report.model_copy(deep=True)
            return report.model_copy(deep=True)
