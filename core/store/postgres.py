"""
PostgreSQL repository.

Storage-level guarantees come from constraints, not from application checks:
- parts_orders_one_open: partial unique index, one pending/ordered order per ticket
- delivery_attempts_live_key: partial unique index on (event_id, recipient, channel)
  for pending/sent rows, which is what makes claim_attempt() a safe claim
- delivery_attempts_number_key: one row per attempt number of a triple, which
  keeps concurrent retries inside the attempt budget
- daily_reports (supplier_kind, report_date) unique
"""

import logging
from datetime import date, datetime
from uuid import UUID

import psycopg2.errors
from psycopg2.extras import Json

from clients.postgres_client import PostgresClient, Transaction
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

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS service_tickets (
    id UUID PRIMARY KEY,
    status TEXT NOT NULL,
    client_id UUID NOT NULL,
    technician_id UUID,
    business_partner_id UUID,
    supplier_kind TEXT NOT NULL DEFAULT 'none',
    device_type TEXT NOT NULL,
    manufacturer TEXT,
    problem_description TEXT,
    created_at TIMESTAMPTZ NOT NULL,
    last_transition_at TIMESTAMPTZ NOT NULL,
    CONSTRAINT supplier_excludes_partner
        CHECK (business_partner_id IS NULL OR supplier_kind = 'none')
);

CREATE TABLE IF NOT EXISTS parts_orders (
    id UUID PRIMARY KEY,
    ticket_id UUID NOT NULL REFERENCES service_tickets(id),
    part_description TEXT NOT NULL,
    ordered_by TEXT NOT NULL,
    status TEXT NOT NULL,
    urgency TEXT NOT NULL,
    estimated_cost NUMERIC(12, 2),
    actual_cost NUMERIC(12, 2),
    created_at TIMESTAMPTZ NOT NULL,
    ordered_at TIMESTAMPTZ,
    received_at TIMESTAMPTZ,
    cancelled_at TIMESTAMPTZ
);

CREATE UNIQUE INDEX IF NOT EXISTS parts_orders_one_open
    ON parts_orders (ticket_id) WHERE status IN ('pending', 'ordered');

CREATE TABLE IF NOT EXISTS notification_events (
    event_id UUID PRIMARY KEY,
    ticket_id UUID NOT NULL REFERENCES service_tickets(id),
    kind TEXT NOT NULL,
    payload JSONB NOT NULL,
    occurred_at TIMESTAMPTZ NOT NULL
);

CREATE INDEX IF NOT EXISTS notification_events_ticket
    ON notification_events (ticket_id, occurred_at);
CREATE INDEX IF NOT EXISTS notification_events_kind_time
    ON notification_events (kind, occurred_at);

CREATE TABLE IF NOT EXISTS delivery_attempts (
    id UUID PRIMARY KEY,
    event_id UUID NOT NULL REFERENCES notification_events(event_id),
    ticket_id UUID NOT NULL REFERENCES service_tickets(id),
    recipient_role TEXT NOT NULL,
    recipient TEXT NOT NULL,
    channel TEXT NOT NULL,
    template_id TEXT NOT NULL,
    subject TEXT,
    body TEXT NOT NULL,
    attempt_number INTEGER NOT NULL CHECK (attempt_number >= 1),
    outcome TEXT NOT NULL,
    error TEXT,
    permanent_failure BOOLEAN NOT NULL DEFAULT FALSE,
    message_id TEXT,
    attempted_at TIMESTAMPTZ NOT NULL,
    completed_at TIMESTAMPTZ
);

CREATE UNIQUE INDEX IF NOT EXISTS delivery_attempts_live_key
    ON delivery_attempts (event_id, recipient, channel) WHERE outcome IN ('pending', 'sent');
CREATE UNIQUE INDEX IF NOT EXISTS delivery_attempts_number_key
    ON delivery_attempts (event_id, recipient, channel, attempt_number);

CREATE TABLE IF NOT EXISTS daily_reports (
    id UUID PRIMARY KEY,
    supplier_kind TEXT NOT NULL,
    report_date DATE NOT NULL,
    event_ids UUID[] NOT NULL DEFAULT '{}',
    no_activity BOOLEAN NOT NULL DEFAULT FALSE,
    status TEXT NOT NULL,
    delivered_to TEXT[] NOT NULL DEFAULT '{}',
    last_error TEXT,
    generated_at TIMESTAMPTZ NOT NULL,
    sent_at TIMESTAMPTZ,
    UNIQUE (supplier_kind, report_date)
);
"""

_ATTEMPT_ORDER = "ORDER BY attempted_at, recipient, channel, attempt_number"


def _event_from_row(row: dict) -> NotificationEvent:
    return NotificationEvent(
        event_id=UUID(str(row["event_id"])),
        ticket_id=UUID(str(row["ticket_id"])),
        kind=EventKind(row["kind"]),
        payload=dict(row["payload"] or {}),
        occurred_at=row["occurred_at"],
    )


class PostgresRepository(ServiceDeskRepository):
    """Repository backed by PostgresClient."""

    def __init__(self, postgres: PostgresClient):
        self.postgres = postgres

    def ensure_schema(self) -> None:
        """Create tables and indexes if missing."""
        with self.postgres.transaction() as tx:
            tx.execute(SCHEMA_SQL)
        logger.info("Service desk schema ensured")

    # -- tickets ---------------------------------------------------------

    def add_ticket(self, ticket: ServiceTicket) -> ServiceTicket:
        row = self.postgres.execute_returning(
            """
            INSERT INTO service_tickets (
                id, status, client_id, technician_id, business_partner_id,
                supplier_kind, device_type, manufacturer, problem_description,
                created_at, last_transition_at
            ) VALUES (
                %s, %s, %s, %s, %s,
                %s, %s, %s, %s,
                %s, %s
            )
            RETURNING *
            """,
            (
                ticket.id, ticket.status.value, ticket.client_id, ticket.technician_id,
                ticket.business_partner_id, ticket.supplier_kind.value, ticket.device_type,
                ticket.manufacturer, ticket.problem_description,
                ticket.created_at, ticket.last_transition_at,
            )
        )[0]
        return ServiceTicket.model_validate(row)

    def get_ticket(self, ticket_id: UUID) -> ServiceTicket | None:
        row = self.postgres.execute_single(
            "SELECT * FROM service_tickets WHERE id = %s",
            (ticket_id,)
        )
        if row is None:
            return None
        return ServiceTicket.model_validate(row)

    def commit_transition(
        self,
        ticket: ServiceTicket,
        expected_status: TicketStatus,
        event: NotificationEvent,
        parts_order: PartsOrder | None = None,
    ) -> ServiceTicket:
        with self.postgres.transaction() as tx:
            row = tx.execute_single(
                """
                UPDATE service_tickets
                SET status = %s, last_transition_at = %s
                WHERE id = %s AND status = %s
                RETURNING *
                """,
                (ticket.status.value, ticket.last_transition_at, ticket.id, expected_status.value)
            )
            if row is None:
                current = tx.execute_single(
                    "SELECT status FROM service_tickets WHERE id = %s",
                    (ticket.id,)
                )
                if current is None:
                    raise NotFoundError("Ticket", ticket.id)
                raise InvalidTransitionError(
                    current["status"], ticket.status.value, "ticket changed concurrently"
                )

            if parts_order is not None:
                self._update_parts_order(tx, parts_order)

            tx.execute(
                """
                INSERT INTO notification_events (event_id, ticket_id, kind, payload, occurred_at)
                VALUES (%s, %s, %s, %s, %s)
                """,
                (event.event_id, event.ticket_id, event.kind.value, Json(event.payload), event.occurred_at)
            )

        return ServiceTicket.model_validate(row)

    # -- parts orders ----------------------------------------------------

    def add_parts_order(self, order: PartsOrder) -> PartsOrder:
        try:
            row = self.postgres.execute_returning(
                """
                INSERT INTO parts_orders (
                    id, ticket_id, part_description, ordered_by, status, urgency,
                    estimated_cost, actual_cost, created_at, ordered_at, received_at, cancelled_at
                ) VALUES (
                    %s, %s, %s, %s, %s, %s,
                    %s, %s, %s, %s, %s, %s
                )
                RETURNING *
                """,
                (
                    order.id, order.ticket_id, order.part_description, order.ordered_by,
                    order.status.value, order.urgency.value, order.estimated_cost, order.actual_cost,
                    order.created_at, order.ordered_at, order.received_at, order.cancelled_at,
                )
            )[0]
        except psycopg2.errors.UniqueViolation as e:
            raise PartsOrderConflictError(
                f"Ticket {order.ticket_id} already has an open parts order"
            ) from e
        return PartsOrder.model_validate(row)

    @staticmethod
    def _update_parts_order(tx: Transaction, order: PartsOrder) -> dict:
        row = tx.execute_single(
            """
            UPDATE parts_orders
            SET status = %s, actual_cost = %s, ordered_at = %s,
                received_at = %s, cancelled_at = %s
            WHERE id = %s
            RETURNING *
            """,
            (
                order.status.value, order.actual_cost, order.ordered_at,
                order.received_at, order.cancelled_at, order.id,
            )
        )
        if row is None:
            raise NotFoundError("Parts order", order.id)
        return row

    def save_parts_order(self, order: PartsOrder) -> PartsOrder:
        with self.postgres.transaction() as tx:
            row = self._update_parts_order(tx, order)
        return PartsOrder.model_validate(row)

    def get_parts_order(self, order_id: UUID) -> PartsOrder | None:
        row = self.postgres.execute_single(
            "SELECT * FROM parts_orders WHERE id = %s",
            (order_id,)
        )
        return PartsOrder.model_validate(row) if row else None

    def list_parts_orders(self, ticket_id: UUID) -> list[PartsOrder]:
        rows = self.postgres.execute(
            "SELECT * FROM parts_orders WHERE ticket_id = %s ORDER BY created_at",
            (ticket_id,)
        )
        return [PartsOrder.model_validate(row) for row in rows]

    def get_open_parts_order(self, ticket_id: UUID) -> PartsOrder | None:
        row = self.postgres.execute_single(
            "SELECT * FROM parts_orders WHERE ticket_id = %s AND status IN ('pending', 'ordered')",
            (ticket_id,)
        )
        return PartsOrder.model_validate(row) if row else None

    # -- events ----------------------------------------------------------

    def get_event(self, event_id: UUID) -> NotificationEvent | None:
        row = self.postgres.execute_single(
            "SELECT * FROM notification_events WHERE event_id = %s",
            (event_id,)
        )
        return _event_from_row(row) if row else None

    def list_events(self, ticket_id: UUID) -> list[NotificationEvent]:
        rows = self.postgres.execute(
            "SELECT * FROM notification_events WHERE ticket_id = %s ORDER BY occurred_at",
            (ticket_id,)
        )
        return [_event_from_row(row) for row in rows]

    def add_event(self, event: NotificationEvent) -> NotificationEvent:
        try:
            row = self.postgres.execute_returning(
                """
                INSERT INTO notification_events (event_id, ticket_id, kind, payload, occurred_at)
                VALUES (%s, %s, %s, %s, %s)
                RETURNING *
                """,
                (event.event_id, event.ticket_id, event.kind.value, Json(event.payload), event.occurred_at)
            )[0]
        except psycopg2.errors.ForeignKeyViolation as e:
            raise NotFoundError("Ticket", event.ticket_id) from e
        return _event_from_row(row)

    def list_supplier_events(
        self,
        supplier_kind: SupplierKind,
        kinds: frozenset[EventKind],
        start: datetime,
        end: datetime,
    ) -> list[NotificationEvent]:
        rows = self.postgres.execute(
            """
            SELECT e.*
            FROM notification_events e
            JOIN service_tickets t ON t.id = e.ticket_id
            WHERE t.supplier_kind = %s
              AND e.kind = ANY(%s)
              AND e.occurred_at >= %s
              AND e.occurred_at < %s
            ORDER BY e.occurred_at
            """,
            (supplier_kind.value, sorted(k.value for k in kinds), start, end)
        )
        return [_event_from_row(row) for row in rows]

    # -- delivery attempts -----------------------------------------------

    def claim_attempt(self, attempt: DeliveryAttempt) -> bool:
        rows = self.postgres.execute_returning(
            """
            INSERT INTO delivery_attempts (
                id, event_id, ticket_id, recipient_role, recipient, channel,
                template_id, subject, body, attempt_number, outcome,
                error, message_id, attempted_at, completed_at
            ) VALUES (
                %s, %s, %s, %s, %s, %s,
                %s, %s, %s, %s, %s,
                %s, %s, %s, %s
            )
            ON CONFLICT DO NOTHING
            RETURNING id
            """,
            (
                attempt.id, attempt.event_id, attempt.ticket_id, attempt.recipient_role.value,
                attempt.recipient, attempt.channel.value, attempt.template_id, attempt.subject,
                attempt.body, attempt.attempt_number, attempt.outcome.value,
                attempt.error, attempt.message_id, attempt.attempted_at, attempt.completed_at,
            )
        )
        return bool(rows)

    def complete_attempt(
        self,
        attempt_id: UUID,
        outcome: DeliveryOutcome,
        completed_at: datetime,
        error: str | None = None,
        message_id: str | None = None,
        permanent_failure: bool = False,
    ) -> DeliveryAttempt:
        rows = self.postgres.execute_returning(
            """
            UPDATE delivery_attempts
            SET outcome = %s, completed_at = %s, error = %s,
                message_id = %s, permanent_failure = %s
            WHERE id = %s
            RETURNING *
            """,
            (outcome.value, completed_at, error, message_id, permanent_failure, attempt_id)
        )
        if not rows:
            raise NotFoundError("Delivery attempt", attempt_id)
        return DeliveryAttempt.model_validate(rows[0])

    def list_attempts(self, event_id: UUID) -> list[DeliveryAttempt]:
        rows = self.postgres.execute(
            f"SELECT * FROM delivery_attempts WHERE event_id = %s {_ATTEMPT_ORDER}",
            (event_id,)
        )
        return [DeliveryAttempt.model_validate(row) for row in rows]

    def list_ticket_attempts(self, ticket_id: UUID) -> list[DeliveryAttempt]:
        rows = self.postgres.execute(
            f"SELECT * FROM delivery_attempts WHERE ticket_id = %s {_ATTEMPT_ORDER}",
            (ticket_id,)
        )
        return [DeliveryAttempt.model_validate(row) for row in rows]

    def expire_pending_attempts(self, started_before: datetime, completed_at: datetime) -> int:
        rows = self.postgres.execute_returning(
            """
            UPDATE delivery_attempts
            SET outcome = %s, completed_at = %s, error = %s
            WHERE outcome = %s AND attempted_at < %s
            RETURNING id
            """,
            (
                DeliveryOutcome.FAILED.value, completed_at, "Sender did not report an outcome",
                DeliveryOutcome.PENDING.value, started_before,
            )
        )
        return len(rows)

    # -- daily reports ---------------------------------------------------

    def get_daily_report(self, supplier_kind: SupplierKind, report_date: date) -> DailyReport | None:
        row = self.postgres.execute_single(
            "SELECT * FROM daily_reports WHERE supplier_kind = %s AND report_date = %s",
            (supplier_kind.value, report_date)
        )
        return DailyReport.model_validate(row) if row else None

    def create_daily_report(self, report: DailyReport) -> DailyReport:
        try:
            row = self.postgres.execute_returning(
                """
                INSERT INTO daily_reports (
                    id, supplier_kind, report_date, event_ids, no_activity,
                    status, delivered_to, last_error, generated_at, sent_at
                ) VALUES (
                    %s, %s, %s, %s::uuid[], %s,
                    %s, %s::text[], %s, %s, %s
                )
                RETURNING *
                """,
                (
                    report.id, report.supplier_kind.value, report.report_date,
                    report.event_ids, report.no_activity, report.status.value,
                    report.delivered_to, report.last_error, report.generated_at, report.sent_at,
                )
            )[0]
        except psycopg2.errors.UniqueViolation as e:
            raise DuplicateReportError(
                f"Daily report for {report.supplier_kind.value} on {report.report_date} already exists"
            ) from e
        return DailyReport.model_validate(row)

    def save_daily_report(self, report: DailyReport) -> DailyReport:
        rows = self.postgres.execute_returning(
            """
            UPDATE daily_reports
            SET status = %s, delivered_to = %s::text[], last_error = %s, sent_at = %s
            WHERE id = %s
            RETURNING *
            """,
            (report.status.value, report.delivered_to, report.last_error, report.sent_at, report.id)
        )
        if not rows:
            raise NotFoundError("Daily report", report.id)
        return DailyReport.model_validate(rows[0])
