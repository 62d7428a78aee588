"""
Ticket service: the lifecycle state machine and its parts-order sub-state.

Every status change goes through transition(), which validates the edge,
checks the caller's permission, applies the parts-order side effect and
commits status + event in one repository call while holding the ticket's
lock. The event is published after the lock is released.
"""

import logging
from decimal import Decimal
from typing import Any, Callable
from uuid import UUID, uuid4

from core.event_bus import EventBus
from core.events import NotificationEvent
from core.exceptions import (
    ForbiddenActorError,
    InvalidTransitionError,
    NotFoundError,
)
from core.lifecycle import TicketStateMachine
from core.locks import LocalTicketLocks, TicketLocks
from core.models import (
    Actor,
    PartsOrder,
    PartsOrderCreate,
    PartsOrderStatus,
    PartsUrgency,
    ServiceTicket,
    TicketCreate,
    TicketStatus,
)
from core.store import ServiceDeskRepository
from utils.timezone import now_utc

logger = logging.getLogger(__name__)

# is_permitted(actor, ticket_id, target_status) -> bool, supplied by the caller context
Authorizer = Callable[[Actor, UUID, TicketStatus], bool]

STATUS_LABELS = {
    TicketStatus.INTAKE: "Received",
    TicketStatus.DIAGNOSED: "Diagnosed",
    TicketStatus.AWAITING_PARTS: "Awaiting parts",
    TicketStatus.PARTS_ORDERED: "Parts ordered",
    TicketStatus.PARTS_RECEIVED: "Parts received",
    TicketStatus.IN_REPAIR: "In repair",
    TicketStatus.COMPLETED: "Completed",
    TicketStatus.BILLED: "Billed",
    TicketStatus.CANCELLED: "Cancelled",
}

_URGENCY_NOTES = {
    PartsUrgency.NORMAL: "",
    PartsUrgency.HIGH: " (high priority)",
    PartsUrgency.URGENT: " (urgent)",
}


def build_payload(
    ticket: ServiceTicket,
    old_status: TicketStatus,
    new_status: TicketStatus,
    parts_order: PartsOrder | None = None,
) -> dict[str, Any]:
    """Template fields for an event. JSON-safe values only."""
    device = ticket.device_type
    if ticket.manufacturer:
        device = f"{ticket.manufacturer} {ticket.device_type}"

    payload: dict[str, Any] = {
        "ticket_ref": ticket.reference,
        "device": device,
        "old_status": old_status.value,
        "status": new_status.value,
        "old_status_label": STATUS_LABELS[old_status],
        "status_label": STATUS_LABELS[new_status],
        "supplier_kind": ticket.supplier_kind.value,
        "urgency_note": "",
    }
    if parts_order is not None:
        payload.update({
            "parts_order_id": str(parts_order.id),
            "part_description": parts_order.part_description,
            "urgency": parts_order.urgency.value,
            "urgency_note": _URGENCY_NOTES[parts_order.urgency],
        })
    return payload


class TicketService:
    """Service for ticket lifecycle and parts-order operations."""

    def __init__(
        self,
        repository: ServiceDeskRepository,
        bus: EventBus,
        is_permitted: Authorizer,
        locks: TicketLocks | None = None,
    ):
        self.repository = repository
        self.bus = bus
        self.is_permitted = is_permitted
        self.locks = locks or LocalTicketLocks()

    def create(self, data: TicketCreate) -> ServiceTicket:
        """
        Open a new ticket.

        Args:
            data: Ticket creation data

        Returns:
            Created ticket in INTAKE status
        """
        now = now_utc()
        ticket = ServiceTicket(
            id=uuid4(),
            status=TicketStatus.INTAKE,
            created_at=now,
            last_transition_at=now,
            **data.model_dump(),
        )
        created = self.repository.add_ticket(ticket)
        logger.info(f"Opened ticket {created.id} ({created.reference})")
        return created

    def get_by_id(self, ticket_id: UUID) -> ServiceTicket | None:
        return self.repository.get_ticket(ticket_id)

    def get_status(self, ticket_id: UUID) -> TicketStatus:
        """
        Current status of a ticket.

        Raises:
            NotFoundError: If ticket not found
        """
        return self._require_ticket(ticket_id).status

    def _require_ticket(self, ticket_id: UUID) -> ServiceTicket:
        ticket = self.repository.get_ticket(ticket_id)
        if ticket is None:
            raise NotFoundError("Ticket", ticket_id)
        return ticket

    def _require_parts_order(self, order_id: UUID) -> PartsOrder:
        order = self.repository.get_parts_order(order_id)
        if order is None:
            raise NotFoundError("Parts order", order_id)
        return order

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def transition(
        self,
        ticket_id: UUID,
        target: TicketStatus | str,
        actor: Actor,
        override: bool = False,
    ) -> ServiceTicket:
        """
        Move a ticket to a new status and emit exactly one event.

        Args:
            ticket_id: Ticket UUID
            target: Requested status
            actor: Caller identity
            override: Allow in_repair while an ordered part is still outstanding

        Returns:
            Updated ticket

        Raises:
            NotFoundError: If ticket not found
            InvalidTransitionError: If target is not reachable, or the
                parts-order precondition for the edge does not hold
            ForbiddenActorError: If the actor may not take this edge
        """
        with self.locks.hold(ticket_id):
            current = self._require_ticket(ticket_id)
            try:
                target = TicketStatus(target)
            except ValueError:
                raise InvalidTransitionError(current.status.value, str(target), "unknown status")
            TicketStateMachine.assert_transition(current.status, target)

            if not self.is_permitted(actor, ticket_id, target):
                raise ForbiddenActorError(actor.id, target.value)

            now = now_utc()
            parts_order = self._apply_parts_order_effect(current, target, override, now)

            updated = current.model_copy(update={"status": target, "last_transition_at": now})
            event = NotificationEvent(
                ticket_id=ticket_id,
                kind=TicketStateMachine.event_kind(current.status, target),
                payload=build_payload(
                    updated, current.status, target,
                    parts_order or self.repository.get_open_parts_order(ticket_id),
                ),
                occurred_at=now,
            )
            committed = self.repository.commit_transition(updated, current.status, event, parts_order)

        logger.info(
            f"Ticket {ticket_id}: {current.status.value} -> {target.value} "
            f"by {actor.role.value} {actor.id} (event_id={event.event_id})"
        )
        self.bus.publish(event)
        return committed

    def _apply_parts_order_effect(
        self,
        ticket: ServiceTicket,
        target: TicketStatus,
        override: bool,
        now,
    ) -> PartsOrder | None:
        """Parts order to write in the same commit as the transition, if any."""
        open_order = self.repository.get_open_parts_order(ticket.id)

        if target == TicketStatus.PARTS_ORDERED:
            if open_order is None or open_order.status != PartsOrderStatus.PENDING:
                raise InvalidTransitionError(
                    ticket.status.value, target.value, "no pending parts order"
                )
            return open_order.model_copy(update={
                "status": PartsOrderStatus.ORDERED, "ordered_at": now,
            })

        if target == TicketStatus.PARTS_RECEIVED:
            if open_order is None or open_order.status != PartsOrderStatus.ORDERED:
                raise InvalidTransitionError(
                    ticket.status.value, target.value, "no ordered parts order"
                )
            return open_order.model_copy(update={
                "status": PartsOrderStatus.RECEIVED, "received_at": now,
            })

        if target == TicketStatus.IN_REPAIR:
            if open_order is not None and open_order.status == PartsOrderStatus.ORDERED:
                if not override:
                    raise InvalidTransitionError(
                        ticket.status.value, target.value,
                        f"parts order {open_order.id} has not been received",
                    )
                logger.warning(
                    f"Ticket {ticket.id} entering in_repair with parts order "
                    f"{open_order.id} still outstanding (override)"
                )
            return None

        if target == TicketStatus.CANCELLED and open_order is not None:
            return open_order.model_copy(update={
                "status": PartsOrderStatus.CANCELLED, "cancelled_at": now,
            })

        return None

    # -------------------------------------------------------------------------
    # Parts orders
    # -------------------------------------------------------------------------

    def create_parts_order(self, ticket_id: UUID, data: PartsOrderCreate, actor: Actor) -> PartsOrder:
        """
        Request a part for a ticket. The order starts PENDING and is flipped
        to ORDERED by the parts_ordered transition.

        Raises:
            NotFoundError: If ticket not found
            InvalidTransitionError: If the ticket is billed or cancelled
            PartsOrderConflictError: If the ticket already has an open order
        """
        with self.locks.hold(ticket_id):
            ticket = self._require_ticket(ticket_id)
            if ticket.is_terminal:
                raise InvalidTransitionError(
                    ticket.status.value, PartsOrderStatus.PENDING.value, "ticket is closed"
                )

            order = PartsOrder(
                id=uuid4(),
                ticket_id=ticket_id,
                part_description=data.part_description,
                ordered_by=actor.id,
                status=PartsOrderStatus.PENDING,
                urgency=data.urgency,
                estimated_cost=data.estimated_cost,
                actual_cost=None,
                created_at=now_utc(),
            )
            created = self.repository.add_parts_order(order)

        logger.info(f"Parts order {created.id} requested for ticket {ticket_id} by {actor.id}")
        return created

    def cancel_parts_order(self, order_id: UUID, actor: Actor) -> PartsOrder:
        """
        Cancel an open parts order without changing the ticket status.

        A ticket sitting in parts_ordered is waiting on its order; cancel the
        ticket instead.

        Raises:
            NotFoundError: If order not found
            InvalidTransitionError: If the order is not open, or the ticket
                is waiting on it
        """
        order = self._require_parts_order(order_id)

        with self.locks.hold(order.ticket_id):
            order = self._require_parts_order(order_id)
            if not order.is_open:
                raise InvalidTransitionError(
                    order.status.value, PartsOrderStatus.CANCELLED.value
                )

            ticket = self._require_ticket(order.ticket_id)
            if ticket.status == TicketStatus.PARTS_ORDERED:
                raise InvalidTransitionError(
                    order.status.value, PartsOrderStatus.CANCELLED.value,
                    f"ticket {ticket.id} is waiting on this order",
                )

            cancelled = self.repository.save_parts_order(order.model_copy(update={
                "status": PartsOrderStatus.CANCELLED,
                "cancelled_at": now_utc(),
            }))

        logger.info(f"Parts order {order_id} cancelled by {actor.id}")
        return cancelled

    def record_actual_cost(self, order_id: UUID, cost: Decimal) -> PartsOrder:
        """
        Store the invoiced cost of a part.

        Raises:
            NotFoundError: If order not found
            ValueError: If cost is negative or the order was cancelled
        """
        cost = Decimal(cost)
        if cost < 0:
            raise ValueError(f"Actual cost cannot be negative: {cost}")

        order = self._require_parts_order(order_id)
        with self.locks.hold(order.ticket_id):
            order = self._require_parts_order(order_id)
            if order.status == PartsOrderStatus.CANCELLED:
                raise ValueError(f"Parts order {order_id} is cancelled")
            return self.repository.save_parts_order(order.model_copy(update={"actual_cost": cost}))

    def get_parts_order(self, order_id: UUID) -> PartsOrder | None:
        return self.repository.get_parts_order(order_id)

    def list_parts_orders(self, ticket_id: UUID) -> list[PartsOrder]:
        """All parts orders for a ticket, oldest first."""
        return self.repository.list_parts_orders(ticket_id)

    def list_events(self, ticket_id: UUID) -> list[NotificationEvent]:
        """Committed events for a ticket, oldest first."""
        return self.repository.list_events(ticket_id)
