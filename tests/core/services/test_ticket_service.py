"""Tests for TicketService: transitions, permission checks and parts orders.

Runs against InMemoryRepository with recording channel stubs.
"""

import threading
import time
from decimal import Decimal
from uuid import uuid4

import pytest

from conftest import ADMIN, CUSTOMER, PARTNER_ID, TECHNICIAN, TECHNICIAN_ID, ticket_data
from core.events import EventKind
from core.exceptions import (
    ForbiddenActorError,
    InvalidTransitionError,
    NotFoundError,
    PartsOrderConflictError,
)
from core.lifecycle import TicketStateMachine
from core.models import (
    PartsOrderCreate,
    PartsOrderStatus,
    PartsUrgency,
    SupplierKind,
    TicketStatus,
)
from core.services.ticket_service import TicketService


def walk(service, ticket_id, *statuses, actor=TECHNICIAN):
    for status in statuses:
        service.transition(ticket_id, status, actor)


def order_part(service, ticket_id, description="Drain pump", urgency=PartsUrgency.NORMAL):
    return service.create_parts_order(
        ticket_id, PartsOrderCreate(part_description=description, urgency=urgency), TECHNICIAN,
    )


@pytest.fixture
def tickets(desk) -> TicketService:
    return desk.tickets


class TestCreate:

    def test_new_ticket_starts_in_intake(self, tickets, make_ticket):
        ticket = make_ticket()

        assert ticket.status == TicketStatus.INTAKE
        assert tickets.get_status(ticket.id) == TicketStatus.INTAKE
        assert ticket.created_at == ticket.last_transition_at

    def test_create_emits_no_event(self, tickets, make_ticket):
        ticket = make_ticket()

        assert tickets.list_events(ticket.id) == []

    def test_get_by_id_returns_none_for_unknown_ticket(self, tickets):
        assert tickets.get_by_id(uuid4()) is None

    def test_get_status_raises_for_unknown_ticket(self, tickets):
        with pytest.raises(NotFoundError):
            tickets.get_status(uuid4())


class TestTransition:

    def test_valid_transition_updates_status_and_timestamp(self, tickets, make_ticket):
        ticket = make_ticket()

        updated = tickets.transition(ticket.id, TicketStatus.DIAGNOSED, TECHNICIAN)

        assert updated.status == TicketStatus.DIAGNOSED
        assert updated.last_transition_at >= ticket.last_transition_at
        assert tickets.get_status(ticket.id) == TicketStatus.DIAGNOSED

    def test_accepts_status_as_string(self, tickets, make_ticket):
        ticket = make_ticket()

        updated = tickets.transition(ticket.id, "diagnosed", TECHNICIAN)

        assert updated.status == TicketStatus.DIAGNOSED

    def test_each_transition_emits_exactly_one_event(self, tickets, make_ticket):
        ticket = make_ticket()

        walk(tickets, ticket.id, TicketStatus.DIAGNOSED, TicketStatus.IN_REPAIR, TicketStatus.COMPLETED)

        kinds = [e.kind for e in tickets.list_events(ticket.id)]
        assert kinds == [
            EventKind.STATUS_CHANGED,
            EventKind.STATUS_CHANGED,
            EventKind.SERVICE_COMPLETED,
        ]

    def test_full_walk_through_parts_cycle(self, tickets, make_ticket):
        ticket = make_ticket(supplier_kind=SupplierKind.SUPPLIER_A)

        walk(tickets, ticket.id, TicketStatus.DIAGNOSED, TicketStatus.AWAITING_PARTS)
        order_part(tickets, ticket.id)
        walk(
            tickets, ticket.id,
            TicketStatus.PARTS_ORDERED, TicketStatus.PARTS_RECEIVED,
            TicketStatus.IN_REPAIR, TicketStatus.COMPLETED,
        )
        tickets.transition(ticket.id, TicketStatus.BILLED, ADMIN)

        events = tickets.list_events(ticket.id)
        statuses = [TicketStatus.INTAKE] + [TicketStatus(e.payload["status"]) for e in events]
        for current, new in zip(statuses, statuses[1:]):
            assert TicketStateMachine.can_transition(current, new)
        assert statuses[-1] == TicketStatus.BILLED

    def test_unknown_ticket_raises_not_found(self, tickets):
        with pytest.raises(NotFoundError):
            tickets.transition(uuid4(), TicketStatus.DIAGNOSED, TECHNICIAN)

    def test_unknown_status_is_an_invalid_transition(self, tickets, make_ticket):
        ticket = make_ticket()

        with pytest.raises(InvalidTransitionError) as exc_info:
            tickets.transition(ticket.id, "bogus", TECHNICIAN)

        assert exc_info.value.current == "intake"
        assert exc_info.value.target == "bogus"
        assert tickets.list_events(ticket.id) == []

    def test_unknown_ticket_is_reported_before_unknown_status(self, tickets):
        with pytest.raises(NotFoundError):
            tickets.transition(uuid4(), "bogus", TECHNICIAN)

    def test_completed_from_parts_ordered_is_rejected_without_side_effects(
        self, desk, tickets, make_ticket, sms_channel, email_channel
    ):
        ticket = make_ticket(supplier_kind=SupplierKind.SUPPLIER_A)
        walk(tickets, ticket.id, TicketStatus.DIAGNOSED, TicketStatus.AWAITING_PARTS)
        order_part(tickets, ticket.id)
        tickets.transition(ticket.id, TicketStatus.PARTS_ORDERED, TECHNICIAN)
        events_before = tickets.list_events(ticket.id)
        attempts_before = desk.dispatcher.list_ticket_attempts(ticket.id)

        with pytest.raises(InvalidTransitionError) as exc_info:
            tickets.transition(ticket.id, TicketStatus.COMPLETED, TECHNICIAN)

        assert exc_info.value.current == "parts_ordered"
        assert exc_info.value.target == "completed"
        assert tickets.get_status(ticket.id) == TicketStatus.PARTS_ORDERED
        assert tickets.list_events(ticket.id) == events_before
        assert desk.dispatcher.list_ticket_attempts(ticket.id) == attempts_before

    def test_skipping_intermediate_status_is_rejected(self, tickets, make_ticket):
        ticket = make_ticket()

        with pytest.raises(InvalidTransitionError):
            tickets.transition(ticket.id, TicketStatus.IN_REPAIR, TECHNICIAN)

        assert tickets.list_events(ticket.id) == []

    def test_same_status_is_not_a_transition(self, tickets, make_ticket):
        ticket = make_ticket()

        with pytest.raises(InvalidTransitionError):
            tickets.transition(ticket.id, TicketStatus.INTAKE, TECHNICIAN)

    def test_terminal_ticket_cannot_move(self, tickets, make_ticket):
        ticket = make_ticket()
        tickets.transition(ticket.id, TicketStatus.CANCELLED, ADMIN)

        with pytest.raises(InvalidTransitionError):
            tickets.transition(ticket.id, TicketStatus.DIAGNOSED, ADMIN)

    def test_invalid_transition_checked_before_permission(self, desk, make_ticket, permitted_calls):
        ticket = make_ticket()

        with pytest.raises(InvalidTransitionError):
            desk.tickets.transition(ticket.id, TicketStatus.BILLED, TECHNICIAN)

        assert permitted_calls == []


class TestPermission:

    def test_authorizer_receives_actor_ticket_and_target(self, desk, make_ticket, permitted_calls):
        ticket = make_ticket()

        desk.tickets.transition(ticket.id, TicketStatus.DIAGNOSED, TECHNICIAN)

        assert permitted_calls == [("tech-1", ticket.id, TicketStatus.DIAGNOSED)]

    def test_forbidden_actor_aborts_without_commit(self, repository, event_bus):
        published = []
        event_bus.subscribe("*", published.append)

        def customers_denied(actor, ticket_id, target):
            return actor.id != CUSTOMER.id

        service = TicketService(repository, event_bus, customers_denied)
        ticket = service.create(ticket_data())

        with pytest.raises(ForbiddenActorError) as exc_info:
            service.transition(ticket.id, TicketStatus.DIAGNOSED, CUSTOMER)

        assert exc_info.value.actor_id == "customer-1"
        assert service.get_status(ticket.id) == TicketStatus.INTAKE
        assert service.list_events(ticket.id) == []
        assert published == []


class TestConcurrency:

    def test_racing_transitions_commit_one_event(self, repository, event_bus):
        start = threading.Barrier(3)

        def slow_allow(actor, ticket_id, target):
            # Widen the window between reading the ticket and committing
            time.sleep(0.05)
            return True

        service = TicketService(repository, event_bus, slow_allow)
        ticket = service.create(ticket_data())
        outcomes = []

        def run():
            start.wait()
            try:
                service.transition(ticket.id, TicketStatus.DIAGNOSED, TECHNICIAN)
                outcomes.append("committed")
            except InvalidTransitionError:
                outcomes.append("rejected")

        threads = [threading.Thread(target=run) for _ in range(3)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(outcomes) == ["committed", "rejected", "rejected"]
        [event] = service.list_events(ticket.id)
        assert event.payload["status"] == "diagnosed"
        assert service.get_status(ticket.id) == TicketStatus.DIAGNOSED


class TestEventPayload:

    def test_payload_carries_template_fields(self, tickets, make_ticket):
        ticket = make_ticket()

        tickets.transition(ticket.id, TicketStatus.DIAGNOSED, TECHNICIAN)

        payload = tickets.list_events(ticket.id)[0].payload
        assert payload["ticket_ref"] == ticket.reference
        assert payload["device"] == "Beko Washing machine"
        assert payload["old_status"] == "intake"
        assert payload["status"] == "diagnosed"
        assert payload["status_label"] == "Diagnosed"
        assert payload["urgency_note"] == ""

    def test_parts_events_carry_part_and_urgency(self, tickets, make_ticket):
        ticket = make_ticket()
        walk(tickets, ticket.id, TicketStatus.DIAGNOSED, TicketStatus.AWAITING_PARTS)
        order = order_part(tickets, ticket.id, "Heating element", PartsUrgency.URGENT)

        tickets.transition(ticket.id, TicketStatus.PARTS_ORDERED, TECHNICIAN)

        payload = tickets.list_events(ticket.id)[-1].payload
        assert payload["part_description"] == "Heating element"
        assert payload["parts_order_id"] == str(order.id)
        assert payload["urgency_note"] == " (urgent)"

    def test_device_without_manufacturer(self, tickets, make_ticket):
        ticket = make_ticket(manufacturer=None, device_type="Fridge")

        tickets.transition(ticket.id, TicketStatus.DIAGNOSED, TECHNICIAN)

        assert tickets.list_events(ticket.id)[0].payload["device"] == "Fridge"

    def test_published_event_matches_stored_event(self, repository, event_bus, allow_all):
        published = []
        event_bus.subscribe(EventKind.STATUS_CHANGED, published.append)
        service = TicketService(repository, event_bus, allow_all)
        ticket = service.create(ticket_data())

        service.transition(ticket.id, TicketStatus.DIAGNOSED, TECHNICIAN)

        assert len(published) == 1
        assert repository.get_event(published[0].event_id) == published[0]


class TestEventKinds:

    def test_first_awaiting_parts_and_regression_are_distinct(self, tickets, make_ticket):
        ticket = make_ticket()
        walk(tickets, ticket.id, TicketStatus.DIAGNOSED, TicketStatus.AWAITING_PARTS)
        order_part(tickets, ticket.id)
        walk(
            tickets, ticket.id,
            TicketStatus.PARTS_ORDERED, TicketStatus.PARTS_RECEIVED,
            TicketStatus.IN_REPAIR, TicketStatus.AWAITING_PARTS,
        )

        kinds = [e.kind for e in tickets.list_events(ticket.id)]
        assert kinds[1] == EventKind.AWAITING_PARTS
        assert kinds[-1] == EventKind.ADDITIONAL_PARTS_NEEDED

    def test_billed_and_cancelled_kinds(self, tickets, make_ticket):
        billed = make_ticket()
        walk(tickets, billed.id, TicketStatus.DIAGNOSED, TicketStatus.IN_REPAIR,
             TicketStatus.COMPLETED, TicketStatus.BILLED)
        cancelled = make_ticket()
        tickets.transition(cancelled.id, TicketStatus.CANCELLED, ADMIN)

        assert tickets.list_events(billed.id)[-1].kind == EventKind.SERVICE_BILLED
        assert tickets.list_events(cancelled.id)[-1].kind == EventKind.SERVICE_CANCELLED


class TestPartsOrderSideEffects:

    def test_parts_ordered_flips_pending_order_to_ordered(self, tickets, make_ticket):
        ticket = make_ticket()
        walk(tickets, ticket.id, TicketStatus.DIAGNOSED, TicketStatus.AWAITING_PARTS)
        order = order_part(tickets, ticket.id)

        tickets.transition(ticket.id, TicketStatus.PARTS_ORDERED, TECHNICIAN)

        stored = tickets.get_parts_order(order.id)
        assert stored.status == PartsOrderStatus.ORDERED
        assert stored.ordered_at is not None

    def test_parts_ordered_requires_pending_order(self, tickets, make_ticket):
        ticket = make_ticket()
        walk(tickets, ticket.id, TicketStatus.DIAGNOSED, TicketStatus.AWAITING_PARTS)

        with pytest.raises(InvalidTransitionError, match="no pending parts order"):
            tickets.transition(ticket.id, TicketStatus.PARTS_ORDERED, TECHNICIAN)

        assert tickets.get_status(ticket.id) == TicketStatus.AWAITING_PARTS

    def test_parts_received_flips_order_to_received(self, tickets, make_ticket):
        ticket = make_ticket()
        walk(tickets, ticket.id, TicketStatus.DIAGNOSED, TicketStatus.AWAITING_PARTS)
        order = order_part(tickets, ticket.id)
        walk(tickets, ticket.id, TicketStatus.PARTS_ORDERED, TicketStatus.PARTS_RECEIVED)

        stored = tickets.get_parts_order(order.id)
        assert stored.status == PartsOrderStatus.RECEIVED
        assert stored.received_at is not None
        assert stored.is_open is False

    def test_cancelling_ticket_cancels_open_order(self, tickets, make_ticket):
        ticket = make_ticket()
        walk(tickets, ticket.id, TicketStatus.DIAGNOSED, TicketStatus.AWAITING_PARTS)
        order = order_part(tickets, ticket.id)
        tickets.transition(ticket.id, TicketStatus.PARTS_ORDERED, TECHNICIAN)

        tickets.transition(ticket.id, TicketStatus.CANCELLED, ADMIN)

        stored = tickets.get_parts_order(order.id)
        assert stored.status == PartsOrderStatus.CANCELLED
        assert stored.cancelled_at is not None

    def test_in_repair_blocked_by_outstanding_ordered_part(self, tickets, repository, make_ticket):
        ticket = make_ticket()
        tickets.transition(ticket.id, TicketStatus.DIAGNOSED, TECHNICIAN)
        order = order_part(tickets, ticket.id)
        repository.save_parts_order(order.model_copy(update={"status": PartsOrderStatus.ORDERED}))

        with pytest.raises(InvalidTransitionError, match="has not been received"):
            tickets.transition(ticket.id, TicketStatus.IN_REPAIR, TECHNICIAN)

        assert tickets.get_status(ticket.id) == TicketStatus.DIAGNOSED
        assert tickets.list_events(ticket.id)[-1].kind == EventKind.STATUS_CHANGED
        assert len(tickets.list_events(ticket.id)) == 1

    def test_override_allows_in_repair_with_outstanding_part(self, tickets, repository, make_ticket):
        ticket = make_ticket()
        tickets.transition(ticket.id, TicketStatus.DIAGNOSED, TECHNICIAN)
        order = order_part(tickets, ticket.id)
        repository.save_parts_order(order.model_copy(update={"status": PartsOrderStatus.ORDERED}))

        updated = tickets.transition(ticket.id, TicketStatus.IN_REPAIR, ADMIN, override=True)

        assert updated.status == TicketStatus.IN_REPAIR
        assert tickets.get_parts_order(order.id).status == PartsOrderStatus.ORDERED

    def test_pending_order_does_not_block_in_repair(self, tickets, make_ticket):
        ticket = make_ticket()
        tickets.transition(ticket.id, TicketStatus.DIAGNOSED, TECHNICIAN)
        order_part(tickets, ticket.id)

        updated = tickets.transition(ticket.id, TicketStatus.IN_REPAIR, TECHNICIAN)

        assert updated.status == TicketStatus.IN_REPAIR


class TestPartsOrders:

    def test_create_parts_order_starts_pending(self, tickets, make_ticket):
        ticket = make_ticket()
        tickets.transition(ticket.id, TicketStatus.DIAGNOSED, TECHNICIAN)

        order = tickets.create_parts_order(ticket.id, PartsOrderCreate(
            part_description="Door seal",
            urgency=PartsUrgency.HIGH,
            estimated_cost=Decimal("24.50"),
        ), TECHNICIAN)

        assert order.status == PartsOrderStatus.PENDING
        assert order.ordered_by == "tech-1"
        assert order.estimated_cost == Decimal("24.50")
        assert order.actual_cost is None
        assert tickets.list_parts_orders(ticket.id) == [order]

    def test_second_open_order_is_rejected(self, tickets, make_ticket):
        ticket = make_ticket()
        order_part(tickets, ticket.id)

        with pytest.raises(PartsOrderConflictError):
            order_part(tickets, ticket.id, "Second part")

        assert len(tickets.list_parts_orders(ticket.id)) == 1

    def test_new_order_allowed_after_previous_received(self, tickets, make_ticket):
        ticket = make_ticket()
        walk(tickets, ticket.id, TicketStatus.DIAGNOSED, TicketStatus.AWAITING_PARTS)
        order_part(tickets, ticket.id)
        walk(tickets, ticket.id, TicketStatus.PARTS_ORDERED, TicketStatus.PARTS_RECEIVED,
             TicketStatus.IN_REPAIR, TicketStatus.AWAITING_PARTS)

        second = order_part(tickets, ticket.id, "Control board")

        assert second.status == PartsOrderStatus.PENDING
        assert len(tickets.list_parts_orders(ticket.id)) == 2

    def test_parts_order_on_terminal_ticket_is_rejected(self, tickets, make_ticket):
        ticket = make_ticket()
        tickets.transition(ticket.id, TicketStatus.CANCELLED, ADMIN)

        with pytest.raises(InvalidTransitionError, match="ticket is closed"):
            order_part(tickets, ticket.id)

    def test_parts_order_on_unknown_ticket_raises(self, tickets):
        with pytest.raises(NotFoundError):
            order_part(tickets, uuid4())

    def test_cancel_pending_order(self, tickets, make_ticket):
        ticket = make_ticket()
        order = order_part(tickets, ticket.id)

        cancelled = tickets.cancel_parts_order(order.id, ADMIN)

        assert cancelled.status == PartsOrderStatus.CANCELLED
        assert tickets.get_parts_order(order.id).cancelled_at is not None

    def test_cancel_order_ticket_is_waiting_on_is_rejected(self, tickets, make_ticket):
        ticket = make_ticket()
        walk(tickets, ticket.id, TicketStatus.DIAGNOSED, TicketStatus.AWAITING_PARTS)
        order = order_part(tickets, ticket.id)
        tickets.transition(ticket.id, TicketStatus.PARTS_ORDERED, TECHNICIAN)

        with pytest.raises(InvalidTransitionError, match="waiting on this order"):
            tickets.cancel_parts_order(order.id, ADMIN)

    def test_cancel_closed_order_is_rejected(self, tickets, make_ticket):
        ticket = make_ticket()
        order = order_part(tickets, ticket.id)
        tickets.cancel_parts_order(order.id, ADMIN)

        with pytest.raises(InvalidTransitionError):
            tickets.cancel_parts_order(order.id, ADMIN)

    def test_cancel_unknown_order_raises(self, tickets):
        with pytest.raises(NotFoundError):
            tickets.cancel_parts_order(uuid4(), ADMIN)

    def test_record_actual_cost(self, tickets, make_ticket):
        ticket = make_ticket()
        order = order_part(tickets, ticket.id)

        updated = tickets.record_actual_cost(order.id, Decimal("31.20"))

        assert updated.actual_cost == Decimal("31.20")
        assert tickets.get_parts_order(order.id).actual_cost == Decimal("31.20")

    def test_record_negative_cost_rejected(self, tickets, make_ticket):
        ticket = make_ticket()
        order = order_part(tickets, ticket.id)

        with pytest.raises(ValueError, match="negative"):
            tickets.record_actual_cost(order.id, Decimal("-1"))

    def test_record_cost_on_cancelled_order_rejected(self, tickets, make_ticket):
        ticket = make_ticket()
        order = order_part(tickets, ticket.id)
        tickets.cancel_parts_order(order.id, ADMIN)

        with pytest.raises(ValueError, match="cancelled"):
            tickets.record_actual_cost(order.id, Decimal("10"))


class TestTicketReferences:

    def test_partner_ticket_cannot_carry_supplier_kind(self, make_ticket):
        with pytest.raises(ValueError):
            make_ticket(business_partner_id=PARTNER_ID, supplier_kind=SupplierKind.SUPPLIER_A)

    def test_technician_assignment_is_stored(self, tickets, make_ticket):
        ticket = make_ticket(technician_id=TECHNICIAN_ID)

        assert tickets.get_by_id(ticket.id).technician_id == TECHNICIAN_ID
