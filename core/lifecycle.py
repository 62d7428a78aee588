"""Ticket lifecycle transition table."""

from core.events import EventKind
from core.exceptions import InvalidTransitionError
from core.models import TicketStatus


class TicketStateMachine:
    """Validate ticket lifecycle transitions and name the event each edge emits."""

    _TRANSITIONS: dict[TicketStatus, frozenset[TicketStatus]] = {
        TicketStatus.INTAKE: frozenset({TicketStatus.DIAGNOSED, TicketStatus.CANCELLED}),
        TicketStatus.DIAGNOSED: frozenset({
            TicketStatus.AWAITING_PARTS, TicketStatus.IN_REPAIR, TicketStatus.CANCELLED,
        }),
        TicketStatus.AWAITING_PARTS: frozenset({TicketStatus.PARTS_ORDERED, TicketStatus.CANCELLED}),
        TicketStatus.PARTS_ORDERED: frozenset({TicketStatus.PARTS_RECEIVED, TicketStatus.CANCELLED}),
        TicketStatus.PARTS_RECEIVED: frozenset({TicketStatus.IN_REPAIR}),
        TicketStatus.IN_REPAIR: frozenset({TicketStatus.COMPLETED, TicketStatus.AWAITING_PARTS}),
        TicketStatus.COMPLETED: frozenset({TicketStatus.BILLED}),
        TicketStatus.BILLED: frozenset(),
        TicketStatus.CANCELLED: frozenset(),
    }

    _EVENT_KINDS: dict[TicketStatus, EventKind] = {
        TicketStatus.DIAGNOSED: EventKind.STATUS_CHANGED,
        TicketStatus.AWAITING_PARTS: EventKind.AWAITING_PARTS,
        TicketStatus.PARTS_ORDERED: EventKind.PARTS_ORDERED,
        TicketStatus.PARTS_RECEIVED: EventKind.PARTS_RECEIVED,
        TicketStatus.IN_REPAIR: EventKind.STATUS_CHANGED,
        TicketStatus.COMPLETED: EventKind.SERVICE_COMPLETED,
        TicketStatus.BILLED: EventKind.SERVICE_BILLED,
        TicketStatus.CANCELLED: EventKind.SERVICE_CANCELLED,
    }

    @classmethod
    def initial_state(cls) -> TicketStatus:
        return TicketStatus.INTAKE

    @classmethod
    def allowed_targets(cls, current: TicketStatus) -> frozenset[TicketStatus]:
        return cls._TRANSITIONS.get(current, frozenset())

    @classmethod
    def can_transition(cls, current: TicketStatus, new: TicketStatus) -> bool:
        # Self-loops are not transitions: they would emit a second event.
        return new in cls.allowed_targets(current)

    @classmethod
    def assert_transition(cls, current: TicketStatus, new: TicketStatus) -> None:
        if not cls.can_transition(current, new):
            raise InvalidTransitionError(current.value, new.value)

    @classmethod
    def is_terminal(cls, status: TicketStatus) -> bool:
        return not cls._TRANSITIONS.get(status)

    @classmethod
    def event_kind(cls, current: TicketStatus, new: TicketStatus) -> EventKind:
        """Event emitted by the edge current -> new. Edge must be valid."""
        if current == TicketStatus.IN_REPAIR and new == TicketStatus.AWAITING_PARTS:
            return EventKind.ADDITIONAL_PARTS_NEEDED
        return cls._EVENT_KINDS[new]
