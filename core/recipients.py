"""
Declarative recipient resolution.

Who hears about an event is a table of rules, each naming a recipient role,
the event kinds it applies to, and a predicate on the ticket. Every rule is
evaluated the same way for every event.
"""

from dataclasses import dataclass
from typing import Callable

from core.events import EventKind, REPAIR_RELEVANT_KINDS
from core.models import RecipientRole, ServiceTicket, SupplierKind

TRANSITION_KINDS = frozenset(kind for kind in EventKind if kind != EventKind.DAILY_REPORT)


@dataclass(frozen=True)
class RecipientRule:
    role: RecipientRole
    kinds: frozenset[EventKind]
    applies: Callable[[ServiceTicket], bool]


RECIPIENT_RULES: tuple[RecipientRule, ...] = (
    RecipientRule(
        role=RecipientRole.CLIENT,
        kinds=TRANSITION_KINDS,
        applies=lambda ticket: True,
    ),
    RecipientRule(
        role=RecipientRole.TECHNICIAN,
        kinds=REPAIR_RELEVANT_KINDS,
        applies=lambda ticket: ticket.technician_id is not None,
    ),
    RecipientRule(
        role=RecipientRole.BUSINESS_PARTNER,
        kinds=TRANSITION_KINDS,
        applies=lambda ticket: ticket.business_partner_id is not None,
    ),
    RecipientRule(
        role=RecipientRole.SUPPLIER,
        kinds=frozenset({EventKind.PARTS_ORDERED, EventKind.PARTS_RECEIVED}),
        applies=lambda ticket: ticket.supplier_kind != SupplierKind.NONE,
    ),
)


def resolve_recipient_roles(
    kind: EventKind,
    ticket: ServiceTicket,
    rules: tuple[RecipientRule, ...] = RECIPIENT_RULES,
) -> list[RecipientRole]:
    """Roles to notify for an event on a ticket, in rule order."""
    return [rule.role for rule in rules if kind in rule.kinds and rule.applies(ticket)]
