"""
Contact directory: where to reach each party on a ticket.

Clients, technicians and business partners are keyed by their id on the
ticket; suppliers are keyed by supplier kind. The directory is populated by
the surrounding application (and from SupplierConfig at startup).
"""

import logging
import threading
from uuid import UUID

from core.models import Contact, RecipientRole, ServiceTicket, SupplierKind

logger = logging.getLogger(__name__)


class ContactDirectory:
    """Thread-safe lookup of recipient contacts."""

    def __init__(self):
        self._contacts: dict[tuple[RecipientRole, str], Contact] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _key(role: RecipientRole, reference: UUID | SupplierKind | str) -> tuple[RecipientRole, str]:
        if isinstance(reference, SupplierKind):
            return role, reference.value
        return role, str(reference)

    def register(self, role: RecipientRole, reference: UUID | SupplierKind | str, contact: Contact) -> None:
        """Add or replace a contact."""
        with self._lock:
            self._contacts[self._key(role, reference)] = contact

    def remove(self, role: RecipientRole, reference: UUID | SupplierKind | str) -> bool:
        with self._lock:
            return self._contacts.pop(self._key(role, reference), None) is not None

    def lookup(self, role: RecipientRole, ticket: ServiceTicket) -> Contact | None:
        """
        Contact for a role on a ticket.

        Returns None when the ticket has no party in that role or nothing
        is on file for it.
        """
        reference = {
            RecipientRole.CLIENT: ticket.client_id,
            RecipientRole.TECHNICIAN: ticket.technician_id,
            RecipientRole.BUSINESS_PARTNER: ticket.business_partner_id,
            RecipientRole.SUPPLIER: (
                ticket.supplier_kind if ticket.supplier_kind != SupplierKind.NONE else None
            ),
        }[role]

        if reference is None:
            return None

        with self._lock:
            contact = self._contacts.get(self._key(role, reference))

        if contact is None:
            logger.debug(f"No {role.value} contact on file for ticket {ticket.id}")
        return contact
