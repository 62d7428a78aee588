"""Core domain models."""

from core.models.ticket import ServiceTicket, TicketCreate, TicketStatus, SupplierKind
from core.models.parts_order import PartsOrder, PartsOrderCreate, PartsOrderStatus, PartsUrgency
from core.models.actor import Actor, ActorRole
from core.models.contact import Contact, Channel, RecipientRole
from core.models.delivery import DeliveryAttempt, DeliveryOutcome
from core.models.daily_report import DailyReport, ReportStatus

__all__ = [
    # Ticket
    "ServiceTicket", "TicketCreate", "TicketStatus", "SupplierKind",
    # PartsOrder
    "PartsOrder", "PartsOrderCreate", "PartsOrderStatus", "PartsUrgency",
    # Actor
    "Actor", "ActorRole",
    # Contact
    "Contact", "Channel", "RecipientRole",
    # Delivery
    "DeliveryAttempt", "DeliveryOutcome",
    # DailyReport
    "DailyReport", "ReportStatus",
]
