"""Notification recipient models."""

from enum import Enum

from pydantic import BaseModel


class RecipientRole(str, Enum):
    """External parties that can be notified about a ticket."""

    CLIENT = "client"
    TECHNICIAN = "technician"
    BUSINESS_PARTNER = "business_partner"
    SUPPLIER = "supplier"


class Channel(str, Enum):
    """Delivery medium."""

    SMS = "sms"
    EMAIL = "email"


class Contact(BaseModel):
    """Registered addresses for one recipient. Either address may be absent."""

    name: str
    phone: str | None = None
    email: str | None = None

    model_config = {"frozen": True}

    def address_for(self, channel: Channel) -> str | None:
        """Address on file for a channel, or None."""
        if channel == Channel.SMS:
            return self.phone or None
        return self.email or None
