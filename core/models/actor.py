"""Caller identity as supplied by the authentication layer."""

from enum import Enum

from pydantic import BaseModel, Field


class ActorRole(str, Enum):
    """Platform roles that may request ticket transitions."""

    ADMIN = "admin"
    TECHNICIAN = "technician"
    CUSTOMER = "customer"
    BUSINESS_PARTNER = "business_partner"
    SUPPLIER_A = "supplier_a"
    SUPPLIER_B = "supplier_b"


class Actor(BaseModel):
    """Who is asking for a change."""

    id: str = Field(..., min_length=1)
    role: ActorRole

    model_config = {"frozen": True}
