"""Service-desk core configuration."""

from pydantic import BaseModel, Field

from core.models import SupplierKind


class NotificationConfig(BaseModel):
    """
    Delivery retry and fan-out settings.

    Backoff before attempt n+1 is backoff_base_seconds * backoff_multiplier ** (n - 1),
    so the defaults wait 1s, 4s, 16s.
    """

    max_attempts: int = Field(
        default=3,
        description="Attempt budget per (event, recipient, channel)",
        ge=1,
        le=10,
    )
    backoff_base_seconds: float = Field(
        default=1.0,
        description="Delay after the first failed attempt",
        ge=0,
    )
    backoff_multiplier: float = Field(
        default=4.0,
        description="Growth factor between successive delays",
        ge=1,
    )
    max_workers: int = Field(
        default=8,
        description="Concurrent outbound gateway calls per dispatch",
        ge=1,
        le=64,
    )
    sms_max_length: int = Field(
        default=160,
        description="Single-segment SMS ceiling",
        ge=1,
    )
    stale_attempt_seconds: int = Field(
        default=900,
        description="PENDING attempts older than this are assumed lost and marked failed",
        ge=60,
    )

    def backoff_seconds(self, attempt_number: int) -> float:
        """Delay to wait after attempt_number failed."""
        return self.backoff_base_seconds * self.backoff_multiplier ** (attempt_number - 1)


class SupplierConfig(BaseModel):
    """Per-supplier routing and digest settings."""

    display_name: str = Field(..., min_length=1)
    timezone: str = Field(
        default="Europe/Belgrade",
        description="IANA zone that defines the supplier's calendar day",
    )
    report_recipients: list[str] = Field(
        default_factory=list,
        description="Addresses that receive the daily billing digest",
    )
    report_hour: int = Field(
        default=0,
        description="Local hour on the following day from which a finished day's digest is due",
        ge=0,
        le=23,
    )
    phone: str | None = Field(None, description="SMS address for per-event notices")
    email: str | None = Field(None, description="Email address for per-event notices")


class ServiceDeskConfig(BaseModel):
    """Top-level configuration for the lifecycle and notification core."""

    notifications: NotificationConfig = Field(default_factory=NotificationConfig)
    suppliers: dict[SupplierKind, SupplierConfig] = Field(default_factory=dict)
    scheduler_interval_seconds: int = Field(
        default=300,
        description="How often the scheduler checks for due digests",
        ge=1,
    )
