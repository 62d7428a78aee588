"""Shared test fixtures for the service desk test suite."""

import os
import threading
from collections import defaultdict
from pathlib import Path
from uuid import UUID

import pytest
from dotenv import load_dotenv

# Load .env file BEFORE any other imports that might use env vars
# override=True ensures .env takes precedence over shell env vars
load_dotenv(Path(__file__).parent.parent / ".env", override=True)

# Reset vault client singleton to pick up env vars
import clients.vault_client as vault_module
vault_module._vault_client_instance = None
vault_module._secret_cache.clear()

from core.channels import ChannelAdapter
from core.config import NotificationConfig, ServiceDeskConfig, SupplierConfig
from core.contacts import ContactDirectory
from core.event_bus import EventBus
from core.models import (
    Actor,
    ActorRole,
    Channel,
    Contact,
    RecipientRole,
    SupplierKind,
    TicketCreate,
)
from core.store import InMemoryRepository
from core.templates import TemplateRegistry


# =============================================================================
# TEST PARTY CONSTANTS
# =============================================================================

CLIENT_ID = UUID("00000000-0000-0000-0000-0000000000c1")
TECHNICIAN_ID = UUID("00000000-0000-0000-0000-0000000000e1")
PARTNER_ID = UUID("00000000-0000-0000-0000-0000000000b1")

CLIENT_PHONE = "067111222"
CLIENT_EMAIL = "marko@example.com"
TECHNICIAN_PHONE = "067333444"
PARTNER_EMAIL = "servis@partner.example.com"
SUPPLIER_A_PHONE = "+38111222333"
SUPPLIER_A_EMAIL = "orders@supplier-a.example.com"
SUPPLIER_A_REPORTS = ["billing@supplier-a.example.com", "service@supplier-a.example.com"]
SUPPLIER_B_REPORTS = ["reports@supplier-b.example.com"]

TECHNICIAN = Actor(id="tech-1", role=ActorRole.TECHNICIAN)
ADMIN = Actor(id="admin-1", role=ActorRole.ADMIN)
CUSTOMER = Actor(id="customer-1", role=ActorRole.CUSTOMER)


# =============================================================================
# CHANNEL STUBS
# =============================================================================


class RecordingChannel(ChannelAdapter):
    """
    Channel adapter that records deliveries instead of calling a gateway.

    fail(address, *errors) queues exceptions raised by the next deliveries
    to that address, in order. Thread-safe: the dispatcher fans out.
    """

    def __init__(self, channel: Channel):
        self.channel = channel
        self.calls: list[tuple[str, object]] = []
        self.sent: list[tuple[str, object]] = []
        self._failures: dict[str, list[Exception]] = defaultdict(list)
        self._lock = threading.Lock()

    def fail(self, address: str, *errors: Exception) -> None:
        with self._lock:
            self._failures[address].extend(errors)

    def deliver(self, address, message):
        with self._lock:
            self.calls.append((address, message))
            queued = self._failures.get(address)
            error = queued.pop(0) if queued else None
            if error is None:
                self.sent.append((address, message))
                message_id = f"{self.channel.value}-{len(self.sent)}"
        if error is not None:
            raise error
        return message_id

    def sent_to(self, address: str) -> list:
        with self._lock:
            return [message for to, message in self.sent if to == address]


@pytest.fixture
def sms_channel() -> RecordingChannel:
    return RecordingChannel(Channel.SMS)


@pytest.fixture
def email_channel() -> RecordingChannel:
    return RecordingChannel(Channel.EMAIL)


@pytest.fixture
def channels(sms_channel, email_channel) -> dict:
    return {Channel.SMS: sms_channel, Channel.EMAIL: email_channel}


# =============================================================================
# CORE FIXTURES
# =============================================================================


@pytest.fixture
def repository() -> InMemoryRepository:
    return InMemoryRepository()


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def registry() -> TemplateRegistry:
    return TemplateRegistry.default()


@pytest.fixture
def config() -> ServiceDeskConfig:
    return ServiceDeskConfig(
        notifications=NotificationConfig(),
        suppliers={
            SupplierKind.SUPPLIER_A: SupplierConfig(
                display_name="Supplier A",
                report_recipients=SUPPLIER_A_REPORTS,
                phone=SUPPLIER_A_PHONE,
                email=SUPPLIER_A_EMAIL,
            ),
            SupplierKind.SUPPLIER_B: SupplierConfig(
                display_name="Supplier B",
                report_recipients=SUPPLIER_B_REPORTS,
            ),
        },
    )


@pytest.fixture
def directory() -> ContactDirectory:
    """Client, technician and partner contacts. Supplier contacts come from config."""
    directory = ContactDirectory()
    directory.register(
        RecipientRole.CLIENT, CLIENT_ID,
        Contact(name="Marko Markovic", phone=CLIENT_PHONE, email=CLIENT_EMAIL),
    )
    directory.register(
        RecipientRole.TECHNICIAN, TECHNICIAN_ID,
        Contact(name="Gruica", phone=TECHNICIAN_PHONE),
    )
    directory.register(
        RecipientRole.BUSINESS_PARTNER, PARTNER_ID,
        Contact(name="Partner Servis", email=PARTNER_EMAIL),
    )
    return directory


@pytest.fixture
def permitted_calls() -> list:
    return []


@pytest.fixture
def allow_all(permitted_calls):
    """Authorizer that permits everything and records each check."""

    def is_permitted(actor, ticket_id, target):
        permitted_calls.append((actor.id, ticket_id, target))
        return True

    return is_permitted


@pytest.fixture
def sleeps() -> list:
    """Backoff delays requested by the dispatcher. Nothing actually sleeps."""
    return []


@pytest.fixture
def desk(repository, channels, allow_all, config, directory, registry, sleeps):
    """Fully wired service desk with inline dispatch."""
    from core.wiring import build_service_desk

    desk = build_service_desk(
        repository,
        channels,
        allow_all,
        config=config,
        directory=directory,
        registry=registry,
        background_dispatch=False,
        sleep=sleeps.append,
    )
    yield desk
    desk.shutdown()


def ticket_data(**overrides) -> TicketCreate:
    values = {
        "client_id": CLIENT_ID,
        "device_type": "Washing machine",
        "manufacturer": "Beko",
        "problem_description": "Does not drain",
    }
    values.update(overrides)
    return TicketCreate(**values)


@pytest.fixture
def make_ticket(desk):
    """Open a ticket through the ticket service."""

    def make(**overrides):
        return desk.tickets.create(ticket_data(**overrides))

    return make


# =============================================================================
# DATABASE FIXTURES
# =============================================================================


@pytest.fixture(scope="session")
def db():
    """Session-scoped PostgresClient. Skips unless SERVICEDESK_TEST_DATABASE_URL is set."""
    url = os.getenv("SERVICEDESK_TEST_DATABASE_URL")
    if not url:
        pytest.skip("SERVICEDESK_TEST_DATABASE_URL not set")

    from clients.postgres_client import PostgresClient

    client = PostgresClient(url)
    yield client
    client.close()


@pytest.fixture
def pg_repository(db):
    """PostgresRepository on a clean schema."""
    from core.store import PostgresRepository

    repository = PostgresRepository(db)
    repository.ensure_schema()
    db.execute("""
        TRUNCATE
            daily_reports, delivery_attempts, notification_events,
            parts_orders, service_tickets
        CASCADE
    """)
    yield repository
