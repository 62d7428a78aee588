"""
Composition root for the lifecycle and notification core.

build_service_desk() assembles the services around any repository and set of
channel adapters. build_from_vault() is the production entry point: it reads
secrets from Vault and wires PostgreSQL, the HTTP gateways and Valkey locks.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Mapping

from clients.email_client import EmailGatewayClient
from clients.postgres_client import PostgresClient
from clients.sms_client import SMSGatewayClient
from clients.valkey_client import ValkeyClient
from clients.vault_client import (
    get_database_url,
    get_email_config,
    get_sms_config,
    get_valkey_url,
)
from core.channels import ChannelAdapter, EmailChannel, SMSChannel
from core.config import ServiceDeskConfig
from core.contacts import ContactDirectory
from core.event_bus import ALL_KINDS, EventBus
from core.handlers.notification_handler import handle_notification_event
from core.locks import LocalTicketLocks, TicketLocks, ValkeyTicketLocks
from core.models import Channel, Contact, RecipientRole
from core.scheduler import DailyReportScheduler
from core.services.daily_report_service import DailyReportService
from core.services.notification_dispatcher import NotificationDispatcher
from core.services.ticket_service import Authorizer, TicketService
from core.store import PostgresRepository, ServiceDeskRepository
from core.templates import TemplateRegistry

logger = logging.getLogger(__name__)


@dataclass
class ServiceDesk:
    """Wired services. Call shutdown() to drain background dispatches."""

    repository: ServiceDeskRepository
    bus: EventBus
    registry: TemplateRegistry
    directory: ContactDirectory
    tickets: TicketService
    dispatcher: NotificationDispatcher
    reports: DailyReportService
    scheduler: DailyReportScheduler
    executor: ThreadPoolExecutor | None = None
    closers: list[Callable[[], None]] = field(default_factory=list)

    def shutdown(self) -> None:
        if self.executor is not None:
            self.executor.shutdown(wait=True)
        for close in self.closers:
            close()


def register_supplier_contacts(directory: ContactDirectory, config: ServiceDeskConfig) -> None:
    """Per-event supplier addresses come from configuration, not from tickets."""
    for supplier_kind, supplier in config.suppliers.items():
        if supplier.phone or supplier.email:
            directory.register(
                RecipientRole.SUPPLIER,
                supplier_kind,
                Contact(name=supplier.display_name, phone=supplier.phone, email=supplier.email),
            )


def build_service_desk(
    repository: ServiceDeskRepository,
    channels: Mapping[Channel, ChannelAdapter],
    is_permitted: Authorizer,
    config: ServiceDeskConfig | None = None,
    directory: ContactDirectory | None = None,
    registry: TemplateRegistry | None = None,
    locks: TicketLocks | None = None,
    background_dispatch: bool = True,
    sleep: Callable[[float], None] = time.sleep,
) -> ServiceDesk:
    """
    Wire the core around the given collaborators.

    Args:
        repository: Storage implementation
        channels: Adapter per channel; EMAIL is required for daily reports
        is_permitted: Authorization callback for transitions
        config: Service desk configuration
        directory: Contact directory (supplier contacts are added from config)
        registry: Template registry, defaults to the built-in templates
        locks: Per-ticket and per-report locks, defaults to in-process locks
        background_dispatch: Dispatch on a worker thread instead of inline
        sleep: Backoff sleep, injectable for tests

    Raises:
        ValueError: If no email adapter is supplied
    """
    if Channel.EMAIL not in channels:
        raise ValueError("An email channel adapter is required")

    config = config or ServiceDeskConfig()
    directory = directory or ContactDirectory()
    registry = registry or TemplateRegistry.default(config.notifications.sms_max_length)
    locks = locks or LocalTicketLocks()
    register_supplier_contacts(directory, config)

    bus = EventBus()
    tickets = TicketService(repository, bus, is_permitted, locks)
    dispatcher = NotificationDispatcher(
        repository, registry, directory, channels, config.notifications, sleep=sleep,
    )
    reports = DailyReportService(repository, registry, channels[Channel.EMAIL], config, locks)
    scheduler = DailyReportScheduler(reports, config, dispatcher)

    executor = None
    if background_dispatch:
        executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="notify")
    bus.subscribe(ALL_KINDS, handle_notification_event(dispatcher, executor))

    logger.info(
        f"Service desk wired: {len(config.suppliers)} suppliers, "
        f"channels={sorted(c.value for c in channels)}"
    )
    return ServiceDesk(
        repository=repository,
        bus=bus,
        registry=registry,
        directory=directory,
        tickets=tickets,
        dispatcher=dispatcher,
        reports=reports,
        scheduler=scheduler,
        executor=executor,
    )


def build_from_vault(
    is_permitted: Authorizer,
    config: ServiceDeskConfig | None = None,
    directory: ContactDirectory | None = None,
) -> ServiceDesk:
    """Production wiring with secrets from Vault."""
    postgres = PostgresClient(get_database_url())
    repository = PostgresRepository(postgres)
    repository.ensure_schema()

    channels = {
        Channel.EMAIL: EmailChannel(EmailGatewayClient(**get_email_config())),
        Channel.SMS: SMSChannel(SMSGatewayClient(**get_sms_config())),
    }
    valkey = ValkeyClient(get_valkey_url())

    desk = build_service_desk(
        repository,
        channels,
        is_permitted,
        config=config,
        directory=directory,
        locks=ValkeyTicketLocks(valkey),
    )
    desk.closers.extend([valkey.close, postgres.close])
    return desk
