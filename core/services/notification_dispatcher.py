"""
Notification dispatcher.

Turns one committed event into deliveries:

    recipients (core.recipients) -> contacts (ContactDirectory)
        -> template per channel (TemplateRegistry) -> channel adapter

Each (event, recipient address, channel) triple gets at most max_attempts
attempts across all dispatch calls, and at most one SENT attempt ever. The
claim is made in storage (claim_attempt) before the gateway is called, so
concurrent or repeated dispatches of the same event cannot double-send.

Failures stay inside the dispatcher: a rendering error, a rejected number or
an exhausted retry budget for one recipient is logged and recorded, and the
other recipients are still served.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Mapping
from uuid import UUID, uuid4

from core.channels import ChannelAdapter
from core.config import NotificationConfig
from core.contacts import ContactDirectory
from core.events import NotificationEvent
from core.exceptions import (
    ChannelPermanentError,
    ChannelTransientError,
    NotFoundError,
    TemplateError,
)
from core.models import (
    Channel,
    DeliveryAttempt,
    DeliveryOutcome,
    RecipientRole,
    ServiceTicket,
)
from core.recipients import resolve_recipient_roles
from core.store import ServiceDeskRepository
from core.templates import RenderedMessage, TemplateRegistry
from utils.timezone import now_utc

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlannedDelivery:
    """One rendered message bound for one address."""

    role: RecipientRole
    address: str
    message: RenderedMessage

    @property
    def channel(self) -> Channel:
        return self.message.channel


class NotificationDispatcher:
    """Fan an event out to every interested party with retry and de-duplication."""

    def __init__(
        self,
        repository: ServiceDeskRepository,
        registry: TemplateRegistry,
        directory: ContactDirectory,
        channels: Mapping[Channel, ChannelAdapter],
        config: NotificationConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.repository = repository
        self.registry = registry
        self.directory = directory
        self.channels = dict(channels)
        self.config = config or NotificationConfig()
        self._sleep = sleep

    def dispatch(self, event: NotificationEvent | UUID) -> list[DeliveryAttempt]:
        """
        Deliver an event's notifications.

        Safe to call repeatedly for the same event: triples that already have
        a SENT attempt, a permanent failure or a spent attempt budget are
        skipped.

        Args:
            event: Committed event, or its id

        Returns:
            Full attempt history for the event, including earlier calls

        Raises:
            NotFoundError: If the event or its ticket does not exist
        """
        event_id = event.event_id if isinstance(event, NotificationEvent) else event
        stored = self.repository.get_event(event_id)
        if stored is None:
            raise NotFoundError("Notification event", event_id)

        ticket = self.repository.get_ticket(stored.ticket_id)
        if ticket is None:
            raise NotFoundError("Ticket", stored.ticket_id)

        deliveries = self.plan(stored, ticket)
        if deliveries:
            workers = min(self.config.max_workers, len(deliveries))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="dispatch") as pool:
                futures = {
                    pool.submit(self._deliver, stored, delivery): delivery
                    for delivery in deliveries
                }
                for future in as_completed(futures):
                    delivery = futures[future]
                    try:
                        future.result()
                    except Exception:
                        logger.exception(
                            f"Delivery to {delivery.role.value} via {delivery.channel.value} "
                            f"crashed (event_id={event_id})"
                        )
        else:
            logger.debug(f"No deliveries for {stored.kind.value} (event_id={event_id})")

        return self.repository.list_attempts(event_id)

    def plan(self, event: NotificationEvent, ticket: ServiceTicket) -> list[PlannedDelivery]:
        """
        Resolve and render every delivery for an event. Pure apart from logging.

        Gaps (no contact, no address, no adapter, no template) are skipped
        quietly. Rendering errors are skipped with a warning.
        """
        planned: list[PlannedDelivery] = []
        seen: set[tuple[str, Channel]] = set()

        for role in resolve_recipient_roles(event.kind, ticket):
            contact = self.directory.lookup(role, ticket)
            if contact is None:
                continue

            for channel in Channel:
                address = contact.address_for(channel)
                if not address:
                    continue
                if channel not in self.channels:
                    logger.debug(f"No {channel.value} adapter configured")
                    continue
                if (address, channel) in seen:
                    logger.debug(f"{address} already receives {event.kind.value} via {channel.value}")
                    continue

                template_id = self.registry.resolve(event.kind, role, channel)
                if template_id is None:
                    logger.debug(
                        f"No template for ({event.kind.value}, {role.value}, {channel.value})"
                    )
                    continue

                try:
                    message = self.registry.render(
                        template_id, {**event.payload, "recipient_name": contact.name}
                    )
                except TemplateError as e:
                    logger.warning(
                        f"Skipping {role.value} {channel.value} for event {event.event_id}: {e}"
                    )
                    continue

                seen.add((address, channel))
                planned.append(PlannedDelivery(role=role, address=address, message=message))

        return planned

    def _history(self, event: NotificationEvent, delivery: PlannedDelivery) -> list[DeliveryAttempt]:
        key = (event.event_id, delivery.address, delivery.channel)
        return [a for a in self.repository.list_attempts(event.event_id) if a.key == key]

    def _deliver(self, event: NotificationEvent, delivery: PlannedDelivery) -> None:
        """
        Drive one triple to SENT, permanent failure or budget exhaustion.

        The next attempt number is read from storage before every claim, and
        storage accepts each number once, so concurrent dispatchers of the
        same event share one budget.
        """
        adapter = self.channels[delivery.channel]
        label = f"{delivery.role.value} via {delivery.channel.value} (event_id={event.event_id})"
        tried = False

        while True:
            history = self._history(event, delivery)
            if any(a.outcome == DeliveryOutcome.SENT for a in history):
                logger.debug(f"Already delivered to {label}")
                return
            if any(a.permanent_failure for a in history):
                logger.debug(f"Not retrying {label}: earlier attempt failed permanently")
                return
            attempt_number = len(history) + 1
            if attempt_number > self.config.max_attempts:
                break

            attempt = DeliveryAttempt(
                id=uuid4(),
                event_id=event.event_id,
                ticket_id=event.ticket_id,
                recipient_role=delivery.role,
                recipient=delivery.address,
                channel=delivery.channel,
                template_id=delivery.message.template_id,
                subject=delivery.message.subject,
                body=delivery.message.body,
                attempt_number=attempt_number,
                outcome=DeliveryOutcome.PENDING,
                attempted_at=now_utc(),
            )
            if not self.repository.claim_attempt(attempt):
                logger.debug(f"Another dispatcher holds {label}")
                return
            tried = True

            try:
                message_id = adapter.deliver(delivery.address, delivery.message)
            except ChannelTransientError as e:
                self.repository.complete_attempt(
                    attempt.id, DeliveryOutcome.FAILED, now_utc(), error=str(e)
                )
                if attempt_number >= self.config.max_attempts:
                    break
                delay = self.config.backoff_seconds(attempt_number)
                logger.warning(
                    f"Attempt {attempt_number} to {label} failed, retrying in {delay:g}s: {e}"
                )
                self._sleep(delay)
                continue
            except ChannelPermanentError as e:
                self.repository.complete_attempt(
                    attempt.id, DeliveryOutcome.FAILED, now_utc(),
                    error=str(e), permanent_failure=True,
                )
                logger.error(f"Delivery to {label} rejected: {e}")
                return
            except Exception as e:
                # Unclassified adapter error: record it so the claim is released, then stop
                self.repository.complete_attempt(
                    attempt.id, DeliveryOutcome.FAILED, now_utc(),
                    error=f"{type(e).__name__}: {e}", permanent_failure=True,
                )
                raise

            self.repository.complete_attempt(
                attempt.id, DeliveryOutcome.SENT, now_utc(), message_id=message_id
            )
            logger.info(f"Delivered to {label} on attempt {attempt_number}")
            return

        if not tried:
            logger.debug(f"Not retrying {label}: attempt budget spent")
            return
        logger.error(
            f"Delivery failed permanently to {label}: "
            f"{self.config.max_attempts} attempts exhausted"
        )

    def expire_stale_attempts(self, now: datetime | None = None) -> int:
        """
        Fail PENDING attempts left behind by a crashed sender so the triple
        can be retried by the next dispatch.
        """
        now = now or now_utc()
        cutoff = now - timedelta(seconds=self.config.stale_attempt_seconds)
        expired = self.repository.expire_pending_attempts(cutoff, now)
        if expired:
            logger.warning(f"Marked {expired} stale pending delivery attempts as failed")
        return expired

    def list_attempts(self, event_id: UUID) -> list[DeliveryAttempt]:
        """Delivery history for one event."""
        return self.repository.list_attempts(event_id)

    def list_ticket_attempts(self, ticket_id: UUID) -> list[DeliveryAttempt]:
        """Delivery history for every event of a ticket."""
        return self.repository.list_ticket_attempts(ticket_id)
