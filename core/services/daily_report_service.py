"""
Supplier daily billing digest.

run_daily_report(supplier_kind, report_date) is safe under at-least-once
invocation:
- the (supplier_kind, report_date) record is created once; a concurrent or
  repeated run reuses it
- the contributing event ids are frozen when the record is created, so a
  retry re-sends the same digest
- delivered_to tracks which recipients accepted the digest; a retry only
  mails the rest
- a report is SENT once every configured recipient has it, and a SENT report
  is never mailed again
"""

import logging
import threading
from datetime import date
from typing import Callable
from uuid import uuid4

from core.channels import ChannelAdapter
from core.config import ServiceDeskConfig, SupplierConfig
from core.events import BILLABLE_KINDS, EventKind, NotificationEvent
from core.exceptions import ChannelError, DuplicateReportError, NotFoundError
from core.locks import LocalTicketLocks, TicketLocks
from core.models import (
    DailyReport,
    RecipientRole,
    ReportStatus,
    SupplierKind,
)
from core.store import ServiceDeskRepository
from core.templates import RenderedMessage, TemplateRegistry
from utils.timezone import local_day_bounds, now_utc, to_local

logger = logging.getLogger(__name__)

_KIND_LABELS = {
    EventKind.PARTS_ORDERED: "Part ordered",
    EventKind.PARTS_RECEIVED: "Part received",
    EventKind.SERVICE_COMPLETED: "Service completed",
}

NO_ACTIVITY_TEXT = "No billable activity was recorded for this day."


class DailyReportService:
    """Builds and mails one digest per supplier per local calendar day."""

    def __init__(
        self,
        repository: ServiceDeskRepository,
        registry: TemplateRegistry,
        email_channel: ChannelAdapter,
        config: ServiceDeskConfig,
        locks: TicketLocks | None = None,
    ):
        self.repository = repository
        self.registry = registry
        self.email_channel = email_channel
        self.config = config
        self.locks = locks or LocalTicketLocks()

    def _supplier_config(self, supplier_kind: SupplierKind) -> SupplierConfig:
        if supplier_kind == SupplierKind.NONE:
            raise ValueError("Daily reports are only produced for suppliers")
        supplier = self.config.suppliers.get(supplier_kind)
        if supplier is None:
            raise NotFoundError("Supplier configuration", supplier_kind.value)
        return supplier

    def run_daily_report(
        self,
        supplier_kind: SupplierKind | str,
        report_date: date,
        cancel_event: threading.Event | None = None,
    ) -> DailyReport:
        """
        Generate (once) and deliver (until sent) a supplier's digest.

        Args:
            supplier_kind: Supplier to report on
            report_date: Calendar day in the supplier's time zone
            cancel_event: Shutdown signal; checked between recipients

        Returns:
            The report record, SENT or still PENDING

        Raises:
            ValueError: supplier_kind is NONE, or report_date has not ended yet
            in the supplier's time zone
            NotFoundError: No configuration for the supplier
            TimeoutError: The report lock expired mid-delivery; recipients
                already mailed stay recorded in delivered_to
        """
        supplier_kind = SupplierKind(supplier_kind)
        supplier = self._supplier_config(supplier_kind)
        if local_day_bounds(report_date, supplier.timezone)[1] > now_utc():
            raise ValueError(f"{report_date} has not ended in {supplier.timezone}")

        report = self.repository.get_daily_report(supplier_kind, report_date)
        if report is not None and report.is_sent:
            logger.debug(f"{supplier_kind.value} report for {report_date} already sent")
            return report

        if report is None:
            report = self._generate(supplier_kind, supplier, report_date)

        # One sender per report; re-read so delivered_to is current
        with self.locks.hold(report.id) as renew:
            report = self.repository.get_daily_report(supplier_kind, report_date)
            if report.is_sent:
                return report
            return self._deliver(report, supplier, cancel_event, renew)

    def _generate(
        self, supplier_kind: SupplierKind, supplier: SupplierConfig, report_date: date
    ) -> DailyReport:
        start, end = local_day_bounds(report_date, supplier.timezone)
        events = self.repository.list_supplier_events(supplier_kind, BILLABLE_KINDS, start, end)

        report = DailyReport(
            id=uuid4(),
            supplier_kind=supplier_kind,
            report_date=report_date,
            event_ids=[event.event_id for event in events],
            no_activity=not events,
            status=ReportStatus.PENDING,
            generated_at=now_utc(),
        )

        try:
            created = self.repository.create_daily_report(report)
        except DuplicateReportError:
            logger.debug(f"{supplier_kind.value} report for {report_date} created concurrently, reusing it")
            return self.repository.get_daily_report(supplier_kind, report_date)

        if created.no_activity:
            logger.info(f"{supplier_kind.value} report for {report_date}: no activity")
        else:
            logger.info(
                f"{supplier_kind.value} report for {report_date}: {len(created.event_ids)} events"
            )
        return created

    def render(self, report: DailyReport, supplier: SupplierConfig) -> RenderedMessage:
        """Digest message for a report. The same report always renders the same message."""
        events: list[NotificationEvent] = []
        for event_id in report.event_ids:
            event = self.repository.get_event(event_id)
            if event is None:
                logger.warning(f"Event {event_id} listed in report {report.id} no longer exists")
                continue
            events.append(event)

        counts = {kind: 0 for kind in _KIND_LABELS}
        lines = []
        for event in events:
            counts[event.kind] = counts.get(event.kind, 0) + 1
            local_time = to_local(event.occurred_at, supplier.timezone).strftime("%H:%M")
            line = f"{local_time} #{event.payload.get('ticket_ref', '?')} {_KIND_LABELS.get(event.kind, event.kind.value)}"
            if event.payload.get("device"):
                line = f"{line}: {event.payload['device']}"
            if event.payload.get("part_description") and event.kind != EventKind.SERVICE_COMPLETED:
                line = f"{line} - {event.payload['part_description']}"
            lines.append(line)

        template_id = self.registry.resolve(EventKind.DAILY_REPORT, RecipientRole.SUPPLIER, self.email_channel.channel)
        if template_id is None:
            raise NotFoundError("Template", f"{EventKind.DAILY_REPORT.value}/{RecipientRole.SUPPLIER.value}")

        return self.registry.render(template_id, {
            "recipient_name": supplier.display_name,
            "supplier_name": supplier.display_name,
            "report_date": report.report_date.isoformat(),
            "completed_count": counts[EventKind.SERVICE_COMPLETED],
            "ordered_count": counts[EventKind.PARTS_ORDERED],
            "received_count": counts[EventKind.PARTS_RECEIVED],
            "details": "\n".join(lines) if lines else NO_ACTIVITY_TEXT,
        })

    def _deliver(
        self,
        report: DailyReport,
        supplier: SupplierConfig,
        cancel_event: threading.Event | None,
        renew: Callable[[], None],
    ) -> DailyReport:
        label = f"{report.supplier_kind.value} report for {report.report_date}"

        if not supplier.report_recipients:
            logger.error(f"{label} has no recipients configured, leaving it pending")
            return self.repository.save_daily_report(
                report.model_copy(update={"last_error": "No report recipients configured"})
            )

        message = self.render(report, supplier)
        delivered = list(report.delivered_to)
        last_error = None

        for recipient in supplier.report_recipients:
            if recipient in delivered:
                continue
            if cancel_event is not None and cancel_event.is_set():
                logger.info(f"{label} interrupted by shutdown, {len(delivered)} recipients done")
                break
            renew()

            try:
                self.email_channel.deliver(recipient, message)
            except ChannelError as e:
                last_error = f"{recipient}: {e}"
                logger.error(f"Failed to send {label} to {recipient}: {e}")
                continue

            delivered.append(recipient)
            report = self.repository.save_daily_report(
                report.model_copy(update={"delivered_to": list(delivered)})
            )
            logger.info(f"Sent {label} to {recipient}")

        if all(r in delivered for r in supplier.report_recipients):
            return self.repository.save_daily_report(report.model_copy(update={
                "status": ReportStatus.SENT,
                "sent_at": now_utc(),
                "last_error": None,
            }))

        if last_error is not None:
            report = self.repository.save_daily_report(
                report.model_copy(update={"last_error": last_error})
            )
        return report
