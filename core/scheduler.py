"""
Daily report scheduler.

A local day is reported only after it has ended, so events up to midnight
are included. Yesterday's digest is due once the supplier's local clock
passes report_hour. The day before is re-checked on every tick so a missed
run is picked up the next time the process runs.
Repeated invocations are harmless: the report job is idempotent.
"""

import logging
import threading
from datetime import date, datetime, timedelta

from core.config import ServiceDeskConfig
from core.models import DailyReport, SupplierKind
from core.services.daily_report_service import DailyReportService
from utils.timezone import now_utc, to_local

logger = logging.getLogger(__name__)


class DailyReportScheduler:
    """Periodic trigger for supplier digests."""

    def __init__(
        self,
        report_service: DailyReportService,
        config: ServiceDeskConfig,
        dispatcher=None,
    ):
        self.report_service = report_service
        self.config = config
        self.dispatcher = dispatcher

    def due_dates(self, supplier_kind: SupplierKind, now: datetime) -> list[date]:
        """Local dates whose digest should exist at `now`, oldest first."""
        supplier = self.config.suppliers[supplier_kind]
        local_now = to_local(now, supplier.timezone)
        yesterday = local_now.date() - timedelta(days=1)

        dates = [yesterday - timedelta(days=1)]
        if local_now.hour >= supplier.report_hour:
            dates.append(yesterday)
        return dates

    def tick(
        self,
        now: datetime | None = None,
        stop_event: threading.Event | None = None,
    ) -> list[DailyReport]:
        """
        Run every due report once.

        A failure for one supplier is logged and does not stop the others.

        Returns:
            Reports touched by this tick
        """
        now = now or now_utc()
        reports = []

        if self.dispatcher is not None:
            try:
                self.dispatcher.expire_stale_attempts(now)
            except Exception:
                logger.exception("Failed to expire stale delivery attempts")

        for supplier_kind in self.config.suppliers:
            for report_date in self.due_dates(supplier_kind, now):
                if stop_event is not None and stop_event.is_set():
                    return reports
                try:
                    reports.append(
                        self.report_service.run_daily_report(supplier_kind, report_date, stop_event)
                    )
                except Exception:
                    logger.exception(
                        f"Daily report for {supplier_kind.value} on {report_date} failed"
                    )

        return reports

    def run_forever(self, stop_event: threading.Event) -> None:
        """Tick every scheduler_interval_seconds until stop_event is set."""
        interval = self.config.scheduler_interval_seconds
        logger.info(f"Daily report scheduler started (interval {interval}s)")

        while not stop_event.is_set():
            self.tick(stop_event=stop_event)
            stop_event.wait(interval)

        logger.info("Daily report scheduler stopped")
