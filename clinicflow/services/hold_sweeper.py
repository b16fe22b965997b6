"""
Hold expiry sweeper.

Background job that moves appointments whose consultation invoice is past due
to PAYMENT_OVERDUE and gives their slots back. It uses the same transition
path as user actions, so running it twice is harmless.
"""

from typing import Any

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from clinicflow.core.clock import Clock, utcnow
from clinicflow.schemas.invoices import InvoiceType
from clinicflow.services.appointment_service import AppointmentService
from clinicflow.services.invoice_service import InvoiceLedger
from clinicflow.services.notification_service import Notifier

logger = structlog.get_logger(__name__)


class HoldExpirySweeper:
    """Periodically expires lapsed payment holds."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        notifier: Notifier | None = None,
        interval_seconds: int = 60,
        clock: Clock = utcnow,
    ):
        """
        Initialize the sweeper.

        Args:
            session_factory: Factory for the sweeper's own sessions
            notifier: Delivery backend for overdue notices
            interval_seconds: Seconds between cycles
            clock: Time source
        """
        self.session_factory = session_factory
        self.notifier = notifier
        self.interval_seconds = interval_seconds
        self.clock = clock
        self.scheduler = AsyncIOScheduler()
        self.is_running = False

    async def run_once(self) -> dict[str, Any]:
        """
        Run one sweep cycle.

        Each overdue invoice is handled in its own session; a failure is
        logged and counted without stopping the cycle.

        Returns:
            Cycle statistics
        """
        now = self.clock()
        stats = {"found": 0, "expired": 0, "skipped": 0, "errors": 0}

        async with self.session_factory() as db:
            overdue = await InvoiceLedger(db).find_expired_pending(now, InvoiceType.CONSULTATION)
            await db.rollback()
        stats["found"] = len(overdue)

        for invoice in overdue:
            try:
                async with self.session_factory() as db:
                    service = AppointmentService(db, notifier=self.notifier, clock=self.clock)
                    outcome = await service.expire_for_invoice(invoice)
                stats[outcome] += 1
            except Exception as e:
                stats["errors"] += 1
                logger.error(
                    "hold_expiry_failed",
                    invoice_id=str(invoice.id),
                    appointment_id=str(invoice.appointment_id),
                    error=str(e),
                )

        if stats["found"]:
            logger.info("hold_sweep_completed", **stats)
        return stats

    async def _run_scheduled(self) -> None:
        try:
            await self.run_once()
        except Exception as e:
            logger.error("hold_sweep_failed", error=str(e))

    def start(self) -> None:
        """Start the scheduled sweep."""
        if self.is_running:
            return

        self.scheduler.add_job(
            self._run_scheduled,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id="hold_expiry_sweep",
            name="Payment hold expiry",
            misfire_grace_time=self.interval_seconds,
            coalesce=True,
            max_instances=1,
        )
        self.scheduler.start()
        self.is_running = True
        logger.info("hold_sweeper_started", interval_seconds=self.interval_seconds)

    def stop(self) -> None:
        """Stop the scheduled sweep."""
        if self.is_running:
            self.scheduler.shutdown(wait=False)
            self.is_running = False
            logger.info("hold_sweeper_stopped")
