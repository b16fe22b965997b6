"""Shared plumbing for the appointment workflow services."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from clinicflow.core.clock import Clock, utcnow
from clinicflow.services.notification_service import (
    LogNotifier,
    Notice,
    Notifier,
    dispatch_notices,
)

logger = structlog.get_logger(__name__)


class WorkflowService:
    """Base for services that mutate appointments inside one unit of work."""

    def __init__(
        self,
        db: AsyncSession,
        notifier: Notifier | None = None,
        clock: Clock = utcnow,
    ):
        """Initialize service with database session, notifier and clock."""
        self.db = db
        self.notifier: Notifier = notifier or LogNotifier()
        self.clock = clock

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator[list[Notice]]:
        """
        Run a block as one atomic write.

        Yields an outbox; notices appended to it are delivered only after the
        commit succeeds. Any exception rolls everything back and propagates.
        """
        outbox: list[Notice] = []
        try:
            yield outbox
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        if outbox:
            await dispatch_notices(self.notifier, outbox)
