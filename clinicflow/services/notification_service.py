"""Notification delivery.

Workflow services never talk to FCM directly. They queue ``Notice`` objects
while a transition runs and hand them to a ``Notifier`` once the transition
has committed; delivery problems are logged and never reach the caller.
"""

import asyncio
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Protocol
from uuid import UUID

import structlog
from firebase_admin import messaging
from sqlalchemy import insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from clinicflow.config import settings
from clinicflow.core.firebase import is_firebase_ready
from clinicflow.models.notifications import notifications, push_tokens

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Notice:
    """A message for one user, produced by a transition."""

    user_id: UUID
    notification_type: str
    title: str
    body: str
    meta: dict[str, str] | None = None


class Notifier(Protocol):
    """Fire-and-forget notification capability."""

    async def notify(
        self,
        user_id: UUID,
        notification_type: str,
        title: str,
        body: str,
        meta: dict[str, str] | None = None,
    ) -> None:
        """Deliver one message to one user."""


async def dispatch_notices(
    notifier: Notifier,
    notices: Iterable[Notice],
    timeout: float | None = None,
) -> int:
    """
    Deliver queued notices, one bounded notifier call each.

    Args:
        notifier: Delivery backend
        notices: Notices produced by a committed transition
        timeout: Per-call bound in seconds

    Returns:
        Number of notices that failed
    """
    timeout = timeout if timeout is not None else settings.notification_timeout_seconds
    failures = 0
    for notice in notices:
        try:
            async with asyncio.timeout(timeout):
                await notifier.notify(
                    notice.user_id,
                    notice.notification_type,
                    notice.title,
                    notice.body,
                    notice.meta,
                )
        except Exception as e:
            failures += 1
            logger.warning(
                "notification_failed",
                user_id=str(notice.user_id),
                notification_type=notice.notification_type,
                error=str(e) or e.__class__.__name__,
            )
    return failures


class NotificationService:
    """Persistence and FCM fan-out for push notifications."""

    @staticmethod
    async def send_push_notification(
        tokens: list[str],
        title: str,
        body: str,
        data: dict[str, str] | None = None,
    ) -> tuple[int, int]:
        """
        Send push notification to multiple devices.

        Args:
            tokens: List of FCM tokens
            title: Notification title
            body: Notification body
            data: Optional data payload

        Returns:
            Tuple of (success_count, failure_count)
        """
        if not tokens:
            logger.warning("no_tokens_provided", title=title)
            return 0, 0

        if not is_firebase_ready():
            logger.warning("push_skipped_firebase_not_ready", title=title)
            return 0, len(tokens)

        message = messaging.MulticastMessage(
            notification=messaging.Notification(title=title, body=body),
            data=data or {},
            tokens=tokens,
            android=messaging.AndroidConfig(priority="high"),
        )

        try:
            # The Admin SDK is blocking
            response = await asyncio.to_thread(messaging.send_each_for_multicast, message)
        except Exception as e:
            logger.error("push_notification_failed", error=str(e), title=title)
            return 0, len(tokens)

        logger.info(
            "push_notification_sent",
            title=title,
            success_count=response.success_count,
            failure_count=response.failure_count,
        )
        return response.success_count, response.failure_count

    @staticmethod
    async def send_to_user(
        db: AsyncSession,
        user_id: UUID,
        title: str,
        body: str,
        data: dict[str, str] | None = None,
        notification_type: str = "other",
    ) -> tuple[int, int]:
        """
        Record a notification and push it to all active devices of a user.

        Args:
            db: Database session
            user_id: Patient or doctor id
            title: Notification title
            body: Notification body
            data: Optional data payload
            notification_type: Workflow event name

        Returns:
            Tuple of (success_count, failure_count)
        """
        result = await db.execute(
            insert(notifications)
            .values(
                user_id=user_id,
                title=title,
                body=body,
                notification_type=notification_type,
                data=data,
                status="pending",
            )
            .returning(notifications.c.id)
        )
        notification_id = result.scalar_one()

        result = await db.execute(
            select(push_tokens.c.fcm_token).where(
                push_tokens.c.user_id == user_id,
                push_tokens.c.is_active == True,  # noqa: E712
            )
        )
        tokens = list(result.scalars().all())

        if not tokens:
            logger.info("no_active_tokens_for_user", user_id=str(user_id))
            await db.execute(
                update(notifications)
                .where(notifications.c.id == notification_id)
                .values(status="failed", failure_reason="No active tokens for user")
            )
            await db.commit()
            return 0, 0

        success_count, failure_count = await NotificationService.send_push_notification(
            tokens=tokens,
            title=title,
            body=body,
            data=data,
        )

        await db.execute(
            update(notifications)
            .where(notifications.c.id == notification_id)
            .values(
                status="sent" if success_count else "failed",
                sent_at=datetime.now(UTC) if success_count else None,
                failure_reason=None if success_count else "All deliveries failed",
            )
        )
        await db.commit()
        return success_count, failure_count


class LogNotifier:
    """Notifier that only logs; used where push delivery is not configured."""

    async def notify(
        self,
        user_id: UUID,
        notification_type: str,
        title: str,
        body: str,
        meta: dict[str, str] | None = None,
    ) -> None:
        """Log the message instead of delivering it."""
        logger.info(
            "notification_logged",
            user_id=str(user_id),
            notification_type=notification_type,
            title=title,
        )


class PushNotifier:
    """Notifier backed by the notifications table and FCM, in its own session."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        """Initialize with a session factory independent of the request session."""
        self.session_factory = session_factory

    async def notify(
        self,
        user_id: UUID,
        notification_type: str,
        title: str,
        body: str,
        meta: dict[str, str] | None = None,
    ) -> None:
        """Record and push one message."""
        async with self.session_factory() as db:
            await NotificationService.send_to_user(
                db,
                user_id=user_id,
                title=title,
                body=body,
                data=meta,
                notification_type=notification_type,
            )
