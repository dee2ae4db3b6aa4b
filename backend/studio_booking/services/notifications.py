"""
Notification dispatch.

Notifications are recorded as outbox rows inside the owning transaction (see
`queue_notification`) and handed to a dispatcher after commit by `deliver`.
Delivery is best-effort: a failing dispatcher is logged and never turns a
committed booking or payment into an error.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy.ext.asyncio import AsyncSession

from studio_booking.core.logging import get_logger
from studio_booking.models.notification import Notification, NotificationType

logger = get_logger(__name__)


@dataclass(frozen=True)
class NotificationMessage:
    notification_id: int
    user_id: int
    type: str
    title: str
    body: str


class NotificationDispatcher(ABC):
    """Transport for user notifications (push, email, ...)."""

    @abstractmethod
    async def dispatch(self, message: NotificationMessage) -> None:
        ...


class LoggingNotificationDispatcher(NotificationDispatcher):
    """Default dispatcher: emits a structured log line per notification.

    Real transports plug in behind the same interface.
    """

    async def dispatch(self, message: NotificationMessage) -> None:
        logger.info(
            "notification_dispatched",
            notification_id=message.notification_id,
            user_id=message.user_id,
            type=message.type,
        )


async def queue_notification(
    db: AsyncSession,
    user_id: int,
    type: NotificationType,
    title: str,
    body: str,
) -> NotificationMessage:
    """Write an outbox row in the caller's transaction."""
    notification = Notification(user_id=user_id, type=type, title=title, body=body)
    db.add(notification)
    await db.flush()
    return NotificationMessage(
        notification_id=notification.id,
        user_id=user_id,
        type=str(type),
        title=title,
        body=body,
    )


async def deliver(dispatcher: NotificationDispatcher, messages: Iterable[NotificationMessage]) -> None:
    """Push committed notifications; failures are logged and swallowed."""
    for message in messages:
        try:
            await dispatcher.dispatch(message)
        except Exception as e:
            logger.error(
                "notification_dispatch_failed",
                notification_id=message.notification_id,
                user_id=message.user_id,
                type=message.type,
                error=str(e),
            )
