"""
Notifier interface.

A Notifier delivers one Notification over its channel. Delivery providers
(WhatsApp, SMS gateway, SMTP, push) implement this Protocol outside the
engine. A failed send is reported either as SendResult(success=False) or by
raising (TransportError for provider failures); the retry worker treats all
of them as a failed attempt.
"""

import logging
from dataclasses import dataclass
from typing import Protocol

from booking.models import Notification

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SendResult:
    success: bool
    provider_error: str | None = None
    provider_message_id: str | None = None


class Notifier(Protocol):
    async def send(self, notification: Notification) -> SendResult: ...


class LoggingNotifier:
    """
    Notifier that only logs the message.

    Used by the retry worker when no delivery provider is wired in (local
    development, dry runs).
    """

    async def send(self, notification: Notification) -> SendResult:
        logger.info(
            f"[dry-run] {notification.channel.value} {notification.type.value}: {notification.message}",
            extra={
                "notification_id": str(notification.id),
                "channel": notification.channel.value,
            },
        )
        return SendResult(success=True)
