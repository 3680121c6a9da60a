"""Fire-and-forget booking notifications.

Messages are published to a durable RabbitMQ queue; the mail worker that
renders and delivers them lives outside this repository. A failed publish
is logged and reported back, it never undoes a booking transition.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Optional, Protocol

import pika
from circuitbreaker import circuit

from amenity_core.config import get_settings

if TYPE_CHECKING:
    from amenity_core.models import Booking

logger = logging.getLogger(__name__)
settings = get_settings()


class NotificationTemplate(str, Enum):
    BOOKING_CONFIRMED = "booking_confirmed"
    BOOKING_WAITLISTED = "booking_waitlisted"
    BOOKING_CANCELLED = "booking_cancelled"
    WAITLIST_PROMOTED = "waitlist_promoted"
    PROMOTION_CONFIRMED = "promotion_confirmed"
    PROMOTION_EXPIRED = "promotion_expired"
    BOOKING_NO_SHOW = "booking_no_show"
    BOOKING_REMINDER = "booking_reminder"


@dataclass(frozen=True)
class NotificationResult:
    success: bool
    error: Optional[str] = None


class NotificationSender(Protocol):
    def send(self, template: NotificationTemplate, recipient: str, data: Dict[str, Any]) -> NotificationResult:
        ...


class RabbitMQSender:
    def __init__(self, host: str, queue: str) -> None:
        self.host = host
        self.queue = queue

    @circuit(failure_threshold=5, recovery_timeout=60)
    def _publish(self, body: str) -> None:
        connection = pika.BlockingConnection(pika.ConnectionParameters(host=self.host))
        try:
            channel = connection.channel()
            channel.queue_declare(queue=self.queue, durable=True)
            channel.basic_publish(
                exchange="",
                routing_key=self.queue,
                body=body,
                properties=pika.BasicProperties(delivery_mode=2),  # persistent
            )
        finally:
            connection.close()

    def send(self, template: NotificationTemplate, recipient: str, data: Dict[str, Any]) -> NotificationResult:
        message = {"template": template.value, "to": recipient, "data": data}
        self._publish(json.dumps(message, default=str))
        return NotificationResult(success=True)


class LogOnlySender:
    """Used when notifications are disabled; records the message in the log."""

    def send(self, template: NotificationTemplate, recipient: str, data: Dict[str, Any]) -> NotificationResult:
        logger.info("notification skipped (disabled) template=%s to=%s", template.value, recipient)
        return NotificationResult(success=True)


_sender: Optional[NotificationSender] = None


def get_sender() -> NotificationSender:
    global _sender
    if _sender is None:
        if settings.notifications_enabled:
            _sender = RabbitMQSender(settings.rabbitmq_host, settings.notifications_queue)
        else:
            _sender = LogOnlySender()
    return _sender


def set_sender(sender: Optional[NotificationSender]) -> None:
    """Swap the process-wide sender; ``None`` restores the configured default."""

    global _sender
    _sender = sender


def notify(
    template: NotificationTemplate,
    recipient: str,
    data: Dict[str, Any],
    sender: Optional[NotificationSender] = None,
) -> NotificationResult:
    """Send one notification; never raises."""

    sender = sender or get_sender()
    try:
        result = sender.send(template, recipient, data)
    except Exception as exc:  # notification delivery is never fatal
        logger.warning("notification failed template=%s to=%s: %s", template.value, recipient, exc)
        return NotificationResult(success=False, error=str(exc))
    if not result.success:
        logger.warning("notification rejected template=%s to=%s: %s", template.value, recipient, result.error)
    return result


def booking_data(booking: "Booking", **extra: Any) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "booking_id": booking.id,
        "amenity_id": booking.amenity_id,
        "amenity_name": booking.amenity.name if booking.amenity else None,
        "start_time": booking.start_time.isoformat(),
        "end_time": booking.end_time.isoformat(),
        "user_name": booking.user_name or booking.user_email.split("@")[0],
    }
    data.update(extra)
    return data


def confirmation_links(booking_id: int) -> Dict[str, str]:
    base = settings.app_base_url.rstrip("/")
    return {
        "confirm_url": f"{base}/bookings/confirm/{booking_id}?action=confirm",
        "decline_url": f"{base}/bookings/confirm/{booking_id}?action=decline",
    }
