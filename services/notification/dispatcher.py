"""
services/notification/dispatcher.py
Notification events are collected while a booking transaction runs and
published to the notifications queue only after it commits. A broker
outage is logged; it never undoes a booking.
"""

import logging
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from shared.models.models import NotificationType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NotificationEvent:
    """
    One message to one recipient. `user_id` targets an account; guests are
    reached through `email` / `phone`. With neither set, admins are notified.
    """
    type: NotificationType
    booking_id: Optional[str] = None
    user_id: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict:
        payload = asdict(self)
        payload["type"] = self.type.value
        return payload

    @classmethod
    def from_payload(cls, payload: dict) -> "NotificationEvent":
        return cls(
            type=NotificationType(payload["type"]),
            booking_id=payload.get("booking_id"),
            user_id=payload.get("user_id"),
            email=payload.get("email"),
            phone=payload.get("phone"),
            data=payload.get("data") or {},
        )


def _str_or_none(value) -> Optional[str]:
    return str(value) if value is not None else None


def event(
    type_: NotificationType,
    *,
    booking_id: Optional[uuid.UUID] = None,
    user_id: Optional[uuid.UUID] = None,
    email: Optional[str] = None,
    phone: Optional[str] = None,
    **data,
) -> NotificationEvent:
    return NotificationEvent(
        type=type_,
        booking_id=_str_or_none(booking_id),
        user_id=_str_or_none(user_id),
        email=email,
        phone=phone,
        data={k: _str_or_none(v) for k, v in data.items()},
    )


class NotificationDispatcher:
    """Publishes events to Celery."""

    def publish(self, events: Iterable[NotificationEvent]) -> None:
        from tasks.notification_tasks import deliver_notification

        for item in events:
            try:
                deliver_notification.delay(item.to_payload())
            except Exception:
                logger.exception(f"Could not enqueue {item.type.value} notification for booking {item.booking_id}")


class RecordingDispatcher(NotificationDispatcher):
    """Keeps events in memory. Used by tests and dry runs."""

    def __init__(self):
        self.events: List[NotificationEvent] = []

    def publish(self, events: Iterable[NotificationEvent]) -> None:
        self.events.extend(events)

    def of_type(self, type_: NotificationType) -> List[NotificationEvent]:
        return [e for e in self.events if e.type == type_]


dispatcher = NotificationDispatcher()


def get_dispatcher() -> NotificationDispatcher:
    """FastAPI dependency."""
    return dispatcher
