"""
services/booking/cancellation.py
Guest cancellation.

Eligibility, first failing rule wins:
    1. not already cancelled or rejected
    2. only paid bookings
    3. not within CANCELLATION_CUTOFF_HOURS (whole hours) of the visit date

A cancelled booking stops holding capacity, so its slots go straight back
to the item's pool.
"""

import logging
import uuid
from dataclasses import dataclass
from typing import List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from services.booking.repository import BookingRepository
from services.booking.reschedule import hours_until
from services.catalog.items import ItemSnapshot, load_item
from services.notification.dispatcher import NotificationEvent, event
from shared.exceptions import IneligibleCancellationError, ItemNotFoundError
from shared.models.models import (
    INACTIVE_BOOKING_STATUSES,
    Booking,
    NotificationType,
    PaymentStatus,
    User,
)
from shared.utils.clock import Clock

logger = logging.getLogger(__name__)

PAID_STATUSES = (PaymentStatus.PAID, PaymentStatus.COMPLETED)


@dataclass(frozen=True)
class CancelVerdict:
    eligible: bool
    reason: Optional[str] = None
    message: Optional[str] = None


class CancellationPolicy:

    def __init__(self, clock: Clock, cutoff_hours: int = settings.CANCELLATION_CUTOFF_HOURS):
        self.clock = clock
        self.cutoff_hours = cutoff_hours

    def check(self, booking: Booking) -> CancelVerdict:
        if booking.status in INACTIVE_BOOKING_STATUSES:
            return CancelVerdict(False, "invalid_status",
                                 f"A {booking.status.value} booking cannot be cancelled")

        if booking.payment_status not in PAID_STATUSES:
            return CancelVerdict(False, "unpaid", "Only paid bookings can be cancelled")

        if booking.visit_date and hours_until(booking.visit_date, self.clock.now()) < self.cutoff_hours:
            return CancelVerdict(False, "too_late",
                                 f"Bookings cannot be cancelled within {self.cutoff_hours} hours of the visit")

        return CancelVerdict(True)

    async def cancel(
        self,
        db: AsyncSession,
        booking_id: uuid.UUID,
        actor: User,
    ) -> Tuple[Booking, List[NotificationEvent]]:
        """Cancel inside the caller's transaction. Returns the events to publish after commit."""
        repo = BookingRepository(db)
        booking = await repo.get(booking_id, lock=True)

        verdict = self.check(booking)
        if not verdict.eligible:
            raise IneligibleCancellationError(verdict.message, reason=verdict.reason)

        await repo.mark_cancelled(booking)
        logger.info(f"Booking {booking.id} cancelled by {actor.id}, {booking.slots_booked} slot(s) released")

        try:
            item = await load_item(db, booking.booking_type, booking.item_id, require_approved=False)
        except ItemNotFoundError:
            item = None
        return booking, self._events(booking, item)

    @staticmethod
    def _events(booking: Booking, item: Optional[ItemSnapshot]) -> List[NotificationEvent]:
        common = {
            "item_name": item.name if item else "your booking",
            "booking_ref": str(booking.id)[:8].upper(),
            "visit_date": booking.visit_date.isoformat() if booking.visit_date else None,
        }
        events = [event(
            NotificationType.BOOKING_CANCELLED,
            booking_id=booking.id,
            user_id=booking.user_id,
            email=booking.guest_email,
            phone=booking.guest_phone,
            **common,
        )]
        if item is not None and item.creator_id:
            events.append(event(
                NotificationType.BOOKING_CANCELLED_HOST,
                booking_id=booking.id,
                user_id=item.creator_id,
                guest_name=booking.guest_name,
                slots=booking.slots_booked,
                **common,
            ))
        return events
