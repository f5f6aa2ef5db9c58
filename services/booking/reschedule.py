"""
services/booking/reschedule.py
Visit date changes.

Eligibility, first failing rule wins:
    1. only pending / confirmed bookings
    2. events run on their fixed date
    3. trips only when the trip takes flexible or custom dates
    4. not within RESCHEDULE_CUTOFF_HOURS (whole hours) of the current visit date

Every rule, plus the weekday and capacity checks on the new date, is evaluated
again when the change is applied, with the item row locked.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from typing import List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from services.booking.repository import BookingRepository
from services.capacity.ledger import (
    CalendarDay,
    CapacityScope,
    calendar,
    capacity_scope,
    ensure_capacity,
    load_bookings,
)
from services.catalog.items import ItemSnapshot, load_item
from services.notification.dispatcher import NotificationEvent, event
from shared.exceptions import IneligibleRescheduleError, ValidationError
from shared.models.models import (
    Booking,
    BookingStatus,
    BookingType,
    NotificationType,
    RescheduleLog,
    User,
    UserRole,
)
from shared.utils.clock import Clock

logger = logging.getLogger(__name__)

RESCHEDULABLE_STATUSES = (BookingStatus.PENDING, BookingStatus.CONFIRMED)


@dataclass(frozen=True)
class Eligibility:
    eligible: bool
    reason: Optional[str] = None
    message: Optional[str] = None
    hours_until_visit: Optional[int] = None


def hours_until(visit_date: date, now: datetime) -> int:
    """Whole hours from `now` to the start of the visit day (UTC), truncated."""
    start = datetime.combine(visit_date, time.min, tzinfo=timezone.utc)
    return int((start - now).total_seconds() // 3600)


def can_manage(booking: Booking, user: User) -> bool:
    return user.role == UserRole.ADMIN or (booking.user_id is not None and booking.user_id == user.id)


class RescheduleValidator:

    def __init__(self, clock: Clock, cutoff_hours: int = settings.RESCHEDULE_CUTOFF_HOURS):
        self.clock = clock
        self.cutoff_hours = cutoff_hours

    # ── Eligibility ───────────────────────────────────────────

    def eligibility(self, booking: Booking, item: Optional[ItemSnapshot]) -> Eligibility:
        hours = hours_until(booking.visit_date, self.clock.now()) if booking.visit_date else None

        if booking.status not in RESCHEDULABLE_STATUSES:
            return Eligibility(False, "invalid_status",
                               f"A {booking.status.value} booking cannot be rescheduled", hours)

        if booking.booking_type == BookingType.EVENT:
            return Eligibility(False, "fixed_date_event",
                               "Events take place on a fixed date and cannot be rescheduled", hours)

        if booking.booking_type == BookingType.TRIP and (item is None or not item.is_flexible()):
            return Eligibility(False, "fixed_date_trip",
                               "This trip runs on a fixed date and cannot be rescheduled", hours)

        if hours is not None and hours < self.cutoff_hours:
            return Eligibility(False, "too_late",
                               f"Bookings cannot be rescheduled within {self.cutoff_hours} hours of the visit",
                               hours)

        return Eligibility(True, hours_until_visit=hours)

    def ensure_eligible(self, booking: Booking, item: Optional[ItemSnapshot]) -> None:
        verdict = self.eligibility(booking, item)
        if not verdict.eligible:
            raise IneligibleRescheduleError(verdict.message, reason=verdict.reason)

    # ── Candidate dates ───────────────────────────────────────

    async def candidate_dates(
        self,
        db: AsyncSession,
        booking: Booking,
        item: ItemSnapshot,
        start: date,
        end: date,
    ) -> List[CalendarDay]:
        """Calendar for the range as seen by this booking (its own slots excluded)."""
        return calendar(
            start,
            end,
            capacity=item.capacity(),
            bookings=await load_bookings(db, item.id, exclude_booking_id=booking.id),
            working_days=item.working_days(),
            today=self.clock.today(),
            requested_slots=booking.slots_booked or 1,
            pooled=capacity_scope(item) == CapacityScope.ITEM,
        )

    # ── Apply ─────────────────────────────────────────────────

    async def reschedule(
        self,
        db: AsyncSession,
        booking_id: uuid.UUID,
        new_date: date,
        actor: User,
    ) -> Tuple[RescheduleLog, List[NotificationEvent]]:
        """
        Move a booking to `new_date` inside the caller's transaction.
        Returns the audit entry and the events to publish after commit.
        """
        repo = BookingRepository(db)
        booking = await repo.get(booking_id, lock=True)
        item = await load_item(db, booking.booking_type, booking.item_id, lock=True, require_approved=False)

        self.ensure_eligible(booking, item)
        if booking.visit_date == new_date:
            raise ValidationError("The new date is the same as the current visit date")

        await ensure_capacity(
            db,
            item,
            booking.slots_booked or 1,
            new_date,
            today=self.clock.today(),
            exclude_booking_id=booking.id,
        )

        old_date = booking.visit_date
        entry = await repo.update_visit_date(booking, new_date, actor.id)
        logger.info(f"Booking {booking.id} moved from {old_date} to {new_date} by {actor.id}")

        return entry, self._events(booking, item, old_date, new_date)

    @staticmethod
    def _events(
        booking: Booking,
        item: ItemSnapshot,
        old_date: Optional[date],
        new_date: date,
    ) -> List[NotificationEvent]:
        common = {
            "item_name": item.name,
            "booking_ref": str(booking.id)[:8].upper(),
            "old_date": old_date.isoformat() if old_date else None,
            "new_date": new_date.isoformat(),
        }
        events = [event(
            NotificationType.BOOKING_RESCHEDULED,
            booking_id=booking.id,
            user_id=booking.user_id,
            email=booking.guest_email,
            phone=booking.guest_phone,
            **common,
        )]
        if item.creator_id:
            events.append(event(
                NotificationType.BOOKING_RESCHEDULED_HOST,
                booking_id=booking.id,
                user_id=item.creator_id,
                guest_name=booking.guest_name,
                **common,
            ))
        return events
