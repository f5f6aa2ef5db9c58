"""
services/capacity/ledger.py
Capacity ledger: remaining inventory per item and per visit date.

The pure functions take a capacity snapshot and a booking snapshot and never
touch the database. The async helpers at the bottom load those snapshots and
are meant to run inside the same transaction as the booking insert, after the
item row has been locked (see services.catalog.items.load_item(lock=True)).
"""

import uuid
from dataclasses import dataclass
from datetime import date, timedelta
from enum import Enum
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from services.catalog.items import BookableItem, weekday_name
from shared.exceptions import CapacityExceededError, ValidationError
from shared.models.models import (
    INACTIVE_BOOKING_STATUSES,
    Booking,
    BookingStatus,
    BookingType,
    SlotLimitType,
)

MAX_CALENDAR_DAYS = 92


class CapacityState(str, Enum):
    AVAILABLE = "available"
    LOW = "low"
    SOLD_OUT = "sold_out"


class DayStatus(str, Enum):
    AVAILABLE = "available"
    PARTIALLY_BOOKED = "partially_booked"
    FULLY_BOOKED = "fully_booked"
    CLOSED = "closed"
    PAST = "past"


class CapacityScope(str, Enum):
    ITEM = "item"
    DATE = "date"
    UNTRACKED = "untracked"


@dataclass(frozen=True)
class BookingSlice:
    id: uuid.UUID
    visit_date: Optional[date]
    slots_booked: Optional[int]
    status: BookingStatus

    @property
    def slots(self) -> int:
        return self.slots_booked if self.slots_booked is not None else 1

    @property
    def is_active(self) -> bool:
        return self.status not in INACTIVE_BOOKING_STATUSES


@dataclass(frozen=True)
class CapacityReport:
    capacity: Optional[int]
    booked: int
    remaining: Optional[int]
    state: CapacityState

    @property
    def sold_out(self) -> bool:
        return self.state == CapacityState.SOLD_OUT


@dataclass(frozen=True)
class CalendarDay:
    day: date
    status: DayStatus
    booked: int
    remaining: Optional[int]

    @property
    def available(self) -> bool:
        return self.status in (DayStatus.AVAILABLE, DayStatus.PARTIALLY_BOOKED)


# ── Pure aggregation ──────────────────────────────────────────

def _active(
    bookings: Iterable[BookingSlice],
    exclude_booking_id: Optional[uuid.UUID] = None,
) -> List[BookingSlice]:
    return [
        b for b in bookings
        if b.is_active and (exclude_booking_id is None or b.id != exclude_booking_id)
    ]


def booked_total(
    bookings: Iterable[BookingSlice],
    exclude_booking_id: Optional[uuid.UUID] = None,
) -> int:
    return sum(b.slots for b in _active(bookings, exclude_booking_id))


def remaining(
    capacity: int,
    bookings: Iterable[BookingSlice],
    exclude_booking_id: Optional[uuid.UUID] = None,
) -> int:
    """Raw remaining capacity. May be negative if the item was oversold before."""
    return capacity - booked_total(bookings, exclude_booking_id)


def classify(
    capacity: Optional[int],
    bookings: Iterable[BookingSlice],
    low_threshold: int = settings.LOW_CAPACITY_THRESHOLD,
) -> CapacityReport:
    booked = booked_total(bookings)
    if capacity is None:
        return CapacityReport(capacity=None, booked=booked, remaining=None,
                              state=CapacityState.AVAILABLE)

    raw = capacity - booked
    if capacity > 0 and raw <= 0:
        state = CapacityState.SOLD_OUT
    elif 0 < raw <= low_threshold:
        state = CapacityState.LOW
    else:
        state = CapacityState.AVAILABLE
    return CapacityReport(capacity=capacity, booked=booked, remaining=max(0, raw), state=state)


def booked_by_date(
    bookings: Iterable[BookingSlice],
    exclude_booking_id: Optional[uuid.UUID] = None,
) -> Dict[date, int]:
    totals: Dict[date, int] = {}
    for booking in _active(bookings, exclude_booking_id):
        if booking.visit_date is None:
            continue
        totals[booking.visit_date] = totals.get(booking.visit_date, 0) + booking.slots
    return totals


def is_date_available(
    day: date,
    *,
    capacity: Optional[int],
    booked_on_date: int,
    requested_slots: int,
    working_days: FrozenSet[str],
    today: date,
) -> Tuple[bool, Optional[str]]:
    """Returns (available, reason). Reason is one of past / closed / full."""
    if day < today:
        return False, "past"
    if working_days and weekday_name(day) not in working_days:
        return False, "closed"
    if capacity is not None and booked_on_date + requested_slots > capacity:
        return False, "full"
    return True, None


def day_status(
    day: date,
    *,
    capacity: Optional[int],
    booked_on_date: int,
    requested_slots: int,
    working_days: FrozenSet[str],
    today: date,
    partial_ratio: float = settings.PARTIAL_BOOKING_RATIO,
) -> DayStatus:
    ok, reason = is_date_available(
        day,
        capacity=capacity,
        booked_on_date=booked_on_date,
        requested_slots=requested_slots,
        working_days=working_days,
        today=today,
    )
    if not ok:
        return {
            "past": DayStatus.PAST,
            "closed": DayStatus.CLOSED,
            "full": DayStatus.FULLY_BOOKED,
        }[reason]
    if capacity and booked_on_date / capacity > partial_ratio:
        return DayStatus.PARTIALLY_BOOKED
    return DayStatus.AVAILABLE


def date_range(start: date, end: date) -> List[date]:
    if end < start:
        raise ValidationError("End date must not be before start date")
    span = (end - start).days + 1
    if span > MAX_CALENDAR_DAYS:
        raise ValidationError(f"Date range is limited to {MAX_CALENDAR_DAYS} days")
    return [start + timedelta(days=i) for i in range(span)]


def calendar(
    start: date,
    end: date,
    *,
    capacity: Optional[int],
    bookings: Sequence[BookingSlice],
    working_days: FrozenSet[str],
    today: date,
    requested_slots: int = 1,
    exclude_booking_id: Optional[uuid.UUID] = None,
    pooled: bool = False,
) -> List[CalendarDay]:
    """With `pooled`, every date draws on the item-wide total (inventory trips)."""
    per_date = booked_by_date(bookings, exclude_booking_id)
    pool_booked = booked_total(bookings, exclude_booking_id)
    days = []
    for day in date_range(start, end):
        booked = pool_booked if pooled else per_date.get(day, 0)
        status = day_status(
            day,
            capacity=capacity,
            booked_on_date=booked,
            requested_slots=requested_slots,
            working_days=working_days,
            today=today,
        )
        days.append(CalendarDay(
            day=day,
            status=status,
            booked=booked,
            remaining=max(0, capacity - booked) if capacity is not None else None,
        ))
    return days


def unavailable_dates(
    days: Iterable[date],
    *,
    capacity: Optional[int],
    bookings: Sequence[BookingSlice],
    working_days: FrozenSet[str],
    today: date,
    requested_slots: int = 1,
    exclude_booking_id: Optional[uuid.UUID] = None,
) -> List[date]:
    """Dates in a multi-day stay that cannot take the requested slots."""
    per_date = booked_by_date(bookings, exclude_booking_id)
    blocked = []
    for day in days:
        ok, _ = is_date_available(
            day,
            capacity=capacity,
            booked_on_date=per_date.get(day, 0),
            requested_slots=requested_slots,
            working_days=working_days,
            today=today,
        )
        if not ok:
            blocked.append(day)
    return blocked


def capacity_scope(item: BookableItem) -> CapacityScope:
    """
    Inventory trips and events draw from one pool of tickets; every other
    tracked item limits each visit date separately.
    """
    if item.capacity() is None:
        return CapacityScope.UNTRACKED
    if item.booking_type in (BookingType.TRIP, BookingType.EVENT) \
            and item.slot_limit_type() == SlotLimitType.INVENTORY:
        return CapacityScope.ITEM
    return CapacityScope.DATE


# ── Database-backed helpers ───────────────────────────────────

async def load_bookings(
    db: AsyncSession,
    item_id: uuid.UUID,
    exclude_booking_id: Optional[uuid.UUID] = None,
) -> List[BookingSlice]:
    """Active bookings holding capacity on an item."""
    query = select(
        Booking.id, Booking.visit_date, Booking.slots_booked, Booking.status
    ).where(
        Booking.item_id == item_id,
        Booking.status.notin_(INACTIVE_BOOKING_STATUSES),
    )
    if exclude_booking_id is not None:
        query = query.where(Booking.id != exclude_booking_id)
    rows = (await db.execute(query)).all()
    return [
        BookingSlice(id=r.id, visit_date=r.visit_date, slots_booked=r.slots_booked, status=r.status)
        for r in rows
    ]


async def item_availability(db: AsyncSession, item: BookableItem) -> CapacityReport:
    return classify(item.capacity(), await load_bookings(db, item.id))


async def ensure_capacity(
    db: AsyncSession,
    item: BookableItem,
    slots: int,
    visit_date: Optional[date] = None,
    today: Optional[date] = None,
    exclude_booking_id: Optional[uuid.UUID] = None,
) -> None:
    """
    Raise CapacityExceededError unless the item can take `slots` more guests
    (on `visit_date` for date-scoped items). With `today` set, past and
    closed dates are rejected too.
    """
    if visit_date is not None and today is not None:
        ok, reason = is_date_available(
            visit_date,
            capacity=None,
            booked_on_date=0,
            requested_slots=slots,
            working_days=item.working_days(),
            today=today,
        )
        if not ok:
            raise CapacityExceededError(
                f"{item.name} is not available on {visit_date.isoformat()} ({reason})",
                code=f"date_{reason}",
            )

    scope = capacity_scope(item)
    if scope == CapacityScope.UNTRACKED:
        return

    bookings = await load_bookings(db, item.id, exclude_booking_id)
    capacity = item.capacity()

    if scope == CapacityScope.DATE and visit_date is not None:
        booked = booked_by_date(bookings).get(visit_date, 0)
        if booked + slots > capacity:
            raise CapacityExceededError(
                f"Only {max(0, capacity - booked)} slot(s) left for "
                f"{item.name} on {visit_date.isoformat()}"
            )
        return

    left = remaining(capacity, bookings)
    if slots > left:
        raise CapacityExceededError(
            f"Only {max(0, left)} slot(s) left for {item.name}"
        )
