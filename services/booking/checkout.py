"""
services/booking/checkout.py
Turns a quote/checkout request into a priced BookingDraft.
Shared by the bookings router (quote, checkout) and the payments router (stk-push).
"""

from dataclasses import dataclass
from datetime import date, timedelta
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from services.booking.repository import BookingDraft
from services.capacity.ledger import (
    CapacityScope,
    capacity_scope,
    ensure_capacity,
    load_bookings,
    unavailable_dates,
)
from services.catalog.items import ItemSnapshot, load_item
from services.pricing.calculator import (
    GuestSplit,
    PriceBreakdown,
    SelectedFacility,
    price_item,
    resolve_selection,
    to_booking_details,
)
from shared.exceptions import CapacityExceededError, ValidationError
from shared.models.models import User
from shared.schemas.schemas import CheckoutRequest, QuoteRequest


@dataclass
class PreparedCheckout:
    item: ItemSnapshot
    guests: GuestSplit
    breakdown: PriceBreakdown
    draft: BookingDraft


def _visit_date(item: ItemSnapshot, requested: Optional[date], facilities: List[SelectedFacility]) -> Optional[date]:
    """Fixed-date items always use their own date; otherwise the guest's pick or the first stay night."""
    fixed = item.fixed_visit_date()
    if fixed is not None:
        return fixed
    if requested is not None:
        return requested
    starts = [f.start_date for f in facilities if f.start_date]
    return min(starts) if starts else None


async def prepare_checkout(
    db: AsyncSession,
    data: QuoteRequest,
    *,
    today: Optional[date] = None,
) -> PreparedCheckout:
    """
    Load, price and validate a selection.
    With `today` set the visit date is checked against capacity, weekday and past dates.
    """
    item = await load_item(db, data.booking_type, data.item_id)
    guests = GuestSplit(adults=data.adults, children=data.children)

    facilities, activities = resolve_selection(
        item,
        [f.model_dump() for f in data.facilities],
        [a.model_dump() for a in data.activities],
    )
    breakdown = price_item(item, guests, facilities, activities)

    if guests.total > settings.MAX_SLOTS_PER_BOOKING:
        raise ValidationError(f"At most {settings.MAX_SLOTS_PER_BOOKING} guests per booking")

    visit_date = _visit_date(item, data.visit_date, facilities)
    trip_note = data.trip_note if isinstance(data, CheckoutRequest) else None

    draft = BookingDraft(
        booking_type=item.booking_type,
        item_id=item.id,
        item_name=item.name,
        total_amount=breakdown.total,
        slots_booked=guests.total,
        booking_details=to_booking_details(guests, facilities, activities, trip_note),
        visit_date=visit_date,
        host_id=item.creator_id,
    )

    if today is not None:
        await ensure_capacity(db, item, draft.slots_booked, visit_date, today=today)
        await _check_stay_nights(db, item, facilities, draft.slots_booked, today)

    return PreparedCheckout(item=item, guests=guests, breakdown=breakdown, draft=draft)


async def _check_stay_nights(
    db: AsyncSession,
    item: ItemSnapshot,
    facilities: List[SelectedFacility],
    slots: int,
    today: date,
) -> None:
    """Every night of a multi-day facility stay must be open and have room."""
    if capacity_scope(item) != CapacityScope.DATE:
        return
    nights = set()
    for facility in facilities:
        if facility.start_date and facility.end_date and facility.end_date > facility.start_date:
            span = (facility.end_date - facility.start_date).days
            nights.update(facility.start_date + timedelta(days=i) for i in range(span))
    if not nights:
        return

    blocked = unavailable_dates(
        sorted(nights),
        capacity=item.capacity(),
        bookings=await load_bookings(db, item.id),
        working_days=item.working_days(),
        today=today,
        requested_slots=slots,
    )
    if blocked:
        raise CapacityExceededError(
            f"{item.name} is unavailable on {', '.join(d.isoformat() for d in blocked)}",
            code="dates_unavailable",
        )


def attach_contact(draft: BookingDraft, data: CheckoutRequest, user: Optional[User]) -> BookingDraft:
    """
    Fill the contact fields of a draft. Signed-in guests default to their
    account details; anonymous checkout needs name, email and phone.
    """
    if user is not None:
        draft.user_id = user.id
        draft.guest_name = data.guest_name or user.name
        draft.guest_email = data.guest_email or user.email
        draft.guest_phone = data.guest_phone or user.phone
    else:
        missing = [
            label for label, value in (
                ("guest_name", data.guest_name),
                ("guest_email", data.guest_email),
                ("guest_phone", data.guest_phone),
            ) if not value
        ]
        if missing:
            raise ValidationError(f"Guest checkout requires {', '.join(missing)}")
        draft.guest_name = data.guest_name
        draft.guest_email = data.guest_email
        draft.guest_phone = data.guest_phone
    draft.referral_tracking_id = data.referral_tracking_id
    return draft
