"""
services/booking/router.py
Booking lifecycle endpoints.

    quote     price a selection, no side effects
    checkout  free selections are booked directly (201);
              paid ones run the M-Pesa STK flow and report its outcome
    reschedule eligibility, candidate dates, apply
    cancel    paid bookings outside the 48 hour window
"""

import logging
from datetime import date, timedelta
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.settings import settings
from services.booking.cancellation import CancellationPolicy
from services.booking.checkout import attach_contact, prepare_checkout
from services.booking.repository import BookingRepository
from services.booking.reschedule import RescheduleValidator, can_manage
from services.catalog.items import load_item
from services.notification.dispatcher import NotificationDispatcher, get_dispatcher
from services.payment.orchestrator import PaymentOrchestrator, PaymentState
from services.payment.router import get_orchestrator
from shared.exceptions import ItemNotFoundError, ValidationError
from shared.middleware.auth import get_current_user, get_optional_user
from shared.models.models import Booking, BookingStatus, User, UserRole
from shared.schemas.schemas import (
    BookingResponse,
    CalendarDayResponse,
    CalendarResponse,
    CancellationResponse,
    CheckoutRequest,
    CheckoutResponse,
    LineItemResponse,
    PaginatedResponse,
    QuoteRequest,
    QuoteResponse,
    RescheduleEligibilityResponse,
    RescheduleRequest,
    RescheduleResponse,
)
from shared.utils.clock import Clock, get_clock

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/bookings", tags=["Bookings"])

CANDIDATE_WINDOW_DAYS = 30


# ── Helpers ───────────────────────────────────────────────────

def _line_items(lines) -> list:
    return [
        LineItemResponse(name=l.name, unit_price=l.unit_price, quantity=l.quantity, amount=l.amount)
        for l in lines
    ]


async def _item_or_none(db: AsyncSession, booking: Booking):
    try:
        return await load_item(db, booking.booking_type, booking.item_id, require_approved=False)
    except ItemNotFoundError:
        return None


async def _get_managed_booking(booking_id: UUID, user: User, db: AsyncSession) -> Booking:
    booking = await BookingRepository(db).get(booking_id)
    if not can_manage(booking, user):
        raise HTTPException(status_code=403, detail="Not authorized to change this booking")
    return booking


# ── Quote ─────────────────────────────────────────────────────

@router.post("/quote", response_model=QuoteResponse)
async def quote(
    data: QuoteRequest,
    db: AsyncSession = Depends(get_db),
):
    """Price a selection. Prices come from the listing, never from the client."""
    prepared = await prepare_checkout(db, data)
    breakdown = prepared.breakdown
    return QuoteResponse(
        booking_type=prepared.item.booking_type.value,
        item_id=prepared.item.id,
        item_name=prepared.item.name,
        currency=settings.CURRENCY,
        entry_fee=breakdown.entry_fee,
        facilities=_line_items(breakdown.facilities),
        activities=_line_items(breakdown.activities),
        total_amount=breakdown.total,
        slots=prepared.guests.total,
        booking_details=prepared.draft.booking_details,
    )


# ── Checkout ──────────────────────────────────────────────────

@router.post("/checkout", response_model=CheckoutResponse)
async def checkout(
    data: CheckoutRequest,
    response: Response,
    current_user: Optional[User] = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    """
    Validate, price and check capacity.
    Zero total: booking created here, no payment involved.
    Otherwise: STK push, then wait for the callback (or the fallback query).
    """
    prepared = await prepare_checkout(db, data, today=clock.today())
    draft = attach_contact(prepared.draft, data, current_user)

    if prepared.breakdown.is_free:
        booking, events = await BookingRepository(db).create_direct(draft, today=clock.today())
        await db.commit()
        dispatcher.publish(events)
        response.status_code = status.HTTP_201_CREATED
        return CheckoutResponse(
            outcome="booked",
            total_amount=booking.total_amount,
            booking_id=booking.id,
            message="Booking confirmed",
            booking=BookingResponse.model_validate(booking),
        )

    phone = data.payment_phone or draft.guest_phone
    if not phone:
        raise ValidationError("A payment phone number is required")

    # Release the request transaction before the poll loop
    await db.commit()
    outcome = await orchestrator.run(draft, phone)

    booking = None
    if outcome.booking_id:
        booking = BookingResponse.model_validate(await BookingRepository(db).get(outcome.booking_id))

    messages = {
        PaymentState.COMPLETED: "Payment received, booking confirmed",
        PaymentState.FAILED: outcome.reason,
        PaymentState.TIMED_OUT: outcome.reason,
    }
    if outcome.state == PaymentState.COMPLETED and outcome.booking_error:
        messages[PaymentState.COMPLETED] = (
            "Payment received but the booking could not be completed; a refund will be arranged"
        )

    return CheckoutResponse(
        outcome=outcome.state.value,
        total_amount=draft.total_amount,
        booking_id=outcome.booking_id,
        checkout_request_id=outcome.checkout_request_id,
        message=messages.get(outcome.state),
        booking=booking,
    )


# ── Reads ─────────────────────────────────────────────────────

@router.get("", response_model=PaginatedResponse)
async def list_bookings(
    status_filter: Optional[BookingStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Own bookings; admins see every booking."""
    owner = None if current_user.role == UserRole.ADMIN else current_user.id
    items, total, pages = await BookingRepository(db).list_for_user(owner, status_filter, page, page_size)
    return PaginatedResponse(
        items=[BookingResponse.model_validate(b) for b in items],
        total=total,
        page=page,
        page_size=page_size,
        pages=pages,
    )


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    booking = await BookingRepository(db).get(booking_id)
    if not can_manage(booking, current_user):
        item = await _item_or_none(db, booking)
        if item is None or item.creator_id != current_user.id:
            raise HTTPException(status_code=403, detail="Not authorized to view this booking")
    return BookingResponse.model_validate(booking)


# ── Reschedule ────────────────────────────────────────────────

@router.get("/{booking_id}/reschedule", response_model=RescheduleEligibilityResponse)
async def reschedule_eligibility(
    booking_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    booking = await _get_managed_booking(booking_id, current_user, db)
    verdict = RescheduleValidator(clock).eligibility(booking, await _item_or_none(db, booking))
    return RescheduleEligibilityResponse(
        booking_id=booking.id,
        eligible=verdict.eligible,
        reason=verdict.reason,
        message=verdict.message,
        visit_date=booking.visit_date,
        hours_until_visit=verdict.hours_until_visit,
    )


@router.get("/{booking_id}/reschedule/dates", response_model=CalendarResponse)
async def reschedule_dates(
    booking_id: UUID,
    start: Optional[date] = Query(None),
    end: Optional[date] = Query(None),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """Dates this booking could move to. Past, closed and full days are marked unavailable."""
    booking = await _get_managed_booking(booking_id, current_user, db)
    validator = RescheduleValidator(clock)
    item = await load_item(db, booking.booking_type, booking.item_id, require_approved=False)
    validator.ensure_eligible(booking, item)

    start = start or clock.today()
    end = end or start + timedelta(days=CANDIDATE_WINDOW_DAYS - 1)
    days = await validator.candidate_dates(db, booking, item, start, end)
    return CalendarResponse(
        item_id=item.id,
        start=start,
        end=end,
        days=[
            CalendarDayResponse(
                day=d.day, status=d.status.value, booked=d.booked,
                remaining=d.remaining, available=d.available,
            )
            for d in days
        ],
    )


@router.post("/{booking_id}/reschedule", response_model=RescheduleResponse)
async def reschedule_booking(
    booking_id: UUID,
    data: RescheduleRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    await _get_managed_booking(booking_id, current_user, db)
    entry, events = await RescheduleValidator(clock).reschedule(db, booking_id, data.new_date, current_user)
    await db.commit()
    dispatcher.publish(events)

    return RescheduleResponse(
        booking_id=booking_id,
        old_date=entry.old_date,
        new_date=entry.new_date,
        message="Booking rescheduled",
    )


# ── Cancel ────────────────────────────────────────────────────

@router.post("/{booking_id}/cancel", response_model=CancellationResponse)
async def cancel_booking(
    booking_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """Paid bookings only, and not within 48 hours of the visit. The slots are released at once."""
    await _get_managed_booking(booking_id, current_user, db)
    booking, events = await CancellationPolicy(clock).cancel(db, booking_id, current_user)
    await db.commit()
    dispatcher.publish(events)

    return CancellationResponse(
        booking_id=booking.id,
        status=booking.status.value,
        visit_date=booking.visit_date,
        message="Booking cancelled",
    )
