"""
services/capacity/router.py
Public availability reads: item-level capacity report and the per-day calendar.
"""

from datetime import date, timedelta
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.capacity.ledger import (
    CapacityScope,
    booked_by_date,
    calendar,
    capacity_scope,
    classify,
    is_date_available,
    load_bookings,
)
from services.catalog.items import load_item
from shared.schemas.schemas import AvailabilityResponse, CalendarDayResponse, CalendarResponse
from shared.utils.clock import Clock, get_clock

router = APIRouter(prefix="/items", tags=["Availability"])


@router.get("/{booking_type}/{item_id}/availability", response_model=AvailabilityResponse)
async def availability(
    booking_type: str,
    item_id: UUID,
    visit_date: Optional[date] = Query(None),
    slots: int = Query(1, ge=1),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """
    Remaining capacity for the item. With ?visit_date= the verdict for that
    day (reason: past / closed / full) is included.
    """
    item = await load_item(db, booking_type, item_id)
    bookings = await load_bookings(db, item.id)
    report = classify(item.capacity(), bookings)
    scope = capacity_scope(item)

    response = AvailabilityResponse(
        booking_type=item.booking_type.value,
        item_id=item.id,
        scope=scope.value,
        capacity=report.capacity,
        booked=report.booked,
        remaining=report.remaining,
        state=report.state.value,
        sold_out=report.sold_out,
    )
    if visit_date is not None:
        # Inventory trips draw every date from one pool
        if scope == CapacityScope.ITEM:
            booked = report.booked
        else:
            booked = booked_by_date(bookings).get(visit_date, 0)
        ok, reason = is_date_available(
            visit_date,
            capacity=item.capacity(),
            booked_on_date=booked,
            requested_slots=slots,
            working_days=item.working_days(),
            today=clock.today(),
        )
        response.visit_date = visit_date
        response.date_available = ok
        response.date_reason = reason
    return response


@router.get("/{booking_type}/{item_id}/calendar", response_model=CalendarResponse)
async def availability_calendar(
    booking_type: str,
    item_id: UUID,
    start: Optional[date] = Query(None),
    end: Optional[date] = Query(None),
    slots: int = Query(1, ge=1),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    start = start or clock.today()
    end = end or start + timedelta(days=29)
    item = await load_item(db, booking_type, item_id)
    days = calendar(
        start,
        end,
        capacity=item.capacity(),
        bookings=await load_bookings(db, item.id),
        working_days=item.working_days(),
        today=clock.today(),
        requested_slots=slots,
        pooled=capacity_scope(item) == CapacityScope.ITEM,
    )
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
