"""
tests/test_capacity.py
Tests for the capacity ledger and the availability endpoints.
"""

import uuid
from datetime import date

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from services.capacity.ledger import (
    BookingSlice,
    CapacityState,
    DayStatus,
    booked_by_date,
    calendar,
    classify,
    date_range,
    is_date_available,
    remaining,
)
from shared.exceptions import ValidationError
from shared.models.models import BookingStatus, BookingType
from tests.conftest import TODAY, make_booking


def _slice(slots, day=None, status=BookingStatus.CONFIRMED):
    return BookingSlice(id=uuid.uuid4(), visit_date=day, slots_booked=slots, status=status)


# ── Pure ledger ────────────────────────────────────────────────────────────────

def test_remaining_is_clamped_at_zero_when_oversold():
    report = classify(5, [_slice(4), _slice(3)])
    assert report.booked == 7
    assert report.remaining == 0
    assert report.state == CapacityState.SOLD_OUT
    assert remaining(5, [_slice(4), _slice(3)]) == -2


def test_low_state_boundaries():
    assert classify(20, [_slice(10)]).state == CapacityState.LOW       # 10 left
    assert classify(20, [_slice(9)]).state == CapacityState.AVAILABLE  # 11 left
    assert classify(20, [_slice(19)]).state == CapacityState.LOW       # 1 left
    assert classify(20, [_slice(20)]).state == CapacityState.SOLD_OUT


def test_cancelled_and_rejected_bookings_release_capacity():
    bookings = [
        _slice(5),
        _slice(5, status=BookingStatus.CANCELLED),
        _slice(5, status=BookingStatus.REJECTED),
        _slice(2, status=BookingStatus.PENDING),
    ]
    report = classify(30, bookings)
    assert report.booked == 7
    assert report.remaining == 23


def test_missing_slot_count_counts_as_one():
    assert classify(10, [_slice(None), _slice(None)]).booked == 2


def test_untracked_item_is_always_available():
    report = classify(None, [_slice(500)])
    assert report.remaining is None
    assert report.state == CapacityState.AVAILABLE
    assert not report.sold_out


def test_booked_by_date_skips_undated_and_excluded():
    keep = _slice(3, date(2026, 6, 10))
    excluded = _slice(4, date(2026, 6, 10))
    totals = booked_by_date([keep, excluded, _slice(2)], exclude_booking_id=excluded.id)
    assert totals == {date(2026, 6, 10): 3}


def test_date_verdicts():
    sunday = date(2026, 6, 7)
    working = frozenset({"monday", "saturday"})
    assert is_date_available(date(2026, 5, 31), capacity=None, booked_on_date=0,
                             requested_slots=1, working_days=frozenset(), today=TODAY) == (False, "past")
    assert is_date_available(sunday, capacity=None, booked_on_date=0,
                             requested_slots=1, working_days=working, today=TODAY) == (False, "closed")
    assert is_date_available(date(2026, 6, 8), capacity=10, booked_on_date=9,
                             requested_slots=2, working_days=working, today=TODAY) == (False, "full")
    assert is_date_available(date(2026, 6, 8), capacity=10, booked_on_date=9,
                             requested_slots=1, working_days=working, today=TODAY) == (True, None)


def test_calendar_statuses():
    bookings = [_slice(8, date(2026, 6, 2)), _slice(10, date(2026, 6, 3))]
    days = calendar(
        date(2026, 5, 31),
        date(2026, 6, 7),
        capacity=10,
        bookings=bookings,
        working_days=frozenset({"monday", "tuesday", "wednesday", "thursday", "friday", "saturday"}),
        today=TODAY,
    )
    statuses = {d.day: d.status for d in days}
    assert statuses[date(2026, 5, 31)] == DayStatus.PAST
    assert statuses[date(2026, 6, 1)] == DayStatus.AVAILABLE
    assert statuses[date(2026, 6, 2)] == DayStatus.PARTIALLY_BOOKED
    assert statuses[date(2026, 6, 3)] == DayStatus.FULLY_BOOKED
    assert statuses[date(2026, 6, 7)] == DayStatus.CLOSED
    assert days[3].remaining == 0


def test_date_range_limits():
    assert len(date_range(date(2026, 6, 1), date(2026, 6, 1))) == 1
    with pytest.raises(ValidationError):
        date_range(date(2026, 6, 2), date(2026, 6, 1))
    with pytest.raises(ValidationError):
        date_range(date(2026, 6, 1), date(2026, 9, 30))


# ── Availability endpoints ─────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_availability_per_date_item(client: AsyncClient, db: AsyncSession, adventure_place):
    await make_booking(db, adventure_place, BookingType.ADVENTURE_PLACE, visit_date=date(2026, 6, 10), slots=4)

    response = await client.get(
        f"/items/adventure_place/{adventure_place.id}/availability",
        params={"visit_date": "2026-06-10", "slots": 7},
    )
    assert response.status_code == 200
    data = response.json()
    assert data["scope"] == "date"
    assert data["date_available"] is False
    assert data["date_reason"] == "full"


@pytest.mark.asyncio
async def test_availability_closed_day(client: AsyncClient, adventure_place):
    response = await client.get(
        f"/items/adventure_place/{adventure_place.id}/availability",
        params={"visit_date": "2026-06-07"},
    )
    assert response.status_code == 200
    assert response.json()["date_reason"] == "closed"


@pytest.mark.asyncio
async def test_fixed_trip_sold_out(client: AsyncClient, db: AsyncSession, fixed_trip):
    await make_booking(db, fixed_trip, BookingType.TRIP, visit_date=date(2026, 6, 20), slots=10)

    response = await client.get(f"/items/trip/{fixed_trip.id}/availability")
    assert response.status_code == 200
    data = response.json()
    assert data["scope"] == "item"
    assert data["remaining"] == 0
    assert data["state"] == "sold_out"
    assert data["sold_out"] is True


@pytest.mark.asyncio
async def test_untracked_attraction(client: AsyncClient, paid_attraction):
    response = await client.get(f"/items/attraction/{paid_attraction.id}/availability")
    assert response.status_code == 200
    data = response.json()
    assert data["scope"] == "untracked"
    assert data["remaining"] is None
    assert data["state"] == "available"


@pytest.mark.asyncio
async def test_calendar_endpoint(client: AsyncClient, db: AsyncSession, adventure_place):
    await make_booking(db, adventure_place, BookingType.ADVENTURE_PLACE, visit_date=date(2026, 6, 2), slots=10)

    response = await client.get(
        f"/items/adventure_place/{adventure_place.id}/calendar",
        params={"start": "2026-06-01", "end": "2026-06-07"},
    )
    assert response.status_code == 200
    days = {d["day"]: d for d in response.json()["days"]}
    assert len(days) == 7
    assert days["2026-06-01"]["available"] is True
    assert days["2026-06-02"]["status"] == "fully_booked"
    assert days["2026-06-07"]["status"] == "closed"


@pytest.mark.asyncio
async def test_calendar_range_too_long(client: AsyncClient, adventure_place):
    response = await client.get(
        f"/items/adventure_place/{adventure_place.id}/calendar",
        params={"start": "2026-06-01", "end": "2026-12-31"},
    )
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_unknown_booking_type(client: AsyncClient, adventure_place):
    response = await client.get(f"/items/spaceship/{adventure_place.id}/availability")
    assert response.status_code == 422


def test_pooled_calendar_uses_item_total():
    bookings = [_slice(6, date(2026, 6, 20)), _slice(4, date(2026, 6, 20))]
    days = calendar(
        date(2026, 6, 1),
        date(2026, 6, 3),
        capacity=10,
        bookings=bookings,
        working_days=frozenset(),
        today=TODAY,
        pooled=True,
    )
    assert [d.status for d in days] == [DayStatus.FULLY_BOOKED] * 3
    assert all(d.booked == 10 and d.remaining == 0 for d in days)


# ── Zero and pooled capacity ───────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_zero_ticket_trip_is_tracked(client: AsyncClient, db: AsyncSession, fixed_trip):
    fixed_trip.available_tickets = 0
    await db.commit()

    response = await client.get(f"/items/trip/{fixed_trip.id}/availability")
    assert response.status_code == 200
    data = response.json()
    assert data["scope"] == "item"
    assert data["capacity"] == 0
    assert data["remaining"] == 0


@pytest.mark.asyncio
async def test_zero_room_hotel_has_no_bookable_dates(client: AsyncClient, db: AsyncSession, hotel):
    hotel.available_rooms = 0
    await db.commit()

    response = await client.get(
        f"/items/hotel/{hotel.id}/calendar",
        params={"start": "2026-06-10", "end": "2026-06-12"},
    )
    assert response.status_code == 200
    assert all(d["status"] == "fully_booked" for d in response.json()["days"])


@pytest.mark.asyncio
async def test_calendar_for_exhausted_inventory_trip(client: AsyncClient, db: AsyncSession, fixed_trip):
    await make_booking(db, fixed_trip, BookingType.TRIP, visit_date=date(2026, 6, 20), slots=10)

    response = await client.get(
        f"/items/trip/{fixed_trip.id}/calendar",
        params={"start": "2026-06-18", "end": "2026-06-21"},
    )
    assert response.status_code == 200
    days = response.json()["days"]
    assert all(d["status"] == "fully_booked" for d in days)
    assert all(d["remaining"] == 0 for d in days)
