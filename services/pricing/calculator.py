"""
services/pricing/calculator.py
Pure price calculation for a guest's selection. No I/O.

    total = entry fee (adults * adult price + children * child price, 0 when free)
          + sum(facility price per day * days)       days = ceil(end - start), at least 1
          + sum(activity price per person * people)
"""

import math
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Iterable, List, Optional, Sequence

from services.catalog.items import BookableItem, Tariff
from shared.exceptions import ValidationError
from shared.models.models import EntryFeeType

ZERO = Decimal("0")


# ── Selection types ───────────────────────────────────────────

@dataclass(frozen=True)
class GuestSplit:
    adults: int = 1
    children: int = 0

    @property
    def total(self) -> int:
        return self.adults + self.children


@dataclass(frozen=True)
class SelectedFacility:
    name: str
    price_per_day: Decimal
    start_date: Optional[date] = None
    end_date: Optional[date] = None


@dataclass(frozen=True)
class SelectedActivity:
    name: str
    price_per_person: Decimal
    number_of_people: int = 1


@dataclass(frozen=True)
class LineItem:
    name: str
    unit_price: Decimal
    quantity: int
    amount: Decimal


@dataclass(frozen=True)
class PriceBreakdown:
    entry_fee: Decimal
    facilities: List[LineItem] = field(default_factory=list)
    activities: List[LineItem] = field(default_factory=list)

    @property
    def total(self) -> Decimal:
        return (
            self.entry_fee
            + sum((f.amount for f in self.facilities), ZERO)
            + sum((a.amount for a in self.activities), ZERO)
        )

    @property
    def is_free(self) -> bool:
        return self.total == ZERO


# ── Calculation ───────────────────────────────────────────────

def facility_days(start: Optional[date], end: Optional[date]) -> int:
    """
    Chargeable days for a facility stay. 0 when a date is missing or the
    range is inverted; otherwise at least 1 (same-day use counts as a day).
    """
    if start is None or end is None or end < start:
        return 0
    return max(1, math.ceil((end - start).days))


def entry_fee(tariff: Tariff, guests: GuestSplit) -> Decimal:
    if tariff.entry_fee_type == EntryFeeType.FREE:
        return ZERO
    return guests.adults * tariff.adult_price + guests.children * tariff.child_price


def calculate_total(
    tariff: Tariff,
    guests: GuestSplit,
    facilities: Sequence[SelectedFacility] = (),
    activities: Sequence[SelectedActivity] = (),
) -> PriceBreakdown:
    facility_lines = []
    for facility in facilities:
        days = facility_days(facility.start_date, facility.end_date)
        facility_lines.append(LineItem(
            name=facility.name,
            unit_price=facility.price_per_day,
            quantity=days,
            amount=facility.price_per_day * days,
        ))

    activity_lines = []
    for activity in activities:
        people = max(1, activity.number_of_people or 1)
        activity_lines.append(LineItem(
            name=activity.name,
            unit_price=activity.price_per_person,
            quantity=people,
            amount=activity.price_per_person * people,
        ))

    return PriceBreakdown(
        entry_fee=entry_fee(tariff, guests),
        facilities=facility_lines,
        activities=activity_lines,
    )


def validate_selection(
    guests: GuestSplit,
    facilities: Iterable[SelectedFacility] = (),
    activities: Iterable[SelectedActivity] = (),
) -> None:
    """Raises ValidationError for anything that must block progression to payment."""
    if guests.adults < 0 or guests.children < 0:
        raise ValidationError("Guest counts cannot be negative")
    if guests.total == 0:
        raise ValidationError("At least one guest is required")

    for facility in facilities:
        if facility.start_date is None or facility.end_date is None:
            raise ValidationError(f"Select both dates for {facility.name}")
        if facility.end_date < facility.start_date:
            raise ValidationError(f"End date for {facility.name} is before its start date")

    for activity in activities:
        if activity.number_of_people is not None and activity.number_of_people < 1:
            raise ValidationError(f"{activity.name} needs at least one person")


# ── Item-bound selection ──────────────────────────────────────

def resolve_selection(
    item: BookableItem,
    facilities: Iterable[dict],
    activities: Iterable[dict],
) -> tuple[List[SelectedFacility], List[SelectedActivity]]:
    """
    Bind requested names to the item's own offer prices.
    Client-supplied prices are never trusted.
    """
    selected_facilities = []
    for requested in facilities:
        offer = item.facility(requested["name"])
        if offer is None:
            raise ValidationError(f"{item.name} does not offer facility '{requested['name']}'")
        selected_facilities.append(SelectedFacility(
            name=offer.name,
            price_per_day=offer.price,
            start_date=requested.get("start_date"),
            end_date=requested.get("end_date"),
        ))

    selected_activities = []
    for requested in activities:
        offer = item.activity(requested["name"])
        if offer is None:
            raise ValidationError(f"{item.name} does not offer activity '{requested['name']}'")
        selected_activities.append(SelectedActivity(
            name=offer.name,
            price_per_person=offer.price,
            number_of_people=requested.get("number_of_people") or 1,
        ))

    return selected_facilities, selected_activities


def price_item(
    item: BookableItem,
    guests: GuestSplit,
    facilities: Sequence[SelectedFacility] = (),
    activities: Sequence[SelectedActivity] = (),
) -> PriceBreakdown:
    validate_selection(guests, facilities, activities)
    return calculate_total(item.tariff(), guests, facilities, activities)


# ── booking_details rendering ─────────────────────────────────

def _json_number(value: Decimal):
    return int(value) if value == value.to_integral_value() else float(value)


def to_booking_details(
    guests: GuestSplit,
    facilities: Sequence[SelectedFacility] = (),
    activities: Sequence[SelectedActivity] = (),
    trip_note: Optional[str] = None,
) -> dict:
    """The booking_details payload read back by host and admin views."""
    details = {
        "adults": guests.adults,
        "children": guests.children,
        "facilities": [
            {
                "name": f.name,
                "price": _json_number(f.price_per_day),
                "startDate": f.start_date.isoformat() if f.start_date else None,
                "endDate": f.end_date.isoformat() if f.end_date else None,
            }
            for f in facilities
        ],
        "activities": [
            {
                "name": a.name,
                "price": _json_number(a.price_per_person),
                "numberOfPeople": max(1, a.number_of_people or 1),
            }
            for a in activities
        ],
    }
    if trip_note:
        details["trip_note"] = trip_note
    return details
