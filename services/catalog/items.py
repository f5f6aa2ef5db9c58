"""
services/catalog/items.py
Bookable item variants. Each listing table row is loaded into an immutable
snapshot that answers the same questions (tariff, capacity, working days,
date policy) regardless of its type.
"""

import uuid
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import ClassVar, Dict, FrozenSet, Optional, Tuple, Type, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.exceptions import ItemNotFoundError, ItemUnavailableError, ValidationError
from shared.models.models import (
    AdventurePlace,
    Attraction,
    BookingType,
    EntryFeeType,
    Hotel,
    SlotLimitType,
    Trip,
    TripKind,
)

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


def to_decimal(value) -> Decimal:
    """Coerce JSON/DB money values ("200", 200, 200.5, None) to Decimal."""
    if value is None or value == "":
        return Decimal("0")
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ValidationError(f"Invalid amount: {value!r}")


# ── Offer / tariff value objects ──────────────────────────────

@dataclass(frozen=True)
class Tariff:
    entry_fee_type: EntryFeeType
    adult_price: Decimal = Decimal("0")
    child_price: Decimal = Decimal("0")


@dataclass(frozen=True)
class FacilityOffer:
    name: str
    price: Decimal
    capacity: Optional[int] = None


@dataclass(frozen=True)
class ActivityOffer:
    name: str
    price: Decimal


def _parse_facilities(raw) -> Tuple[FacilityOffer, ...]:
    offers = []
    for entry in raw or []:
        if isinstance(entry, str):
            offers.append(FacilityOffer(name=entry, price=Decimal("0")))
            continue
        capacity = entry.get("capacity")
        offers.append(FacilityOffer(
            name=entry.get("name", ""),
            price=to_decimal(entry.get("price")),
            capacity=int(capacity) if capacity not in (None, "") else None,
        ))
    return tuple(offers)


def _parse_activities(raw) -> Tuple[ActivityOffer, ...]:
    offers = []
    for entry in raw or []:
        if isinstance(entry, str):
            offers.append(ActivityOffer(name=entry, price=Decimal("0")))
            continue
        offers.append(ActivityOffer(name=entry.get("name", ""), price=to_decimal(entry.get("price"))))
    return tuple(offers)


# ── Variants ──────────────────────────────────────────────────

@dataclass(frozen=True)
class BookableItem:
    """Common capability interface: Priceable + CapacityTracked."""

    booking_type: ClassVar[BookingType]

    id: uuid.UUID
    name: str
    creator_id: Optional[uuid.UUID] = None
    approval_status: str = "approved"
    facilities: Tuple[FacilityOffer, ...] = ()
    activities: Tuple[ActivityOffer, ...] = ()
    days_opened: Tuple[str, ...] = ()

    def tariff(self) -> Tariff:
        raise NotImplementedError

    def capacity(self) -> Optional[int]:
        """Total units on offer; None when the item does not track capacity. Zero means nothing can be booked."""
        return None

    def working_days(self) -> FrozenSet[str]:
        """Lowercase weekday names; empty means open every day."""
        return frozenset(d.strip().lower() for d in self.days_opened if d and d.strip())

    def is_flexible(self) -> bool:
        """Whether the guest picks the visit date."""
        return True

    def fixed_visit_date(self) -> Optional[date]:
        return None

    def slot_limit_type(self) -> SlotLimitType:
        return SlotLimitType.PER_BOOKING

    def is_approved(self) -> bool:
        return self.approval_status == "approved"

    def facility(self, name: str) -> Optional[FacilityOffer]:
        return next((f for f in self.facilities if f.name == name), None)

    def activity(self, name: str) -> Optional[ActivityOffer]:
        return next((a for a in self.activities if a.name == name), None)

    @classmethod
    def _common(cls, row) -> dict:
        return {
            "id": row.id,
            "name": row.name,
            "creator_id": row.created_by,
            "approval_status": row.approval_status,
            "activities": _parse_activities(row.activities),
        }


@dataclass(frozen=True)
class TripItem(BookableItem):
    booking_type: ClassVar[BookingType] = BookingType.TRIP

    price: Decimal = Decimal("0")
    price_child: Decimal = Decimal("0")
    available_tickets: int = 0
    trip_date: Optional[date] = None
    is_flexible_date: bool = False
    is_custom_date: bool = False
    configured_slot_limit: Optional[SlotLimitType] = None

    def tariff(self) -> Tariff:
        return Tariff(EntryFeeType.PAID, self.price, self.price_child)

    def capacity(self) -> Optional[int]:
        return self.available_tickets

    def is_flexible(self) -> bool:
        return self.is_flexible_date or self.is_custom_date

    def fixed_visit_date(self) -> Optional[date]:
        return None if self.is_flexible() else self.trip_date

    def slot_limit_type(self) -> SlotLimitType:
        if self.configured_slot_limit:
            return self.configured_slot_limit
        return SlotLimitType.PER_BOOKING if self.is_flexible() else SlotLimitType.INVENTORY

    @classmethod
    def from_row(cls, row: Trip) -> "TripItem":
        return cls(
            **cls._common(row),
            price=to_decimal(row.price),
            price_child=to_decimal(row.price_child),
            available_tickets=row.available_tickets or 0,
            trip_date=row.trip_date,
            is_flexible_date=bool(row.is_flexible_date),
            is_custom_date=bool(row.is_custom_date),
            configured_slot_limit=row.slot_limit_type,
        )


@dataclass(frozen=True)
class EventItem(TripItem):
    """Events always run on their fixed date."""
    booking_type: ClassVar[BookingType] = BookingType.EVENT


@dataclass(frozen=True)
class HotelItem(BookableItem):
    booking_type: ClassVar[BookingType] = BookingType.HOTEL

    available_rooms: int = 0

    def tariff(self) -> Tariff:
        return Tariff(EntryFeeType.FREE)

    def capacity(self) -> Optional[int]:
        return self.available_rooms

    @classmethod
    def from_row(cls, row: Hotel) -> "HotelItem":
        return cls(
            **cls._common(row),
            facilities=_parse_facilities(row.facilities),
            days_opened=tuple(row.days_opened or ()),
            available_rooms=row.available_rooms or 0,
        )


@dataclass(frozen=True)
class AdventurePlaceItem(BookableItem):
    booking_type: ClassVar[BookingType] = BookingType.ADVENTURE_PLACE

    entry_fee_type: EntryFeeType = EntryFeeType.FREE
    entry_fee: Decimal = Decimal("0")
    available_slots: int = 0

    def tariff(self) -> Tariff:
        # One entry fee for adults and children alike
        return Tariff(self.entry_fee_type, self.entry_fee, self.entry_fee)

    def capacity(self) -> Optional[int]:
        return self.available_slots

    @classmethod
    def from_row(cls, row: AdventurePlace) -> "AdventurePlaceItem":
        return cls(
            **cls._common(row),
            facilities=_parse_facilities(row.facilities),
            days_opened=tuple(row.days_opened or ()),
            entry_fee_type=row.entry_fee_type,
            entry_fee=to_decimal(row.entry_fee),
            available_slots=row.available_slots or 0,
        )


@dataclass(frozen=True)
class AttractionItem(BookableItem):
    booking_type: ClassVar[BookingType] = BookingType.ATTRACTION

    entry_fee_type: EntryFeeType = EntryFeeType.FREE
    price_adult: Decimal = Decimal("0")
    price_child: Decimal = Decimal("0")

    def tariff(self) -> Tariff:
        return Tariff(self.entry_fee_type, self.price_adult, self.price_child)

    @classmethod
    def from_row(cls, row: Attraction) -> "AttractionItem":
        return cls(
            **cls._common(row),
            facilities=_parse_facilities(row.facilities),
            days_opened=tuple(row.days_opened or ()),
            entry_fee_type=row.entry_fee_type,
            price_adult=to_decimal(row.price_adult),
            price_child=to_decimal(row.price_child),
        )


ItemSnapshot = Union[TripItem, EventItem, HotelItem, AdventurePlaceItem, AttractionItem]

ITEM_MODELS: Dict[BookingType, type] = {
    BookingType.TRIP: Trip,
    BookingType.EVENT: Trip,
    BookingType.HOTEL: Hotel,
    BookingType.ADVENTURE_PLACE: AdventurePlace,
    BookingType.ATTRACTION: Attraction,
}

_VARIANTS: Dict[type, Type[BookableItem]] = {
    Hotel: HotelItem,
    AdventurePlace: AdventurePlaceItem,
    Attraction: AttractionItem,
}


def parse_booking_type(value: Union[str, BookingType]) -> BookingType:
    if isinstance(value, BookingType):
        return value
    try:
        return BookingType.parse(value)
    except ValueError:
        raise ValidationError(f"Unknown booking type '{value}'")


def snapshot_from_row(row) -> ItemSnapshot:
    if isinstance(row, Trip):
        return EventItem.from_row(row) if row.type == TripKind.EVENT else TripItem.from_row(row)
    return _VARIANTS[type(row)].from_row(row)


# ── Loader ────────────────────────────────────────────────────

async def load_item(
    db: AsyncSession,
    booking_type: Union[str, BookingType],
    item_id: uuid.UUID,
    lock: bool = False,
    require_approved: bool = True,
) -> ItemSnapshot:
    """
    Load a listing as an immutable snapshot.
    lock=True takes a row lock (SELECT ... FOR UPDATE) for the rest of the transaction.
    """
    booking_type = parse_booking_type(booking_type)
    model = ITEM_MODELS[booking_type]

    query = select(model).where(model.id == item_id)
    if lock:
        query = query.with_for_update()
    row = (await db.execute(query)).scalar_one_or_none()
    if row is None:
        raise ItemNotFoundError(f"{booking_type.value} {item_id} not found")

    item = snapshot_from_row(row)
    if require_approved and not item.is_approved():
        raise ItemUnavailableError(f"{item.name} is not open for bookings")
    return item


def weekday_name(day: date) -> str:
    return WEEKDAYS[day.weekday()]
