"""
shared/models/models.py
All SQLAlchemy ORM models for the booking engine.
UUID primary keys throughout; JSON columns become JSONB on PostgreSQL.
"""

import uuid
from datetime import date, datetime
from decimal import Decimal
from enum import Enum as PyEnum
from typing import List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from config.database import Base

JSONType = JSON().with_variant(JSONB(), "postgresql")


def _enum(enum_cls: type) -> Enum:
    """Persist enum values (lowercase wire format), not member names."""
    return Enum(
        enum_cls,
        values_callable=lambda members: [m.value for m in members],
        native_enum=False,
        length=32,
    )


# ── Enumerations ──────────────────────────────────────────────

class UserRole(str, PyEnum):
    USER = "USER"
    HOST = "HOST"
    ADMIN = "ADMIN"


class BookingType(str, PyEnum):
    TRIP = "trip"
    EVENT = "event"
    HOTEL = "hotel"
    ADVENTURE_PLACE = "adventure_place"
    ATTRACTION = "attraction"

    @classmethod
    def parse(cls, value: str) -> "BookingType":
        """Accepts the legacy 'adventure' alias used by older clients."""
        if value == "adventure":
            return cls.ADVENTURE_PLACE
        return cls(value)


class BookingStatus(str, PyEnum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    REJECTED = "rejected"
    COMPLETED = "completed"


# Bookings in these states no longer hold capacity
INACTIVE_BOOKING_STATUSES = (BookingStatus.CANCELLED, BookingStatus.REJECTED)


class PaymentStatus(str, PyEnum):
    PENDING = "pending"
    PAID = "paid"
    COMPLETED = "completed"
    FAILED = "failed"


class EntryFeeType(str, PyEnum):
    FREE = "free"
    PAID = "paid"


class SlotLimitType(str, PyEnum):
    INVENTORY = "inventory"
    PER_BOOKING = "per_booking"


class TripKind(str, PyEnum):
    TRIP = "trip"
    EVENT = "event"


class NotificationType(str, PyEnum):
    BOOKING_CONFIRMED = "booking_confirmed"
    NEW_BOOKING_HOST = "new_booking_host"
    BOOKING_RESCHEDULED = "booking_rescheduled"
    BOOKING_RESCHEDULED_HOST = "booking_rescheduled_host"
    BOOKING_CANCELLED = "booking_cancelled"
    BOOKING_CANCELLED_HOST = "booking_cancelled_host"
    PAYMENT_CAPACITY_CONFLICT = "payment_capacity_conflict"


class CallbackSource(str, PyEnum):
    CALLBACK = "callback"
    QUERY = "query"


# ── Mixins ────────────────────────────────────────────────────

class TimestampMixin:
    """Adds created_at and updated_at to any model."""
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class ListingMixin:
    """Columns shared by every bookable listing table."""
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )
    approval_status: Mapped[str] = mapped_column(String(20), default="pending", nullable=False)
    activities: Mapped[list] = mapped_column(JSONType, default=list, nullable=False)


# ── Models ────────────────────────────────────────────────────

class User(TimestampMixin, Base):
    """Guest, host or admin account."""
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    phone: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    role: Mapped[UserRole] = mapped_column(
        Enum(UserRole), nullable=False, default=UserRole.USER
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    bookings: Mapped[List["Booking"]] = relationship(back_populates="user")
    notifications: Mapped[List["Notification"]] = relationship(back_populates="user")

    def __repr__(self) -> str:
        return f"<User {self.email} ({self.role})>"


class Trip(TimestampMixin, ListingMixin, Base):
    """
    Trips and events share one table, distinguished by `type`.
    Fixed-date listings carry `trip_date`; flexible/custom ones let the guest pick.
    """
    __tablename__ = "trips"

    type: Mapped[TripKind] = mapped_column(_enum(TripKind), default=TripKind.TRIP, nullable=False)
    trip_date: Mapped[Optional[date]] = mapped_column("date", Date, nullable=True)
    is_flexible_date: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_custom_date: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    slot_limit_type: Mapped[Optional[SlotLimitType]] = mapped_column(
        _enum(SlotLimitType), nullable=True
    )
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0, nullable=False)
    price_child: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0, nullable=False)
    available_tickets: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


class Hotel(TimestampMixin, ListingMixin, Base):
    __tablename__ = "hotels"

    facilities: Mapped[list] = mapped_column(JSONType, default=list, nullable=False)
    days_opened: Mapped[list] = mapped_column(JSONType, default=list, nullable=False)
    available_rooms: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


class AdventurePlace(TimestampMixin, ListingMixin, Base):
    __tablename__ = "adventure_places"

    facilities: Mapped[list] = mapped_column(JSONType, default=list, nullable=False)
    days_opened: Mapped[list] = mapped_column(JSONType, default=list, nullable=False)
    entry_fee_type: Mapped[EntryFeeType] = mapped_column(
        _enum(EntryFeeType), default=EntryFeeType.FREE, nullable=False
    )
    entry_fee: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0, nullable=False)
    available_slots: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


class Attraction(TimestampMixin, ListingMixin, Base):
    """Attractions do not track capacity."""
    __tablename__ = "attractions"

    facilities: Mapped[list] = mapped_column(JSONType, default=list, nullable=False)
    days_opened: Mapped[list] = mapped_column(JSONType, default=list, nullable=False)
    entry_fee_type: Mapped[EntryFeeType] = mapped_column(
        _enum(EntryFeeType), default=EntryFeeType.FREE, nullable=False
    )
    price_adult: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0, nullable=False)
    price_child: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0, nullable=False)


class Booking(TimestampMixin, Base):
    """
    A guest's booking of exactly one listing.
    Created either directly (free items) or by the payment callback.
    `checkout_request_id` is the idempotency key for the payment path.
    """
    __tablename__ = "bookings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )
    booking_type: Mapped[BookingType] = mapped_column(_enum(BookingType), nullable=False)
    item_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    visit_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    slots_booked: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    status: Mapped[BookingStatus] = mapped_column(
        _enum(BookingStatus), nullable=False, default=BookingStatus.PENDING
    )
    payment_status: Mapped[PaymentStatus] = mapped_column(
        _enum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING
    )
    payment_method: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    payment_phone: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    is_guest_booking: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    guest_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    guest_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    guest_phone: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    booking_details: Mapped[dict] = mapped_column(JSONType, nullable=False)
    checkout_request_id: Mapped[Optional[str]] = mapped_column(
        String(100), unique=True, nullable=True
    )
    referral_tracking_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)

    user: Mapped[Optional["User"]] = relationship(back_populates="bookings")
    reschedules: Mapped[List["RescheduleLog"]] = relationship(back_populates="booking")

    __table_args__ = (
        CheckConstraint("total_amount >= 0", name="ck_booking_total_non_negative"),
        CheckConstraint("slots_booked >= 1", name="ck_booking_slots_positive"),
        Index("ix_bookings_item_visit_date", "item_id", "visit_date"),
        Index("ix_bookings_user_id", "user_id"),
        Index("ix_bookings_status", "status"),
    )


class PendingPayment(TimestampMixin, Base):
    """
    One STK-push attempt. Holds the serialized future booking until the
    provider callback settles it. Moves out of `pending` exactly once.
    """
    __tablename__ = "payments"

    checkout_request_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    merchant_request_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    phone_number: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    account_reference: Mapped[Optional[str]] = mapped_column(String(12), nullable=True)
    transaction_desc: Mapped[Optional[str]] = mapped_column(String(13), nullable=True)
    booking_data: Mapped[dict] = mapped_column(JSONType, nullable=False)
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    host_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)

    payment_status: Mapped[PaymentStatus] = mapped_column(
        _enum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING
    )
    result_code: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    result_desc: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    mpesa_receipt_number: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    booking_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    booking_error: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    __table_args__ = (
        Index("ix_payments_status_created", "payment_status", "created_at"),
    )


class MpesaCallbackLog(Base):
    """Raw log of every provider callback and synthetic status-query result."""
    __tablename__ = "mpesa_callback_log"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    checkout_request_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    merchant_request_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    result_code: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    result_desc: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    raw_payload: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    source: Mapped[CallbackSource] = mapped_column(
        _enum(CallbackSource), default=CallbackSource.CALLBACK, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (Index("ix_callback_log_checkout", "checkout_request_id"),)


class RescheduleLog(Base):
    """Append-only audit trail of visit date changes."""
    __tablename__ = "reschedule_log"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id"), nullable=False
    )
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )
    old_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    new_date: Mapped[date] = mapped_column(Date, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    booking: Mapped["Booking"] = relationship(back_populates="reschedules")


class Notification(TimestampMixin, Base):
    """In-app notification log. Email/SMS delivery is tracked on the row."""
    __tablename__ = "notifications"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    booking_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("bookings.id"), nullable=True
    )
    type: Mapped[NotificationType] = mapped_column(_enum(NotificationType), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    data: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False)
    read_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    sent_email: Mapped[bool] = mapped_column(Boolean, default=False)
    sent_sms: Mapped[bool] = mapped_column(Boolean, default=False)

    user: Mapped["User"] = relationship(back_populates="notifications")

    __table_args__ = (Index("ix_notifications_user_id_read", "user_id", "is_read"),)
