"""
services/booking/repository.py
Booking persistence: creation from the free path or a completed payment,
reads, visit date updates with their audit trail, and cancellation.

Methods never commit. They return the notification events to publish once
the caller's transaction has committed.
"""

import logging
import math
import uuid
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from services.capacity.ledger import ensure_capacity
from services.catalog.items import load_item
from services.notification.dispatcher import NotificationEvent, event
from shared.exceptions import BookingNotFoundError, CapacityExceededError, ItemNotFoundError
from shared.models.models import (
    Booking,
    BookingStatus,
    BookingType,
    NotificationType,
    PaymentStatus,
    PendingPayment,
    RescheduleLog,
)

logger = logging.getLogger(__name__)


# ── Draft ─────────────────────────────────────────────────────

@dataclass
class BookingDraft:
    """A priced booking that is not persisted yet. Serialised into PendingPayment.booking_data."""
    booking_type: BookingType
    item_id: uuid.UUID
    item_name: str
    total_amount: Decimal
    slots_booked: int
    booking_details: dict
    visit_date: Optional[date] = None
    host_id: Optional[uuid.UUID] = None
    user_id: Optional[uuid.UUID] = None
    guest_name: Optional[str] = None
    guest_email: Optional[str] = None
    guest_phone: Optional[str] = None
    referral_tracking_id: Optional[uuid.UUID] = None

    @property
    def is_guest_booking(self) -> bool:
        return self.user_id is None

    def to_booking_data(self) -> dict:
        def _s(value):
            return str(value) if value is not None else None

        return {
            "booking_type": self.booking_type.value,
            "item_id": str(self.item_id),
            "item_name": self.item_name,
            "total_amount": str(self.total_amount),
            "slots_booked": self.slots_booked,
            "booking_details": self.booking_details,
            "visit_date": self.visit_date.isoformat() if self.visit_date else None,
            "host_id": _s(self.host_id),
            "user_id": _s(self.user_id),
            "is_guest_booking": self.is_guest_booking,
            "guest_name": self.guest_name,
            "guest_email": self.guest_email,
            "guest_phone": self.guest_phone,
            "referral_tracking_id": _s(self.referral_tracking_id),
        }

    @classmethod
    def from_booking_data(cls, data: dict) -> "BookingDraft":
        def _uuid(value):
            return uuid.UUID(value) if value else None

        return cls(
            booking_type=BookingType.parse(data["booking_type"]),
            item_id=uuid.UUID(data["item_id"]),
            item_name=data.get("item_name") or "",
            total_amount=Decimal(str(data["total_amount"])),
            slots_booked=int(data.get("slots_booked") or 1),
            booking_details=data.get("booking_details") or {},
            visit_date=date.fromisoformat(data["visit_date"]) if data.get("visit_date") else None,
            host_id=_uuid(data.get("host_id")),
            user_id=_uuid(data.get("user_id")),
            guest_name=data.get("guest_name"),
            guest_email=data.get("guest_email"),
            guest_phone=data.get("guest_phone"),
            referral_tracking_id=_uuid(data.get("referral_tracking_id")),
        )


# ── Repository ────────────────────────────────────────────────

class BookingRepository:

    def __init__(self, db: AsyncSession):
        self.db = db

    # ── Reads ─────────────────────────────────────────────────

    async def get(self, booking_id: uuid.UUID, lock: bool = False) -> Booking:
        query = select(Booking).where(Booking.id == booking_id)
        if lock:
            query = query.with_for_update()
        booking = (await self.db.execute(query)).scalar_one_or_none()
        if not booking:
            raise BookingNotFoundError("Booking not found")
        return booking

    async def get_by_checkout_request_id(self, checkout_request_id: str) -> Optional[Booking]:
        result = await self.db.execute(
            select(Booking).where(Booking.checkout_request_id == checkout_request_id)
        )
        return result.scalar_one_or_none()

    async def list_for_user(
        self,
        user_id: Optional[uuid.UUID],
        status: Optional[BookingStatus] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> Tuple[List[Booking], int, int]:
        """Returns (items, total, pages). user_id=None lists every booking (admin)."""
        query = select(Booking)
        if user_id is not None:
            query = query.where(Booking.user_id == user_id)
        if status is not None:
            query = query.where(Booking.status == status)

        total = await self.db.scalar(select(func.count()).select_from(query.subquery()))
        result = await self.db.execute(
            query.order_by(Booking.created_at.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        items = list(result.scalars().all())
        return items, total or 0, math.ceil((total or 0) / page_size)

    # ── Creation ──────────────────────────────────────────────

    async def create_direct(self, draft: BookingDraft, today: date) -> Tuple[Booking, List[NotificationEvent]]:
        """
        Zero-amount path: no payment involved. Capacity is checked with the
        item row locked, in the caller's transaction.
        """
        item = await load_item(self.db, draft.booking_type, draft.item_id, lock=True)
        await ensure_capacity(self.db, item, draft.slots_booked, draft.visit_date, today=today)

        booking = self._new_booking(
            draft,
            payment_method="free",
            payment_phone=None,
            checkout_request_id=None,
        )
        self.db.add(booking)
        await self.db.flush()
        await self.db.refresh(booking)

        logger.info(f"Free booking {booking.id} created for {draft.booking_type.value} {draft.item_id}")
        return booking, [self._guest_confirmation(booking, draft)]

    async def create_from_payment(
        self, payment: PendingPayment
    ) -> Tuple[Optional[Booking], List[NotificationEvent]]:
        """
        Materialise the booking carried by a completed payment, exactly once.
        When capacity ran out while the payer was confirming, no booking is
        created; the payment records the conflict and admins are told to refund.
        Stored booking data that no longer parses is handled the same way.
        """
        existing = await self.get_by_checkout_request_id(payment.checkout_request_id)
        if existing:
            logger.info(f"Booking already exists for checkout {payment.checkout_request_id}")
            payment.booking_id = existing.id
            return existing, []

        try:
            draft = BookingDraft.from_booking_data(payment.booking_data)
        except (KeyError, TypeError, ValueError, ArithmeticError) as e:
            payment.booking_error = "invalid_booking_data"
            logger.error(f"Paid checkout {payment.checkout_request_id} carries unusable booking data: {e!r}")
            return None, [refund_alert(payment, stored_item_name(payment), "invalid_booking_data")]

        try:
            item = await load_item(
                self.db, draft.booking_type, draft.item_id, lock=True, require_approved=False
            )
            await ensure_capacity(self.db, item, draft.slots_booked, draft.visit_date)
        except (CapacityExceededError, ItemNotFoundError) as e:
            error_code = "capacity_exceeded" if isinstance(e, CapacityExceededError) else "item_not_found"
            payment.booking_error = error_code
            logger.warning(f"Paid checkout {payment.checkout_request_id} not fulfilled: {e.message}")
            return None, [refund_alert(payment, draft.item_name, error_code)]

        booking = self._new_booking(
            draft,
            payment_method="mpesa",
            payment_phone=payment.phone_number,
            checkout_request_id=payment.checkout_request_id,
        )
        # A concurrent duplicate insert fails here on the unique checkout_request_id
        self.db.add(booking)
        await self.db.flush()

        payment.booking_id = booking.id
        payment.booking_error = None
        logger.info(f"Booking {booking.id} created from checkout {payment.checkout_request_id}")

        events = [self._guest_confirmation(booking, draft)]
        if draft.host_id:
            events.append(event(
                NotificationType.NEW_BOOKING_HOST,
                booking_id=booking.id,
                user_id=draft.host_id,
                item_name=draft.item_name,
                booking_ref=_ref(booking.id),
                visit_date=_fmt_date(booking.visit_date),
                slots=booking.slots_booked,
                amount=booking.total_amount,
                guest_name=booking.guest_name,
            ))
        return booking, events

    # ── Updates ───────────────────────────────────────────────

    async def update_visit_date(
        self,
        booking: Booking,
        new_date: date,
        actor_id: Optional[uuid.UUID],
    ) -> RescheduleLog:
        entry = RescheduleLog(
            booking_id=booking.id,
            user_id=actor_id,
            old_date=booking.visit_date,
            new_date=new_date,
        )
        booking.visit_date = new_date
        self.db.add(entry)
        await self.db.flush()
        return entry

    async def mark_cancelled(self, booking: Booking) -> Booking:
        """Cancelled bookings drop out of every capacity count."""
        booking.status = BookingStatus.CANCELLED
        await self.db.flush()
        return booking

    # ── Internals ─────────────────────────────────────────────

    @staticmethod
    def _new_booking(
        draft: BookingDraft,
        payment_method: str,
        payment_phone: Optional[str],
        checkout_request_id: Optional[str],
    ) -> Booking:
        return Booking(
            id=uuid.uuid4(),
            user_id=draft.user_id,
            booking_type=draft.booking_type,
            item_id=draft.item_id,
            visit_date=draft.visit_date,
            total_amount=draft.total_amount,
            slots_booked=draft.slots_booked,
            status=BookingStatus.CONFIRMED,
            payment_status=PaymentStatus.PAID,
            payment_method=payment_method,
            payment_phone=payment_phone,
            is_guest_booking=draft.is_guest_booking,
            guest_name=draft.guest_name,
            guest_email=draft.guest_email,
            guest_phone=draft.guest_phone,
            booking_details=draft.booking_details,
            checkout_request_id=checkout_request_id,
            referral_tracking_id=draft.referral_tracking_id,
        )

    @staticmethod
    def _guest_confirmation(booking: Booking, draft: BookingDraft) -> NotificationEvent:
        return event(
            NotificationType.BOOKING_CONFIRMED,
            booking_id=booking.id,
            user_id=draft.user_id,
            email=draft.guest_email,
            phone=draft.guest_phone,
            item_name=draft.item_name,
            booking_ref=_ref(booking.id),
            visit_date=_fmt_date(booking.visit_date),
            amount=booking.total_amount,
        )


def refund_alert(payment: PendingPayment, item_name: Optional[str], reason: str) -> NotificationEvent:
    """Tells admins a payment was taken without a booking to show for it."""
    return event(
        NotificationType.PAYMENT_CAPACITY_CONFLICT,
        item_name=item_name,
        checkout_request_id=payment.checkout_request_id,
        receipt=payment.mpesa_receipt_number,
        amount=payment.amount,
        payer_phone=payment.phone_number,
        reason=reason,
    )


def stored_item_name(payment: PendingPayment) -> Optional[str]:
    data = payment.booking_data
    return data.get("item_name") if isinstance(data, dict) else None


def _ref(booking_id: uuid.UUID) -> str:
    return str(booking_id)[:8].upper()


def _fmt_date(value: Optional[date]) -> str:
    return value.strftime("%d %b %Y") if value else "an open date"
