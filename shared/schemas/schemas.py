"""
shared/schemas/schemas.py
All Pydantic v2 request/response schemas for the booking engine.
"""

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator


# ── Base ──────────────────────────────────────────────────────

class BaseSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


class PaginatedResponse(BaseSchema):
    items: List[Any]
    total: int
    page: int
    page_size: int
    pages: int


class MessageResponse(BaseSchema):
    message: str
    success: bool = True


# ── Selection ─────────────────────────────────────────────────

class FacilitySelection(BaseSchema):
    name: str = Field(..., min_length=1, max_length=255)
    start_date: Optional[date] = None
    end_date: Optional[date] = None


class ActivitySelection(BaseSchema):
    name: str = Field(..., min_length=1, max_length=255)
    number_of_people: int = Field(1, ge=1, le=1000)


class QuoteRequest(BaseSchema):
    booking_type: str = Field(..., description="trip | event | hotel | adventure_place | attraction")
    item_id: uuid.UUID
    adults: int = Field(1, ge=0, le=1000)
    children: int = Field(0, ge=0, le=1000)
    facilities: List[FacilitySelection] = []
    activities: List[ActivitySelection] = []
    visit_date: Optional[date] = None


class CheckoutRequest(QuoteRequest):
    guest_name: Optional[str] = Field(None, max_length=100)
    guest_email: Optional[EmailStr] = None
    guest_phone: Optional[str] = Field(None, max_length=20)
    payment_phone: Optional[str] = Field(None, max_length=20)
    trip_note: Optional[str] = Field(None, max_length=1000)
    referral_tracking_id: Optional[uuid.UUID] = None

    @field_validator("guest_phone", "payment_phone")
    @classmethod
    def validate_phone(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        digits = v.replace(" ", "").replace("-", "")
        if not digits.lstrip("+").isdigit():
            raise ValueError("Phone number must contain digits only")
        return digits


class LineItemResponse(BaseSchema):
    name: str
    unit_price: Decimal
    quantity: int
    amount: Decimal


class QuoteResponse(BaseSchema):
    booking_type: str
    item_id: uuid.UUID
    item_name: str
    currency: str
    entry_fee: Decimal
    facilities: List[LineItemResponse]
    activities: List[LineItemResponse]
    total_amount: Decimal
    slots: int
    booking_details: Dict[str, Any]


# ── Booking ───────────────────────────────────────────────────

class BookingResponse(BaseSchema):
    id: uuid.UUID
    user_id: Optional[uuid.UUID]
    booking_type: str
    item_id: uuid.UUID
    visit_date: Optional[date]
    total_amount: Decimal
    slots_booked: int
    status: str
    payment_status: str
    payment_method: Optional[str]
    payment_phone: Optional[str]
    is_guest_booking: bool
    guest_name: Optional[str]
    guest_email: Optional[str]
    guest_phone: Optional[str]
    booking_details: Dict[str, Any]
    checkout_request_id: Optional[str]
    referral_tracking_id: Optional[uuid.UUID]
    created_at: datetime
    updated_at: datetime


class CheckoutResponse(BaseSchema):
    outcome: str                                    # booked | completed | failed | timed_out
    total_amount: Decimal
    booking_id: Optional[uuid.UUID] = None
    checkout_request_id: Optional[str] = None
    message: Optional[str] = None
    booking: Optional[BookingResponse] = None


# ── Availability ──────────────────────────────────────────────

class AvailabilityResponse(BaseSchema):
    booking_type: str
    item_id: uuid.UUID
    scope: str
    capacity: Optional[int]
    booked: int
    remaining: Optional[int]
    state: str
    sold_out: bool
    visit_date: Optional[date] = None
    date_available: Optional[bool] = None
    date_reason: Optional[str] = None


class CalendarDayResponse(BaseSchema):
    day: date
    status: str
    booked: int
    remaining: Optional[int]
    available: bool


class CalendarResponse(BaseSchema):
    item_id: uuid.UUID
    start: date
    end: date
    days: List[CalendarDayResponse]


# ── Reschedule ────────────────────────────────────────────────

class RescheduleEligibilityResponse(BaseSchema):
    booking_id: uuid.UUID
    eligible: bool
    reason: Optional[str] = None
    message: Optional[str] = None
    visit_date: Optional[date] = None
    hours_until_visit: Optional[int] = None


class RescheduleRequest(BaseSchema):
    new_date: date


class RescheduleResponse(BaseSchema):
    booking_id: uuid.UUID
    old_date: Optional[date]
    new_date: date
    message: str


# ── Cancellation ──────────────────────────────────────────────

class CancellationResponse(BaseSchema):
    booking_id: uuid.UUID
    status: str
    visit_date: Optional[date] = None
    message: str


# ── Payment ───────────────────────────────────────────────────

class StkPushRequest(CheckoutRequest):
    payment_phone: str = Field(..., min_length=9, max_length=20)


class StkPushResponse(BaseSchema):
    checkout_request_id: str
    merchant_request_id: Optional[str]
    amount: Decimal
    customer_message: Optional[str] = None
    payment_status: str
    retry_of: Optional[str] = None


class PaymentStatusResponse(BaseSchema):
    checkout_request_id: str
    payment_status: str
    amount: Decimal
    result_code: Optional[str] = None
    result_desc: Optional[str] = None
    mpesa_receipt_number: Optional[str] = None
    booking_id: Optional[uuid.UUID] = None
    booking_error: Optional[str] = None


class MpesaCallbackAck(BaseSchema):
    ResultCode: int = 0
    ResultDesc: str = "Accepted"


# ── Notification ──────────────────────────────────────────────

class NotificationResponse(BaseSchema):
    id: uuid.UUID
    booking_id: Optional[uuid.UUID]
    type: str
    title: str
    body: str
    data: Optional[Dict[str, Any]]
    is_read: bool
    read_at: Optional[datetime]
    created_at: datetime
