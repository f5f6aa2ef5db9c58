"""
tests/conftest.py
Shared fixtures: in-memory SQLite database, fixed clock, recording
notification dispatcher, fake M-Pesa provider and an HTTP client bound
to the app with all of them wired in.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret-key")
os.environ.setdefault("APP_ENV", "test")

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import List, Optional

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from config.database import Base, get_db, get_session_factory
from main import app
from services.notification.dispatcher import RecordingDispatcher, get_dispatcher
from services.payment.mpesa import StkPushResult, StkQueryResult, get_mpesa_client
from services.payment.orchestrator import PaymentOrchestrator
from services.payment.router import get_orchestrator
from shared.models.models import (
    AdventurePlace,
    Attraction,
    Booking,
    BookingStatus,
    BookingType,
    EntryFeeType,
    Hotel,
    PaymentStatus,
    Trip,
    TripKind,
    User,
    UserRole,
)
from shared.utils.clock import FixedClock, get_clock
from shared.utils.security import create_access_token

# Monday 1 June 2026, 09:00 UTC
NOW = datetime(2026, 6, 1, 9, 0, tzinfo=timezone.utc)
TODAY = NOW.date()


def auth_headers(user: User) -> dict:
    token, _ = create_access_token(str(user.id), user.role.value, user.email)
    return {"Authorization": f"Bearer {token}"}


# ── Fakes ─────────────────────────────────────────────────────

class FakeMpesa:
    """Stands in for MpesaClient. Records calls; results are set per test."""

    def __init__(self):
        self.pushes: List[dict] = []
        self.queries: List[str] = []
        self.push_error: Optional[Exception] = None
        self.query_result: Optional[StkQueryResult] = None
        self.query_error: Optional[Exception] = None

    @property
    def last_checkout_request_id(self) -> str:
        return f"ws_CO_0106202609000{len(self.pushes)}"

    async def stk_push(self, phone, amount, account_reference, description) -> StkPushResult:
        if self.push_error:
            raise self.push_error
        self.pushes.append({
            "phone": phone,
            "amount": amount,
            "account_reference": account_reference,
            "description": description,
        })
        n = len(self.pushes)
        return StkPushResult(
            checkout_request_id=f"ws_CO_0106202609000{n}",
            merchant_request_id=f"29115-3462060{n}-1",
            response_code="0",
            response_description="Success. Request accepted for processing",
            customer_message="Success. Request accepted for processing",
        )

    async def stk_query(self, checkout_request_id: str) -> StkQueryResult:
        self.queries.append(checkout_request_id)
        if self.query_error:
            raise self.query_error
        if self.query_result is not None:
            return StkQueryResult(
                checkout_request_id=checkout_request_id,
                result_code=self.query_result.result_code,
                result_desc=self.query_result.result_desc,
                merchant_request_id=self.query_result.merchant_request_id,
                rate_limited=self.query_result.rate_limited,
                raw=self.query_result.raw,
            )
        return StkQueryResult(
            checkout_request_id=checkout_request_id,
            result_code=None,
            result_desc="The transaction is being processed",
        )


class FakeSleep:
    """Injected sleep: records intervals and runs queued hooks instead of waiting."""

    def __init__(self):
        self.calls: List[float] = []
        self.hooks = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        if self.hooks:
            hook = self.hooks.pop(0)
            await hook()


def stk_callback(checkout_request_id: str, result_code: int = 0, receipt: str = "TF1ABC2DEF") -> dict:
    callback = {
        "MerchantRequestID": "29115-34620561-1",
        "CheckoutRequestID": checkout_request_id,
        "ResultCode": result_code,
        "ResultDesc": "The service request is processed successfully." if result_code == 0
        else "Request cancelled by user",
    }
    if result_code == 0:
        callback["CallbackMetadata"] = {"Item": [
            {"Name": "Amount", "Value": 1.0},
            {"Name": "MpesaReceiptNumber", "Value": receipt},
            {"Name": "TransactionDate", "Value": 20260601090512},
            {"Name": "PhoneNumber", "Value": 254712345678},
        ]}
    return {"Body": {"stkCallback": callback}}


# ── Database ──────────────────────────────────────────────────

@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


# ── Collaborators ─────────────────────────────────────────────

@pytest.fixture
def clock():
    return FixedClock(NOW)


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def mpesa():
    return FakeMpesa()


@pytest.fixture
def sleep():
    return FakeSleep()


@pytest.fixture
def orchestrator(mpesa, session_factory, dispatcher, sleep):
    return PaymentOrchestrator(
        mpesa,
        session_factory,
        dispatcher,
        poll_interval=2.0,
        poll_timeout=40.0,
        sleep=sleep,
    )


@pytest.fixture
async def client(session_factory, clock, dispatcher, mpesa, orchestrator):
    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    app.dependency_overrides[get_mpesa_client] = lambda: mpesa
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ── Users ─────────────────────────────────────────────────────

async def _user(db: AsyncSession, role: UserRole, email: str, name: str, phone: str) -> User:
    user = User(id=uuid.uuid4(), email=email, name=name, phone=phone, role=role, is_active=True)
    db.add(user)
    await db.commit()
    return user


@pytest.fixture
async def user(db):
    return await _user(db, UserRole.USER, "wanjiru@example.com", "Wanjiru Kamau", "0712345678")


@pytest.fixture
async def other_user(db):
    return await _user(db, UserRole.USER, "otieno@example.com", "Otieno Ouma", "0722000111")


@pytest.fixture
async def host(db):
    return await _user(db, UserRole.HOST, "host@example.com", "Savannah Tours", "0733000222")


@pytest.fixture
async def admin(db):
    return await _user(db, UserRole.ADMIN, "admin@example.com", "Ops Admin", "0744000333")


# ── Listings ──────────────────────────────────────────────────

@pytest.fixture
async def free_attraction(db, host):
    item = Attraction(
        id=uuid.uuid4(),
        name="Karura Forest Walk",
        created_by=host.id,
        approval_status="approved",
        entry_fee_type=EntryFeeType.FREE,
        price_adult=Decimal("0"),
        price_child=Decimal("0"),
        facilities=[],
        activities=[],
        days_opened=[],
    )
    db.add(item)
    await db.commit()
    return item


@pytest.fixture
async def paid_attraction(db, host):
    item = Attraction(
        id=uuid.uuid4(),
        name="Giraffe Centre",
        created_by=host.id,
        approval_status="approved",
        entry_fee_type=EntryFeeType.PAID,
        price_adult=Decimal("1000"),
        price_child=Decimal("500"),
        facilities=[{"name": "Picnic Site", "price": 200}],
        activities=[{"name": "Feeding Session", "price": 300}],
        days_opened=[],
    )
    db.add(item)
    await db.commit()
    return item


@pytest.fixture
async def hotel(db, host):
    item = Hotel(
        id=uuid.uuid4(),
        name="Naivasha Lodge",
        created_by=host.id,
        approval_status="approved",
        facilities=[{"name": "Deluxe Room", "price": 3000, "capacity": 2}],
        activities=[{"name": "Boat Ride", "price": 1500}],
        days_opened=[],
        available_rooms=4,
    )
    db.add(item)
    await db.commit()
    return item


@pytest.fixture
async def adventure_place(db, host):
    item = AdventurePlace(
        id=uuid.uuid4(),
        name="Hell's Gate Camp",
        created_by=host.id,
        approval_status="approved",
        facilities=[{"name": "Campsite", "price": 1000}],
        activities=[{"name": "Rock Climbing", "price": 800}],
        days_opened=["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"],
        entry_fee_type=EntryFeeType.PAID,
        entry_fee=Decimal("500"),
        available_slots=10,
    )
    db.add(item)
    await db.commit()
    return item


@pytest.fixture
async def flexible_trip(db, host):
    item = Trip(
        id=uuid.uuid4(),
        name="Amboseli Safari",
        created_by=host.id,
        approval_status="approved",
        type=TripKind.TRIP,
        trip_date=None,
        is_flexible_date=True,
        price=Decimal("2000"),
        price_child=Decimal("1000"),
        available_tickets=20,
        slot_limit_type=None,
        activities=[],
    )
    db.add(item)
    await db.commit()
    return item


@pytest.fixture
async def fixed_trip(db, host):
    item = Trip(
        id=uuid.uuid4(),
        name="Mount Kenya Climb",
        created_by=host.id,
        approval_status="approved",
        type=TripKind.TRIP,
        trip_date=date(2026, 6, 20),
        price=Decimal("5000"),
        price_child=Decimal("2500"),
        available_tickets=10,
        slot_limit_type=None,
        activities=[],
    )
    db.add(item)
    await db.commit()
    return item


@pytest.fixture
async def festival(db, host):
    item = Trip(
        id=uuid.uuid4(),
        name="Koroga Festival",
        created_by=host.id,
        approval_status="approved",
        type=TripKind.EVENT,
        trip_date=date(2026, 6, 15),
        price=Decimal("1500"),
        price_child=Decimal("750"),
        available_tickets=100,
        slot_limit_type=None,
        activities=[],
    )
    db.add(item)
    await db.commit()
    return item


# ── Bookings ──────────────────────────────────────────────────

async def make_booking(
    db: AsyncSession,
    item,
    booking_type: BookingType,
    *,
    user: Optional[User] = None,
    visit_date: Optional[date] = None,
    slots: int = 1,
    status: BookingStatus = BookingStatus.CONFIRMED,
    amount: Decimal = Decimal("1000"),
) -> Booking:
    booking = Booking(
        id=uuid.uuid4(),
        user_id=user.id if user else None,
        booking_type=booking_type,
        item_id=item.id,
        visit_date=visit_date,
        total_amount=amount,
        slots_booked=slots,
        status=status,
        payment_status=PaymentStatus.PAID,
        payment_method="mpesa",
        is_guest_booking=user is None,
        guest_name=user.name if user else "Walk-in Guest",
        guest_email=user.email if user else "guest@example.com",
        guest_phone=user.phone if user else "0799000444",
        booking_details={"adults": slots, "children": 0, "facilities": [], "activities": []},
    )
    db.add(booking)
    await db.commit()
    return booking
