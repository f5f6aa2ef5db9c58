"""
tests/test_tasks.py
Tests for background payment reconciliation.
"""

from datetime import date, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from services.booking.repository import BookingDraft
from services.payment.mpesa import StkQueryResult
from shared.exceptions import ProviderError
from shared.models.models import Booking, BookingType, PaymentStatus, PendingPayment
from tasks.payment_tasks import reconcile
from tests.conftest import NOW


async def _pending(session_factory, item, checkout_request_id: str, age: timedelta) -> None:
    draft = BookingDraft(
        booking_type=BookingType.ATTRACTION,
        item_id=item.id,
        item_name=item.name,
        total_amount=Decimal("1000"),
        slots_booked=1,
        booking_details={"adults": 1, "children": 0, "facilities": [], "activities": []},
        visit_date=date(2026, 6, 10),
        host_id=item.created_by,
        guest_email="guest@example.com",
    )
    async with session_factory() as s:
        s.add(PendingPayment(
            checkout_request_id=checkout_request_id,
            phone_number="254712345678",
            amount=draft.total_amount,
            booking_data=draft.to_booking_data(),
            payment_status=PaymentStatus.PENDING,
            created_at=NOW - age,
            updated_at=NOW - age,
        ))
        await s.commit()


async def _status(session_factory, checkout_request_id: str) -> PaymentStatus:
    async with session_factory() as s:
        return (await s.get(PendingPayment, checkout_request_id)).payment_status


@pytest.mark.asyncio
async def test_reconcile_settles_stale_payment(session_factory, mpesa, dispatcher, paid_attraction):
    await _pending(session_factory, paid_attraction, "ws_CO_stale", timedelta(minutes=10))
    await _pending(session_factory, paid_attraction, "ws_CO_fresh", timedelta(seconds=30))
    mpesa.query_result = StkQueryResult(
        checkout_request_id="",
        result_code="0",
        result_desc="The service request is processed successfully.",
        raw={"CallbackMetadata": {"Item": [{"Name": "MpesaReceiptNumber", "Value": "REC0N51LE"}]}},
    )

    summary = await reconcile(session_factory, mpesa, dispatcher, NOW, older_than_seconds=120)

    assert summary == {"checked": 1, "settled": 1}
    assert mpesa.queries == ["ws_CO_stale"]
    assert await _status(session_factory, "ws_CO_stale") == PaymentStatus.COMPLETED
    assert await _status(session_factory, "ws_CO_fresh") == PaymentStatus.PENDING
    async with session_factory() as s:
        booking = (await s.execute(select(Booking))).scalar_one()
        assert booking.checkout_request_id == "ws_CO_stale"

    # A second run finds nothing left to do
    assert await reconcile(session_factory, mpesa, dispatcher, NOW, older_than_seconds=120) == {"checked": 0, "settled": 0}


@pytest.mark.asyncio
async def test_reconcile_leaves_inconclusive_pending(session_factory, mpesa, dispatcher, paid_attraction):
    await _pending(session_factory, paid_attraction, "ws_CO_stale", timedelta(minutes=10))

    summary = await reconcile(session_factory, mpesa, dispatcher, NOW, older_than_seconds=120)

    assert summary == {"checked": 1, "settled": 0}
    assert await _status(session_factory, "ws_CO_stale") == PaymentStatus.PENDING


@pytest.mark.asyncio
async def test_reconcile_stops_on_rate_limit(session_factory, mpesa, dispatcher, paid_attraction):
    await _pending(session_factory, paid_attraction, "ws_CO_a", timedelta(minutes=20))
    await _pending(session_factory, paid_attraction, "ws_CO_b", timedelta(minutes=10))
    mpesa.query_result = StkQueryResult(
        checkout_request_id="", result_code=None, result_desc="Rate limit exceeded", rate_limited=True,
    )

    summary = await reconcile(session_factory, mpesa, dispatcher, NOW, older_than_seconds=120)

    assert summary["settled"] == 0
    assert mpesa.queries == ["ws_CO_a"]


@pytest.mark.asyncio
async def test_reconcile_skips_provider_errors(session_factory, mpesa, dispatcher, paid_attraction):
    await _pending(session_factory, paid_attraction, "ws_CO_a", timedelta(minutes=20))
    await _pending(session_factory, paid_attraction, "ws_CO_b", timedelta(minutes=10))
    mpesa.query_error = ProviderError("M-Pesa request to /mpesa/stkpushquery/v1/query failed")

    summary = await reconcile(session_factory, mpesa, dispatcher, NOW, older_than_seconds=120)

    assert summary == {"checked": 2, "settled": 0}
    assert mpesa.queries == ["ws_CO_a", "ws_CO_b"]
