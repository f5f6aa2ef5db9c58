"""
tests/test_notifications.py
Tests for notification fan-out (in-app rows, email / SMS targets),
template rendering and the in-app inbox endpoints.
"""

import uuid
from datetime import date

import pytest
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

import tasks.notification_tasks as notification_tasks
from services.notification.dispatcher import NotificationEvent, event
from shared.models.models import BookingType, Notification, NotificationType, User
from tasks.notification_tasks import TEMPLATES, _e164, _render, _send_sms, record_in_app
from tests.conftest import auth_headers, make_booking


async def _notifications(session_factory) -> list:
    async with session_factory() as s:
        return list((await s.execute(select(Notification))).scalars().all())


def _add_notification(
    db: AsyncSession, user: User, title: str, is_read: bool = False, booking_id=None,
) -> Notification:
    notification = Notification(
        id=uuid.uuid4(),
        user_id=user.id,
        booking_id=booking_id,
        type=NotificationType.BOOKING_CONFIRMED,
        title=title,
        body="Your booking is confirmed.",
        is_read=is_read,
    )
    db.add(notification)
    return notification


# ── Rendering ──────────────────────────────────────────────────────────────────

def test_render_fills_placeholders():
    text = _render(TEMPLATES[NotificationType.BOOKING_CONFIRMED.value]["sms"],
                   booking_ref="AB12CD34", item_name="Giraffe Centre", visit_date="10 Jun 2026",
                   currency="KES", amount="3700")
    assert text == "Booking AB12CD34 confirmed: Giraffe Centre, 10 Jun 2026. Amount KES 3700."


def test_render_missing_values():
    assert _render("Receipt {receipt}", receipt=None) == "Receipt -"
    assert _render("Ref {booking_ref}") == "Ref {booking_ref}"


def test_every_notification_type_has_a_template():
    assert set(TEMPLATES) == {t.value for t in NotificationType}


def test_event_payload_round_trip():
    original = event(NotificationType.NEW_BOOKING_HOST, booking_id=uuid.uuid4(), user_id=uuid.uuid4(), slots=3)
    restored = NotificationEvent.from_payload(original.to_payload())
    assert restored == original
    assert restored.data == {"slots": "3"}


def test_e164_formatting():
    assert _e164("0712345678") == "+254712345678"
    assert _e164("12345") is None


def test_send_sms_reports_failure(monkeypatch):
    def boom(phone, body):
        raise RuntimeError("Twilio unavailable")

    monkeypatch.setattr(notification_tasks, "_twilio_send", boom)
    assert _send_sms("+254712345678", "hello") is False

    sent = []
    monkeypatch.setattr(notification_tasks, "_twilio_send", lambda phone, body: sent.append((phone, body)))
    assert _send_sms("+254712345678", "hello") is True
    assert sent == [("+254712345678", "hello")]


# ── Fan-out ────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_account_holder_gets_in_app_email_and_sms(session_factory, user: User):
    booking_id = uuid.uuid4()
    emails, phones = await record_in_app(session_factory, event(
        NotificationType.BOOKING_CONFIRMED,
        booking_id=booking_id,
        user_id=user.id,
        email="wanjiru.alt@example.com",
        item_name="Giraffe Centre",
        booking_ref="AB12CD34",
        visit_date="10 Jun 2026",
        amount="3700",
    ))

    assert emails == {user.email, "wanjiru.alt@example.com"}
    assert phones == {user.phone}

    rows = await _notifications(session_factory)
    assert len(rows) == 1
    assert rows[0].user_id == user.id
    assert rows[0].booking_id == booking_id
    assert rows[0].title == "Booking Confirmed"
    assert "Giraffe Centre" in rows[0].body
    assert "KES 3700" in rows[0].body
    assert rows[0].sent_email and rows[0].sent_sms


@pytest.mark.asyncio
async def test_guest_gets_no_in_app_row(session_factory):
    emails, phones = await record_in_app(session_factory, event(
        NotificationType.BOOKING_CONFIRMED,
        email="guest@example.com",
        phone="0799000444",
        item_name="Karura Forest Walk",
    ))
    assert emails == {"guest@example.com"}
    assert phones == {"0799000444"}
    assert await _notifications(session_factory) == []


@pytest.mark.asyncio
async def test_host_notification_is_email_only(session_factory, host: User):
    emails, phones = await record_in_app(session_factory, event(
        NotificationType.NEW_BOOKING_HOST,
        user_id=host.id,
        item_name="Giraffe Centre",
        guest_name="Walk-in Guest",
    ))
    assert emails == {host.email}
    assert phones == set()
    rows = await _notifications(session_factory)
    assert rows[0].sent_sms is False


@pytest.mark.asyncio
async def test_refund_alert_goes_to_admins(session_factory, admin: User, user: User):
    emails, phones = await record_in_app(session_factory, event(
        NotificationType.PAYMENT_CAPACITY_CONFLICT,
        item_name="Hell's Gate Camp",
        checkout_request_id="ws_CO_01062026090001",
        receipt="TF9XYZ",
        amount="1000",
        payer_phone="254712345678",
        reason="capacity_exceeded",
    ))
    assert emails == {admin.email}
    assert phones == set()

    rows = await _notifications(session_factory)
    assert [r.user_id for r in rows] == [admin.id]
    assert "TF9XYZ" in rows[0].body
    assert "refund" in rows[0].body


# ── Inbox endpoints ────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_inbox_lists_own_notifications(client: AsyncClient, db: AsyncSession, user: User, other_user: User):
    _add_notification(db, user, "Mine")
    _add_notification(db, other_user, "Theirs")
    await db.commit()

    response = await client.get("/notifications", headers=auth_headers(user))
    assert response.status_code == 200
    assert [n["title"] for n in response.json()] == ["Mine"]


@pytest.mark.asyncio
async def test_unread_count_and_read_all(client: AsyncClient, db: AsyncSession, user: User):
    _add_notification(db, user, "One")
    _add_notification(db, user, "Two")
    _add_notification(db, user, "Old", is_read=True)
    await db.commit()

    response = await client.get("/notifications/unread-count", headers=auth_headers(user))
    assert response.json() == {"unread_count": 2}

    response = await client.get("/notifications", headers=auth_headers(user), params={"unread_only": True})
    assert len(response.json()) == 2

    response = await client.post("/notifications/read-all", headers=auth_headers(user))
    assert response.status_code == 200
    assert response.json()["message"] == "2 notifications marked as read"

    response = await client.get("/notifications/unread-count", headers=auth_headers(user))
    assert response.json() == {"unread_count": 0}


@pytest.mark.asyncio
async def test_mark_single_read(client: AsyncClient, db: AsyncSession, session_factory, user: User):
    notification = _add_notification(db, user, "One")
    await db.commit()

    response = await client.post(f"/notifications/{notification.id}/read", headers=auth_headers(user))
    assert response.status_code == 200

    async with session_factory() as s:
        stored = await s.get(Notification, notification.id)
        assert stored.is_read is True
        assert stored.read_at is not None


@pytest.mark.asyncio
async def test_cannot_mark_other_users_notification(
    client: AsyncClient, db: AsyncSession, session_factory, user: User, other_user: User,
):
    notification = _add_notification(db, other_user, "Theirs")
    await db.commit()

    response = await client.post(f"/notifications/{notification.id}/read", headers=auth_headers(user))
    assert response.status_code == 404
    assert response.json()["code"] == "notification_not_found"

    async with session_factory() as s:
        assert (await s.get(Notification, notification.id)).is_read is False


@pytest.mark.asyncio
async def test_inbox_requires_auth(client: AsyncClient):
    response = await client.get("/notifications")
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_inbox_filters_by_booking(client: AsyncClient, db: AsyncSession, user: User, flexible_trip):
    booking = await make_booking(db, flexible_trip, BookingType.TRIP, user=user, visit_date=date(2026, 6, 10))
    _add_notification(db, user, "About the safari", booking_id=booking.id)
    _add_notification(db, user, "Something else")
    await db.commit()

    response = await client.get("/notifications", headers=auth_headers(user), params={"booking_id": str(booking.id)})
    assert [n["title"] for n in response.json()] == ["About the safari"]
