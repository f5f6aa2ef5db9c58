"""
tasks/notification_tasks.py
Celery tasks for multi-channel notification delivery.

Booking code publishes a NotificationEvent after its transaction commits
(services/notification/dispatcher.py). deliver_notification writes the
in-app rows and fans out to email (Resend) and SMS (Twilio).
Failures in one channel never block other channels.
"""

import asyncio
import logging
import uuid
from typing import List, Optional, Set, Tuple

from pybreaker import CircuitBreakerError
from sqlalchemy import select

from config.database import create_worker_session_factory
from config.settings import settings
from services.notification.dispatcher import NotificationEvent
from services.payment.mpesa import normalize_phone
from shared.exceptions import ValidationError
from shared.models.models import Notification, NotificationType, User, UserRole
from shared.utils.resilience import circuit_breaker_manager
from tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


# ── Notification Templates ─────────────────────────────────────────────────────

TEMPLATES = {
    NotificationType.BOOKING_CONFIRMED.value: {
        "title": "Booking Confirmed",
        "body": "Your booking {booking_ref} for {item_name} on {visit_date} is confirmed. Amount: {currency} {amount}.",
        "sms": "Booking {booking_ref} confirmed: {item_name}, {visit_date}. Amount {currency} {amount}.",
        "email_subject": "Booking Confirmed - {booking_ref}",
    },
    NotificationType.NEW_BOOKING_HOST.value: {
        "title": "New Booking",
        "body": "{guest_name} booked {item_name} for {visit_date} ({slots} guest(s), {currency} {amount}). Ref {booking_ref}.",
        "sms": None,
        "email_subject": "New booking for {item_name} - {booking_ref}",
    },
    NotificationType.BOOKING_RESCHEDULED.value: {
        "title": "Booking Rescheduled",
        "body": "Your booking {booking_ref} for {item_name} has moved from {old_date} to {new_date}.",
        "sms": "Booking {booking_ref} moved to {new_date}.",
        "email_subject": "Booking Rescheduled - {booking_ref}",
    },
    NotificationType.BOOKING_RESCHEDULED_HOST.value: {
        "title": "Guest Rescheduled",
        "body": "{guest_name} moved booking {booking_ref} for {item_name} from {old_date} to {new_date}.",
        "sms": None,
        "email_subject": "Booking {booking_ref} rescheduled",
    },
    NotificationType.BOOKING_CANCELLED.value: {
        "title": "Booking Cancelled",
        "body": "Your booking {booking_ref} for {item_name} on {visit_date} has been cancelled.",
        "sms": "Booking {booking_ref} for {item_name} cancelled.",
        "email_subject": "Booking Cancelled - {booking_ref}",
    },
    NotificationType.BOOKING_CANCELLED_HOST.value: {
        "title": "Booking Cancelled",
        "body": "{guest_name} cancelled booking {booking_ref} for {item_name} on {visit_date} ({slots} guest(s)).",
        "sms": None,
        "email_subject": "Booking {booking_ref} cancelled",
    },
    NotificationType.PAYMENT_CAPACITY_CONFLICT.value: {
        "title": "Refund Required",
        "body": (
            "Payment {receipt} of {currency} {amount} from {payer_phone} for {item_name} "
            "could not be booked ({reason}). Checkout {checkout_request_id}. Please refund the payer."
        ),
        "sms": None,
        "email_subject": "Refund required - {checkout_request_id}",
    },
}


def _render(template: str, **kwargs) -> str:
    """Simple string template renderer. Unknown placeholders are left as they are."""
    for key, value in kwargs.items():
        template = template.replace(f"{{{key}}}", "-" if value is None else str(value))
    return template


def _html(title: str, body: str) -> str:
    return f"""
    <div style="font-family: sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">
        <div style="background: #1B5E20; padding: 20px; border-radius: 8px 8px 0 0; text-align: center;">
            <h1 style="color: white; margin: 0;">{settings.EMAIL_FROM_NAME}</h1>
        </div>
        <div style="background: white; padding: 24px; border: 1px solid #eee; border-radius: 0 0 8px 8px;">
            <h2 style="color: #333;">{title}</h2>
            <p style="color: #666; line-height: 1.6;">{body}</p>
        </div>
    </div>
    """


# ── In-app rows ────────────────────────────────────────────────────────────────

async def _recipients(db, event: NotificationEvent) -> List[User]:
    """Account holders for an event. No recipient at all means admins."""
    if event.user_id:
        user = await db.get(User, uuid.UUID(event.user_id))
        return [user] if user else []
    if event.email or event.phone:
        return []

    if settings.ADMIN_NOTIFY_USER_ID:
        admin = await db.get(User, uuid.UUID(settings.ADMIN_NOTIFY_USER_ID))
        if admin:
            return [admin]
    result = await db.execute(
        select(User).where(User.role == UserRole.ADMIN, User.is_active == True)
    )
    return list(result.scalars().all())


async def record_in_app(session_factory, event: NotificationEvent) -> Tuple[Set[str], Set[str]]:
    """
    Write one in-app notification per account recipient.
    Returns the email addresses and phone numbers to reach.
    """
    template = TEMPLATES[event.type.value]
    data = {"currency": settings.CURRENCY, **event.data}
    title = _render(template["title"], **data)
    body = _render(template["body"], **data)

    async with session_factory() as db:
        users = await _recipients(db, event)

        emails = {u.email for u in users if u.email}
        phones = {u.phone for u in users if u.phone}
        if event.email:
            emails.add(event.email)
        if event.phone:
            phones.add(event.phone)
        if not template["sms"]:
            phones = set()

        for user in users:
            db.add(Notification(
                user_id=user.id,
                booking_id=uuid.UUID(event.booking_id) if event.booking_id else None,
                type=event.type,
                title=title,
                body=body,
                data=event.data,
                sent_email=bool(emails),
                sent_sms=bool(phones),
            ))
        await db.commit()

    return emails, phones


# ── Core Delivery Functions ────────────────────────────────────────────────────

def _twilio_send(phone: str, body: str) -> None:
    from twilio.rest import Client
    client = Client(settings.TWILIO_ACCOUNT_SID, settings.TWILIO_AUTH_TOKEN)
    client.messages.create(body=body, from_=settings.TWILIO_FROM_NUMBER, to=phone)


def _resend_send(to_email: str, subject: str, html_body: str) -> None:
    import resend
    resend.api_key = settings.RESEND_API_KEY
    resend.Emails.send({
        "from": f"{settings.EMAIL_FROM_NAME} <{settings.EMAIL_FROM}>",
        "to": [to_email],
        "subject": subject,
        "html": html_body,
    })


def _e164(phone: str) -> Optional[str]:
    try:
        return "+" + normalize_phone(phone)
    except ValidationError:
        logger.warning(f"Skipping SMS to unrecognised number {phone}")
        return None


def _send_sms(phone: str, body: str) -> bool:
    """Send SMS via Twilio. Returns True on success."""
    breaker = circuit_breaker_manager.get_breaker("twilio")
    try:
        breaker.call(_twilio_send, phone, body)
        return True
    except CircuitBreakerError:
        logger.warning("Twilio circuit open; SMS deferred")
        return False
    except Exception as e:
        logger.warning(f"SMS send failed: {e}")
        return False


def _send_email(to_email: str, subject: str, html_body: str) -> bool:
    """Send transactional email via Resend. Returns True on success."""
    breaker = circuit_breaker_manager.get_breaker("resend")
    try:
        breaker.call(_resend_send, to_email, subject, html_body)
        return True
    except CircuitBreakerError:
        logger.warning("Resend circuit open; email deferred")
        return False
    except Exception as e:
        logger.warning(f"Email send failed: {e}")
        return False


# ── Individual Channel Tasks ───────────────────────────────────────────────────

@celery_app.task(bind=True, max_retries=3, default_retry_delay=120)
def send_sms(self, phone: str, body: str):
    """Send a single SMS via Twilio with retry on failure."""
    if not _send_sms(phone, body):
        raise self.retry(countdown=120 * (2 ** self.request.retries))


@celery_app.task(bind=True, max_retries=3, default_retry_delay=60)
def send_email(self, to_email: str, subject: str, html_body: str):
    """Send a transactional email via Resend with retry on failure."""
    if not _send_email(to_email, subject, html_body):
        raise self.retry(countdown=60 * (2 ** self.request.retries))


# ── Event Delivery ─────────────────────────────────────────────────────────────

_session_factory = None


def _worker_sessions():
    global _session_factory
    if _session_factory is None:
        _session_factory = create_worker_session_factory()
    return _session_factory


@celery_app.task(bind=True, max_retries=3, default_retry_delay=30)
def deliver_notification(self, payload: dict):
    """In-app rows first, then one email / SMS task per address."""
    event = NotificationEvent.from_payload(payload)
    template = TEMPLATES[event.type.value]

    try:
        emails, phones = asyncio.run(record_in_app(_worker_sessions(), event))
    except Exception as exc:
        logger.exception(f"Recording {event.type.value} notification failed")
        raise self.retry(exc=exc, countdown=30 * (2 ** self.request.retries))

    data = {"currency": settings.CURRENCY, **event.data}

    if settings.RESEND_API_KEY:
        subject = _render(template["email_subject"], **data)
        html_body = _html(_render(template["title"], **data), _render(template["body"], **data))
        for email in emails:
            send_email.delay(email, subject, html_body)

    if settings.TWILIO_ACCOUNT_SID and template["sms"]:
        body = _render(template["sms"], **data)
        for phone in filter(None, (_e164(p) for p in phones)):
            send_sms.delay(phone, body)

    logger.info(
        f"Delivered {event.type.value} for booking {event.booking_id}: "
        f"{len(emails)} email(s), {len(phones)} phone(s)"
    )
