"""
services/payment/callback.py
M-Pesa STK callback processing.

1. Log the raw payload (mpesa_callback_log), committed on its own.
2. Move the PendingPayment out of `pending` exactly once.
3. On success, materialise the booking (BookingRepository.create_from_payment).
4. Publish notifications after commit.
5. If any of that fails, settle the payment on its own with no booking and
   flag the refund, so nothing is left pending.

The same path applies synthetic callbacks built from STK status queries.
CallbackProcessor.handle never raises: the provider always gets its ack.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config.redis_client import RedisCache, get_optional_redis
from services.booking.repository import BookingRepository, stored_item_name, refund_alert
from services.notification.dispatcher import NotificationDispatcher, NotificationEvent
from shared.models.models import CallbackSource, MpesaCallbackLog, PaymentStatus, PendingPayment

logger = logging.getLogger(__name__)

SUCCESS_CODE = "0"
BOOKING_FAILED = "booking_failed"


class MalformedCallback(ValueError):
    pass


@dataclass(frozen=True)
class CallbackResult:
    checkout_request_id: str
    result_code: str
    result_desc: Optional[str] = None
    merchant_request_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.result_code == SUCCESS_CODE

    @property
    def receipt(self) -> Optional[str]:
        value = self.metadata.get("MpesaReceiptNumber")
        return str(value) if value is not None else None


@dataclass
class CallbackOutcome:
    checkout_request_id: str
    applied: bool
    payment_status: Optional[PaymentStatus] = None
    booking_id: Optional[uuid.UUID] = None
    booking_error: Optional[str] = None
    events: List[NotificationEvent] = field(default_factory=list)


def parse_stk_callback(payload: Any) -> CallbackResult:
    """Extract Body.stkCallback. Raises MalformedCallback on anything unexpected."""
    try:
        callback = payload["Body"]["stkCallback"]
        checkout_request_id = callback["CheckoutRequestID"]
        result_code = callback["ResultCode"]
    except (KeyError, TypeError):
        raise MalformedCallback("Missing Body.stkCallback fields")

    if not checkout_request_id or result_code is None:
        raise MalformedCallback("Empty CheckoutRequestID or ResultCode")

    metadata = {}
    items = ((callback.get("CallbackMetadata") or {}).get("Item")) or []
    for item in items:
        if isinstance(item, dict) and "Name" in item:
            metadata[item["Name"]] = item.get("Value")

    return CallbackResult(
        checkout_request_id=str(checkout_request_id),
        result_code=str(result_code),
        result_desc=callback.get("ResultDesc"),
        merchant_request_id=callback.get("MerchantRequestID"),
        metadata=metadata,
    )


def callback_log_entry(
    payload: Any,
    result: Optional[CallbackResult],
    source: CallbackSource = CallbackSource.CALLBACK,
) -> MpesaCallbackLog:
    return MpesaCallbackLog(
        checkout_request_id=result.checkout_request_id if result else None,
        merchant_request_id=result.merchant_request_id if result else None,
        result_code=result.result_code if result else None,
        result_desc=result.result_desc if result else None,
        raw_payload=payload if isinstance(payload, dict) else {"raw": str(payload)},
        source=source,
    )


async def apply_result(db: AsyncSession, result: CallbackResult) -> CallbackOutcome:
    """Apply a provider result to its PendingPayment. Does not commit."""
    payment = (await db.execute(
        select(PendingPayment)
        .where(PendingPayment.checkout_request_id == result.checkout_request_id)
        .with_for_update()
    )).scalar_one_or_none()

    if payment is None:
        logger.warning(f"Callback for unknown checkout {result.checkout_request_id}")
        return CallbackOutcome(checkout_request_id=result.checkout_request_id, applied=False)

    if payment.payment_status != PaymentStatus.PENDING:
        logger.info(
            f"Ignoring repeated result for checkout {result.checkout_request_id} "
            f"(already {payment.payment_status.value})"
        )
        return CallbackOutcome(
            checkout_request_id=result.checkout_request_id,
            applied=False,
            payment_status=payment.payment_status,
            booking_id=payment.booking_id,
            booking_error=payment.booking_error,
        )

    payment.result_code = result.result_code
    payment.result_desc = result.result_desc
    events: List[NotificationEvent] = []

    if result.succeeded:
        payment.payment_status = PaymentStatus.COMPLETED
        payment.mpesa_receipt_number = result.receipt
        _, events = await BookingRepository(db).create_from_payment(payment)
    else:
        payment.payment_status = PaymentStatus.FAILED
        logger.info(
            f"Payment {result.checkout_request_id} failed: "
            f"{result.result_code} {result.result_desc}"
        )

    await db.flush()
    return CallbackOutcome(
        checkout_request_id=result.checkout_request_id,
        applied=True,
        payment_status=payment.payment_status,
        booking_id=payment.booking_id,
        booking_error=payment.booking_error,
        events=events,
    )


class CallbackProcessor:

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        dispatcher: NotificationDispatcher,
        redis=None,
    ):
        self.session_factory = session_factory
        self.dispatcher = dispatcher
        self.redis = redis

    async def handle(
        self,
        payload: Any,
        source: CallbackSource = CallbackSource.CALLBACK,
    ) -> Optional[CallbackOutcome]:
        result = None
        try:
            result = parse_stk_callback(payload)
        except MalformedCallback as e:
            logger.warning(f"Malformed M-Pesa callback: {e}")

        try:
            async with self.session_factory() as db:
                db.add(callback_log_entry(payload, result, source))
                await db.commit()
        except Exception:
            logger.exception("Could not write M-Pesa callback log")

        if result is None:
            return None

        try:
            outcome = await self._apply(result)
        except Exception:
            logger.exception(f"Processing M-Pesa result for {result.checkout_request_id} failed")
            outcome = await self._settle_without_booking(result)
            if outcome is None:
                return None

        self.dispatcher.publish(outcome.events)
        await self._cache_status(outcome)
        return outcome

    async def _apply(self, result: CallbackResult) -> CallbackOutcome:
        for attempt in range(2):
            async with self.session_factory() as db:
                try:
                    outcome = await apply_result(db, result)
                    await db.commit()
                    return outcome
                except IntegrityError:
                    await db.rollback()
                    if attempt:
                        raise
                    # A concurrent delivery inserted the booking first; re-read
                    logger.info(f"Duplicate booking insert for {result.checkout_request_id}")

    async def _settle_without_booking(self, result: CallbackResult) -> Optional[CallbackOutcome]:
        """
        Last resort when applying a result blew up: record the provider's
        verdict on a fresh session so the payment leaves `pending`. A success
        with no booking behind it is flagged for a refund.
        """
        try:
            async with self.session_factory() as db:
                payment = (await db.execute(
                    select(PendingPayment)
                    .where(PendingPayment.checkout_request_id == result.checkout_request_id)
                    .with_for_update()
                )).scalar_one_or_none()
                if payment is None or payment.payment_status != PaymentStatus.PENDING:
                    return None

                payment.result_code = result.result_code
                payment.result_desc = result.result_desc
                events: List[NotificationEvent] = []
                if result.succeeded:
                    payment.payment_status = PaymentStatus.COMPLETED
                    payment.mpesa_receipt_number = result.receipt
                    existing = await BookingRepository(db).get_by_checkout_request_id(result.checkout_request_id)
                    if existing is not None:
                        payment.booking_id = existing.id
                    else:
                        payment.booking_error = BOOKING_FAILED
                        events.append(refund_alert(payment, stored_item_name(payment), BOOKING_FAILED))
                else:
                    payment.payment_status = PaymentStatus.FAILED
                await db.commit()
        except Exception:
            logger.exception(f"Could not settle checkout {result.checkout_request_id}")
            return None

        logger.warning(
            f"Checkout {result.checkout_request_id} settled as {payment.payment_status.value} "
            f"outside the normal path (booking_error={payment.booking_error})"
        )
        return CallbackOutcome(
            checkout_request_id=result.checkout_request_id,
            applied=True,
            payment_status=payment.payment_status,
            booking_id=payment.booking_id,
            booking_error=payment.booking_error,
            events=events,
        )

    async def _cache_status(self, outcome: CallbackOutcome) -> None:
        redis = self.redis if self.redis is not None else get_optional_redis()
        if redis is None or outcome.payment_status in (None, PaymentStatus.PENDING):
            return
        try:
            await RedisCache(redis).cache_payment_status(
                outcome.checkout_request_id,
                {
                    "payment_status": outcome.payment_status.value,
                    "booking_id": str(outcome.booking_id) if outcome.booking_id else None,
                    "booking_error": outcome.booking_error,
                },
            )
        except Exception as e:
            logger.warning(f"Payment status cache write failed: {e}")
