"""
services/payment/orchestrator.py
Drives one STK-push payment attempt to a terminal state:

    INITIATED -> PENDING -> COMPLETED | FAILED | TIMED_OUT

The orchestrator never creates bookings. The callback processor does, both for
real provider callbacks and for the synthetic one built from the fallback
status query, so a lost callback still yields exactly one booking.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.redis_client import RedisCache, get_optional_redis
from config.settings import settings
from services.booking.repository import BookingDraft
from services.notification.dispatcher import NotificationDispatcher
from services.payment.callback import CallbackProcessor
from services.payment.mpesa import MpesaClient, StkPushResult, normalize_phone
from shared.exceptions import PaymentInitiationError, ProviderError
from shared.models.models import CallbackSource, PaymentStatus, PendingPayment

logger = logging.getLogger(__name__)


class PaymentState(str, Enum):
    INITIATED = "initiated"
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class PaymentOutcome:
    state: PaymentState
    checkout_request_id: str
    booking_id: Optional[uuid.UUID] = None
    booking_error: Optional[str] = None
    reason: Optional[str] = None


@dataclass(frozen=True)
class StatusSnapshot:
    payment_status: PaymentStatus
    booking_id: Optional[uuid.UUID] = None
    booking_error: Optional[str] = None
    result_desc: Optional[str] = None


def account_reference(item_id: uuid.UUID) -> str:
    return str(item_id)[:12]


def transaction_description(item_name: str) -> str:
    return (item_name or "Booking")[:13]


class PaymentOrchestrator:

    def __init__(
        self,
        provider: MpesaClient,
        session_factory: Callable[[], AsyncSession],
        dispatcher: NotificationDispatcher,
        *,
        poll_interval: float = settings.PAYMENT_POLL_INTERVAL_SECONDS,
        poll_timeout: float = settings.PAYMENT_POLL_TIMEOUT_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        redis=None,
    ):
        self.provider = provider
        self.session_factory = session_factory
        self.dispatcher = dispatcher
        self.poll_interval = poll_interval
        self.poll_timeout = poll_timeout
        self.sleep = sleep
        self.redis = redis
        self.callbacks = CallbackProcessor(session_factory, dispatcher, redis=redis)

    # ── Entry point ───────────────────────────────────────────

    async def run(self, draft: BookingDraft, phone: str) -> PaymentOutcome:
        payment = await self.initiate(draft, phone)
        return await self.await_completion(payment.checkout_request_id)

    # ── INITIATED ─────────────────────────────────────────────

    async def initiate(self, draft: BookingDraft, phone: str) -> PendingPayment:
        """
        Send the STK push and persist the PendingPayment.
        Raises PaymentInitiationError straight away when the push is refused.
        """
        phone = normalize_phone(phone)
        try:
            push = await self.provider.stk_push(
                phone=phone,
                amount=draft.total_amount,
                account_reference=account_reference(draft.item_id),
                description=transaction_description(draft.item_name),
            )
        except (PaymentInitiationError, ProviderError) as e:
            await self._record_rejected_push(draft, phone, e.message)
            raise PaymentInitiationError(e.message)

        return await self._record_pending(draft, phone, push)

    async def _record_pending(self, draft: BookingDraft, phone: str, push: StkPushResult) -> PendingPayment:
        payment = PendingPayment(
            checkout_request_id=push.checkout_request_id,
            merchant_request_id=push.merchant_request_id,
            phone_number=phone,
            amount=draft.total_amount,
            account_reference=account_reference(draft.item_id),
            transaction_desc=transaction_description(draft.item_name),
            booking_data=draft.to_booking_data(),
            user_id=draft.user_id,
            host_id=draft.host_id,
            payment_status=PaymentStatus.PENDING,
        )
        async with self.session_factory() as db:
            db.add(payment)
            await db.commit()
        logger.info(f"STK push sent: checkout {push.checkout_request_id}, amount {draft.total_amount}")
        return payment

    async def _record_rejected_push(self, draft: BookingDraft, phone: str, reason: str) -> None:
        """Keep a failed row for the rejected attempt. Best effort."""
        try:
            async with self.session_factory() as db:
                db.add(PendingPayment(
                    checkout_request_id=f"rejected-{uuid.uuid4()}",
                    phone_number=phone,
                    amount=draft.total_amount,
                    account_reference=account_reference(draft.item_id),
                    transaction_desc=transaction_description(draft.item_name),
                    booking_data=draft.to_booking_data(),
                    user_id=draft.user_id,
                    host_id=draft.host_id,
                    payment_status=PaymentStatus.FAILED,
                    result_desc=reason[:500],
                ))
                await db.commit()
        except Exception:
            logger.exception("Could not record rejected STK push")

    # ── PENDING ───────────────────────────────────────────────

    async def await_completion(self, checkout_request_id: str) -> PaymentOutcome:
        """Poll every interval until the budget runs out, then query once."""
        polls = max(1, int(self.poll_timeout // self.poll_interval))
        for _ in range(polls):
            await self.sleep(self.poll_interval)
            snapshot = await self.read_status(checkout_request_id)
            if snapshot is not None and snapshot.payment_status != PaymentStatus.PENDING:
                return self._terminal_outcome(checkout_request_id, snapshot)

        return await self.fallback_query(checkout_request_id)

    async def read_status(self, checkout_request_id: str) -> Optional[StatusSnapshot]:
        """Current status, or None when it could not be read (treated as pending)."""
        redis = self.redis if self.redis is not None else get_optional_redis()
        if redis is not None:
            try:
                cached = await RedisCache(redis).get_payment_status(checkout_request_id)
                if cached:
                    return StatusSnapshot(
                        payment_status=PaymentStatus(cached["payment_status"]),
                        booking_id=uuid.UUID(cached["booking_id"]) if cached.get("booking_id") else None,
                        booking_error=cached.get("booking_error"),
                    )
            except Exception as e:
                logger.debug(f"Payment status cache read failed: {e}")

        try:
            async with self.session_factory() as db:
                payment = (await db.execute(
                    select(PendingPayment).where(
                        PendingPayment.checkout_request_id == checkout_request_id
                    )
                )).scalar_one_or_none()
        except Exception as e:
            logger.warning(f"Transient error reading payment {checkout_request_id}: {e}")
            return None

        if payment is None:
            return None
        return StatusSnapshot(
            payment_status=payment.payment_status,
            booking_id=payment.booking_id,
            booking_error=payment.booking_error,
            result_desc=payment.result_desc,
        )

    # ── TIMED_OUT ─────────────────────────────────────────────

    async def fallback_query(self, checkout_request_id: str) -> PaymentOutcome:
        """
        One status query after the poll budget is spent. A definitive answer
        is applied through the callback path and reported; anything else is
        reported as timed out.
        """
        try:
            query = await self.provider.stk_query(checkout_request_id)
        except ProviderError as e:
            logger.warning(f"Fallback query for {checkout_request_id} failed: {e.message}")
            return PaymentOutcome(
                state=PaymentState.TIMED_OUT,
                checkout_request_id=checkout_request_id,
                reason=f"Payment confirmation timed out: {e.message}",
            )

        if not query.is_definitive:
            return PaymentOutcome(
                state=PaymentState.TIMED_OUT,
                checkout_request_id=checkout_request_id,
                reason=f"Payment confirmation timed out: {query.result_desc or 'no result yet'}",
            )

        await self.callbacks.handle(query.to_callback_payload(), source=CallbackSource.QUERY)
        snapshot = await self.read_status(checkout_request_id)

        if query.succeeded:
            return PaymentOutcome(
                state=PaymentState.COMPLETED,
                checkout_request_id=checkout_request_id,
                booking_id=snapshot.booking_id if snapshot else None,
                booking_error=snapshot.booking_error if snapshot else None,
            )
        return PaymentOutcome(
            state=PaymentState.FAILED,
            checkout_request_id=checkout_request_id,
            reason=f"Payment not confirmed before timeout: {query.result_desc}",
        )

    @staticmethod
    def _terminal_outcome(checkout_request_id: str, snapshot: StatusSnapshot) -> PaymentOutcome:
        if snapshot.payment_status == PaymentStatus.COMPLETED:
            return PaymentOutcome(
                state=PaymentState.COMPLETED,
                checkout_request_id=checkout_request_id,
                booking_id=snapshot.booking_id,
                booking_error=snapshot.booking_error,
            )
        return PaymentOutcome(
            state=PaymentState.FAILED,
            checkout_request_id=checkout_request_id,
            reason=snapshot.result_desc or "Payment was not completed",
        )
