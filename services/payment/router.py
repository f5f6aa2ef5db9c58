"""
services/payment/router.py
M-Pesa payment endpoints: STK push initiation, retry of a failed push,
status polling, provider status query and the Daraja callback webhook.
"""

import logging

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db, get_session_factory
from services.booking.checkout import attach_contact, prepare_checkout
from services.booking.repository import BookingDraft
from services.capacity.ledger import ensure_capacity
from services.catalog.items import load_item
from services.notification.dispatcher import NotificationDispatcher, get_dispatcher
from services.payment.callback import CallbackProcessor
from services.payment.mpesa import MpesaClient, get_mpesa_client
from services.payment.orchestrator import PaymentOrchestrator
from shared.exceptions import PaymentNotFoundError, PaymentNotRetryableError, ValidationError
from shared.middleware.auth import get_optional_user
from shared.models.models import PaymentStatus, PendingPayment, User
from shared.schemas.schemas import (
    MpesaCallbackAck,
    PaymentStatusResponse,
    StkPushRequest,
    StkPushResponse,
)
from shared.utils.clock import Clock, get_clock

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["Payments"])

CALLBACK_ROUTE = "/mpesa/callback"
CALLBACK_PATH = router.prefix + CALLBACK_ROUTE


# ── Dependencies ──────────────────────────────────────────────

def get_orchestrator(
    provider: MpesaClient = Depends(get_mpesa_client),
    session_factory=Depends(get_session_factory),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> PaymentOrchestrator:
    return PaymentOrchestrator(provider, session_factory, dispatcher)


def get_callback_processor(
    session_factory=Depends(get_session_factory),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> CallbackProcessor:
    return CallbackProcessor(session_factory, dispatcher)


async def _get_payment_or_404(checkout_request_id: str, db: AsyncSession) -> PendingPayment:
    result = await db.execute(
        select(PendingPayment).where(PendingPayment.checkout_request_id == checkout_request_id)
    )
    payment = result.scalar_one_or_none()
    if not payment:
        raise PaymentNotFoundError("Payment not found")
    return payment


# ── Initiate ──────────────────────────────────────────────────

@router.post("/stk-push", response_model=StkPushResponse, status_code=status.HTTP_202_ACCEPTED)
async def stk_push(
    data: StkPushRequest,
    current_user: User = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    """
    Price the selection and prompt the payer's phone.
    The client then polls GET /payments/{checkout_request_id}; the booking
    is created by the callback.
    """
    prepared = await prepare_checkout(db, data, today=clock.today())
    if prepared.breakdown.is_free:
        raise ValidationError("Nothing to pay for this selection; use /bookings/checkout")
    draft = attach_contact(prepared.draft, data, current_user)
    await db.commit()

    payment = await orchestrator.initiate(draft, data.payment_phone)
    return StkPushResponse(
        checkout_request_id=payment.checkout_request_id,
        merchant_request_id=payment.merchant_request_id,
        amount=payment.amount,
        customer_message="Check your phone to complete the M-Pesa payment",
        payment_status=payment.payment_status.value,
    )


@router.post(
    "/{checkout_request_id}/retry",
    response_model=StkPushResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def retry_payment(
    checkout_request_id: str,
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    """
    Prompt the payer again for a failed attempt, reusing its stored booking.
    The failed row is left as it is; the new push gets its own pending row.
    """
    previous = await _get_payment_or_404(checkout_request_id, db)
    if previous.payment_status != PaymentStatus.FAILED:
        raise PaymentNotRetryableError(
            f"Only failed payments can be retried (this one is {previous.payment_status.value})"
        )

    draft = BookingDraft.from_booking_data(previous.booking_data)
    item = await load_item(db, draft.booking_type, draft.item_id)
    await ensure_capacity(db, item, draft.slots_booked, draft.visit_date, today=clock.today())
    phone = previous.phone_number
    await db.commit()

    payment = await orchestrator.initiate(draft, phone)
    logger.info(f"Checkout {checkout_request_id} retried as {payment.checkout_request_id}")
    return StkPushResponse(
        checkout_request_id=payment.checkout_request_id,
        merchant_request_id=payment.merchant_request_id,
        amount=payment.amount,
        customer_message="Check your phone to complete the M-Pesa payment",
        payment_status=payment.payment_status.value,
        retry_of=checkout_request_id,
    )


# ── Status ────────────────────────────────────────────────────

@router.get("/{checkout_request_id}", response_model=PaymentStatusResponse)
async def get_payment_status(
    checkout_request_id: str,
    db: AsyncSession = Depends(get_db),
):
    payment = await _get_payment_or_404(checkout_request_id, db)
    return PaymentStatusResponse.model_validate(payment)


@router.post("/{checkout_request_id}/query", response_model=PaymentStatusResponse)
async def query_payment_status(
    checkout_request_id: str,
    db: AsyncSession = Depends(get_db),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    """Ask the provider once. A definitive answer is applied like a callback."""
    payment = await _get_payment_or_404(checkout_request_id, db)
    if payment.payment_status == PaymentStatus.PENDING:
        await db.commit()
        await orchestrator.fallback_query(checkout_request_id)
        db.expire_all()
        payment = await _get_payment_or_404(checkout_request_id, db)
    return PaymentStatusResponse.model_validate(payment)


# ── Daraja Callback ───────────────────────────────────────────

@router.post(CALLBACK_ROUTE, response_model=MpesaCallbackAck, include_in_schema=False)
async def mpesa_callback(
    request: Request,
    processor: CallbackProcessor = Depends(get_callback_processor),
):
    """
    Safaricom posts the STK result here. Always acknowledged: a non-success
    answer makes Daraja retry a payload we have already logged.
    """
    try:
        payload = await request.json()
    except ValueError:
        body = await request.body()
        payload = {"raw": body.decode("utf-8", errors="replace")}

    try:
        await processor.handle(payload)
    except Exception:
        logger.exception("Unhandled error in M-Pesa callback")
    return MpesaCallbackAck()
