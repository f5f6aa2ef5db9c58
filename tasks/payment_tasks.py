"""
tasks/payment_tasks.py
Celery tasks for payment lifecycle operations:
- Reconciliation of STK pushes whose callback never arrived

A definitive provider answer is applied through the same callback processing
as a real Daraja callback, so the task is idempotent: running twice has no
side effect.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Dict

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import create_worker_session_factory
from config.settings import settings
from services.notification.dispatcher import NotificationDispatcher
from services.payment.callback import CallbackProcessor
from services.payment.mpesa import MpesaClient
from shared.exceptions import ProviderError
from shared.models.models import CallbackSource, PaymentStatus, PendingPayment
from shared.utils.clock import system_clock
from tasks.celery_app import celery_app

logger = logging.getLogger(__name__)

RECONCILE_BATCH_SIZE = 50


async def reconcile(
    session_factory: Callable[[], AsyncSession],
    provider: MpesaClient,
    dispatcher: NotificationDispatcher,
    now: datetime,
    older_than_seconds: int = settings.PAYMENT_RECONCILE_AFTER_SECONDS,
    limit: int = RECONCILE_BATCH_SIZE,
) -> Dict[str, int]:
    """Query the provider for payments still pending after `older_than_seconds`."""
    cutoff = now - timedelta(seconds=older_than_seconds)
    async with session_factory() as db:
        result = await db.execute(
            select(PendingPayment.checkout_request_id)
            .where(
                PendingPayment.payment_status == PaymentStatus.PENDING,
                PendingPayment.created_at < cutoff,
            )
            .order_by(PendingPayment.created_at)
            .limit(limit)
        )
        stale = list(result.scalars().all())

    processor = CallbackProcessor(session_factory, dispatcher)
    settled = 0
    for checkout_request_id in stale:
        try:
            query = await provider.stk_query(checkout_request_id)
        except ProviderError as e:
            logger.warning(f"Reconcile query for {checkout_request_id} failed: {e.message}")
            continue

        if query.rate_limited:
            logger.info("Provider rate limit hit; stopping this reconcile run")
            break
        if not query.is_definitive:
            continue

        outcome = await processor.handle(query.to_callback_payload(), source=CallbackSource.QUERY)
        if outcome is not None and outcome.applied:
            settled += 1

    return {"checked": len(stale), "settled": settled}


async def _run_reconcile() -> Dict[str, int]:
    provider = MpesaClient.from_settings()
    try:
        return await reconcile(
            create_worker_session_factory(),
            provider,
            NotificationDispatcher(),
            system_clock.now(),
        )
    finally:
        await provider.aclose()


@celery_app.task(bind=True, max_retries=0)
def reconcile_stale_payments(self):
    """Beat task, every 2 minutes. Settles lost callbacks without a client."""
    summary = asyncio.run(_run_reconcile())
    if summary["checked"]:
        logger.info(f"Payment reconciliation: {summary['settled']}/{summary['checked']} settled")
    return summary
