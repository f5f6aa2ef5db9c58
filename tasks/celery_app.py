"""
tasks/celery_app.py
Celery app for out-of-request work: notification delivery (Resend, Twilio)
and reconciliation of STK pushes whose callback never arrived.

    celery -A tasks.celery_app worker -Q notifications,payments --loglevel=info
    celery -A tasks.celery_app beat --loglevel=info
"""

from celery import Celery
from celery.signals import setup_logging

from config.log_setup import configure_logging
from config.settings import settings

celery_app = Celery(
    "safari_booking",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["tasks.notification_tasks", "tasks.payment_tasks"],
)


@setup_logging.connect
def _worker_logging(**kwargs):
    configure_logging("worker")


celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    enable_utc=True,
    timezone="Africa/Nairobi",
    # A worker dying mid-send must not lose the notification
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    result_expires=3600,
    task_routes={
        "tasks.notification_tasks.*": {"queue": "notifications"},
        "tasks.payment_tasks.*": {"queue": "payments"},
    },
    task_annotations={
        "tasks.notification_tasks.send_sms": {"rate_limit": "10/s"},
        "tasks.notification_tasks.send_email": {"rate_limit": "20/s"},
    },
    beat_schedule={
        "reconcile-stale-payments": {
            "task": "tasks.payment_tasks.reconcile_stale_payments",
            "schedule": float(settings.PAYMENT_RECONCILE_AFTER_SECONDS),
        },
    },
)
