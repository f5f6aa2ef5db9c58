"""
config/settings.py
Environment-driven configuration (pydantic-settings). Everything the booking
engine tunes at deploy time lives here: Daraja credentials, poll timing,
capacity thresholds and the delivery providers.
"""

from functools import lru_cache
from typing import List, Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

DARAJA_HOSTS = {
    "sandbox": "https://sandbox.safaricom.co.ke",
    "production": "https://api.safaricom.co.ke",
}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Service ──────────────────────────────────────────────
    APP_NAME: str = "Safari Booking Engine"
    APP_ENV: str = "development"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    WORKERS: int = 4
    ALLOWED_ORIGINS: str = "http://localhost:5173,http://localhost:3000"

    # ── Storage ──────────────────────────────────────────────
    DATABASE_URL: str
    DATABASE_POOL_SIZE: int = 20
    DATABASE_MAX_OVERFLOW: int = 40
    DATABASE_POOL_TIMEOUT: int = 30
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_MAX_CONNECTIONS: int = 50
    REDIS_PAYMENT_STATUS_TTL: int = 600

    # Tokens come from the identity service and share its signing key
    JWT_SECRET_KEY: str
    JWT_ALGORITHM: str = "HS256"
    JWT_ACCESS_TOKEN_EXPIRE_MINUTES: int = 15

    # ── M-Pesa (Daraja) ──────────────────────────────────────
    MPESA_ENV: Literal["sandbox", "production"] = "sandbox"
    MPESA_CONSUMER_KEY: str = ""
    MPESA_CONSUMER_SECRET: str = ""
    MPESA_PASSKEY: str = ""
    MPESA_SHORTCODE: str = ""
    MPESA_CALLBACK_URL: str = "http://localhost:8000/payments/mpesa/callback"
    MPESA_HTTP_TIMEOUT: float = 30.0
    MPESA_MIN_AMOUNT: int = 1
    MPESA_MAX_AMOUNT: int = 150000

    # ── Payment lifecycle ────────────────────────────────────
    PAYMENT_POLL_INTERVAL_SECONDS: float = 2.0
    PAYMENT_POLL_TIMEOUT_SECONDS: float = 40.0
    PAYMENT_RECONCILE_AFTER_SECONDS: int = 120

    # ── Booking rules ────────────────────────────────────────
    CURRENCY: str = "KES"
    RESCHEDULE_CUTOFF_HOURS: int = 48
    CANCELLATION_CUTOFF_HOURS: int = 48
    LOW_CAPACITY_THRESHOLD: int = 10
    PARTIAL_BOOKING_RATIO: float = 0.7
    MAX_SLOTS_PER_BOOKING: int = 100
    RATE_LIMIT_UNAUTH_PER_MINUTE: int = 20

    # ── Delivery ─────────────────────────────────────────────
    RESEND_API_KEY: str = ""
    EMAIL_FROM: str = "bookings@safaribooking.co.ke"
    EMAIL_FROM_NAME: str = "Safari Bookings"
    TWILIO_ACCOUNT_SID: str = ""
    TWILIO_AUTH_TOKEN: str = ""
    TWILIO_FROM_NUMBER: str = ""
    # Receives refund alerts; all active admins when unset
    ADMIN_NOTIFY_USER_ID: Optional[str] = None

    # ── Workers ──────────────────────────────────────────────
    CELERY_BROKER_URL: str = "redis://localhost:6379/1"
    CELERY_RESULT_BACKEND: str = "redis://localhost:6379/2"

    @property
    def allowed_origins_list(self) -> List[str]:
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",") if o.strip()]

    @property
    def mpesa_base_url(self) -> str:
        return DARAJA_HOSTS[self.MPESA_ENV]


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
