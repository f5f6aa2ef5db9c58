"""
services/payment/mpesa.py
Safaricom Daraja (M-Pesa) client: OAuth token, STK push, STK push query.

Sandbox and production differ only by base URL (settings.MPESA_ENV).
"""

import base64
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from config.settings import settings
from shared.exceptions import PaymentInitiationError, ProviderError, ValidationError
from shared.utils.clock import Clock, system_clock

logger = logging.getLogger(__name__)

# Daraja timestamps are East Africa Time
EAT = timezone(timedelta(hours=3))

RATE_LIMIT_FAULT = "policies.ratelimit.SpikeArrestViolation"
SUCCESS_CODE = "0"


# ── Helpers ───────────────────────────────────────────────────

def normalize_phone(phone: str) -> str:
    """
    Normalise a Kenyan mobile number to 2547XXXXXXXX / 2541XXXXXXXX.
    Accepts 07.., 01.., 7.., 254.., +254.. and the common 2540.. typo.
    """
    digits = re.sub(r"\D", "", phone or "")
    if digits.startswith("2540"):
        digits = "254" + digits[4:]
    elif digits.startswith("254"):
        pass
    elif digits.startswith("0"):
        digits = "254" + digits[1:]
    elif len(digits) == 9:
        digits = "254" + digits

    if not re.fullmatch(r"254[17]\d{8}", digits):
        raise ValidationError(f"'{phone}' is not a valid M-Pesa phone number")
    return digits


def normalize_amount(amount) -> int:
    """M-Pesa charges whole shillings only."""
    whole = int(Decimal(str(amount)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    if whole < settings.MPESA_MIN_AMOUNT or whole > settings.MPESA_MAX_AMOUNT:
        raise ValidationError(
            f"M-Pesa amount must be between {settings.MPESA_MIN_AMOUNT} "
            f"and {settings.MPESA_MAX_AMOUNT}"
        )
    return whole


def format_timestamp(moment: datetime) -> str:
    return moment.astimezone(EAT).strftime("%Y%m%d%H%M%S")


def build_password(shortcode: str, passkey: str, timestamp: str) -> str:
    return base64.b64encode(f"{shortcode}{passkey}{timestamp}".encode()).decode()


# ── Responses ─────────────────────────────────────────────────

@dataclass(frozen=True)
class StkPushResult:
    checkout_request_id: str
    merchant_request_id: Optional[str]
    response_code: str
    response_description: Optional[str]
    customer_message: Optional[str]


@dataclass(frozen=True)
class StkQueryResult:
    checkout_request_id: str
    result_code: Optional[str]
    result_desc: Optional[str]
    merchant_request_id: Optional[str] = None
    rate_limited: bool = False
    raw: dict = field(default_factory=dict)

    @property
    def is_definitive(self) -> bool:
        """
        A ResultCode means the payer answered (or the prompt expired).
        Error responses such as 'transaction is being processed' carry none.
        """
        return self.result_code is not None and not self.rate_limited

    @property
    def succeeded(self) -> bool:
        return self.result_code == SUCCESS_CODE

    def to_callback_payload(self) -> dict:
        """Shape the query result like a provider callback."""
        return {
            "Body": {
                "stkCallback": {
                    "MerchantRequestID": self.merchant_request_id or "QUERY",
                    "CheckoutRequestID": self.checkout_request_id,
                    "ResultCode": self.result_code,
                    "ResultDesc": self.result_desc,
                    "CallbackMetadata": self.raw.get("CallbackMetadata"),
                }
            }
        }


# ── Client ────────────────────────────────────────────────────

class MpesaClient:
    """Async Daraja client. One instance per process; the access token is cached."""

    def __init__(
        self,
        *,
        consumer_key: str,
        consumer_secret: str,
        passkey: str,
        shortcode: str,
        callback_url: str,
        base_url: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Clock = system_clock,
    ):
        self.consumer_key = consumer_key
        self.consumer_secret = consumer_secret
        self.passkey = passkey
        self.shortcode = shortcode
        self.callback_url = callback_url
        self.clock = clock
        self._http = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)
        self._token: Optional[str] = None
        self._token_expires_at: Optional[datetime] = None

    @classmethod
    def from_settings(cls, **overrides) -> "MpesaClient":
        options = {
            "consumer_key": settings.MPESA_CONSUMER_KEY,
            "consumer_secret": settings.MPESA_CONSUMER_SECRET,
            "passkey": settings.MPESA_PASSKEY,
            "shortcode": settings.MPESA_SHORTCODE,
            "callback_url": settings.MPESA_CALLBACK_URL,
            "base_url": settings.mpesa_base_url,
            "timeout": settings.MPESA_HTTP_TIMEOUT,
        }
        options.update(overrides)
        return cls(**options)

    async def aclose(self) -> None:
        await self._http.aclose()

    # ── Auth ──────────────────────────────────────────────────

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, max=4),
        reraise=True,
    )
    async def _fetch_token(self) -> httpx.Response:
        return await self._http.get(
            "/oauth/v1/generate",
            params={"grant_type": "client_credentials"},
            auth=(self.consumer_key, self.consumer_secret),
        )

    async def get_access_token(self) -> str:
        now = self.clock.now()
        if self._token and self._token_expires_at and now < self._token_expires_at:
            return self._token

        try:
            response = await self._fetch_token()
        except httpx.TransportError as e:
            raise ProviderError(f"M-Pesa OAuth request failed: {e}")

        if response.status_code != 200:
            logger.error(f"M-Pesa OAuth failed: {response.status_code} {response.text[:200]}")
            raise ProviderError(f"M-Pesa OAuth failed with HTTP {response.status_code}")

        data = response.json()
        self._token = data["access_token"]
        expires_in = int(data.get("expires_in", 3599))
        # Refresh a minute early
        self._token_expires_at = now + timedelta(seconds=max(0, expires_in - 60))
        return self._token

    def _credentials(self) -> dict:
        timestamp = format_timestamp(self.clock.now())
        return {
            "BusinessShortCode": self.shortcode,
            "Password": build_password(self.shortcode, self.passkey, timestamp),
            "Timestamp": timestamp,
        }

    async def _post(self, path: str, payload: dict) -> dict:
        token = await self.get_access_token()
        try:
            response = await self._http.post(
                path,
                json=payload,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.TransportError as e:
            raise ProviderError(f"M-Pesa request to {path} failed: {e}")

        if response.status_code == 401:
            self._token = None

        try:
            return response.json()
        except ValueError:
            raise ProviderError(f"M-Pesa returned HTTP {response.status_code} with a non-JSON body")

    # ── STK Push ──────────────────────────────────────────────

    async def stk_push(
        self,
        phone: str,
        amount,
        account_reference: str,
        description: str,
    ) -> StkPushResult:
        """
        Prompt the payer's phone. Never retried: a repeated push would
        prompt (and possibly charge) the payer twice.
        """
        phone = normalize_phone(phone)
        payload = {
            **self._credentials(),
            "TransactionType": "CustomerPayBillOnline",
            "Amount": normalize_amount(amount),
            "PartyA": phone,
            "PartyB": self.shortcode,
            "PhoneNumber": phone,
            "CallBackURL": self.callback_url,
            "AccountReference": account_reference[:12],
            "TransactionDesc": description[:13],
        }
        data = await self._post("/mpesa/stkpush/v1/processrequest", payload)

        if str(data.get("ResponseCode")) != SUCCESS_CODE or not data.get("CheckoutRequestID"):
            reason = (
                data.get("ResponseDescription")
                or data.get("errorMessage")
                or "STK push request failed"
            )
            logger.warning(f"STK push rejected for {phone}: {reason}")
            raise PaymentInitiationError(reason)

        return StkPushResult(
            checkout_request_id=data["CheckoutRequestID"],
            merchant_request_id=data.get("MerchantRequestID"),
            response_code=str(data["ResponseCode"]),
            response_description=data.get("ResponseDescription"),
            customer_message=data.get("CustomerMessage"),
        )

    # ── STK Query ─────────────────────────────────────────────

    async def stk_query(self, checkout_request_id: str) -> StkQueryResult:
        payload = {**self._credentials(), "CheckoutRequestID": checkout_request_id}
        data = await self._post("/mpesa/stkpushquery/v1/query", payload)

        fault = (data.get("fault") or {}).get("detail", {}).get("errorcode")
        if fault == RATE_LIMIT_FAULT:
            logger.info(f"STK query rate limited for {checkout_request_id}")
            return StkQueryResult(
                checkout_request_id=checkout_request_id,
                result_code=None,
                result_desc="Rate limit exceeded",
                rate_limited=True,
                raw=data,
            )

        result_code = data.get("ResultCode")
        return StkQueryResult(
            checkout_request_id=checkout_request_id,
            merchant_request_id=data.get("MerchantRequestID"),
            result_code=str(result_code) if result_code is not None else None,
            result_desc=data.get("ResultDesc") or data.get("errorMessage"),
            raw=data,
        )


# ── Dependency ────────────────────────────────────────────────

_client: Optional[MpesaClient] = None


def get_mpesa_client() -> MpesaClient:
    """FastAPI dependency: process-wide Daraja client."""
    global _client
    if _client is None:
        _client = MpesaClient.from_settings()
    return _client


async def close_mpesa_client() -> None:
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None
