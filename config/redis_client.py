"""
config/redis_client.py
Redis is an accelerator here, never the source of truth: the payment-status
cache, the anonymous rate limiter and the token revocation list all fall back
to the database (or to "allow") when the client is None.
"""

import json
from typing import Any, Optional

import redis.asyncio as aioredis

from config.settings import settings

PAYMENT_STATUS_KEY = "payment_status:{}"
REVOKED_TOKEN_KEY = "jwt_revoked:{}"

# Set by init_redis() during app startup; stays None under tests and when Redis is down
redis_client: Optional[aioredis.Redis] = None


async def init_redis() -> None:
    global redis_client
    client = aioredis.from_url(
        settings.REDIS_URL,
        encoding="utf-8",
        decode_responses=True,
        max_connections=settings.REDIS_MAX_CONNECTIONS,
    )
    await client.ping()
    redis_client = client


async def close_redis() -> None:
    global redis_client
    if redis_client is not None:
        await redis_client.aclose()
        redis_client = None


def get_optional_redis() -> Optional[aioredis.Redis]:
    """FastAPI dependency. Callers must handle None."""
    return redis_client


class RedisCache:
    """JSON values under namespaced keys."""

    def __init__(self, client: aioredis.Redis):
        self.client = client

    async def get_json(self, key: str) -> Optional[Any]:
        raw = await self.client.get(key)
        return json.loads(raw) if raw else None

    async def set_json(self, key: str, value: Any, ttl: int) -> None:
        await self.client.setex(key, ttl, json.dumps(value, default=str))

    # ── Payment status ────────────────────────────────────────

    async def cache_payment_status(self, checkout_request_id: str, status: dict) -> None:
        """Only terminal statuses are written; a pending payment is always read from the DB."""
        await self.set_json(
            PAYMENT_STATUS_KEY.format(checkout_request_id),
            status,
            ttl=settings.REDIS_PAYMENT_STATUS_TTL,
        )

    async def get_payment_status(self, checkout_request_id: str) -> Optional[dict]:
        return await self.get_json(PAYMENT_STATUS_KEY.format(checkout_request_id))

    # ── Token revocation ──────────────────────────────────────

    async def is_token_revoked(self, jti: str) -> bool:
        return bool(await self.client.exists(REVOKED_TOKEN_KEY.format(jti)))

    # ── Rate limiting ─────────────────────────────────────────

    async def hit(self, key: str, limit: int, window_seconds: int = 60) -> bool:
        """
        Count one request against a fixed window. True while the caller is
        still within `limit` for the current window.
        """
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.incr(key)
            pipe.expire(key, window_seconds, nx=True)
            count, _ = await pipe.execute()
        return count <= limit
