"""
tests/test_auth.py
Tests for access-token claims and the request identity dependencies.
"""

import uuid

import pytest
from httpx import AsyncClient
from jose import JWTError, jwt
from sqlalchemy.ext.asyncio import AsyncSession

from config.redis_client import get_optional_redis
from config.settings import settings
from main import app
from shared.models.models import User, UserRole
from shared.utils.security import create_access_token, read_claims
from tests.conftest import auth_headers


class FakeRedis:
    def __init__(self, revoked=()):
        self.revoked = set(revoked)

    async def exists(self, key: str) -> int:
        return int(key.removeprefix("jwt_revoked:") in self.revoked)


def test_claims_round_trip():
    user_id = uuid.uuid4()
    token, jti = create_access_token(str(user_id), UserRole.HOST.value, "host@example.com")

    claims = read_claims(token)
    assert claims.user_id == user_id
    assert claims.role == UserRole.HOST
    assert claims.jti == jti


def test_unknown_role_is_rejected():
    token, _ = create_access_token(str(uuid.uuid4()), "superuser", "x@example.com")
    with pytest.raises(JWTError):
        read_claims(token)


def test_refresh_token_type_is_rejected():
    token = jwt.encode(
        {"sub": str(uuid.uuid4()), "role": UserRole.USER.value, "type": "refresh", "exp": 4102444800},
        settings.JWT_SECRET_KEY,
        algorithm=settings.JWT_ALGORITHM,
    )
    with pytest.raises(JWTError):
        read_claims(token)


@pytest.mark.asyncio
async def test_garbage_token_is_401(client: AsyncClient):
    response = await client.get("/bookings", headers={"Authorization": "Bearer not-a-jwt"})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_revoked_token_is_401(client: AsyncClient, user: User):
    token, jti = create_access_token(str(user.id), user.role.value, user.email)
    app.dependency_overrides[get_optional_redis] = lambda: FakeRedis(revoked={jti})

    response = await client.get("/bookings", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401
    assert response.json()["detail"] == "Token has been revoked"


@pytest.mark.asyncio
async def test_inactive_user_is_403(client: AsyncClient, db: AsyncSession, user: User):
    user.is_active = False
    await db.commit()

    response = await client.get("/bookings", headers=auth_headers(user))
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_bad_token_falls_back_to_guest_checkout(client: AsyncClient, free_attraction):
    response = await client.post(
        "/bookings/checkout",
        headers={"Authorization": "Bearer expired-or-forged"},
        json={
            "item_id": str(free_attraction.id),
            "booking_type": "attraction",
            "visit_date": "2026-06-10",
            "adults": 1,
            "guest_name": "Walk-in Guest",
            "guest_email": "guest@example.com",
            "guest_phone": "0799000444",
        },
    )
    assert response.status_code == 201
    assert response.json()["booking"]["user_id"] is None
    assert response.json()["booking"]["is_guest_booking"] is True
