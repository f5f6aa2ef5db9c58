"""
shared/middleware/auth.py
Request-scoped identity. Bookings accept both signed-in travellers and guests,
so there are two entry points: get_current_user (401 without a valid token)
and get_optional_user (None instead of 401). Both share one resolution path.
"""

from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisCache, get_optional_redis
from shared.models.models import User
from shared.utils.security import read_claims

bearer = HTTPBearer(auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def _resolve(
    credentials: Optional[HTTPAuthorizationCredentials],
    db: AsyncSession,
    redis,
) -> User:
    if credentials is None:
        raise _unauthorized("Authentication required")

    try:
        claims = read_claims(credentials.credentials)
    except JWTError:
        raise _unauthorized("Invalid or expired token")

    # Revocation is only enforced while Redis is reachable
    if redis is not None and claims.jti and await RedisCache(redis).is_token_revoked(claims.jti):
        raise _unauthorized("Token has been revoked")

    user = await db.get(User, claims.user_id)
    if user is None:
        raise _unauthorized("User not found")
    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="User account is inactive")
    return user


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_optional_redis),
) -> User:
    return await _resolve(credentials, db, redis)


async def get_optional_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_optional_redis),
) -> Optional[User]:
    """Guest checkout: a missing or unusable token means an anonymous caller."""
    if credentials is None:
        return None
    try:
        return await _resolve(credentials, db, redis)
    except HTTPException:
        return None
