"""
shared/utils/security.py
Access-token handling. Travellers, hosts and admins sign in through the
identity service, which issues HS256 JWTs; the booking engine only needs
to read them back into AccessClaims. Issuing is kept for ops scripts and tests.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt

from config.settings import settings
from shared.models.models import UserRole

TOKEN_TYPE = "access"


@dataclass(frozen=True)
class AccessClaims:
    user_id: uuid.UUID
    role: UserRole
    email: str
    jti: Optional[str]
    expires_at: datetime


def create_access_token(
    user_id: str,
    role: str,
    email: str,
    extra: Optional[dict] = None,
    expires_minutes: Optional[int] = None,
) -> tuple[str, str]:
    """Returns (token, jti). The jti is what the revocation list is keyed on."""
    issued_at = datetime.now(timezone.utc)
    lifetime = timedelta(minutes=expires_minutes or settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES)
    jti = uuid.uuid4().hex

    claims = dict(extra or {})
    claims.update(
        sub=str(user_id),
        role=role,
        email=email,
        jti=jti,
        type=TOKEN_TYPE,
        iat=issued_at,
        exp=issued_at + lifetime,
    )
    return jwt.encode(claims, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM), jti


def verify_access_token(token: str) -> dict:
    """Signature, expiry and token-type check. Raises JWTError."""
    payload = jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    if payload.get("type") != TOKEN_TYPE:
        raise JWTError(f"Expected an {TOKEN_TYPE} token")
    return payload


def read_claims(token: str) -> AccessClaims:
    """
    Verify the token and coerce its claims. A subject that is not a UUID or
    a role this service does not know is treated like a bad signature.
    """
    payload = verify_access_token(token)
    try:
        return AccessClaims(
            user_id=uuid.UUID(str(payload["sub"])),
            role=UserRole(payload["role"]),
            email=payload.get("email", ""),
            jti=payload.get("jti"),
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
        )
    except (KeyError, ValueError) as e:
        raise JWTError(f"Malformed claims: {e}")
