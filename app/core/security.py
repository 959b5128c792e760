"""
Bearer token handling.

Tokens come from the identity provider in front of this service and carry the
caller's id (``sub``), workflow role and email. This module validates them;
issue_token() exists for local tooling and tests.
"""
import enum
from datetime import datetime, timedelta, timezone
from typing import Optional, Union

from fastapi import HTTPException, status
from fastapi.security import HTTPBearer
from jose import JWTError, jwt

from app.core.config import settings

security = HTTPBearer()

_UNAUTHORIZED_HEADERS = {"WWW-Authenticate": "Bearer"}


def get_role_value(role: Union[str, enum.Enum]) -> str:
    """Roles loaded from the database come back as plain strings; enums are unwrapped."""
    if isinstance(role, enum.Enum):
        return role.value
    return str(role)


def issue_token(
    user_id: int,
    role: Union[str, enum.Enum],
    email: Optional[str] = None,
    expires_delta: Optional[timedelta] = None,
) -> str:
    now = datetime.now(timezone.utc)
    claims = {
        # python-jose only accepts string subjects
        "sub": str(user_id),
        "role": get_role_value(role),
        "iat": now,
        "exp": now + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)),
    }
    if email:
        claims["email"] = email
    return jwt.encode(claims, settings.SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def decode_token(token: str) -> dict:
    """Verify signature and expiry and require a subject claim."""
    try:
        claims = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers=_UNAUTHORIZED_HEADERS,
        )

    subject = claims.get("sub")
    if subject is None or not str(subject).isdigit():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token: missing user identifier (sub)",
            headers=_UNAUTHORIZED_HEADERS,
        )
    return claims
