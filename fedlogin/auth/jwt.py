from __future__ import annotations

from datetime import datetime, timedelta, timezone

from fastapi import HTTPException, status
from jose import JWTError, jwt

from fedlogin.auth.schemas import SessionToken, TokenData
from fedlogin.config import settings

# Accounts that arrive through an external provider never get elevated roles here
DEFAULT_ROLE = "customer"


def create_session_token(
    user_id: str,
    email: str | None,
    name: str,
    role: str = DEFAULT_ROLE,
) -> SessionToken:
    """Signed, time-boxed session credential for a local user."""
    expires_at = datetime.now(timezone.utc) + timedelta(minutes=settings.session_expire_minutes)
    payload = {
        "sub": user_id,
        "email": email,
        "name": name,
        "role": role,
        "type": "session",
        "exp": expires_at,
    }
    token = jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)
    return SessionToken(token=token, expires_at=expires_at, user_id=user_id, email=email, name=name, role=role)


def decode_token(token: str) -> TokenData:
    """Decode a session JWT. Raises 401 on a bad signature, expiry or wrong type."""
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token") from e
    if payload.get("type") != "session" or not payload.get("sub"):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    return TokenData(
        user_id=payload["sub"],
        email=payload.get("email"),
        name=payload.get("name", ""),
        role=payload.get("role", DEFAULT_ROLE),
    )
