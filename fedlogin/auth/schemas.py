from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class TokenData(BaseModel):
    user_id: str
    email: str | None = None
    name: str = ""
    role: str = "customer"


class SessionToken(BaseModel):
    """An issued session JWT together with the claims it carries."""

    token: str
    expires_at: datetime
    user_id: str
    email: str | None = None
    name: str = ""
    role: str = "customer"
