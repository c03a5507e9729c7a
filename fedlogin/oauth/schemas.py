from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from pydantic import BaseModel, Field

from fedlogin.oauth import pkce


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes (as returned by SQLite) as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class OAuthState(BaseModel):
    """Single-use record correlating an authorization request with its callback."""

    state: str
    provider: str
    redirect_uri: str
    code_verifier: str
    nonce: str
    created_at: datetime
    expires_at: datetime
    link_user_id: str | None = None

    @classmethod
    def generate(
        cls,
        provider: str,
        redirect_uri: str,
        ttl: timedelta,
        link_user_id: str | None = None,
    ) -> OAuthState:
        now = utcnow()
        return cls(
            state=pkce.generate_state_token(),
            provider=provider,
            redirect_uri=redirect_uri,
            code_verifier=pkce.generate_code_verifier(),
            nonce=pkce.generate_nonce(),
            created_at=now,
            expires_at=now + ttl,
            link_user_id=link_user_id,
        )

    @property
    def code_challenge(self) -> str:
        return pkce.code_challenge(self.code_verifier)

    @property
    def is_link(self) -> bool:
        return self.link_user_id is not None

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) > as_utc(self.expires_at)


class TokenResponse(BaseModel):
    access_token: str = ""
    refresh_token: str = ""
    id_token: str = ""
    token_type: str = ""
    expires_in: int = 0
    scope: str = ""
    error: str = ""

    def expires_at(self, now: datetime | None = None) -> datetime | None:
        if self.expires_in <= 0:
            return None
        return (now or utcnow()) + timedelta(seconds=self.expires_in)


class UserProfile(BaseModel):
    """Provider profile normalized to a common shape."""

    provider_user_id: str
    email: str = ""
    email_verified: bool = False
    name: str = ""
    given_name: str = ""
    family_name: str = ""
    avatar_url: str = ""
    raw: dict[str, Any] = Field(default_factory=dict)

    def display_name(self) -> str:
        if self.name:
            return self.name
        if self.email:
            return self.email.split("@", 1)[0]
        return f"user-{self.provider_user_id[:8]}"


class ProviderInfo(BaseModel):
    name: str
    display_name: str


class LinkedIdentity(BaseModel):
    provider: str
    email: str | None
    name: str | None
    avatar_url: str | None
    created_at: datetime
