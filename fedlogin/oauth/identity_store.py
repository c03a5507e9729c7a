from __future__ import annotations

from datetime import datetime

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from fedlogin.oauth.errors import IdentityExists
from fedlogin.oauth.models import OAuthIdentity
from fedlogin.oauth.schemas import TokenResponse, UserProfile, utcnow


class IdentityStore:
    """Durable (provider, provider_user_id) -> local user bindings."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_by_provider_user(self, provider: str, provider_user_id: str) -> OAuthIdentity | None:
        result = await self.session.execute(
            select(OAuthIdentity).where(
                OAuthIdentity.provider == provider,
                OAuthIdentity.provider_user_id == provider_user_id,
            )
        )
        return result.scalar_one_or_none()

    async def get_by_user_and_provider(self, user_id: str, provider: str) -> OAuthIdentity | None:
        result = await self.session.execute(
            select(OAuthIdentity).where(
                OAuthIdentity.user_id == user_id,
                OAuthIdentity.provider == provider,
            )
        )
        return result.scalars().first()

    async def list_by_user(self, user_id: str) -> list[OAuthIdentity]:
        result = await self.session.execute(
            select(OAuthIdentity)
            .where(OAuthIdentity.user_id == user_id)
            .order_by(OAuthIdentity.created_at)
        )
        return list(result.scalars().all())

    async def count_by_user(self, user_id: str) -> int:
        count = await self.session.scalar(
            select(func.count()).select_from(OAuthIdentity).where(OAuthIdentity.user_id == user_id)
        )
        return count or 0

    async def create(
        self,
        user_id: str,
        provider: str,
        profile: UserProfile,
        tokens: TokenResponse,
    ) -> OAuthIdentity:
        """Insert a new binding inside a savepoint.

        Raises IdentityExists when another row already owns the external
        account; the savepoint is rolled back and the session stays usable.
        """
        now = utcnow()
        identity = OAuthIdentity(
            user_id=user_id,
            provider=provider,
            provider_user_id=profile.provider_user_id,
            email=profile.email or None,
            name=profile.name or None,
            avatar_url=profile.avatar_url or None,
            access_token=tokens.access_token or None,
            refresh_token=tokens.refresh_token or None,
            token_expires_at=tokens.expires_at(now),
            raw_profile=profile.raw or None,
            created_at=now,
            updated_at=now,
        )
        try:
            async with self.session.begin_nested():
                self.session.add(identity)
                await self.session.flush()
        except IntegrityError as e:
            raise IdentityExists(f"{provider} account {profile.provider_user_id} is already linked") from e
        return identity

    async def refresh(
        self,
        identity: OAuthIdentity,
        profile: UserProfile,
        tokens: TokenResponse,
        now: datetime | None = None,
    ) -> OAuthIdentity:
        """Store the tokens and profile snapshot from a fresh login."""
        now = now or utcnow()
        identity.access_token = tokens.access_token or None
        # Providers often omit the refresh token on repeat consent
        if tokens.refresh_token:
            identity.refresh_token = tokens.refresh_token
        identity.token_expires_at = tokens.expires_at(now)
        identity.email = profile.email or identity.email
        identity.name = profile.name or identity.name
        identity.avatar_url = profile.avatar_url or identity.avatar_url
        if profile.raw:
            identity.raw_profile = profile.raw
        identity.updated_at = now
        await self.session.flush()
        return identity

    async def delete(self, identity_id: str) -> bool:
        result = await self.session.execute(
            delete(OAuthIdentity)
            .where(OAuthIdentity.id == identity_id)
            .execution_options(synchronize_session=False)
        )
        return bool(result.rowcount)
