from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fedlogin.models.user import User


class UserStore:
    """Lookup and creation of local accounts."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, user_id: str) -> User | None:
        return await self.session.get(User, user_id)

    async def get_by_email(self, email: str) -> User | None:
        result = await self.session.execute(select(User).where(User.email == email))
        return result.scalar_one_or_none()

    async def email_taken(self, email: str) -> bool:
        return await self.get_by_email(email) is not None

    async def create(self, email: str | None, name: str, status: str = "active") -> User:
        """Insert a passwordless account inside a savepoint; IntegrityError propagates."""
        user = User(email=email, name=name, password_hash="", status=status)
        async with self.session.begin_nested():
            self.session.add(user)
            await self.session.flush()
        return user

    async def delete(self, user: User) -> None:
        await self.session.delete(user)
        await self.session.flush()
