from __future__ import annotations

import asyncio
import logging
from typing import Protocol

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fedlogin.oauth.models import OAuthStateRecord
from fedlogin.oauth.schemas import OAuthState, as_utc, utcnow

logger = logging.getLogger(__name__)


class StateStoreProtocol(Protocol):
    """Short-lived store for single-use OAuth state records."""

    async def save(self, state: OAuthState) -> None:
        """Persist a freshly generated state."""
        ...

    async def consume(self, token: str) -> OAuthState | None:
        """Atomically fetch and delete a state. Returns None when absent or already used."""
        ...

    async def sweep_expired(self) -> int:
        """Delete expired records. Returns how many were removed."""
        ...


class RedisStateStore:
    """Redis-backed state store.

    Keys carry a TTL slightly longer than the state lifetime so that a state
    presented just after expiry is still found and reported as expired rather
    than unknown. Consumption uses GETDEL so two concurrent callbacks can never
    both see the record.
    """

    KEY_PREFIX = "oauth_state:"
    EXPIRY_GRACE_SECONDS = 60

    def __init__(self, redis_client) -> None:
        self.redis = redis_client

    def _key(self, token: str) -> str:
        return f"{self.KEY_PREFIX}{token}"

    async def save(self, state: OAuthState) -> None:
        lifetime = as_utc(state.expires_at) - as_utc(state.created_at)
        ttl = int(lifetime.total_seconds()) + self.EXPIRY_GRACE_SECONDS
        await self.redis.setex(self._key(state.state), ttl, state.model_dump_json())

    async def consume(self, token: str) -> OAuthState | None:
        data = await self.redis.getdel(self._key(token))
        if data is None:
            return None
        return OAuthState.model_validate_json(data)

    async def sweep_expired(self) -> int:
        # Redis evicts keys on its own
        return 0


class DatabaseStateStore:
    """SQL-backed state store for deployments without Redis.

    Each operation runs in its own short transaction so that consumption is
    committed before the caller makes any network call.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def save(self, state: OAuthState) -> None:
        async with self._session_factory() as session:
            session.add(
                OAuthStateRecord(
                    state=state.state,
                    provider=state.provider,
                    redirect_uri=state.redirect_uri,
                    code_verifier=state.code_verifier,
                    nonce=state.nonce,
                    link_user_id=state.link_user_id,
                    created_at=state.created_at,
                    expires_at=state.expires_at,
                )
            )
            await session.commit()

    async def consume(self, token: str) -> OAuthState | None:
        stmt = (
            delete(OAuthStateRecord)
            .where(OAuthStateRecord.state == token)
            .returning(
                OAuthStateRecord.state,
                OAuthStateRecord.provider,
                OAuthStateRecord.redirect_uri,
                OAuthStateRecord.code_verifier,
                OAuthStateRecord.nonce,
                OAuthStateRecord.link_user_id,
                OAuthStateRecord.created_at,
                OAuthStateRecord.expires_at,
            )
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            row = result.one_or_none()
            await session.commit()

        if row is None:
            return None
        values = dict(row._mapping)
        values["created_at"] = as_utc(values["created_at"])
        values["expires_at"] = as_utc(values["expires_at"])
        return OAuthState(**values)

    async def sweep_expired(self) -> int:
        stmt = (
            delete(OAuthStateRecord)
            .where(OAuthStateRecord.expires_at < utcnow())
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()
        return result.rowcount or 0


class StateSweeper:
    """Periodically removes expired states. Correctness never depends on it."""

    def __init__(self, store: StateStoreProtocol, interval_seconds: float) -> None:
        self.store = store
        self.interval_seconds = interval_seconds
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="oauth-state-sweeper")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def sweep_once(self) -> int:
        removed = await self.store.sweep_expired()
        if removed:
            logger.info(f"Swept {removed} expired OAuth states")
        return removed

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self.sweep_once()
            except Exception:
                logger.exception("OAuth state sweep failed")
