from __future__ import annotations

from contextlib import asynccontextmanager
from urllib.parse import urlencode

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from fedlogin.auth.jwt import create_session_token
from fedlogin.models.base import Base
from fedlogin.models.database import get_db
from fedlogin.models.user import User
from fedlogin.oauth.providers import ProviderRegistry
from fedlogin.oauth.schemas import TokenResponse, UserProfile
from fedlogin.oauth.state_store import RedisStateStore
import fedlogin.oauth.models  # noqa: F401


@pytest.fixture
async def test_db_engine():
    """Create a test database engine using in-memory SQLite."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
    )

    # Let SQLAlchemy own BEGIN so SAVEPOINTs behave like they do on PostgreSQL
    @event.listens_for(engine.sync_engine, "connect")
    def _connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
async def test_db_session_factory(test_db_engine):
    """Create a test async session factory."""
    factory = async_sessionmaker(
        test_db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    return factory


@pytest.fixture
async def test_db_session(test_db_session_factory):
    """Create a test database session."""
    async with test_db_session_factory() as session:
        yield session


class FakeRedis:
    """In-memory fake Redis for tests (avoids requiring real Redis)."""

    def __init__(self):
        self._store: dict[str, bytes] = {}
        self.ttls: dict[str, int] = {}

    async def set(self, key: str, value: str | bytes, **kwargs) -> None:
        if isinstance(value, str):
            value = value.encode("utf-8")
        self._store[key] = value

    async def setex(self, key: str, ttl: int, value: str | bytes) -> None:
        await self.set(key, value)
        self.ttls[key] = ttl

    async def get(self, key: str) -> bytes | None:
        return self._store.get(key)

    async def getdel(self, key: str) -> bytes | None:
        self.ttls.pop(key, None)
        return self._store.pop(key, None)

    async def delete(self, *keys: str) -> None:
        for key in keys:
            self._store.pop(key, None)
            self.ttls.pop(key, None)

    def keys_with_prefix(self, prefix: str) -> list[str]:
        return [key for key in self._store if key.startswith(prefix)]

    async def ping(self) -> bool:
        return True

    async def flushdb(self) -> None:
        self._store.clear()
        self.ttls.clear()

    async def aclose(self) -> None:
        pass


@pytest.fixture
def test_redis():
    """Create a fake Redis for tests."""
    return FakeRedis()


@pytest.fixture
def state_store(test_redis):
    return RedisStateStore(test_redis)


class FakeProvider:
    """Provider client double: records calls and returns canned tokens/profile."""

    def __init__(self, name: str = "github", display_name: str = "GitHub"):
        self.name = name
        self.display_name = display_name
        self.profile = UserProfile(
            provider_user_id="1001",
            email="alice@example.com",
            email_verified=True,
            name="Alice",
            raw={"id": 1001, "login": "alice"},
        )
        self.tokens = TokenResponse(access_token="at-1", refresh_token="rt-1", expires_in=3600)
        self.exchange_error: Exception | None = None
        self.profile_error: Exception | None = None
        self.exchange_calls: list[dict] = []
        self.profile_calls = 0

    async def authorization_url(self, state: str, code_challenge: str, nonce: str, redirect_uri: str) -> str:
        params = {
            "client_id": "test-client",
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "state": state,
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
            "nonce": nonce,
        }
        return f"https://{self.name}.example/authorize?{urlencode(params)}"

    async def exchange_code(self, code: str, code_verifier: str, redirect_uri: str, nonce: str = "") -> TokenResponse:
        self.exchange_calls.append(
            {"code": code, "code_verifier": code_verifier, "redirect_uri": redirect_uri, "nonce": nonce}
        )
        if self.exchange_error is not None:
            raise self.exchange_error
        return self.tokens

    async def fetch_profile(self, access_token: str) -> UserProfile:
        self.profile_calls += 1
        if self.profile_error is not None:
            raise self.profile_error
        return self.profile

    async def refresh_token(self, refresh_token: str) -> TokenResponse:
        return self.tokens


@pytest.fixture
def github():
    return FakeProvider("github", "GitHub")


@pytest.fixture
def google():
    return FakeProvider("google", "Google")


@pytest.fixture
def registry(github, google):
    registry = ProviderRegistry()
    registry.register(github)
    registry.register(google)
    return registry


@pytest.fixture
async def make_user(test_db_session_factory):
    """Insert a local user and return it."""

    async def _make(email: str | None = "bob@example.com", name: str = "Bob", password_hash: str = "") -> User:
        async with test_db_session_factory() as session:
            user = User(email=email, name=name, password_hash=password_hash)
            session.add(user)
            await session.commit()
            return user

    return _make


@pytest.fixture
def auth_headers():
    """Bearer header carrying a session for the given user."""

    def _headers(user: User) -> dict[str, str]:
        session = create_session_token(user.id, user.email, user.name)
        return {"Authorization": f"Bearer {session.token}"}

    return _headers


@pytest.fixture
async def app(test_db_session_factory, test_redis, state_store, registry):
    """Create a test FastAPI application with test dependencies."""
    from fastapi import FastAPI

    from fedlogin.api.health import router as health_router
    from fedlogin.oauth.routes import router as auth_router

    # Create app without real lifespan (we set up state manually)
    @asynccontextmanager
    async def test_lifespan(app: FastAPI):
        yield

    test_app = FastAPI(title="fedlogin-test", lifespan=test_lifespan)
    test_app.include_router(auth_router)
    test_app.include_router(health_router)

    # Override DB dependency
    async def override_get_db():
        async with test_db_session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    test_app.dependency_overrides[get_db] = override_get_db

    test_app.state.redis = test_redis
    test_app.state.db_session_factory = test_db_session_factory
    test_app.state.registry = registry
    test_app.state.state_store = state_store

    yield test_app

    test_app.dependency_overrides.clear()


@pytest.fixture
async def client(app):
    """Create a test HTTP client."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
