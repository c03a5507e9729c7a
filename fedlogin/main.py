from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from redis.asyncio import Redis

from fedlogin.api.health import router as health_router
from fedlogin.config import settings
from fedlogin.models.base import Base
from fedlogin.models.database import async_session_factory, engine
from fedlogin.oauth.providers import build_registry
from fedlogin.oauth.routes import router as auth_router
from fedlogin.oauth.state_store import DatabaseStateStore, RedisStateStore, StateSweeper
import fedlogin.models.user  # noqa: F401
import fedlogin.oauth.models  # noqa: F401

logging.basicConfig(level=settings.log_level)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the provider registry, state store and sweeper; tear them down on exit."""
    logger.info("Starting up fedlogin server...")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables ensured")
    app.state.db_session_factory = async_session_factory

    http_client = httpx.AsyncClient(timeout=settings.http_timeout_seconds)
    app.state.http_client = http_client

    registry = build_registry(settings, http_client)
    app.state.registry = registry
    logger.info(f"Enabled OAuth providers: {[p.name for p in registry.list_providers()] or 'none'}")

    redis: Redis | None = None
    if settings.state_backend == "database":
        state_store = DatabaseStateStore(async_session_factory)
    else:
        redis = Redis.from_url(settings.redis_url, decode_responses=False)
        state_store = RedisStateStore(redis)
    app.state.redis = redis
    app.state.state_store = state_store
    logger.info(f"OAuth state backend: {settings.state_backend}")

    sweeper = StateSweeper(state_store, settings.state_sweep_interval_seconds)
    sweeper.start()
    app.state.state_sweeper = sweeper

    logger.info("Server startup complete")

    yield

    logger.info("Shutting down fedlogin server...")
    await sweeper.stop()
    await http_client.aclose()
    if redis is not None:
        await redis.aclose()
    await engine.dispose()
    logger.info("Server shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="fedlogin",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.public_base_url] if settings.public_base_url else [],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(auth_router)
    app.include_router(health_router)

    return app


app = create_app()
