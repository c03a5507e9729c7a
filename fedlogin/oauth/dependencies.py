from __future__ import annotations

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from fedlogin.models.database import get_db
from fedlogin.oauth.flow import OAuthFlowController
from fedlogin.oauth.providers import ProviderRegistry
from fedlogin.oauth.state_store import StateStoreProtocol


def get_registry(request: Request) -> ProviderRegistry:
    registry = getattr(request.app.state, "registry", None)
    if registry is None:
        return ProviderRegistry()
    return registry


def get_state_store(request: Request) -> StateStoreProtocol | None:
    return getattr(request.app.state, "state_store", None)


async def get_flow(
    registry: ProviderRegistry = Depends(get_registry),
    state_store: StateStoreProtocol | None = Depends(get_state_store),
    db: AsyncSession = Depends(get_db),
) -> OAuthFlowController:
    return OAuthFlowController(registry, state_store, db)
