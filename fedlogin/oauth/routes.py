from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse, RedirectResponse
from jose import JWTError
from sqlalchemy.ext.asyncio import AsyncSession

from fedlogin.auth.cookies import clear_session_cookie, set_session_cookie
from fedlogin.auth.dependencies import get_current_user, get_current_user_optional
from fedlogin.auth.jwt import create_session_token
from fedlogin.auth.schemas import TokenData
from fedlogin.config import settings
from fedlogin.models.database import get_db
from fedlogin.models.user import User
from fedlogin.oauth.dependencies import get_flow, get_registry
from fedlogin.oauth.errors import (
    AlreadyLinked,
    MissingParameter,
    OAuthFlowError,
    OAuthNotConfigured,
    ProviderNotFound,
    TokenGenerationFailed,
)
from fedlogin.oauth.flow import OAuthFlowController
from fedlogin.oauth.identity_store import IdentityStore
from fedlogin.oauth.providers import ProviderRegistry
from fedlogin.oauth.redirects import request_base_url, safe_redirect, with_error
from fedlogin.oauth.schemas import LinkedIdentity, ProviderInfo

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.get("/oauth/providers", response_model=list[ProviderInfo])
async def list_providers(registry: ProviderRegistry = Depends(get_registry)) -> list[ProviderInfo]:
    """List enabled OAuth login providers."""
    return registry.list_providers()


@router.get("/oauth/identities", response_model=list[LinkedIdentity])
async def list_identities(
    current_user: TokenData = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> list[LinkedIdentity]:
    """Provider accounts linked to the current user. Tokens are never returned."""
    identities = await IdentityStore(db).list_by_user(current_user.user_id)
    return [
        LinkedIdentity(
            provider=i.provider,
            email=i.email,
            name=i.name,
            avatar_url=i.avatar_url,
            created_at=i.created_at,
        )
        for i in identities
    ]


@router.get("/oauth/{provider}/start")
async def oauth_start(
    provider: str,
    request: Request,
    redirect: str | None = None,
    flow: OAuthFlowController = Depends(get_flow),
) -> RedirectResponse:
    """Redirect the user to the provider's authorization endpoint."""
    try:
        result = await flow.start(provider, redirect, request_base_url(request))
    except OAuthFlowError as e:
        raise HTTPException(e.status_code, e.message) from e
    return RedirectResponse(result.authorization_url, status_code=302)


@router.get("/oauth/{provider}/callback")
async def oauth_callback(
    provider: str,
    request: Request,
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
    error_description: str | None = None,
    current_user: TokenData | None = Depends(get_current_user_optional),
    flow: OAuthFlowController = Depends(get_flow),
) -> RedirectResponse:
    """Handle the provider redirect: validate state, exchange code, sign the user in.

    A completed link keeps the browser's existing session.
    """
    try:
        result = await flow.callback(
            provider,
            code,
            state,
            request_base_url(request),
            error=error,
            error_description=error_description,
            session_user_id=current_user.user_id if current_user else None,
        )
    except (MissingParameter, ProviderNotFound, OAuthNotConfigured) as e:
        raise HTTPException(e.status_code, e.message) from e
    except OAuthFlowError as e:
        target = settings.settings_path if e.link_mode else settings.login_path
        return RedirectResponse(with_error(target, e.code), status_code=302)

    if result.link:
        logger.info(f"User {result.user.id} completed {provider} link")
        return RedirectResponse(safe_redirect(result.redirect_uri, settings.settings_path), status_code=302)
    return login_user(request, result.user, result.redirect_uri)


@router.post("/oauth/{provider}/link")
async def oauth_link(
    provider: str,
    request: Request,
    current_user: TokenData = Depends(get_current_user),
    flow: OAuthFlowController = Depends(get_flow),
) -> RedirectResponse:
    """Start binding a provider account to the signed-in user."""
    try:
        result = await flow.link(provider, current_user.user_id, request_base_url(request))
    except AlreadyLinked as e:
        return RedirectResponse(with_error(settings.settings_path, e.code), status_code=303)
    except OAuthFlowError as e:
        raise HTTPException(e.status_code, e.message) from e
    return RedirectResponse(result.authorization_url, status_code=303)


@router.delete("/oauth/{provider}/unlink")
async def oauth_unlink(
    provider: str,
    request: Request,
    current_user: TokenData = Depends(get_current_user),
    flow: OAuthFlowController = Depends(get_flow),
):
    """Remove a provider account from the signed-in user, unless it is their last way in."""
    try:
        await flow.unlink(provider, current_user.user_id)
    except OAuthFlowError as e:
        raise HTTPException(e.status_code, e.message) from e

    if request.headers.get("hx-request") == "true" or "application/json" in request.headers.get("accept", ""):
        return JSONResponse({"status": "ok", "provider": provider})
    return RedirectResponse(f"{settings.settings_path}?success=oauth_unlinked", status_code=303)


@router.get("/me", response_model=TokenData)
async def get_me(current_user: TokenData = Depends(get_current_user)) -> TokenData:
    """Return the current session's claims."""
    return current_user


@router.post("/logout")
async def logout() -> JSONResponse:
    """Clear the session cookie."""
    response = JSONResponse({"status": "ok"})
    clear_session_cookie(response)
    return response


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def login_user(request: Request, user: User, redirect_uri: str | None) -> RedirectResponse:
    """Issue a session for ``user`` and send them to a local landing page."""
    try:
        session = create_session_token(user.id, user.email, user.name)
    except JWTError as e:
        logger.error(f"Failed to generate session token for user {user.id}: {e}")
        return RedirectResponse(with_error(settings.login_path, TokenGenerationFailed.code), status_code=302)

    response = RedirectResponse(safe_redirect(redirect_uri), status_code=302)
    set_session_cookie(response, request, session)
    logger.info(f"User {user.id} signed in")
    return response
