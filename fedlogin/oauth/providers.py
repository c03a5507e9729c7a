from __future__ import annotations

import logging
import time
from typing import Any, Protocol
from urllib.parse import urlencode

import httpx
from jose import JWTError, jwt
from pydantic import BaseModel, Field, ValidationError

from fedlogin.config import Settings
from fedlogin.oauth.errors import ExchangeFailed, ProfileFailed, ProviderNotFound, TokenError
from fedlogin.oauth.pkce import CHALLENGE_METHOD
from fedlogin.oauth.schemas import ProviderInfo, TokenResponse, UserProfile

logger = logging.getLogger(__name__)

DISCOVERY_TTL_SECONDS = 3600


class ProviderClient(Protocol):
    """Capability the login flow needs from one configured provider."""

    name: str
    display_name: str

    async def authorization_url(self, state: str, code_challenge: str, nonce: str, redirect_uri: str) -> str:
        ...

    async def exchange_code(
        self, code: str, code_verifier: str, redirect_uri: str, nonce: str = ""
    ) -> TokenResponse:
        ...

    async def fetch_profile(self, access_token: str) -> UserProfile:
        ...

    async def refresh_token(self, refresh_token: str) -> TokenResponse:
        ...


class ProviderConfig(BaseModel):
    name: str
    display_name: str
    client_id: str
    client_secret: str
    authorize_url: str = ""
    token_url: str = ""
    userinfo_url: str = ""
    jwks_url: str = ""
    issuer: str = ""
    scopes: list[str]
    extra_auth_params: dict[str, str] = Field(default_factory=dict)
    id_field: str = "sub"
    email_field: str = "email"
    email_verified_field: str = "email_verified"
    name_field: str = "name"
    avatar_field: str = "picture"
    id_token_algorithms: list[str] = Field(default_factory=lambda: ["RS256"])


class OAuth2Provider:
    """Authorization-code + PKCE client for standards-following providers."""

    def __init__(self, config: ProviderConfig, http_client: httpx.AsyncClient) -> None:
        self.config = config
        self.http = http_client
        self._jwks: dict[str, Any] | None = None
        self._jwks_fetched_at = 0.0

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def display_name(self) -> str:
        return self.config.display_name

    async def endpoints(self) -> ProviderConfig:
        """Config with every endpoint filled in. Overridden by discovery-based providers."""
        return self.config

    async def authorization_url(self, state: str, code_challenge: str, nonce: str, redirect_uri: str) -> str:
        endpoints = await self.endpoints()
        params: dict[str, str] = {
            "client_id": self.config.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": " ".join(self.config.scopes),
            "state": state,
            "code_challenge": code_challenge,
            "code_challenge_method": CHALLENGE_METHOD,
        }
        if nonce:
            params["nonce"] = nonce
        params.update(self.config.extra_auth_params)
        return f"{endpoints.authorize_url}?{urlencode(params)}"

    async def exchange_code(
        self, code: str, code_verifier: str, redirect_uri: str, nonce: str = ""
    ) -> TokenResponse:
        tokens = await self._token_request(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri,
                "client_id": self.config.client_id,
                "client_secret": self.config.client_secret,
                "code_verifier": code_verifier,
            },
        )
        if tokens.error:
            return tokens
        if not tokens.access_token:
            raise ExchangeFailed(f"{self.name} token response carried no access_token")
        if tokens.id_token and nonce:
            await self.verify_id_token(tokens.id_token, nonce, tokens.access_token)
        return tokens

    async def refresh_token(self, refresh_token: str) -> TokenResponse:
        return await self._token_request(
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": self.config.client_id,
                "client_secret": self.config.client_secret,
            },
        )

    async def fetch_profile(self, access_token: str) -> UserProfile:
        endpoints = await self.endpoints()
        claims = await self._get_json(endpoints.userinfo_url, access_token)
        if not isinstance(claims, dict):
            raise ProfileFailed(f"{self.name} userinfo response is not an object")
        return self.profile_from_claims(claims)

    def profile_from_claims(self, claims: dict[str, Any]) -> UserProfile:
        cfg = self.config
        subject = claims.get(cfg.id_field)
        if subject in (None, ""):
            raise ProfileFailed(f"{self.name} profile has no {cfg.id_field}")
        name = claims.get(cfg.name_field) or claims.get("preferred_username") or claims.get("nickname") or ""
        try:
            return UserProfile(
                provider_user_id=str(subject),
                email=claims.get(cfg.email_field) or "",
                email_verified=_truthy(claims.get(cfg.email_verified_field)),
                name=name,
                given_name=claims.get("given_name") or "",
                family_name=claims.get("family_name") or "",
                avatar_url=claims.get(cfg.avatar_field) or "",
                raw=claims,
            )
        except ValidationError as e:
            raise ProfileFailed(f"{self.name} profile is malformed: {e}") from e

    async def verify_id_token(self, id_token: str, nonce: str, access_token: str = "") -> dict[str, Any]:
        """Check the ID token signature, audience and issuer, and that it echoes our nonce."""
        endpoints = await self.endpoints()
        if not endpoints.jwks_url:
            raise TokenError(f"{self.name} issued an id_token but no JWKS is configured")
        jwks = await self._get_jwks(endpoints.jwks_url)
        try:
            claims = jwt.decode(
                id_token,
                jwks,
                algorithms=self.config.id_token_algorithms,
                audience=self.config.client_id,
                issuer=endpoints.issuer or None,
                access_token=access_token or None,
            )
        except JWTError as e:
            raise TokenError(f"{self.name} id_token rejected: {e}") from e
        if claims.get("nonce") != nonce:
            raise TokenError(f"{self.name} id_token nonce mismatch")
        return claims

    async def _token_request(self, data: dict[str, str]) -> TokenResponse:
        endpoints = await self.endpoints()
        try:
            response = await self.http.post(
                endpoints.token_url,
                data=data,
                headers={"Accept": "application/json"},
            )
            body = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise ExchangeFailed(f"{self.name} token request failed: {e}") from e

        if not isinstance(body, dict):
            raise ExchangeFailed(f"{self.name} token response is not an object")
        if body.get("error") or response.status_code != 200:
            error = body.get("error") or f"http_{response.status_code}"
            description = body.get("error_description", "")
            return TokenResponse(error=f"{error}: {description}" if description else error)

        try:
            return TokenResponse.model_validate(
                {
                    "access_token": body.get("access_token") or "",
                    "refresh_token": body.get("refresh_token") or "",
                    "id_token": body.get("id_token") or "",
                    "token_type": body.get("token_type") or "",
                    "expires_in": body.get("expires_in") or 0,
                    "scope": body.get("scope") or "",
                }
            )
        except (ValueError, ValidationError) as e:
            raise ExchangeFailed(f"{self.name} token response is malformed: {e}") from e

    async def _get_json(self, url: str, access_token: str, accept: str = "application/json") -> Any:
        try:
            response = await self.http.get(
                url,
                headers={"Authorization": f"Bearer {access_token}", "Accept": accept},
            )
        except httpx.HTTPError as e:
            raise ProfileFailed(f"{self.name} request to {url} failed: {e}") from e
        if response.status_code != 200:
            raise ProfileFailed(f"{self.name} request to {url} returned {response.status_code}")
        try:
            return response.json()
        except ValueError as e:
            raise ProfileFailed(f"{self.name} returned malformed JSON from {url}") from e

    async def _get_jwks(self, url: str) -> dict[str, Any]:
        if self._jwks is not None and time.monotonic() - self._jwks_fetched_at < DISCOVERY_TTL_SECONDS:
            return self._jwks
        try:
            response = await self.http.get(url)
            response.raise_for_status()
            self._jwks = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise TokenError(f"{self.name} JWKS fetch failed: {e}") from e
        self._jwks_fetched_at = time.monotonic()
        return self._jwks


class GitHubProvider(OAuth2Provider):
    """GitHub OAuth app. No ID tokens; email may need a second request."""

    EMAILS_URL = "https://api.github.com/user/emails"
    ORGS_URL = "https://api.github.com/user/orgs"
    ACCEPT = "application/vnd.github+json"

    def __init__(
        self,
        config: ProviderConfig,
        http_client: httpx.AsyncClient,
        allowed_orgs: list[str] | None = None,
        allow_private_email: bool = False,
    ) -> None:
        super().__init__(config, http_client)
        self.allowed_orgs = [org.lower() for org in allowed_orgs or []]
        self.allow_private_email = allow_private_email

    async def refresh_token(self, refresh_token: str) -> TokenResponse:
        if not refresh_token:
            return TokenResponse(error="GitHub OAuth tokens do not support refresh")
        return await super().refresh_token(refresh_token)

    async def fetch_profile(self, access_token: str) -> UserProfile:
        info = await self._get_json(self.config.userinfo_url, access_token, accept=self.ACCEPT)
        if not isinstance(info, dict) or info.get("id") is None:
            raise ProfileFailed("github user response has no id")

        email = info.get("email") or ""
        email_verified = bool(email)
        if not email or self.allow_private_email:
            try:
                fetched, verified = await self._primary_email(access_token)
            except ProfileFailed as e:
                logger.warning(f"github email lookup failed: {e}")
            else:
                if fetched:
                    email, email_verified = fetched, verified

        if self.allowed_orgs:
            orgs = await self._get_json(self.ORGS_URL, access_token, accept=self.ACCEPT)
            entries = orgs if isinstance(orgs, list) else []
            logins = {str(org.get("login", "")).lower() for org in entries if isinstance(org, dict)}
            if not logins & set(self.allowed_orgs):
                raise ProfileFailed("github user is not a member of an allowed organization")

        try:
            return UserProfile(
                provider_user_id=str(info["id"]),
                email=email,
                email_verified=email_verified,
                name=info.get("name") or info.get("login") or "",
                avatar_url=info.get("avatar_url") or "",
                raw=info,
            )
        except ValidationError as e:
            raise ProfileFailed(f"github profile is malformed: {e}") from e

    async def _primary_email(self, access_token: str) -> tuple[str, bool]:
        """Primary verified email, then any verified one, then the unverified primary."""
        emails = await self._get_json(self.EMAILS_URL, access_token, accept=self.ACCEPT)
        entries = [e for e in emails if isinstance(e, dict)] if isinstance(emails, list) else []
        for entry in entries:
            if entry.get("primary") and entry.get("verified"):
                return entry.get("email") or "", True
        for entry in entries:
            if entry.get("verified"):
                return entry.get("email") or "", True
        for entry in entries:
            if entry.get("primary"):
                return entry.get("email") or "", False
        return "", False


class OIDCProvider(OAuth2Provider):
    """Any OpenID Connect provider, configured from its discovery document."""

    def __init__(self, config: ProviderConfig, http_client: httpx.AsyncClient, issuer_url: str) -> None:
        super().__init__(config, http_client)
        self.issuer_url = issuer_url.rstrip("/")
        self._discovered: ProviderConfig | None = None
        self._discovered_at = 0.0

    async def endpoints(self) -> ProviderConfig:
        if self._discovered is not None and time.monotonic() - self._discovered_at < DISCOVERY_TTL_SECONDS:
            return self._discovered

        url = f"{self.issuer_url}/.well-known/openid-configuration"
        try:
            response = await self.http.get(url)
            response.raise_for_status()
            document = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Failed to fetch OpenID Connect discovery document from {url}: {e}")
            raise ExchangeFailed(f"{self.name} discovery failed: {e}") from e

        self._discovered = self.config.model_copy(
            update={
                "authorize_url": document.get("authorization_endpoint", ""),
                "token_url": document.get("token_endpoint", ""),
                "userinfo_url": document.get("userinfo_endpoint", ""),
                "jwks_url": document.get("jwks_uri", ""),
                "issuer": document.get("issuer", self.issuer_url),
            }
        )
        self._discovered_at = time.monotonic()
        logger.info(f"Fetched OpenID Connect discovery document from {url}")
        return self._discovered


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.lower() == "true"
    return bool(value)


class ProviderRegistry:
    """Name-keyed set of configured provider clients."""

    def __init__(self) -> None:
        self._providers: dict[str, ProviderClient] = {}

    def register(self, provider: ProviderClient) -> None:
        if provider.name in self._providers:
            raise ValueError(f"Provider '{provider.name}' already registered")
        self._providers[provider.name] = provider

    def resolve(self, name: str) -> ProviderClient:
        if name not in self._providers:
            raise ProviderNotFound(f"Unknown OAuth provider: {name}")
        return self._providers[name]

    def __contains__(self, name: object) -> bool:
        return name in self._providers

    def __len__(self) -> int:
        return len(self._providers)

    def list_providers(self) -> list[ProviderInfo]:
        return [ProviderInfo(name=p.name, display_name=p.display_name) for p in self._providers.values()]


def build_registry(settings: Settings, http_client: httpx.AsyncClient) -> ProviderRegistry:
    """Build the registry from settings. Only providers with credentials are included."""
    registry = ProviderRegistry()

    if settings.google_client_id and settings.google_client_secret:
        registry.register(
            OAuth2Provider(
                ProviderConfig(
                    name="google",
                    display_name="Google",
                    client_id=settings.google_client_id,
                    client_secret=settings.google_client_secret,
                    authorize_url="https://accounts.google.com/o/oauth2/v2/auth",
                    token_url="https://oauth2.googleapis.com/token",
                    userinfo_url="https://www.googleapis.com/oauth2/v3/userinfo",
                    jwks_url="https://www.googleapis.com/oauth2/v3/certs",
                    issuer="https://accounts.google.com",
                    scopes=["openid", "email", "profile"],
                    extra_auth_params={"access_type": "offline", "prompt": "consent"},
                ),
                http_client,
            )
        )

    if settings.github_client_id and settings.github_client_secret:
        registry.register(
            GitHubProvider(
                ProviderConfig(
                    name="github",
                    display_name="GitHub",
                    client_id=settings.github_client_id,
                    client_secret=settings.github_client_secret,
                    authorize_url="https://github.com/login/oauth/authorize",
                    token_url="https://github.com/login/oauth/access_token",
                    userinfo_url="https://api.github.com/user",
                    scopes=["read:user", "user:email"],
                    id_field="id",
                    avatar_field="avatar_url",
                ),
                http_client,
                allowed_orgs=settings.github_allowed_orgs,
                allow_private_email=settings.github_allow_private_email,
            )
        )

    if settings.oidc_client_id and settings.oidc_issuer_url:
        registry.register(
            OIDCProvider(
                ProviderConfig(
                    name="oidc",
                    display_name=settings.oidc_display_name,
                    client_id=settings.oidc_client_id,
                    client_secret=settings.oidc_client_secret,
                    scopes=settings.oidc_scopes,
                ),
                http_client,
                issuer_url=settings.oidc_issuer_url,
            )
        )

    return registry
