"""Authorization-code login flow: Start, Callback, Link and Unlink.

The controller is request scoped. It owns no mutable state of its own; all
coordination between concurrent requests happens in the state store (atomic
consume) and the identity table (unique provider subject).
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from fedlogin.config import settings
from fedlogin.models.user import User
from fedlogin.oauth.errors import (
    AlreadyLinked,
    AuthorizationFailed,
    IdentityCreationFailed,
    IdentityExists,
    IdentityInUse,
    IdentityNotFound,
    InvalidRedirect,
    InvalidState,
    LinkSessionMismatch,
    MissingParameter,
    OAuthFlowError,
    OAuthNotConfigured,
    ProviderReportedError,
    RegistrationDisabled,
    ServerError,
    StateExpired,
    TokenError,
    UnlinkWouldLockOut,
    UserCreationFailed,
    UserNotFound,
)
from fedlogin.oauth.identity_store import IdentityStore
from fedlogin.oauth.models import OAuthIdentity
from fedlogin.oauth.providers import ProviderClient, ProviderRegistry
from fedlogin.oauth.redirects import callback_url, is_local_path, safe_redirect
from fedlogin.oauth.schemas import OAuthState, TokenResponse, UserProfile
from fedlogin.oauth.state_store import StateStoreProtocol
from fedlogin.users.store import UserStore

logger = logging.getLogger(__name__)

_ERROR_CODE_RE = re.compile(r"[^a-z0-9_]")


@dataclass
class StartResult:
    authorization_url: str
    state: OAuthState


@dataclass
class Resolution:
    user: User
    identity: OAuthIdentity | None
    is_new_user: bool = False
    identity_created: bool = False


@dataclass
class CallbackResult:
    user: User
    identity: OAuthIdentity | None
    redirect_uri: str
    is_new_user: bool = False
    identity_created: bool = False
    link: bool = False


def sanitize_error_code(error: str) -> str:
    """Provider-supplied error codes are echoed into our URL; keep them to [a-z0-9_]."""
    cleaned = _ERROR_CODE_RE.sub("", error.lower())[:64]
    return cleaned or "provider_error"


def _short(token: str) -> str:
    return f"{token[:8]}..."


class OAuthFlowController:
    def __init__(
        self,
        registry: ProviderRegistry,
        state_store: StateStoreProtocol | None,
        session: AsyncSession,
        *,
        state_ttl: timedelta | None = None,
        allow_registration: bool | None = None,
        default_redirect: str | None = None,
        settings_path: str | None = None,
    ) -> None:
        self.registry = registry
        self.state_store = state_store
        self.session = session
        self.users = UserStore(session)
        self.identities = IdentityStore(session)
        self.state_ttl = state_ttl or timedelta(seconds=settings.state_ttl_seconds)
        self.allow_registration = (
            settings.allow_registration if allow_registration is None else allow_registration
        )
        self.default_redirect = default_redirect or settings.default_redirect
        self.settings_path = settings_path or settings.settings_path

    # ------------------------------------------------------------------
    # Start / Link
    # ------------------------------------------------------------------

    async def start(self, provider_name: str, redirect: str | None, base_url: str) -> StartResult:
        """Begin a login: persist a fresh state and build the provider URL."""
        provider = self.registry.resolve(provider_name)
        self._require_state_store()

        if not redirect:
            redirect_uri = self.default_redirect
        elif is_local_path(redirect):
            redirect_uri = redirect
        else:
            raise InvalidRedirect("redirect must be a local path")

        return await self._begin(provider, redirect_uri, base_url)

    async def link(self, provider_name: str, user_id: str, base_url: str) -> StartResult:
        """Begin binding a provider account to an already-authenticated user."""
        provider = self.registry.resolve(provider_name)
        self._require_state_store()

        if await self.identities.get_by_user_and_provider(user_id, provider.name) is not None:
            raise AlreadyLinked(f"{provider.name} is already linked to this account")

        return await self._begin(provider, self.settings_path, base_url, link_user_id=user_id)

    async def _begin(
        self,
        provider: ProviderClient,
        redirect_uri: str,
        base_url: str,
        link_user_id: str | None = None,
    ) -> StartResult:
        state = OAuthState.generate(provider.name, redirect_uri, self.state_ttl, link_user_id=link_user_id)

        try:
            await self.state_store.save(state)
        except Exception as e:
            logger.exception(f"Failed to create OAuth state for {provider.name}")
            raise AuthorizationFailed("Failed to initiate OAuth") from e

        try:
            url = await provider.authorization_url(
                state.state,
                state.code_challenge,
                state.nonce,
                callback_url(base_url, provider.name),
            )
        except OAuthFlowError as e:
            logger.error(f"Failed to build {provider.name} authorization URL: {e}")
            raise AuthorizationFailed("Failed to initiate OAuth") from e

        return StartResult(authorization_url=url, state=state)

    def _require_state_store(self) -> None:
        if self.state_store is None:
            raise OAuthNotConfigured("OAuth not configured")

    # ------------------------------------------------------------------
    # Callback
    # ------------------------------------------------------------------

    async def callback(
        self,
        provider_name: str,
        code: str | None,
        state_token: str | None,
        base_url: str,
        error: str | None = None,
        error_description: str | None = None,
        session_user_id: str | None = None,
    ) -> CallbackResult:
        """Finish an authorization attempt.

        ``session_user_id`` is the user signed in on the browser presenting the
        callback. A link only completes for the same user that started it.
        """
        if error:
            logger.warning(f"OAuth error from {provider_name}: {error} ({error_description or 'no description'})")
            raise ProviderReportedError(sanitize_error_code(error), error_description or "")

        if not code or not state_token:
            raise MissingParameter("Missing code or state")

        provider = self.registry.resolve(provider_name)
        self._require_state_store()

        # Lookup and delete are one atomic step; nothing below can reuse this state
        try:
            record = await self.state_store.consume(state_token)
        except Exception as e:
            logger.error(f"Failed to consume OAuth state {_short(state_token)} for {provider.name}: {e}")
            raise ServerError("State store unavailable") from e
        if record is None:
            logger.warning(f"Unknown or already used OAuth state {_short(state_token)} for {provider.name}")
            raise InvalidState("Invalid state parameter")
        if record.provider != provider.name:
            logger.warning(
                f"OAuth state {_short(state_token)} was issued for {record.provider}, presented to {provider.name}"
            )
            raise InvalidState("Invalid state parameter")
        if record.is_expired():
            logger.warning(f"Expired OAuth state {_short(state_token)} for {provider.name}")
            raise StateExpired("State expired")

        try:
            if record.is_link and session_user_id != record.link_user_id:
                logger.warning(
                    f"Link state {_short(state_token)} for user {record.link_user_id} presented by "
                    f"session {session_user_id or 'none'}"
                )
                raise LinkSessionMismatch("Link was started by a different session")
            return await self._complete(provider, record, code, base_url)
        except OAuthFlowError as e:
            e.link_mode = record.is_link
            raise

    async def _complete(
        self, provider: ProviderClient, record: OAuthState, code: str, base_url: str
    ) -> CallbackResult:
        redirect_to = callback_url(base_url, provider.name)

        try:
            tokens = await provider.exchange_code(code, record.code_verifier, redirect_to, nonce=record.nonce)
        except OAuthFlowError as e:
            logger.error(f"Failed to exchange OAuth code with {provider.name}: {e}")
            raise
        if tokens.error:
            logger.warning(f"OAuth token error from {provider.name}: {tokens.error}")
            raise TokenError("Token exchange failed")

        try:
            profile = await provider.fetch_profile(tokens.access_token)
        except OAuthFlowError as e:
            logger.error(f"Failed to get OAuth user profile from {provider.name}: {e}")
            raise

        try:
            if record.link_user_id is not None:
                resolution = await self._resolve_link(provider.name, record.link_user_id, profile, tokens)
            else:
                resolution = await self._resolve_login(provider.name, profile, tokens)
        except SQLAlchemyError as e:
            logger.error(f"Database error resolving {provider.name} account {profile.provider_user_id}: {e}")
            await self.session.rollback()
            raise ServerError("Failed to resolve account") from e

        return CallbackResult(
            user=resolution.user,
            identity=resolution.identity,
            redirect_uri=safe_redirect(record.redirect_uri, self.default_redirect),
            is_new_user=resolution.is_new_user,
            identity_created=resolution.identity_created,
            link=record.is_link,
        )

    # ------------------------------------------------------------------
    # Identity resolution
    # ------------------------------------------------------------------

    async def _resolve_login(self, provider: str, profile: UserProfile, tokens: TokenResponse) -> Resolution:
        # The provider subject is the durable key and always wins over email
        identity = await self.identities.get_by_provider_user(provider, profile.provider_user_id)
        if identity is not None:
            return await self._returning(identity, profile, tokens)

        user = None
        # Unverified email claims never select an existing account
        if profile.email and profile.email_verified:
            user = await self.users.get_by_email(profile.email)
            if user is not None:
                logger.info(f"Linking {provider} account {profile.provider_user_id} to user {user.id} by verified email")

        is_new_user = False
        if user is None:
            if not self.allow_registration:
                raise RegistrationDisabled("Registration is disabled")
            try:
                user = await self._create_user(profile)
            except IntegrityError as e:
                # A concurrent first login for the same account may have won the race
                winner = await self.identities.get_by_provider_user(provider, profile.provider_user_id)
                if winner is not None:
                    return await self._returning(winner, profile, tokens)
                logger.error(f"Failed to create user from {provider} profile: {e}")
                raise UserCreationFailed("Failed to create user") from e
            except SQLAlchemyError as e:
                logger.error(f"Failed to create user from {provider} profile: {e}")
                raise UserCreationFailed("Failed to create user") from e
            is_new_user = True
            logger.info(f"Created user {user.id} from {provider} account {profile.provider_user_id}")

        return await self._bind(provider, user, profile, tokens, is_new_user)

    async def _create_user(self, profile: UserProfile) -> User:
        email = profile.email or None
        if email and not profile.email_verified and await self.users.email_taken(email):
            # The claim is unproven and the address belongs to someone else
            email = None
        return await self.users.create(email=email, name=profile.display_name())

    async def _bind(
        self,
        provider: str,
        user: User,
        profile: UserProfile,
        tokens: TokenResponse,
        is_new_user: bool,
    ) -> Resolution:
        try:
            identity = await self.identities.create(user.id, provider, profile, tokens)
        except IdentityExists as e:
            winner = await self.identities.get_by_provider_user(provider, profile.provider_user_id)
            if winner is None:
                logger.error(f"Failed to create {provider} identity for user {user.id}: {e}")
                if is_new_user:
                    await self.users.delete(user)
                raise IdentityCreationFailed("Failed to create identity") from e
            if is_new_user:
                await self.users.delete(user)
            return await self._returning(winner, profile, tokens)
        except SQLAlchemyError as e:
            # The user is legitimately authenticated; keep them signed in and record the gap
            logger.error(
                f"Failed to create {provider} identity {profile.provider_user_id} for user {user.id}, "
                f"continuing login without it: {e}"
            )
            return Resolution(user=user, identity=None, is_new_user=is_new_user)

        return Resolution(user=user, identity=identity, is_new_user=is_new_user, identity_created=True)

    async def _returning(self, identity: OAuthIdentity, profile: UserProfile, tokens: TokenResponse) -> Resolution:
        await self.identities.refresh(identity, profile, tokens)
        user = await self.users.get(identity.user_id)
        if user is None:
            logger.error(f"User {identity.user_id} for {identity.provider} identity {identity.id} not found")
            raise UserNotFound("User not found")
        return Resolution(user=user, identity=identity)

    async def _resolve_link(
        self, provider: str, link_user_id: str, profile: UserProfile, tokens: TokenResponse
    ) -> Resolution:
        user = await self.users.get(link_user_id)
        if user is None:
            raise UserNotFound("User not found")

        identity = await self.identities.get_by_provider_user(provider, profile.provider_user_id)
        if identity is not None:
            if identity.user_id != user.id:
                logger.warning(
                    f"User {user.id} tried to link {provider} account {profile.provider_user_id} "
                    f"owned by user {identity.user_id}"
                )
                raise IdentityInUse("This account is linked to another user")
            await self.identities.refresh(identity, profile, tokens)
            return Resolution(user=user, identity=identity)

        if await self.identities.get_by_user_and_provider(user.id, provider) is not None:
            raise AlreadyLinked(f"{provider} is already linked to this account")

        try:
            identity = await self.identities.create(user.id, provider, profile, tokens)
        except IdentityExists as e:
            raise IdentityInUse("This account is linked to another user") from e
        except SQLAlchemyError as e:
            logger.error(f"Failed to link {provider} account {profile.provider_user_id} to user {user.id}: {e}")
            raise IdentityCreationFailed("Failed to create identity") from e

        logger.info(f"Linked {provider} account {profile.provider_user_id} to user {user.id}")
        return Resolution(user=user, identity=identity, identity_created=True)

    # ------------------------------------------------------------------
    # Unlink
    # ------------------------------------------------------------------

    async def unlink(self, provider_name: str, user_id: str) -> None:
        identity = await self.identities.get_by_user_and_provider(user_id, provider_name)
        if identity is None:
            raise IdentityNotFound("OAuth identity not found")

        user = await self.users.get(user_id)
        if user is not None and not user.has_password:
            if await self.identities.count_by_user(user_id) <= 1:
                raise UnlinkWouldLockOut()

        await self.identities.delete(identity.id)
        logger.info(f"Unlinked {provider_name} identity {identity.id} from user {user_id}")
