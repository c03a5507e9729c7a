"""Login flow controller: start, callback resolution, link and unlink."""
from __future__ import annotations

from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, OperationalError

from fedlogin.models.user import User
from fedlogin.oauth import pkce
from fedlogin.oauth.errors import (
    AlreadyLinked,
    AuthorizationFailed,
    ExchangeFailed,
    IdentityCreationFailed,
    IdentityExists,
    IdentityInUse,
    IdentityNotFound,
    InvalidRedirect,
    InvalidState,
    LinkSessionMismatch,
    MissingParameter,
    OAuthNotConfigured,
    ProviderNotFound,
    ProviderReportedError,
    RegistrationDisabled,
    ServerError,
    StateExpired,
    TokenError,
    UnlinkWouldLockOut,
    UserCreationFailed,
    UserNotFound,
)
from fedlogin.oauth.flow import OAuthFlowController, sanitize_error_code
from fedlogin.oauth.identity_store import IdentityStore
from fedlogin.oauth.schemas import OAuthState, TokenResponse, UserProfile, utcnow

BASE_URL = "http://test"


@pytest.fixture
def flow(registry, state_store, test_db_session):
    return OAuthFlowController(
        registry,
        state_store,
        test_db_session,
        state_ttl=timedelta(minutes=10),
        allow_registration=True,
        default_redirect="/dashboard",
        settings_path="/settings",
    )


def _query(url: str) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}


async def _login(flow, provider: str = "github", redirect: str | None = "/dashboard"):
    started = await flow.start(provider, redirect, BASE_URL)
    return await flow.callback(provider, "code-1", started.state.state, BASE_URL)


async def _user_count(session) -> int:
    return await session.scalar(select(func.count()).select_from(User))


async def _carol_owns_github_account(make_user, session) -> User:
    carol = await make_user("carol@example.com", "Carol")
    profile = UserProfile(provider_user_id="1001", email="carol@example.com", email_verified=True)
    await IdentityStore(session).create(carol.id, "github", profile, TokenResponse(access_token="old"))
    return carol


def _hide_first_lookup(flow) -> None:
    """Simulate a concurrent winner committing between our lookup and our insert."""
    real_lookup = flow.identities.get_by_provider_user
    calls = 0

    async def stale_first_lookup(provider, provider_user_id):
        nonlocal calls
        calls += 1
        if calls == 1:
            return None
        return await real_lookup(provider, provider_user_id)

    flow.identities.get_by_provider_user = stale_first_lookup


def _conflicting_user_insert(flow) -> None:
    async def conflicting_create(email, name, status="active"):
        raise IntegrityError("INSERT INTO users", {}, Exception("UNIQUE constraint failed: users.email"))

    flow.users.create = conflicting_create


# ---------------------------------------------------------------------------
# Start
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_start_persists_state_and_builds_pkce_url(flow, test_redis):
    result = await flow.start("github", "/reports?tab=1", BASE_URL)

    params = _query(result.authorization_url)
    assert params["state"] == result.state.state
    assert params["code_challenge"] == pkce.code_challenge(result.state.code_verifier)
    assert params["nonce"] == result.state.nonce
    assert params["redirect_uri"] == "http://test/auth/oauth/github/callback"
    assert result.state.redirect_uri == "/reports?tab=1"
    assert result.state.expires_at - result.state.created_at == timedelta(minutes=10)
    assert len(test_redis.keys_with_prefix("oauth_state:")) == 1


@pytest.mark.asyncio
async def test_start_defaults_redirect(flow):
    result = await flow.start("github", None, BASE_URL)
    assert result.state.redirect_uri == "/dashboard"


@pytest.mark.asyncio
@pytest.mark.parametrize("redirect", ["https://evil.example/", "//evil.example", "javascript:alert(1)"])
async def test_start_rejects_external_redirect(flow, test_redis, redirect):
    with pytest.raises(InvalidRedirect):
        await flow.start("github", redirect, BASE_URL)
    assert test_redis.keys_with_prefix("oauth_state:") == []


@pytest.mark.asyncio
async def test_start_unknown_provider(flow):
    with pytest.raises(ProviderNotFound):
        await flow.start("myspace", None, BASE_URL)


@pytest.mark.asyncio
async def test_start_without_state_store(registry, test_db_session):
    flow = OAuthFlowController(registry, None, test_db_session)
    with pytest.raises(OAuthNotConfigured):
        await flow.start("github", None, BASE_URL)


@pytest.mark.asyncio
async def test_start_state_store_failure(flow, test_redis):
    async def broken(*args, **kwargs):
        raise ConnectionError("redis down")

    test_redis.setex = broken
    with pytest.raises(AuthorizationFailed):
        await flow.start("github", None, BASE_URL)


# ---------------------------------------------------------------------------
# Callback: login resolution
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_first_login_creates_user_and_identity(flow, github, test_db_session):
    started = await flow.start("github", "/welcome", BASE_URL)
    result = await flow.callback("github", "code-1", started.state.state, BASE_URL)

    assert result.is_new_user
    assert result.identity_created
    assert result.redirect_uri == "/welcome"
    assert result.user.email == "alice@example.com"
    assert result.user.name == "Alice"
    assert not result.user.has_password
    assert result.identity.provider_user_id == "1001"
    assert result.identity.access_token == "at-1"
    assert github.exchange_calls == [
        {
            "code": "code-1",
            "code_verifier": started.state.code_verifier,
            "redirect_uri": "http://test/auth/oauth/github/callback",
            "nonce": started.state.nonce,
        }
    ]


@pytest.mark.asyncio
async def test_returning_login_refreshes_tokens(flow, github, test_db_session):
    first = await _login(flow)
    github.tokens = TokenResponse(access_token="at-2", expires_in=60)

    second = await _login(flow)

    assert second.user.id == first.user.id
    assert not second.is_new_user
    assert not second.identity_created
    assert second.identity.access_token == "at-2"
    assert second.identity.refresh_token == "rt-1"
    assert await _user_count(test_db_session) == 1


@pytest.mark.asyncio
async def test_provider_subject_wins_over_changed_email(flow, github):
    first = await _login(flow)
    github.profile = github.profile.model_copy(update={"email": "alice@new.example"})

    second = await _login(flow)

    assert second.user.id == first.user.id
    assert second.identity.email == "alice@new.example"


@pytest.mark.asyncio
async def test_verified_email_links_existing_user(make_user, flow, test_db_session):
    bob = await make_user("alice@example.com", "Alice Local", password_hash="x")

    result = await _login(flow)

    assert result.user.id == bob.id
    assert not result.is_new_user
    assert result.identity_created
    assert await _user_count(test_db_session) == 1


@pytest.mark.asyncio
async def test_unverified_email_never_selects_existing_user(make_user, flow, github, test_db_session):
    owner = await make_user("alice@example.com", "Alice Local", password_hash="x")
    github.profile = github.profile.model_copy(update={"email_verified": False})

    result = await _login(flow)

    assert result.user.id != owner.id
    assert result.is_new_user
    assert result.user.email is None
    assert await _user_count(test_db_session) == 2


@pytest.mark.asyncio
async def test_second_provider_with_same_verified_email_joins_user(flow):
    first = await _login(flow, "github")
    second = await _login(flow, "google")

    assert second.user.id == first.user.id
    assert [i.provider for i in await flow.identities.list_by_user(first.user.id)] == ["github", "google"]


@pytest.mark.asyncio
async def test_registration_disabled(registry, state_store, test_db_session):
    flow = OAuthFlowController(registry, state_store, test_db_session, allow_registration=False)
    with pytest.raises(RegistrationDisabled) as exc:
        await _login(flow)
    assert exc.value.code == "registration_disabled"
    assert await _user_count(test_db_session) == 0


@pytest.mark.asyncio
async def test_lost_race_converges_on_winning_identity(make_user, flow, test_db_session):
    carol = await _carol_owns_github_account(make_user, test_db_session)
    _hide_first_lookup(flow)

    result = await _login(flow)

    assert result.user.id == carol.id
    assert not result.is_new_user
    assert result.identity.access_token == "at-1"
    # The user created for the losing attempt is removed
    assert await _user_count(test_db_session) == 1


@pytest.mark.asyncio
async def test_user_insert_conflict_converges_on_winning_identity(make_user, flow, test_db_session):
    carol = await _carol_owns_github_account(make_user, test_db_session)
    _hide_first_lookup(flow)
    _conflicting_user_insert(flow)

    result = await _login(flow)

    assert result.user.id == carol.id
    assert not result.is_new_user
    assert await _user_count(test_db_session) == 1


@pytest.mark.asyncio
async def test_user_insert_conflict_without_winner(flow, test_db_session):
    _conflicting_user_insert(flow)

    with pytest.raises(UserCreationFailed) as exc:
        await _login(flow)

    assert exc.value.code == "user_creation_failed"
    assert await _user_count(test_db_session) == 0


@pytest.mark.asyncio
async def test_identity_conflict_without_winner_removes_new_user(flow, test_db_session):
    async def conflicting_create(*args, **kwargs):
        raise IdentityExists("github account 1001 is already linked")

    async def no_identity(provider, provider_user_id):
        return None

    flow.identities.create = conflicting_create
    flow.identities.get_by_provider_user = no_identity

    with pytest.raises(IdentityCreationFailed):
        await _login(flow)

    assert await _user_count(test_db_session) == 0


@pytest.mark.asyncio
async def test_identity_owner_missing(flow, test_db_session):
    await IdentityStore(test_db_session).create(
        "deleted-user", "github", UserProfile(provider_user_id="1001"), TokenResponse(access_token="old")
    )

    with pytest.raises(UserNotFound) as exc:
        await _login(flow)

    assert exc.value.code == "user_not_found"


@pytest.mark.asyncio
async def test_database_error_during_resolution(flow):
    await _login(flow)

    async def failing_refresh(*args, **kwargs):
        raise OperationalError("UPDATE oauth_identities", {}, Exception("database is locked"))

    flow.identities.refresh = failing_refresh

    with pytest.raises(ServerError) as exc:
        await _login(flow)

    assert exc.value.code == "server_error"


@pytest.mark.asyncio
async def test_identity_write_failure_keeps_login(flow, caplog):
    async def failing_create(*args, **kwargs):
        raise OperationalError("INSERT INTO oauth_identities", {}, Exception("disk I/O error"))

    flow.identities.create = failing_create

    result = await _login(flow)

    assert result.user.email == "alice@example.com"
    assert result.identity is None
    assert not result.identity_created
    assert "continuing login without it" in caplog.text


# ---------------------------------------------------------------------------
# Callback: rejected attempts
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_state_is_single_use(flow, github):
    started = await flow.start("github", None, BASE_URL)
    await flow.callback("github", "code-1", started.state.state, BASE_URL)

    with pytest.raises(InvalidState):
        await flow.callback("github", "code-1", started.state.state, BASE_URL)
    assert len(github.exchange_calls) == 1


@pytest.mark.asyncio
async def test_unknown_state(flow, github):
    with pytest.raises(InvalidState):
        await flow.callback("github", "code-1", "forged", BASE_URL)
    assert github.exchange_calls == []


@pytest.mark.asyncio
async def test_state_bound_to_provider(flow, github, google):
    started = await flow.start("github", None, BASE_URL)

    with pytest.raises(InvalidState):
        await flow.callback("google", "code-1", started.state.state, BASE_URL)
    # Consumed even on mismatch
    with pytest.raises(InvalidState):
        await flow.callback("github", "code-1", started.state.state, BASE_URL)
    assert github.exchange_calls == google.exchange_calls == []


@pytest.mark.asyncio
async def test_expired_state(flow, state_store, github):
    state = OAuthState.generate("github", "/dashboard", timedelta(minutes=10))
    past = utcnow() - timedelta(minutes=11)
    await state_store.save(state.model_copy(update={"created_at": past, "expires_at": past + timedelta(minutes=10)}))

    with pytest.raises(StateExpired):
        await flow.callback("github", "code-1", state.state, BASE_URL)
    assert github.exchange_calls == []
    assert await state_store.consume(state.state) is None


@pytest.mark.asyncio
async def test_provider_error_parameter(flow, github):
    with pytest.raises(ProviderReportedError) as exc:
        await flow.callback("github", None, None, BASE_URL, error="access_denied", error_description="User denied")
    assert exc.value.code == "access_denied"
    assert exc.value.description == "User denied"
    assert github.exchange_calls == []


def test_sanitize_error_code():
    assert sanitize_error_code("Access_Denied") == "access_denied"
    assert sanitize_error_code("x&next=https://evil") == "xnexthttpsevil"
    assert sanitize_error_code("<>") == "provider_error"


@pytest.mark.asyncio
@pytest.mark.parametrize("code,state", [(None, "s"), ("c", None), ("", "")])
async def test_missing_parameters(flow, code, state):
    with pytest.raises(MissingParameter):
        await flow.callback("github", code, state, BASE_URL)


@pytest.mark.asyncio
async def test_token_error_from_provider(flow, github, test_db_session):
    github.tokens = TokenResponse(error="invalid_grant: code expired")

    with pytest.raises(TokenError) as exc:
        await _login(flow)
    assert exc.value.code == "token_error"
    assert not exc.value.link_mode
    assert github.profile_calls == 0
    assert await _user_count(test_db_session) == 0


@pytest.mark.asyncio
async def test_exchange_failure_propagates(flow, github):
    github.exchange_error = ExchangeFailed("connection reset")
    with pytest.raises(ExchangeFailed):
        await _login(flow)


@pytest.mark.asyncio
async def test_state_store_outage(flow, test_redis, github):
    started = await flow.start("github", None, BASE_URL)

    async def broken(key):
        raise ConnectionError("redis down")

    test_redis.getdel = broken

    with pytest.raises(ServerError):
        await flow.callback("github", "code-1", started.state.state, BASE_URL)
    assert github.exchange_calls == []


# ---------------------------------------------------------------------------
# Link
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_link_binds_provider_to_current_user(make_user, flow, test_db_session):
    bob = await make_user()

    started = await flow.link("github", bob.id, BASE_URL)
    assert started.state.link_user_id == bob.id
    assert started.state.redirect_uri == "/settings"

    result = await flow.callback("github", "code-1", started.state.state, BASE_URL, session_user_id=bob.id)

    assert result.link
    assert result.user.id == bob.id
    assert result.identity_created
    assert result.redirect_uri == "/settings"
    # Linking never creates or merges accounts, even with a different provider email
    assert await _user_count(test_db_session) == 1


@pytest.mark.asyncio
async def test_link_when_already_linked(make_user, flow):
    bob = await make_user()
    started = await flow.link("github", bob.id, BASE_URL)
    await flow.callback("github", "code-1", started.state.state, BASE_URL, session_user_id=bob.id)

    with pytest.raises(AlreadyLinked):
        await flow.link("github", bob.id, BASE_URL)


@pytest.mark.asyncio
async def test_link_account_owned_by_another_user(make_user, flow, github):
    bob = await make_user()
    alice = (await _login(flow)).user

    started = await flow.link("github", bob.id, BASE_URL)
    with pytest.raises(IdentityInUse) as exc:
        await flow.callback("github", "code-1", started.state.state, BASE_URL, session_user_id=bob.id)

    assert exc.value.link_mode
    owner = await flow.identities.get_by_provider_user("github", "1001")
    assert owner.user_id == alice.id


@pytest.mark.asyncio
async def test_link_errors_carry_link_mode(make_user, flow, github):
    bob = await make_user()
    github.tokens = TokenResponse(error="invalid_grant")

    started = await flow.link("github", bob.id, BASE_URL)
    with pytest.raises(TokenError) as exc:
        await flow.callback("github", "code-1", started.state.state, BASE_URL, session_user_id=bob.id)
    assert exc.value.link_mode


@pytest.mark.asyncio
async def test_link_completed_by_other_session(make_user, flow, github):
    bob = await make_user()
    alice = await make_user("alice@example.com", "Alice")

    started = await flow.link("github", bob.id, BASE_URL)
    with pytest.raises(LinkSessionMismatch) as exc:
        await flow.callback("github", "code-1", started.state.state, BASE_URL, session_user_id=alice.id)

    assert exc.value.link_mode
    assert github.exchange_calls == []
    assert await flow.identities.count_by_user(bob.id) == 0

    started = await flow.link("github", bob.id, BASE_URL)
    with pytest.raises(LinkSessionMismatch):
        await flow.callback("github", "code-1", started.state.state, BASE_URL)


@pytest.mark.asyncio
async def test_link_user_deleted_before_callback(make_user, flow):
    bob = await make_user()
    started = await flow.link("github", bob.id, BASE_URL)
    await flow.users.delete(await flow.users.get(bob.id))

    with pytest.raises(UserNotFound) as exc:
        await flow.callback("github", "code-1", started.state.state, BASE_URL, session_user_id=bob.id)

    assert exc.value.link_mode


# ---------------------------------------------------------------------------
# Unlink
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_unlink_last_identity_of_passwordless_user_is_refused(flow):
    user = (await _login(flow)).user

    with pytest.raises(UnlinkWouldLockOut) as exc:
        await flow.unlink("github", user.id)

    assert exc.value.message == "Cannot unlink - you would have no way to log in"
    assert await flow.identities.count_by_user(user.id) == 1


@pytest.mark.asyncio
async def test_unlink_with_another_identity(flow):
    user = (await _login(flow, "github")).user
    await _login(flow, "google")

    await flow.unlink("github", user.id)

    assert [i.provider for i in await flow.identities.list_by_user(user.id)] == ["google"]


@pytest.mark.asyncio
async def test_unlink_last_identity_with_password(make_user, flow):
    bob = await make_user("alice@example.com", "Alice", password_hash="bcrypt-hash")
    await _login(flow)

    await flow.unlink("github", bob.id)

    assert await flow.identities.count_by_user(bob.id) == 0


@pytest.mark.asyncio
async def test_unlink_unknown_identity(make_user, flow):
    bob = await make_user()
    with pytest.raises(IdentityNotFound):
        await flow.unlink("github", bob.id)
