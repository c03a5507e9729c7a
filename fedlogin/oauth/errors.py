from __future__ import annotations


class OAuthFlowError(Exception):
    """Base class for federated login errors.

    ``code`` is the stable identifier surfaced in the ``error`` query parameter;
    ``status_code`` is used when the error is reported as an HTTP status instead
    of a redirect.
    """

    code: str = "oauth_error"
    status_code: int = 400
    # Set once a consumed state shows the attempt was a link, not a login
    link_mode: bool = False

    def __init__(self, message: str | None = None, *, code: str | None = None):
        self.message = message or self.code
        if code is not None:
            self.code = code
        super().__init__(self.message)


# Client / input errors


class ProviderNotFound(OAuthFlowError):
    code = "unknown_provider"


class InvalidRedirect(OAuthFlowError):
    code = "invalid_redirect"


class OAuthNotConfigured(OAuthFlowError):
    code = "not_configured"
    status_code = 503


class ProviderReportedError(OAuthFlowError):
    """The provider redirected back with ``error=...`` instead of a code."""

    def __init__(self, code: str, description: str = ""):
        self.description = description
        super().__init__(description or code, code=code)


# State errors


class InvalidState(OAuthFlowError):
    code = "invalid_state"


class StateExpired(OAuthFlowError):
    code = "state_expired"


# Upstream provider errors


class ProviderError(OAuthFlowError):
    """Transport or parse failure talking to a provider."""

    code = "provider_error"
    status_code = 502


class ExchangeFailed(ProviderError):
    code = "exchange_failed"


class TokenError(ProviderError):
    """The provider answered the token request with an OAuth error."""

    code = "token_error"


class ProfileFailed(ProviderError):
    code = "profile_failed"


# Persistence errors


class UserCreationFailed(OAuthFlowError):
    code = "user_creation_failed"
    status_code = 500


class IdentityCreationFailed(OAuthFlowError):
    code = "identity_creation_failed"
    status_code = 500


class IdentityExists(OAuthFlowError):
    """Store-level uniqueness violation on (provider, provider_user_id)."""

    code = "identity_exists"
    status_code = 409


class UserNotFound(OAuthFlowError):
    code = "user_not_found"
    status_code = 404


class ServerError(OAuthFlowError):
    """State store or database outage during a callback. The code stays opaque."""

    code = "server_error"
    status_code = 500


class TokenGenerationFailed(OAuthFlowError):
    code = "token_generation_failed"
    status_code = 500


# Policy errors


class RegistrationDisabled(OAuthFlowError):
    code = "registration_disabled"
    status_code = 403


class AlreadyLinked(OAuthFlowError):
    code = "already_linked"
    status_code = 409


class IdentityInUse(OAuthFlowError):
    """A link attempt resolved to an identity owned by a different user."""

    code = "identity_in_use"
    status_code = 409


class LinkSessionMismatch(OAuthFlowError):
    """The browser finishing a link is not signed in as the user who started it."""

    code = "link_session_mismatch"
    status_code = 403


class IdentityNotFound(OAuthFlowError):
    code = "identity_not_found"
    status_code = 404


class UnlinkWouldLockOut(OAuthFlowError):
    code = "unlink_would_lock_out"

    def __init__(self, message: str = "Cannot unlink - you would have no way to log in"):
        super().__init__(message)


class MissingParameter(OAuthFlowError):
    code = "invalid_request"


class AuthorizationFailed(OAuthFlowError):
    """State could not be persisted or the provider URL could not be built."""

    code = "authorization_failed"
    status_code = 500
