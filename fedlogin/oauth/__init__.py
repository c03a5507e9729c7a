from fedlogin.oauth.errors import OAuthFlowError
from fedlogin.oauth.flow import CallbackResult, OAuthFlowController, StartResult
from fedlogin.oauth.providers import ProviderClient, ProviderRegistry, build_registry

__all__ = [
    "CallbackResult",
    "OAuthFlowController",
    "OAuthFlowError",
    "ProviderClient",
    "ProviderRegistry",
    "StartResult",
    "build_registry",
]
