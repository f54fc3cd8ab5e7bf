"""oauthloop - Google OAuth2 tokens for desktop tools via a loopback redirect.

Runs the Authorization Code flow with PKCE: the user's browser is sent to
the provider, the redirect lands on a one-shot localhost server, and the
code is exchanged for an access/refresh token pair. Every flow delivers
its outcome through an AsyncResultHandle.
"""

from __future__ import annotations

from .auth import (
    AuthorizationCoordinator,
    LoopbackRedirectServer,
    PKCEMaterial,
    TokenExchangeClient,
    TokenRefreshClient,
    derive_code_challenge,
    generate_random_urlsafe_string,
    open_in_system_browser,
)
from .config import (
    LogSettings,
    OAuth2Settings,
    OAuthLoopSettings,
    ServerSettings,
    clear_settings,
    get_settings,
    reload_settings,
)
from .exceptions import (
    CanceledError,
    ErrorKind,
    FlowError,
    InvalidStateError,
    NetworkError,
    OAuthLoopError,
    ProtocolError,
)
from .handle import AsyncResultHandle, Err, Ok, Outcome
from .log import enable_debug, get_logger, set_level
from .types import AuthorizationRequest, AuthorizationResult, AuthorizationState, TokenSet


__version__ = "0.1.0"

__all__ = [
    "AsyncResultHandle",
    "AuthorizationCoordinator",
    "AuthorizationRequest",
    "AuthorizationResult",
    "AuthorizationState",
    "CanceledError",
    "Err",
    "ErrorKind",
    "FlowError",
    "InvalidStateError",
    "LogSettings",
    "LoopbackRedirectServer",
    "NetworkError",
    "OAuth2Settings",
    "OAuthLoopError",
    "OAuthLoopSettings",
    "Ok",
    "Outcome",
    "PKCEMaterial",
    "ProtocolError",
    "ServerSettings",
    "TokenExchangeClient",
    "TokenRefreshClient",
    "TokenSet",
    "__version__",
    "clear_settings",
    "derive_code_challenge",
    "enable_debug",
    "generate_random_urlsafe_string",
    "get_logger",
    "get_settings",
    "open_in_system_browser",
    "reload_settings",
    "set_level",
]
