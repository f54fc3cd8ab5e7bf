"""OAuth2 Authorization Code + PKCE handshake for desktop clients.

Provides the PKCE primitives, the loopback redirect server, the
authorization coordinator and the token endpoint clients.
"""

from __future__ import annotations

from .callback_server import DEFAULT_COMPLETION_MESSAGE, LoopbackRedirectServer
from .flow import (
    DEFAULT_SCOPE,
    GOOGLE_AUTHORIZE_URL,
    AuthorizationCoordinator,
    BrowserOpener,
    open_in_system_browser,
)
from .pkce import (
    PKCEMaterial,
    RandomSource,
    base64url_encode,
    derive_code_challenge,
    generate_random_urlsafe_string,
)
from .tokens import GOOGLE_TOKEN_URL, TokenExchangeClient, TokenRefreshClient


__all__ = [
    "DEFAULT_COMPLETION_MESSAGE",
    "DEFAULT_SCOPE",
    "GOOGLE_AUTHORIZE_URL",
    "GOOGLE_TOKEN_URL",
    "AuthorizationCoordinator",
    "BrowserOpener",
    "LoopbackRedirectServer",
    "PKCEMaterial",
    "RandomSource",
    "TokenExchangeClient",
    "TokenRefreshClient",
    "base64url_encode",
    "derive_code_challenge",
    "generate_random_urlsafe_string",
    "open_in_system_browser",
]
