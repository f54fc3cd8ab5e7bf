"""Value types exchanged between the oauthloop flows and their callers."""

from __future__ import annotations

import json
import logging
import time

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any
from urllib.parse import quote, urlencode


if TYPE_CHECKING:
    from .auth.pkce import PKCEMaterial


logger = logging.getLogger("oauthloop.auth")


class AuthorizationState(str, Enum):
    """State of an authorization attempt."""

    IDLE = "idle"
    AWAITING_BROWSER = "awaiting_browser"
    AWAITING_CALLBACK = "awaiting_callback"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        """True for states that admit no further transitions."""
        return self in (
            AuthorizationState.SUCCEEDED,
            AuthorizationState.FAILED,
            AuthorizationState.CANCELED,
        )


@dataclass(frozen=True)
class AuthorizationRequest:
    """Parameters of one authorization attempt.

    Attributes
    ----------
    client_id : str
        The OAuth2 client ID.
    redirect_uri : str
        Loopback URI bound for this attempt.
    scope : str
        Space-separated scopes to request.
    state : str
        CSRF nonce echoed back by the provider.
    pkce : PKCEMaterial
        Verifier/challenge pair; only the challenge goes into the URL.
    """

    client_id: str
    redirect_uri: str
    scope: str
    state: str
    pkce: PKCEMaterial = field(repr=False)

    def to_url(self, authorize_url: str) -> str:
        """Build the browser URL for the provider's authorization endpoint.

        Parameters
        ----------
        authorize_url : str
            The authorization endpoint (may already carry a query string).

        Returns
        -------
        str
            The endpoint with all request parameters percent-encoded.
        """
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": self.scope,
            "code_challenge": self.pkce.challenge,
            "code_challenge_method": self.pkce.method,
            "state": self.state,
        }
        delimiter = "&" if "?" in authorize_url else "?"
        return f"{authorize_url}{delimiter}{urlencode(params, quote_via=quote)}"


@dataclass(frozen=True)
class AuthorizationResult:
    """Outcome of a validated authorization callback.

    Attributes
    ----------
    authorization_code : str
        The one-time code to redeem at the token endpoint.
    code_verifier : str
        The PKCE verifier matching the challenge sent in the request.
    redirect_uri : str
        The redirect URI used for the attempt; the token endpoint
        requires the same value.
    """

    authorization_code: str = field(repr=False)
    code_verifier: str = field(repr=False)
    redirect_uri: str


def _text(value: Any) -> str:
    return _optional_text(value) or ""


def _optional_text(value: Any) -> str | None:
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return None


def _seconds(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


# Wire name -> converter. Keys are the token endpoint's JSON field names.
_TOKEN_SCHEMA: dict[str, Callable[[Any], Any]] = {
    "access_token": _text,
    "expires_in": _seconds,
    "id_token": _optional_text,
    "refresh_token": _optional_text,
    "scope": _text,
    "token_type": _text,
}


@dataclass(frozen=True)
class TokenSet:
    """OAuth2 token set returned by the token endpoint.

    Attributes
    ----------
    access_token : str
        The access token for API requests.
    expires_in : int or None
        Token lifetime in seconds from issuance.
    id_token : str or None
        Optional OIDC ID token (JWT).
    refresh_token : str or None
        Refresh token; usually only present on the first exchange.
    scope : str
        Space-separated list of granted scopes.
    token_type : str
        Token type, typically "Bearer".
    raw : dict[str, Any]
        The decoded response body.
    issued_at : float
        Unix timestamp when the token set was received.
    """

    access_token: str = field(default="", repr=False)
    expires_in: int | None = None
    id_token: str | None = field(default=None, repr=False)
    refresh_token: str | None = field(default=None, repr=False)
    scope: str = ""
    token_type: str = ""
    raw: dict[str, Any] = field(default_factory=dict, repr=False)
    issued_at: float = field(default_factory=time.time)

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> TokenSet:
        """Build a token set from a decoded response body.

        Missing or wrongly typed fields fall back to empty defaults.
        """
        values = {name: convert(raw.get(name)) for name, convert in _TOKEN_SCHEMA.items()}
        return cls(**values, raw=dict(raw))

    @classmethod
    def from_response(cls, body: str | bytes) -> TokenSet:
        """Parse a token endpoint response body.

        A body that is not a JSON object yields a token set with empty
        fields instead of an error.
        """
        try:
            raw = json.loads(body)
        except ValueError:
            raw = None
        if not isinstance(raw, dict):
            logger.warning("Token endpoint body is not a JSON object; returning an empty token set")
            raw = {}
        return cls.from_mapping(raw)

    @property
    def expires_at(self) -> float | None:
        """Get the expiry timestamp, or None if no expiry."""
        if self.expires_in is None:
            return None
        return self.issued_at + self.expires_in

    @property
    def is_expired(self) -> bool:
        """Check if the access token has expired."""
        expires_at = self.expires_at
        if expires_at is None:
            return False
        return time.time() > expires_at

    def to_dict(self) -> dict[str, Any]:
        """Return the token fields keyed by their wire names."""
        return {name: getattr(self, name) for name in _TOKEN_SCHEMA}
