"""Token endpoint clients for the code exchange and the refresh grant.

Each call is one form-encoded POST over httpx with no retries. Results are
delivered through an AsyncResultHandle: non-2xx responses and transport
failures become NetworkError, 2xx bodies become a TokenSet.
"""

from __future__ import annotations

import logging

from typing import TYPE_CHECKING, Any, ClassVar, TypeVar

import httpx

from ..exceptions import NetworkError
from ..handle import AsyncResultHandle
from ..log import redact_sensitive_data
from ..types import AuthorizationResult, TokenSet


if TYPE_CHECKING:
    from types import TracebackType

    from ..config import OAuthLoopSettings


logger = logging.getLogger("oauthloop.auth")

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"

_ClientT = TypeVar("_ClientT", bound="_TokenEndpointClient")


def _error_from_response(response: httpx.Response, grant_type: str) -> NetworkError:
    """Build a NetworkError from a non-2xx token endpoint response."""
    provider_error: str | None = None
    provider_error_description: str | None = None
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        error = body.get("error")
        description = body.get("error_description")
        provider_error = error if isinstance(error, str) else None
        provider_error_description = description if isinstance(description, str) else None

    msg = f"Token request ({grant_type}) failed: {response.status_code}"
    if provider_error:
        msg = f"{msg} {provider_error}"
        if provider_error_description:
            msg = f"{msg}: {provider_error_description}"
    return NetworkError(
        msg,
        status_code=response.status_code,
        provider_error=provider_error,
        provider_error_description=provider_error_description,
    )


class _TokenEndpointClient:
    """Shared POST logic of the token endpoint clients.

    Parameters
    ----------
    client_id : str
        The OAuth2 client ID.
    client_secret : str
        The OAuth2 client secret.
    token_url : str
        The provider's token endpoint.
    http_client : httpx.AsyncClient, optional
        Client to send requests with. When omitted one is created on first
        use and closed by ``close()``; a supplied client is never closed.
    timeout : float
        Request timeout in seconds (default 30).
    """

    grant_type: ClassVar[str]

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        *,
        token_url: str = GOOGLE_TOKEN_URL,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ) -> None:
        """Initialize the token endpoint client."""
        self.client_id = client_id
        self.client_secret = client_secret
        self.token_url = token_url
        self.timeout = timeout
        self._http_client = http_client
        self._owns_client = http_client is None

    @classmethod
    def from_settings(
        cls: type[_ClientT],
        settings: OAuthLoopSettings | None = None,
        **overrides: Any,
    ) -> _ClientT:
        """Create a client from loaded settings.

        Parameters
        ----------
        settings : OAuthLoopSettings, optional
            Settings to read; defaults to ``get_settings()``.
        **overrides : Any
            Constructor arguments that take precedence over the settings.
        """
        if settings is None:
            from ..config import get_settings

            settings = get_settings()

        oauth2 = settings.oauth2
        kwargs: dict[str, Any] = {
            "client_id": oauth2.client_id,
            "client_secret": oauth2.client_secret,
            "token_url": oauth2.token_url,
            "timeout": oauth2.http_timeout_seconds,
        }
        kwargs.update(overrides)
        return cls(**kwargs)

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._http_client is None or (self._owns_client and self._http_client.is_closed):
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
            self._owns_client = True
        return self._http_client

    async def close(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_client and self._http_client is not None and not self._http_client.is_closed:
            await self._http_client.aclose()
            self._http_client = None

    async def __aenter__(self: _ClientT) -> _ClientT:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    async def _post(self, fields: dict[str, str]) -> AsyncResultHandle[TokenSet]:
        handle: AsyncResultHandle[TokenSet] = AsyncResultHandle(self.grant_type)
        logger.debug("POST %s %s", self.token_url, redact_sensitive_data(fields))

        try:
            client = self._get_client()
            response = await client.post(
                self.token_url,
                data=fields,
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            msg = f"Token request ({self.grant_type}) failed: {exc}"
            logger.warning(msg)
            handle.fail(NetworkError(msg, status_code=None))
            return handle

        if not response.is_success:
            error = _error_from_response(response, self.grant_type)
            logger.warning("%s", error)
            handle.fail(error)
            return handle

        token_set = TokenSet.from_response(response.content)
        logger.debug("Token response: %s", redact_sensitive_data(token_set.raw))
        handle.success(token_set)
        return handle


class TokenExchangeClient(_TokenEndpointClient):
    """Redeems an authorization code for a token set."""

    grant_type = "authorization_code"

    async def exchange(
        self,
        authorization_code: str,
        code_verifier: str,
        redirect_uri: str,
    ) -> AsyncResultHandle[TokenSet]:
        """Exchange an authorization code for tokens.

        Parameters
        ----------
        authorization_code : str
            The code delivered to the redirect URI.
        code_verifier : str
            The PKCE verifier whose challenge was sent in the authorization
            request.
        redirect_uri : str
            The redirect URI used in the authorization request.

        Returns
        -------
        AsyncResultHandle[TokenSet]
            Completed handle; failures carry a NetworkError.
        """
        return await self._post(
            {
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "code": authorization_code,
                "code_verifier": code_verifier,
                "grant_type": self.grant_type,
                "redirect_uri": redirect_uri,
            }
        )

    async def exchange_result(self, result: AuthorizationResult) -> AsyncResultHandle[TokenSet]:
        """Exchange the code carried by an AuthorizationResult."""
        return await self.exchange(
            result.authorization_code,
            result.code_verifier,
            result.redirect_uri,
        )


class TokenRefreshClient(_TokenEndpointClient):
    """Obtains a new access token with a refresh token.

    The returned TokenSet usually has no ``refresh_token``; callers keep
    the one they already hold unless the provider rotates it.
    """

    grant_type = "refresh_token"

    async def refresh(self, refresh_token: str) -> AsyncResultHandle[TokenSet]:
        """Refresh an access token.

        Parameters
        ----------
        refresh_token : str
            The refresh token from an earlier exchange.

        Returns
        -------
        AsyncResultHandle[TokenSet]
            Completed handle; failures carry a NetworkError.
        """
        return await self._post(
            {
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "grant_type": self.grant_type,
                "refresh_token": refresh_token,
            }
        )
