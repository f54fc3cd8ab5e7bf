"""Authorization Code + PKCE handshake coordinator.

AuthorizationCoordinator drives one attempt: generate PKCE material and
the state nonce, bind the loopback redirect server, open the provider's
authorization page in the user's browser, await the redirect, validate
it, and resolve an AsyncResultHandle with an AuthorizationResult or a
FlowError. A coordinator runs exactly one attempt; retry with a new one.
"""

# pylint: disable=too-many-instance-attributes,too-many-arguments

from __future__ import annotations

import asyncio
import logging
import secrets
import threading
import webbrowser

from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from ..exceptions import CanceledError, FlowError, InvalidStateError, NetworkError, ProtocolError
from ..handle import AsyncResultHandle
from ..types import AuthorizationRequest, AuthorizationResult, AuthorizationState
from .callback_server import DEFAULT_COMPLETION_MESSAGE, LoopbackRedirectServer
from .pkce import PKCEMaterial, RandomSource, generate_random_urlsafe_string


if TYPE_CHECKING:
    from types import TracebackType

    from ..config import OAuthLoopSettings


logger = logging.getLogger("oauthloop.auth")

GOOGLE_AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
DEFAULT_SCOPE = "https://www.googleapis.com/auth/spreadsheets.readonly"

# Opens a URL outside the process. A False return means it could not.
BrowserOpener = Callable[[str], Any]


def open_in_system_browser(url: str) -> bool:
    """Open ``url`` in the user's default browser."""
    return webbrowser.open(url)


class AuthorizationCoordinator:
    """Runs one OAuth2 authorization-code acquisition with PKCE.

    Parameters
    ----------
    client_id : str
        The OAuth2 client ID.
    scope : str
        Space-separated scopes to request.
    authorize_url : str
        The provider's authorization endpoint.
    open_browser : BrowserOpener
        Collaborator that opens the authorization URL. Failures are logged
        together with the URL and do not abort the attempt.
    random_source : RandomSource, optional
        Byte source for the verifier and state (default ``secrets.token_bytes``).
    verifier_bytes : int
        Random bytes behind the PKCE verifier (default 32).
    state_bytes : int
        Random bytes behind the state nonce (default 32).
    completion_message : str
        Page body shown in the browser after the redirect.
    bind_host : str
        Loopback address the redirect server binds.
    redirect_host : str
        Host name used in the redirect URI.
    """

    def __init__(
        self,
        client_id: str,
        scope: str = DEFAULT_SCOPE,
        *,
        authorize_url: str = GOOGLE_AUTHORIZE_URL,
        open_browser: BrowserOpener = open_in_system_browser,
        random_source: RandomSource | None = None,
        verifier_bytes: int = 32,
        state_bytes: int = 32,
        completion_message: str = DEFAULT_COMPLETION_MESSAGE,
        bind_host: str = "127.0.0.1",
        redirect_host: str = "localhost",
    ) -> None:
        """Initialize an idle coordinator."""
        self.client_id = client_id
        self.scope = scope
        self.authorize_url = authorize_url
        self.verifier_bytes = verifier_bytes
        self.state_bytes = state_bytes
        self.completion_message = completion_message
        self.bind_host = bind_host
        self.redirect_host = redirect_host
        self._open_browser = open_browser
        self._random_source = random_source

        self._lock = threading.Lock()
        self._state = AuthorizationState.IDLE
        self._handle: AsyncResultHandle[AuthorizationResult] = AsyncResultHandle("authorization")
        self._server: LoopbackRedirectServer | None = None
        self._request: AuthorizationRequest | None = None
        self._authorization_url: str | None = None

    @classmethod
    def from_settings(
        cls,
        settings: OAuthLoopSettings | None = None,
        **overrides: Any,
    ) -> AuthorizationCoordinator:
        """Create a coordinator from loaded settings.

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
        server = settings.server
        kwargs: dict[str, Any] = {
            "client_id": oauth2.client_id,
            "scope": oauth2.scopes,
            "authorize_url": oauth2.authorize_url,
            "verifier_bytes": oauth2.verifier_bytes,
            "state_bytes": oauth2.state_bytes,
            "completion_message": server.completion_message,
            "bind_host": server.bind_host,
            "redirect_host": server.redirect_host,
        }
        kwargs.update(overrides)
        return cls(**kwargs)

    @property
    def state(self) -> AuthorizationState:
        """Current state of the attempt."""
        return self._state

    @property
    def handle(self) -> AsyncResultHandle[AuthorizationResult]:
        """The handle resolved by this attempt."""
        return self._handle

    @property
    def request(self) -> AuthorizationRequest | None:
        """The authorization request, once the redirect server is bound."""
        return self._request

    @property
    def authorization_url(self) -> str | None:
        """The URL handed to the browser, once built."""
        return self._authorization_url

    def __enter__(self) -> AuthorizationCoordinator:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.dispose()

    async def start(self, timeout: float | None = None) -> AsyncResultHandle[AuthorizationResult]:
        """Run the handshake and return the resolved handle.

        Parameters
        ----------
        timeout : float, optional
            Seconds to wait for the redirect before failing with
            CanceledError (default: wait until disposed).

        Returns
        -------
        AsyncResultHandle[AuthorizationResult]
            The completed handle. Failures are delivered through it as
            ProtocolError, NetworkError or CanceledError.

        Raises
        ------
        InvalidStateError
            If the coordinator has already been started.
        """
        with self._lock:
            if self._state is AuthorizationState.CANCELED:
                return self._handle
            if self._state is not AuthorizationState.IDLE:
                msg = "Authorization has already been started"
                raise InvalidStateError(msg, state=self._state.value)
            self._state = AuthorizationState.AWAITING_BROWSER
            server = LoopbackRedirectServer(
                host=self.bind_host,
                redirect_host=self.redirect_host,
                completion_message=self.completion_message,
            )
            self._server = server

        try:
            await self._run(server, timeout)
        except asyncio.CancelledError:
            self._complete(CanceledError("The operation has been canceled."))
            raise
        finally:
            # stop() joins the serving thread; keep the event loop free meanwhile.
            await asyncio.to_thread(server.stop)
        return self._handle

    async def _run(self, server: LoopbackRedirectServer, timeout: float | None) -> None:
        pkce = PKCEMaterial.generate(self.verifier_bytes, self._random_source)
        state = generate_random_urlsafe_string(self.state_bytes, self._random_source)

        try:
            _, redirect_uri = server.bind()
        except OSError as exc:
            msg = f"Failed to bind the loopback redirect server: {exc}"
            self._complete(NetworkError(msg, host=self.bind_host))
            return
        except CanceledError as exc:
            self._complete(exc)
            return

        request = AuthorizationRequest(
            client_id=self.client_id,
            redirect_uri=redirect_uri,
            scope=self.scope,
            state=state,
            pkce=pkce,
        )
        self._request = request
        self._authorization_url = request.to_url(self.authorize_url)
        logger.info("Authorization redirect server listening at %s", redirect_uri)

        self._launch_browser(self._authorization_url)
        if not self._advance(AuthorizationState.AWAITING_CALLBACK):
            return

        try:
            params = await server.await_callback(timeout)
        except CanceledError as exc:
            self._complete(exc)
            return

        error = self._validate(params, state)
        if error is not None:
            self._complete(error)
            return

        self._complete(
            result=AuthorizationResult(
                authorization_code=params["code"],
                code_verifier=pkce.verifier,
                redirect_uri=redirect_uri,
            )
        )

    def _launch_browser(self, url: str) -> None:
        try:
            opened = self._open_browser(url)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Could not open the browser (%s). Open this URL to authorize: %s", exc, url)
            return
        if opened is False:
            logger.warning("Could not open the browser. Open this URL to authorize: %s", url)

    @staticmethod
    def _validate(params: dict[str, str], expected_state: str) -> ProtocolError | None:
        """Check a redirect's parameters, stopping at the first failure."""
        error = params.get("error")
        if error:
            description = params.get("error_description")
            context = {"error_description": description} if description else {}
            return ProtocolError(f"OAuth error: {error}", **context)

        code = params.get("code")
        returned_state = params.get("state")
        if not code or not returned_state:
            return ProtocolError("OAuth error: invalid response.")

        if not secrets.compare_digest(returned_state.encode("utf-8"), expected_state.encode("utf-8")):
            return ProtocolError("OAuth error: Request has invalid state.")
        return None

    def _advance(self, state: AuthorizationState) -> bool:
        with self._lock:
            if self._state.is_terminal:
                return False
            self._state = state
            return True

    def _complete(
        self,
        error: FlowError | None = None,
        result: AuthorizationResult | None = None,
    ) -> bool:
        """Move to a terminal state and resolve the handle, once."""
        with self._lock:
            if self._state.is_terminal:
                return False
            if error is None:
                self._state = AuthorizationState.SUCCEEDED
            elif isinstance(error, CanceledError):
                self._state = AuthorizationState.CANCELED
            else:
                self._state = AuthorizationState.FAILED

        if error is None:
            logger.info("Authorization succeeded")
            return self._handle.success(result)
        logger.info("Authorization %s: %s", self._state.value, error)
        return self._handle.fail(error)

    def dispose(self) -> None:
        """Cancel the attempt if it has not resolved yet.

        Fails the handle with CanceledError and cancels the redirect
        server. Idempotent, and a no-op once the handle has resolved.
        """
        if not self._complete(CanceledError("The operation has been canceled.")):
            return
        server = self._server
        if server is not None:
            server.cancel()
