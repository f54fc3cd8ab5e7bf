"""Tests for the AuthorizationCoordinator handshake.

The browser collaborator is replaced by fakes that request the redirect
URI themselves, so every test runs a real loopback server.
"""

from __future__ import annotations

import asyncio
import logging
import socket
import time

from typing import TYPE_CHECKING
from urllib.parse import parse_qs, urlparse

import pytest

from oauthloop.auth.flow import (
    DEFAULT_SCOPE,
    GOOGLE_AUTHORIZE_URL,
    AuthorizationCoordinator,
)
from oauthloop.auth.pkce import derive_code_challenge
from oauthloop.config import OAuthLoopSettings
from oauthloop.exceptions import (
    CanceledError,
    ErrorKind,
    InvalidStateError,
    NetworkError,
    ProtocolError,
)
from oauthloop.types import AuthorizationResult, AuthorizationState
from tests.constants import CLIENT_ID, DEFAULT_TIMEOUT, SHORT_TIMEOUT, TEST_AUTHORIZE_URL
from tests.helpers import ECHO_STATE, RecordingBrowser


if TYPE_CHECKING:
    from collections.abc import Callable

    BrowserFactory = Callable[..., Callable[[str], bool]]


def _query(url: str) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}


class TestSuccessfulFlow:
    """Callback with the expected state and a code."""

    @pytest.mark.asyncio
    async def test_resolves_with_authorization_result(self, fake_browser: BrowserFactory) -> None:
        """A valid callback yields code, verifier and redirect URI."""
        coordinator = AuthorizationCoordinator(
            CLIENT_ID,
            open_browser=fake_browser(code="4/auth-code", state=ECHO_STATE),
        )

        handle = await coordinator.start(DEFAULT_TIMEOUT)

        assert handle is coordinator.handle
        assert not handle.failed
        result = handle.result
        assert isinstance(result, AuthorizationResult)
        assert result.authorization_code == "4/auth-code"
        assert coordinator.request is not None
        assert result.code_verifier == coordinator.request.pkce.verifier
        assert result.redirect_uri == coordinator.request.redirect_uri
        assert result.redirect_uri.startswith("http://localhost:")
        assert coordinator.state is AuthorizationState.SUCCEEDED

    @pytest.mark.asyncio
    async def test_authorization_url_parameters(self, fake_browser: BrowserFactory) -> None:
        """The browser URL carries every request parameter."""
        coordinator = AuthorizationCoordinator(
            CLIENT_ID,
            open_browser=fake_browser(code="c", state=ECHO_STATE),
        )
        await coordinator.start(DEFAULT_TIMEOUT)

        url = coordinator.authorization_url
        assert url is not None
        assert url.startswith(f"{GOOGLE_AUTHORIZE_URL}?client_id=")
        request = coordinator.request
        assert request is not None
        assert _query(url) == {
            "client_id": CLIENT_ID,
            "redirect_uri": request.redirect_uri,
            "response_type": "code",
            "scope": DEFAULT_SCOPE,
            "code_challenge": derive_code_challenge(request.pkce.verifier),
            "code_challenge_method": "S256",
            "state": request.state,
        }
        # Values are percent-encoded, including '/' and ':'.
        assert "scope=https%3A%2F%2Fwww.googleapis.com%2Fauth%2Fspreadsheets.readonly" in url

    @pytest.mark.asyncio
    async def test_verifier_not_disclosed(self, fake_browser: BrowserFactory) -> None:
        """Only the challenge appears in the browser URL."""
        coordinator = AuthorizationCoordinator(
            CLIENT_ID,
            open_browser=fake_browser(code="c", state=ECHO_STATE),
        )
        handle = await coordinator.start(DEFAULT_TIMEOUT)
        assert handle.result.code_verifier not in (coordinator.authorization_url or "")

    @pytest.mark.asyncio
    async def test_custom_scope_and_endpoint(self, fake_browser: BrowserFactory) -> None:
        """Scope and authorization endpoint are configurable."""
        coordinator = AuthorizationCoordinator(
            CLIENT_ID,
            "openid email",
            authorize_url=f"{TEST_AUTHORIZE_URL}?hd=example.com",
            open_browser=fake_browser(code="c", state=ECHO_STATE),
        )
        await coordinator.start(DEFAULT_TIMEOUT)

        url = coordinator.authorization_url or ""
        assert url.startswith(f"{TEST_AUTHORIZE_URL}?hd=example.com&client_id=")
        assert "scope=openid%20email" in url

    @pytest.mark.asyncio
    async def test_injected_random_source(self, fake_browser: BrowserFactory) -> None:
        """Verifier and state are drawn from the injected source."""
        draws: list[int] = []

        def source(n: int) -> bytes:
            draws.append(n)
            return bytes([len(draws)]) * n

        coordinator = AuthorizationCoordinator(
            CLIENT_ID,
            open_browser=fake_browser(code="c", state=ECHO_STATE),
            random_source=source,
            verifier_bytes=48,
            state_bytes=16,
        )
        await coordinator.start(DEFAULT_TIMEOUT)

        assert draws == [48, 16]
        request = coordinator.request
        assert request is not None
        assert len(request.pkce.verifier) == 64
        assert request.state != request.pkce.verifier


class TestValidation:
    """Callback validation, in order."""

    @pytest.mark.asyncio
    async def test_state_mismatch(self, fake_browser: BrowserFactory) -> None:
        """A foreign state fails even with a valid code."""
        coordinator = AuthorizationCoordinator(
            CLIENT_ID,
            open_browser=fake_browser(code="valid-code", state="xyz999"),
            random_source=lambda n: b"abc123"[:n].ljust(n, b"\0"),
        )

        handle = await coordinator.start(DEFAULT_TIMEOUT)

        assert handle.failed
        error = handle.error
        assert isinstance(error, ProtocolError)
        assert error.kind is ErrorKind.PROTOCOL
        assert str(error) == "OAuth error: Request has invalid state."
        assert coordinator.state is AuthorizationState.FAILED

    @pytest.mark.asyncio
    async def test_missing_code(self, fake_browser: BrowserFactory) -> None:
        """A callback with only state is an invalid response."""
        coordinator = AuthorizationCoordinator(
            CLIENT_ID,
            open_browser=fake_browser(state=ECHO_STATE),
        )

        handle = await coordinator.start(DEFAULT_TIMEOUT)

        assert isinstance(handle.error, ProtocolError)
        assert str(handle.error) == "OAuth error: invalid response."

    @pytest.mark.asyncio
    async def test_missing_state(self, fake_browser: BrowserFactory) -> None:
        """A callback with only a code is an invalid response."""
        coordinator = AuthorizationCoordinator(
            CLIENT_ID,
            open_browser=fake_browser(code="c"),
        )

        handle = await coordinator.start(DEFAULT_TIMEOUT)

        assert str(handle.error) == "OAuth error: invalid response."

    @pytest.mark.asyncio
    async def test_empty_code_is_missing(self, fake_browser: BrowserFactory) -> None:
        """An empty code counts as absent."""
        coordinator = AuthorizationCoordinator(
            CLIENT_ID,
            open_browser=fake_browser(code="", state=ECHO_STATE),
        )

        handle = await coordinator.start(DEFAULT_TIMEOUT)

        assert str(handle.error) == "OAuth error: invalid response."

    @pytest.mark.asyncio
    async def test_provider_error(self, fake_browser: BrowserFactory) -> None:
        """An error parameter wins over every other check."""
        coordinator = AuthorizationCoordinator(
            CLIENT_ID,
            open_browser=fake_browser(error="access_denied", code="c", state="wrong"),
        )

        handle = await coordinator.start(DEFAULT_TIMEOUT)

        error = handle.error
        assert isinstance(error, ProtocolError)
        assert "access_denied" in str(error)
        assert error.message == "OAuth error: access_denied"

    @pytest.mark.asyncio
    async def test_provider_error_description_in_context(
        self, fake_browser: BrowserFactory
    ) -> None:
        """The provider's error_description is kept as context."""
        coordinator = AuthorizationCoordinator(
            CLIENT_ID,
            open_browser=fake_browser(error="access_denied", error_description="User said no"),
        )

        handle = await coordinator.start(DEFAULT_TIMEOUT)

        assert handle.error is not None
        assert handle.error.context == {"error_description": "User said no"}


class TestCancellation:
    """dispose(), timeouts and task cancellation."""

    @pytest.mark.asyncio
    async def test_dispose_while_awaiting_callback(self) -> None:
        """Disposing after the URL is produced fails the handle once."""
        browser = RecordingBrowser()
        coordinator = AuthorizationCoordinator(CLIENT_ID, open_browser=browser)
        notifications: list[object] = []
        coordinator.handle.add_done_callback(notifications.append)

        asyncio.get_running_loop().call_later(0.1, coordinator.dispose)
        handle = await coordinator.start(DEFAULT_TIMEOUT)

        assert len(browser.urls) == 1
        assert isinstance(handle.error, CanceledError)
        assert handle.error.kind is ErrorKind.CANCELED
        assert coordinator.state is AuthorizationState.CANCELED

        coordinator.dispose()
        assert notifications == [handle]
        assert isinstance(handle.error, CanceledError)

    @pytest.mark.asyncio
    async def test_dispose_after_success_is_noop(self, fake_browser: BrowserFactory) -> None:
        """Disposal never flips a resolved success."""
        coordinator = AuthorizationCoordinator(
            CLIENT_ID,
            open_browser=fake_browser(code="c", state=ECHO_STATE),
        )
        handle = await coordinator.start(DEFAULT_TIMEOUT)

        coordinator.dispose()

        assert not handle.failed
        assert handle.result.authorization_code == "c"
        assert coordinator.state is AuthorizationState.SUCCEEDED

    @pytest.mark.asyncio
    async def test_dispose_before_start(self) -> None:
        """start() on a disposed coordinator returns the failed handle."""
        browser = RecordingBrowser()
        coordinator = AuthorizationCoordinator(CLIENT_ID, open_browser=browser)
        coordinator.dispose()

        handle = await coordinator.start(DEFAULT_TIMEOUT)

        assert isinstance(handle.error, CanceledError)
        assert browser.urls == []
        assert coordinator.request is None

    def test_context_manager_disposes(self) -> None:
        """Leaving the with-block cancels a pending attempt."""
        with AuthorizationCoordinator(CLIENT_ID, open_browser=RecordingBrowser()) as coordinator:
            pass
        assert coordinator.state is AuthorizationState.CANCELED
        assert isinstance(coordinator.handle.error, CanceledError)

    @pytest.mark.asyncio
    async def test_timeout(self) -> None:
        """No callback within the timeout fails with CanceledError."""
        coordinator = AuthorizationCoordinator(CLIENT_ID, open_browser=RecordingBrowser())

        handle = await coordinator.start(SHORT_TIMEOUT)

        assert isinstance(handle.error, CanceledError)
        assert coordinator.state is AuthorizationState.CANCELED

    @pytest.mark.asyncio
    async def test_task_cancellation_fails_handle(self) -> None:
        """Cancelling the task running start() cancels the attempt."""
        coordinator = AuthorizationCoordinator(CLIENT_ID, open_browser=RecordingBrowser())
        task = asyncio.create_task(coordinator.start())
        await asyncio.sleep(0.1)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert isinstance(coordinator.handle.error, CanceledError)

    @pytest.mark.asyncio
    async def test_idle_connection_does_not_block_timeout(self) -> None:
        """A connection that never sends a request cannot stall start()."""
        idle: list[socket.socket] = []

        def _open_idle(url: str) -> bool:
            port = urlparse(_query(url)["redirect_uri"]).port
            idle.append(socket.create_connection(("127.0.0.1", port)))
            return True

        coordinator = AuthorizationCoordinator(CLIENT_ID, open_browser=_open_idle)
        try:
            began = time.monotonic()
            handle = await asyncio.wait_for(coordinator.start(SHORT_TIMEOUT), DEFAULT_TIMEOUT)
            elapsed = time.monotonic() - began
        finally:
            for sock in idle:
                sock.close()

        assert isinstance(handle.error, CanceledError)
        assert elapsed < 3.0

    @pytest.mark.asyncio
    async def test_idle_connection_does_not_block_callback(
        self, fake_browser: BrowserFactory
    ) -> None:
        """The redirect is served while another connection sits idle."""
        idle: list[socket.socket] = []
        follow = fake_browser(code="c", state=ECHO_STATE)

        def _preconnect_then_follow(url: str) -> bool:
            port = urlparse(_query(url)["redirect_uri"]).port
            idle.append(socket.create_connection(("127.0.0.1", port)))
            return follow(url)

        coordinator = AuthorizationCoordinator(CLIENT_ID, open_browser=_preconnect_then_follow)
        try:
            handle = await asyncio.wait_for(coordinator.start(DEFAULT_TIMEOUT), DEFAULT_TIMEOUT)
        finally:
            for sock in idle:
                sock.close()

        assert handle.result.authorization_code == "c"

    @pytest.mark.asyncio
    async def test_start_twice_raises(self, fake_browser: BrowserFactory) -> None:
        """A coordinator runs a single attempt."""
        coordinator = AuthorizationCoordinator(
            CLIENT_ID,
            open_browser=fake_browser(code="c", state=ECHO_STATE),
        )
        await coordinator.start(DEFAULT_TIMEOUT)

        with pytest.raises(InvalidStateError):
            await coordinator.start(DEFAULT_TIMEOUT)


class TestCollaboratorFailures:
    """Browser and socket failures."""

    @pytest.mark.asyncio
    async def test_browser_exception_is_logged_and_flow_continues(
        self,
        fake_browser: BrowserFactory,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        """A raising browser is logged with the URL; the redirect still counts."""
        follow = fake_browser(code="c", state=ECHO_STATE)

        def broken_browser(url: str) -> bool:
            follow(url)
            raise RuntimeError("no display")

        coordinator = AuthorizationCoordinator(CLIENT_ID, open_browser=broken_browser)
        with caplog.at_level(logging.WARNING, logger="oauthloop.auth"):
            handle = await coordinator.start(DEFAULT_TIMEOUT)

        assert not handle.failed
        assert "no display" in caplog.text
        assert (coordinator.authorization_url or "") in caplog.text

    @pytest.mark.asyncio
    async def test_browser_returning_false_is_logged(self, caplog: pytest.LogCaptureFixture) -> None:
        """A browser that reports failure gets the URL logged."""
        coordinator = AuthorizationCoordinator(CLIENT_ID, open_browser=RecordingBrowser(result=False))
        with caplog.at_level(logging.WARNING, logger="oauthloop.auth"):
            await coordinator.start(SHORT_TIMEOUT)

        assert "Open this URL to authorize" in caplog.text

    @pytest.mark.asyncio
    async def test_bind_failure_is_network_error(self) -> None:
        """A socket that cannot be bound fails with NetworkError."""
        browser = RecordingBrowser()
        coordinator = AuthorizationCoordinator(
            CLIENT_ID,
            open_browser=browser,
            bind_host="203.0.113.1",
        )

        handle = await coordinator.start(DEFAULT_TIMEOUT)

        error = handle.error
        assert isinstance(error, NetworkError)
        assert error.status_code is None
        assert browser.urls == []
        assert coordinator.state is AuthorizationState.FAILED


class TestFromSettings:
    """AuthorizationCoordinator.from_settings()."""

    def test_reads_settings(self) -> None:
        """Settings supply client, scope, endpoint and server options."""
        settings = OAuthLoopSettings(
            oauth2={"client_id": "from-settings", "scopes": "openid", "state_bytes": 24},
            server={"redirect_host": "127.0.0.1", "completion_message": "Bye"},
        )

        coordinator = AuthorizationCoordinator.from_settings(settings)

        assert coordinator.client_id == "from-settings"
        assert coordinator.scope == "openid"
        assert coordinator.state_bytes == 24
        assert coordinator.redirect_host == "127.0.0.1"
        assert coordinator.completion_message == "Bye"
        assert coordinator.authorize_url == GOOGLE_AUTHORIZE_URL

    def test_overrides_win(self) -> None:
        """Keyword overrides take precedence over settings."""
        settings = OAuthLoopSettings(oauth2={"client_id": "from-settings"})
        coordinator = AuthorizationCoordinator.from_settings(settings, client_id="override")
        assert coordinator.client_id == "override"

    def test_defaults_to_global_settings(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Without settings, environment configuration is used."""
        monkeypatch.setenv("OAUTHLOOP_OAUTH2__CLIENT_ID", "env-client")
        coordinator = AuthorizationCoordinator.from_settings()
        assert coordinator.client_id == "env-client"
